import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from apps.scheduling.reminders import (
    DataStoreError,
    DispatchOutcome,
    MarkResult,
    ReminderKind,
    ReminderScheduler,
)
from serverless.src.functions import send_confirmation, send_reminders
from serverless.src.functions.appointment_store import DynamoAppointmentStore, item_to_snapshot


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_item(appointment_id="apt_1", starts_in=timedelta(hours=23, minutes=50), **overrides):
    item = {
        "appointment_id": appointment_id,
        "status": "scheduled",
        "scheduled_at": (NOW + starts_in).isoformat(),
        "customer": {"name": "Dana Ruiz", "email": "dana@example.com", "phone_e164": "+15551230000"},
        "reminder_settings": {
            "send_24h_reminder": True,
            "send_2h_reminder": True,
            "send_same_day_reminder": True,
            "preferred_channel": "email",
        },
        "vehicle_info": "2018 Toyota Camry",
        "service_name": "Oil Change",
        "estimated_duration_minutes": 45,
    }
    item.update(overrides)
    return item


def conditional_failure(item=None):
    response = {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}}
    if item is not None:
        response["Item"] = item
    return ClientError(response, "UpdateItem")


class FakeDispatcher:
    def __init__(self, success=True):
        self.success = success
        self.calls = []

    def send(self, destination, channel, template, payload):
        self.calls.append((destination, channel, template, payload))
        if self.success:
            return DispatchOutcome(success=True, provider_message_id="ses-1")
        return DispatchOutcome.failure("SES throttled")


def test_item_to_snapshot():
    snapshot = item_to_snapshot(make_item(reminders_sent={"24h"}))

    assert snapshot.id == "apt_1"
    assert snapshot.scheduled_at == NOW + timedelta(hours=23, minutes=50)
    assert snapshot.contact.phone == "+15551230000"
    assert snapshot.settings.preferred_channel == "email"
    assert snapshot.reminders_sent == {"24h"}
    assert snapshot.estimated_duration_minutes == 45


def test_find_upcoming_queries_each_status_and_follows_pages():
    table = MagicMock()
    table.query.side_effect = [
        {"Items": [make_item("apt_2", timedelta(hours=5))], "LastEvaluatedKey": {"appointment_id": "apt_2"}},
        {"Items": [make_item("apt_3", timedelta(hours=1))]},
        {"Items": [make_item("apt_4", timedelta(hours=3), status="confirmed"), make_item("apt_5", timedelta(0))]},
    ]

    found = DynamoAppointmentStore(table).find_upcoming(
        ["scheduled", "confirmed"], before=NOW + timedelta(hours=24), after=NOW
    )

    assert [s.id for s in found] == ["apt_3", "apt_4", "apt_2"]
    assert table.query.call_count == 3
    first, second, third = [c.kwargs for c in table.query.call_args_list]
    assert first["IndexName"] == "by_status_scheduled"
    assert first["ExpressionAttributeValues"][":status"] == "scheduled"
    assert "ExclusiveStartKey" not in first
    assert second["ExclusiveStartKey"] == {"appointment_id": "apt_2"}
    assert third["ExpressionAttributeValues"][":status"] == "confirmed"


def test_find_upcoming_wraps_client_errors():
    table = MagicMock()
    table.query.side_effect = ClientError({"Error": {"Code": "ProvisionedThroughputExceededException"}}, "Query")

    with pytest.raises(DataStoreError):
        DynamoAppointmentStore(table).find_upcoming(["scheduled"], before=NOW)


def test_mark_reminder_sent_results():
    table = MagicMock()
    store = DynamoAppointmentStore(table)

    assert store.mark_reminder_sent("apt_1", ReminderKind.DAY_BEFORE) is MarkResult.SUCCESS
    kwargs = table.update_item.call_args.kwargs
    assert kwargs["ConditionExpression"] == (
        "attribute_exists(appointment_id) AND NOT contains(reminders_sent, :kind)"
    )
    assert kwargs["ExpressionAttributeValues"][":kinds"] == {"24h"}
    assert kwargs["ReturnValuesOnConditionCheckFailure"] == "ALL_OLD"

    table.update_item.side_effect = conditional_failure(item={"appointment_id": {"S": "apt_1"}})
    assert store.mark_reminder_sent("apt_1", ReminderKind.DAY_BEFORE) is MarkResult.ALREADY_SENT

    table.update_item.side_effect = conditional_failure()
    assert store.mark_reminder_sent("apt_missing", ReminderKind.DAY_BEFORE) is MarkResult.NOT_FOUND

    table.update_item.side_effect = ClientError({"Error": {"Code": "InternalServerError"}}, "UpdateItem")
    with pytest.raises(DataStoreError):
        store.mark_reminder_sent("apt_1", ReminderKind.DAY_BEFORE)


def test_record_communication_appends_history():
    table = MagicMock()

    DynamoAppointmentStore(table).record_communication(
        "apt_1", "reminder_24h", "email", DispatchOutcome(success=True, provider_message_id="ses-9")
    )

    kwargs = table.update_item.call_args.kwargs
    entry = kwargs["ExpressionAttributeValues"][":entries"][0]
    assert entry["type"] == "reminder_24h"
    assert entry["channel"] == "email"
    assert entry["status"] == "sent"
    assert entry["message_id"] == "ses-9"


def test_get_missing_item():
    table = MagicMock()
    table.get_item.return_value = {}
    assert DynamoAppointmentStore(table).get("apt_404") is None


@pytest.fixture
def table():
    def query(**params):
        if params["ExpressionAttributeValues"][":status"] == "scheduled":
            return {"Items": [make_item()]}
        return {"Items": []}

    table = MagicMock()
    table.query.side_effect = query
    table.get_item.return_value = {"Item": make_item()}
    return table


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def scheduler(monkeypatch, table, dispatcher):
    scheduler = ReminderScheduler(DynamoAppointmentStore(table), dispatcher, clock=lambda: NOW)
    monkeypatch.setattr(send_reminders, "get_scheduler", lambda: scheduler)
    monkeypatch.setattr(send_confirmation, "get_scheduler", lambda: scheduler)
    monkeypatch.setattr(send_reminders, "utcnow", lambda: NOW)
    return scheduler


def test_send_reminders_handler(scheduler, table, dispatcher):
    result = send_reminders.handler({"source": "aws.events"}, None)

    assert result["status"] == "ok"
    assert result["sent"] == 1
    assert result["failed"] == 0
    assert result["correlation_id"] == "reminders-20260302120000"
    assert dispatcher.calls[0][2] == "reminder_24h"


def test_send_reminders_handler_reports_query_failure(scheduler, table):
    table.query.side_effect = ClientError({"Error": {"Code": "ResourceNotFoundException"}}, "Query")

    result = send_reminders.handler({}, None)

    assert result["status"] == "error"


def test_send_confirmation_handler(scheduler, dispatcher):
    event = {"pathParameters": {"appointment_id": "apt_1"}, "headers": {"x-correlation-id": "cor-123"}}

    resp = send_confirmation.handler(event, None)

    assert resp["statusCode"] == 200
    assert resp["headers"]["X-Correlation-Id"] == "cor-123"
    body = json.loads(resp["body"])
    assert body["provider_message_id"] == "ses-1"
    assert body["correlation_id"] == "cor-123"
    assert dispatcher.calls[0][2] == "confirmation"


def test_send_confirmation_handler_unknown_appointment(scheduler, table, dispatcher):
    table.get_item.return_value = {}

    resp = send_confirmation.handler({"body": json.dumps({"appointment_id": "apt_404"})}, None)

    assert resp["statusCode"] == 404
    assert dispatcher.calls == []


def test_send_confirmation_handler_dispatch_failure(scheduler, dispatcher):
    dispatcher.success = False

    resp = send_confirmation.handler({"pathParameters": {"appointment_id": "apt_1"}}, None)

    assert resp["statusCode"] == 502
    assert json.loads(resp["body"])["reason"] == "SES throttled"


@pytest.mark.parametrize("event", [{}, {"body": "{not json"}, {"body": "[]"}])
def test_send_confirmation_handler_bad_request(scheduler, event):
    assert send_confirmation.handler(event, None)["statusCode"] == 400


def test_send_confirmation_handler_history_failure_still_succeeds(scheduler, table, dispatcher):
    table.update_item.side_effect = ClientError({"Error": {"Code": "InternalServerError"}}, "UpdateItem")

    resp = send_confirmation.handler({"pathParameters": {"appointment_id": "apt_1"}}, None)

    assert resp["statusCode"] == 200
    assert len(dispatcher.calls) == 1

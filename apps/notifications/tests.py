from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, ReadTimeoutError

from apps.notifications.dispatcher import NotificationDispatcher
from apps.notifications.templates import render_message
from apps.scheduling.reminders import Contact


PAYLOAD = {
    "appointment_id": 7,
    "customer_name": "Dana Ruiz",
    "scheduled_at": datetime(2026, 3, 3, 14, 30, tzinfo=timezone.utc),
    "vehicle_info": "2018 Toyota Camry",
    "service_name": "Brake Inspection",
    "estimated_duration_minutes": 60,
}

CONTACT = Contact(name="Dana Ruiz", email="dana@example.com", phone="+15551230000")


def client_error(operation):
    return ClientError({"Error": {"Code": "Throttling", "Message": "Rate exceeded"}}, operation)


@pytest.fixture
def ses():
    client = MagicMock()
    client.send_email.return_value = {"MessageId": "ses-1"}
    return client


@pytest.fixture
def sns():
    client = MagicMock()
    client.publish.return_value = {"MessageId": "sns-1"}
    return client


@pytest.fixture
def dispatcher(ses, sns):
    return NotificationDispatcher(
        ses,
        sns,
        from_email="shop@example.com",
        sms_sender_id="AUTOSHOP",
        time_zone="America/New_York",
        shop_name="Main Street Auto",
    )


def test_render_uses_shop_time_zone():
    message = render_message("reminder_24h", PAYLOAD, time_zone="America/New_York", shop_name="Main Street Auto")

    assert message.subject == "Appointment Reminder - Tomorrow at 09:30"
    assert "Main Street Auto" in message.body
    assert "Tue Mar 3, 2026" in message.body
    assert message.sms.startswith("Reminder: Your appointment is tomorrow at 09:30.")
    assert "2018 Toyota Camry" in message.sms


def test_render_fills_missing_details():
    message = render_message("confirmation", {"customer_name": "Lee"})

    assert "Vehicle: not specified" in message.body
    assert "Estimated duration: to be confirmed" in message.body


def test_render_unknown_template():
    with pytest.raises(KeyError):
        render_message("birthday", PAYLOAD)


def test_email_only(dispatcher, ses, sns):
    outcome = dispatcher.send(CONTACT, "email", "confirmation", PAYLOAD)

    assert outcome.success
    assert outcome.provider_message_id == "ses-1"
    sns.publish.assert_not_called()
    kwargs = ses.send_email.call_args.kwargs
    assert kwargs["Source"] == "shop@example.com"
    assert kwargs["Destination"] == {"ToAddresses": ["dana@example.com"]}
    assert kwargs["Message"]["Subject"]["Data"].startswith("Appointment Confirmation")


def test_sms_only(dispatcher, ses, sns):
    outcome = dispatcher.send(CONTACT, "sms", "reminder_2h", PAYLOAD)

    assert outcome.success
    assert outcome.provider_message_id == "sns-1"
    ses.send_email.assert_not_called()
    kwargs = sns.publish.call_args.kwargs
    assert kwargs["PhoneNumber"] == "+15551230000"
    assert kwargs["MessageAttributes"]["AWS.SNS.SMS.SenderID"]["StringValue"] == "AUTOSHOP"


def test_both_channels(dispatcher, ses, sns):
    outcome = dispatcher.send(CONTACT, "both", "reminder_same_day", PAYLOAD)

    assert outcome.success
    assert [c.channel for c in outcome.channels] == ["email", "sms"]
    assert all(c.success for c in outcome.channels)


def test_both_succeeds_when_one_channel_fails(dispatcher, ses, sns):
    sns.publish.side_effect = client_error("Publish")

    outcome = dispatcher.send(CONTACT, "both", "reminder_24h", PAYLOAD)

    assert outcome.success
    assert outcome.provider_message_id == "ses-1"
    failed = [c for c in outcome.channels if not c.success]
    assert failed[0].channel == "sms"
    assert "Rate exceeded" in failed[0].error


def test_provider_error_becomes_failed_outcome(dispatcher, ses):
    ses.send_email.side_effect = client_error("SendEmail")

    outcome = dispatcher.send(CONTACT, "email", "reminder_24h", PAYLOAD)

    assert not outcome.success
    assert outcome.provider_message_id is None
    assert "email to dana@example.com failed" in outcome.reason


def test_timeout_is_a_dispatch_failure(dispatcher, sns):
    sns.publish.side_effect = ReadTimeoutError(endpoint_url="https://sns.us-east-1.amazonaws.com")

    outcome = dispatcher.send(CONTACT, "sms", "reminder_2h", PAYLOAD)

    assert not outcome.success
    assert outcome.channels[0].channel == "sms"


def test_missing_address(dispatcher, ses, sns):
    outcome = dispatcher.send(Contact(name="Lee", email="lee@example.com"), "sms", "reminder_2h", PAYLOAD)

    assert not outcome.success
    assert outcome.reason == "no phone number on file for Lee"
    ses.send_email.assert_not_called()
    sns.publish.assert_not_called()


def test_both_with_email_only_contact(dispatcher, ses, sns):
    outcome = dispatcher.send(Contact(name="Lee", email="lee@example.com"), "both", "reminder_2h", PAYLOAD)

    assert outcome.success
    sns.publish.assert_not_called()


def test_unsupported_channel(dispatcher, ses, sns):
    outcome = dispatcher.send(CONTACT, "pigeon", "reminder_2h", PAYLOAD)

    assert not outcome.success
    ses.send_email.assert_not_called()

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import IntegrityError
from django.contrib.auth import get_user_model
from django.utils import timezone as dj_timezone
from rest_framework.test import APIClient

from apps.customers.models import Customer, Vehicle
from apps.services.models import ServiceCatalog
from apps.scheduling.models import Appointment, CommunicationRecord, ReminderDelivery
from apps.scheduling.reminders import (
    ChannelResult,
    DispatchOutcome,
    MarkResult,
    ReminderKind,
    ReminderScheduler,
)
from apps.scheduling.services import build_scheduler
from apps.scheduling.store import DjangoAppointmentStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
API_PREFIX = "/api/v1"


class RecordingDispatcher:
    def __init__(self, success=True):
        self.success = success
        self.calls = []

    def send(self, destination, channel, template, payload):
        self.calls.append((destination, channel, template, payload))
        if not self.success:
            return DispatchOutcome.failure(
                "SES throttled", [ChannelResult(channel="email", success=False, error="SES throttled")]
            )
        return DispatchOutcome(
            success=True,
            provider_message_id=f"ses-{len(self.calls)}",
            channels=(ChannelResult(channel="email", success=True, message_id=f"ses-{len(self.calls)}"),),
        )


@pytest.fixture
def customer(db):
    return Customer.objects.create(
        name="John Doe",
        email="john@example.com",
        phone="+15551234567",
        address="123 Main St",
    )


@pytest.fixture
def vehicle(customer):
    return Vehicle.objects.create(customer=customer, year=2019, make="Honda", model="Civic", license_plate="ABC123")


@pytest.fixture
def service(db):
    return ServiceCatalog.objects.create(
        name="Oil Change",
        description="Synthetic oil and filter",
        base_price=Decimal("59.99"),
        estimated_duration_minutes=45,
    )


@pytest.fixture
def make_appointment(customer, vehicle, service):
    def _make(scheduled_at, **kwargs):
        kwargs.setdefault("status", Appointment.Status.SCHEDULED)
        return Appointment.objects.create(
            customer=customer,
            vehicle=vehicle,
            service=service,
            scheduled_at=scheduled_at,
            **kwargs,
        )
    return _make


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def fake_scheduler(monkeypatch, dispatcher):
    def _build():
        return build_scheduler(dispatcher=dispatcher)
    monkeypatch.setattr("apps.scheduling.api_views.build_scheduler", _build)
    monkeypatch.setattr("apps.scheduling.management.commands.send_due_reminders.build_scheduler", _build)
    return _build


@pytest.fixture
def auth_client(db):
    User = get_user_model()
    user = User.objects.create_user(username="testuser", email="test@example.com", password="password")
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def staff_client(db):
    User = get_user_model()
    user = User.objects.create_user(username="manager", email="manager@example.com", password="password", is_staff=True)
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.mark.django_db
def test_find_upcoming_filters_status_and_window(make_appointment):
    due = make_appointment(NOW + timedelta(hours=5))
    make_appointment(NOW + timedelta(hours=6), status=Appointment.Status.CANCELLED)
    make_appointment(NOW + timedelta(hours=30))
    make_appointment(NOW - timedelta(hours=1))
    confirmed = make_appointment(NOW + timedelta(hours=2), status=Appointment.Status.CONFIRMED)

    found = DjangoAppointmentStore().find_upcoming(
        ["scheduled", "confirmed"], before=NOW + timedelta(hours=24), after=NOW
    )

    assert [s.id for s in found] == [confirmed.pk, due.pk]
    snapshot = found[1]
    assert snapshot.contact.email == "john@example.com"
    assert snapshot.contact.phone == "+15551234567"
    assert snapshot.vehicle_info == "2019 Honda Civic"
    assert snapshot.service_name == "Oil Change"
    assert snapshot.settings.preferred_channel == "both"
    assert snapshot.reminders_sent == frozenset()


@pytest.mark.django_db
def test_mark_reminder_sent_is_conditional(make_appointment):
    appointment = make_appointment(NOW + timedelta(hours=5))
    store = DjangoAppointmentStore()

    assert store.mark_reminder_sent(appointment.pk, ReminderKind.DAY_BEFORE, "ses-1") is MarkResult.SUCCESS
    assert store.mark_reminder_sent(appointment.pk, ReminderKind.DAY_BEFORE, "ses-2") is MarkResult.ALREADY_SENT
    assert store.mark_reminder_sent(appointment.pk, ReminderKind.TWO_HOURS) is MarkResult.SUCCESS
    assert store.mark_reminder_sent(999999, ReminderKind.DAY_BEFORE) is MarkResult.NOT_FOUND

    delivery = ReminderDelivery.objects.get(appointment=appointment, kind="24h")
    assert delivery.provider_message_id == "ses-1"
    assert store.get(appointment.pk).reminders_sent == {"24h", "2h"}


@pytest.mark.django_db
def test_mark_reminder_sent_appointment_deleted_during_insert(make_appointment, monkeypatch):
    appointment = make_appointment(NOW + timedelta(hours=5))
    pk = appointment.pk

    def create(**kwargs):
        Appointment.objects.filter(pk=pk).delete()
        raise IntegrityError("FOREIGN KEY constraint failed")

    monkeypatch.setattr(ReminderDelivery.objects, "create", create)

    assert DjangoAppointmentStore().mark_reminder_sent(pk, ReminderKind.DAY_BEFORE) is MarkResult.NOT_FOUND


@pytest.mark.django_db
def test_get_unknown_appointment_returns_none():
    store = DjangoAppointmentStore()
    assert store.get(123456) is None
    assert store.get("not-a-number") is None


@pytest.mark.django_db
def test_record_communication_without_channel_detail(make_appointment):
    appointment = make_appointment(NOW + timedelta(hours=5))

    DjangoAppointmentStore().record_communication(
        appointment.pk, "reminder_24h", "sms", DispatchOutcome.failure("no phone number on file")
    )

    record = CommunicationRecord.objects.get(appointment=appointment)
    assert record.channel == "sms"
    assert record.status == "failed"
    assert record.error_message == "no phone number on file"


@pytest.mark.django_db
def test_scheduler_with_django_store_sends_each_kind_once(make_appointment, dispatcher):
    appointment = make_appointment(NOW + timedelta(hours=23, minutes=50))
    make_appointment(NOW + timedelta(hours=3), status=Appointment.Status.CANCELLED)
    scheduler = ReminderScheduler(DjangoAppointmentStore(), dispatcher)

    report = scheduler.generate_due_reminders(NOW)
    repeat = scheduler.generate_due_reminders(NOW + timedelta(minutes=15))

    assert report.for_appointment(appointment.pk).to_dict() == {
        "appointment_id": appointment.pk,
        "attempted": ["24h"],
        "sent": ["24h"],
        "failed": [],
    }
    assert report.sent_count == 1
    assert repeat.appointments == []
    assert len(dispatcher.calls) == 1
    assert list(appointment.communications.values_list("kind", "channel", "status", "message_id")) == [
        ("reminder_24h", "email", "sent", "ses-1")
    ]


@pytest.mark.django_db
def test_failed_reminder_is_retried_on_next_run(make_appointment):
    appointment = make_appointment(NOW + timedelta(hours=1, minutes=30), send_same_day_reminder=False)
    failing = RecordingDispatcher(success=False)
    store = DjangoAppointmentStore()

    first = ReminderScheduler(store, failing).generate_due_reminders(NOW)
    assert first.for_appointment(appointment.pk).failed[0].reason == "SES throttled"
    assert not ReminderDelivery.objects.filter(appointment=appointment).exists()

    working = RecordingDispatcher()
    second = ReminderScheduler(store, working).generate_due_reminders(NOW + timedelta(minutes=15))
    assert second.for_appointment(appointment.pk).sent == ["24h", "2h"]
    assert set(ReminderDelivery.objects.filter(appointment=appointment).values_list("kind", flat=True)) == {
        "24h",
        "2h",
    }


@pytest.mark.django_db
def test_list_shows_reminder_state(make_appointment, auth_client):
    appointment = make_appointment(NOW + timedelta(hours=5))
    ReminderDelivery.objects.create(appointment=appointment, kind="24h")
    for i in range(25):
        make_appointment(NOW + timedelta(days=2, hours=i))

    resp = auth_client.get(f"{API_PREFIX}/appointments/?limit=10&offset=0")

    assert resp.status_code == 200
    data = resp.json()
    assert data["count"] == 26
    results = data["results"]
    assert len(results) == 10
    first = results[0]
    assert first["id"] == appointment.pk
    assert first["reminders_sent"] == ["24h"]
    assert first["customer_name"] == "John Doe"
    assert first["service_name"] == "Oil Change"
    assert first["preferred_channel"] == "both"


@pytest.mark.django_db
def test_list_filters_by_status(make_appointment, auth_client):
    make_appointment(NOW + timedelta(hours=5))
    make_appointment(NOW + timedelta(hours=6), status=Appointment.Status.CONFIRMED)

    resp = auth_client.get(f"{API_PREFIX}/appointments/?status=confirmed")

    assert resp.status_code == 200
    results = resp.json()["results"]
    assert [r["status"] for r in results] == ["confirmed"]


@pytest.mark.django_db
def test_list_rejects_bad_filters(auth_client):
    assert auth_client.get(f"{API_PREFIX}/appointments/?status=NOPE").status_code == 400
    resp = auth_client.get(
        f"{API_PREFIX}/appointments/?schedule_start_date=2026-03-10T00:00:00Z&schedule_end_date=2026-03-01T00:00:00Z"
    )
    assert resp.status_code == 400


@pytest.mark.django_db
def test_api_requires_authentication():
    resp = APIClient().get(f"{API_PREFIX}/appointments/")
    assert resp.status_code in (401, 403)


@pytest.mark.django_db
def test_confirmation_endpoint_sends_every_time(make_appointment, auth_client, fake_scheduler, dispatcher):
    appointment = make_appointment(NOW + timedelta(days=3))
    url = f"{API_PREFIX}/appointments/{appointment.pk}/confirmation/"

    first = auth_client.post(url)
    second = auth_client.post(url)

    assert first.status_code == 200
    assert first.json()["provider_message_id"] == "ses-1"
    assert second.json()["provider_message_id"] == "ses-2"
    assert [c[2] for c in dispatcher.calls] == ["confirmation", "confirmation"]
    assert not ReminderDelivery.objects.exists()
    assert appointment.communications.filter(kind="confirmation").count() == 2


@pytest.mark.django_db
def test_confirmation_endpoint_unknown_appointment(auth_client, fake_scheduler, dispatcher):
    resp = auth_client.post(f"{API_PREFIX}/appointments/424242/confirmation/")

    assert resp.status_code == 404
    assert dispatcher.calls == []


@pytest.mark.django_db
def test_confirmation_endpoint_reports_dispatch_failure(make_appointment, auth_client, fake_scheduler, dispatcher):
    appointment = make_appointment(NOW + timedelta(days=3))
    dispatcher.success = False

    resp = auth_client.post(f"{API_PREFIX}/appointments/{appointment.pk}/confirmation/")

    assert resp.status_code == 502
    body = resp.json()
    assert body["success"] is False
    assert body["reason"] == "SES throttled"


@pytest.mark.django_db
def test_run_endpoint_returns_report(make_appointment, staff_client, fake_scheduler, dispatcher):
    appointment = make_appointment(dj_timezone.now() + timedelta(hours=23))

    resp = staff_client.post(f"{API_PREFIX}/reminders/run/")

    assert resp.status_code == 200
    body = resp.json()
    assert body["sent"] == 1
    assert body["results"] == [
        {"appointment_id": appointment.pk, "attempted": ["24h"], "sent": ["24h"], "failed": []}
    ]


@pytest.mark.django_db
def test_run_endpoint_requires_staff(make_appointment, auth_client, fake_scheduler, dispatcher):
    make_appointment(dj_timezone.now() + timedelta(hours=23))

    resp = auth_client.post(f"{API_PREFIX}/reminders/run/")

    assert resp.status_code == 403
    assert dispatcher.calls == []
    assert not ReminderDelivery.objects.exists()


@pytest.mark.django_db
def test_command_sends_due_reminders(make_appointment, fake_scheduler, dispatcher):
    appointment = make_appointment(NOW + timedelta(hours=20))
    out = StringIO()

    call_command("send_due_reminders", "--now", "2026-03-02T12:00:00+00:00", stdout=out)

    output = out.getvalue()
    assert f"Appointment {appointment.pk}: sent 24h" in output
    assert "Reminders complete: 1 sent, 0 failed, 0 error(s)." in output
    assert ReminderDelivery.objects.filter(appointment=appointment, kind="24h").exists()


@pytest.mark.django_db
def test_command_dry_run_sends_nothing(make_appointment, fake_scheduler, dispatcher):
    appointment = make_appointment(NOW + timedelta(hours=20))
    out = StringIO()

    call_command("send_due_reminders", "--now", "2026-03-02T12:00:00", "--dry-run", stdout=out)

    assert f"Appointment {appointment.pk}: 24h" in out.getvalue()
    assert dispatcher.calls == []
    assert not ReminderDelivery.objects.exists()


def test_command_rejects_bad_timestamp():
    with pytest.raises(CommandError):
        call_command("send_due_reminders", "--now", "yesterday")

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from apps.scheduling.reminders import (
    AppointmentSnapshot,
    Contact,
    DataStoreError,
    DispatchError,
    DispatchOutcome,
    MarkResult,
    NotFoundError,
    ReminderKind,
    ReminderScheduler,
    ReminderSettings,
    due_reminder_kinds,
)


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class InMemoryStore:
    def __init__(self, *appointments):
        self.appointments = {a.id: a for a in appointments}
        self.history = []
        self.broken_ids = set()
        self.concurrent_ids = set()
        self.history_broken = False

    def find_upcoming(self, statuses, before, after=None):
        return sorted(
            (
                a
                for a in self.appointments.values()
                if a.status in statuses
                and a.scheduled_at <= before
                and (after is None or a.scheduled_at > after)
            ),
            key=lambda a: a.scheduled_at,
        )

    def get(self, appointment_id):
        return self.appointments.get(appointment_id)

    def mark_reminder_sent(self, appointment_id, kind, provider_message_id=None):
        if appointment_id in self.broken_ids:
            raise DataStoreError("connection reset")
        if appointment_id in self.concurrent_ids:
            return MarkResult.ALREADY_SENT
        appointment = self.appointments.get(appointment_id)
        if appointment is None:
            return MarkResult.NOT_FOUND
        if kind.value in appointment.reminders_sent:
            return MarkResult.ALREADY_SENT
        self.appointments[appointment_id] = dataclasses.replace(
            appointment, reminders_sent=appointment.reminders_sent | {kind.value}
        )
        return MarkResult.SUCCESS

    def record_communication(self, appointment_id, kind, channel, outcome):
        if self.history_broken:
            raise DataStoreError("history table unavailable")
        self.history.append((appointment_id, kind, channel, outcome.success))


class FakeDispatcher:
    def __init__(self):
        self.calls = []
        self.failing = False
        self.raising = False

    def send(self, destination, channel, template, payload):
        self.calls.append((destination, channel, template, payload))
        if self.raising:
            raise DispatchError("provider timeout")
        if self.failing:
            return DispatchOutcome.failure("mailbox unavailable")
        return DispatchOutcome(success=True, provider_message_id=f"msg-{len(self.calls)}")

    @property
    def templates(self):
        return [c[2] for c in self.calls]


def make_appointment(appointment_id=1, starts_in=timedelta(hours=23, minutes=50), **overrides):
    fields = dict(
        id=appointment_id,
        scheduled_at=NOW + starts_in,
        status="scheduled",
        contact=Contact(name="Dana Ruiz", email="dana@example.com", phone="+15551230000"),
        settings=ReminderSettings(),
        vehicle_info="2018 Toyota Camry",
        service_name="Oil Change",
        estimated_duration_minutes=45,
    )
    fields.update(overrides)
    return AppointmentSnapshot(**fields)


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


def make_scheduler(store, dispatcher):
    return ReminderScheduler(store, dispatcher, clock=lambda: NOW)


def test_day_before_reminder_is_sent_once():
    store = InMemoryStore(make_appointment())
    dispatcher = FakeDispatcher()
    scheduler = make_scheduler(store, dispatcher)

    report = scheduler.generate_due_reminders(NOW)

    assert [a.to_dict() for a in report.appointments] == [
        {"appointment_id": 1, "attempted": ["24h"], "sent": ["24h"], "failed": []}
    ]
    assert dispatcher.templates == ["reminder_24h"]
    assert store.appointments[1].reminders_sent == {"24h"}

    again = scheduler.generate_due_reminders(NOW)
    later = scheduler.generate_due_reminders(NOW + timedelta(hours=10))

    assert again.appointments == []
    assert later.appointments == []
    assert len(dispatcher.calls) == 1


def test_disabled_kind_is_not_sent(dispatcher):
    settings = ReminderSettings(send_24h_reminder=False)
    store = InMemoryStore(make_appointment(settings=settings))

    report = make_scheduler(store, dispatcher).generate_due_reminders(NOW)

    assert report.appointments == []
    assert dispatcher.calls == []


@pytest.mark.parametrize("status", ["cancelled", "completed", "no_show", "pending_approval"])
def test_inactive_appointments_are_never_reminded(dispatcher, status):
    store = InMemoryStore(make_appointment(status=status, starts_in=timedelta(minutes=30)))

    report = make_scheduler(store, dispatcher).generate_due_reminders(NOW)

    assert report.appointments == []
    assert dispatcher.calls == []


def test_due_kinds_guard_terminal_status_even_if_store_returns_it():
    appointment = make_appointment(status="cancelled", starts_in=timedelta(hours=1))
    assert due_reminder_kinds(appointment, NOW) == []


def test_past_appointments_are_ignored():
    appointment = make_appointment(starts_in=-timedelta(minutes=5))
    assert due_reminder_kinds(appointment, NOW) == []


def test_failed_dispatch_stays_due_until_it_succeeds(dispatcher):
    store = InMemoryStore(make_appointment())
    scheduler = make_scheduler(store, dispatcher)
    dispatcher.failing = True

    first = scheduler.generate_due_reminders(NOW)

    item = first.for_appointment(1)
    assert item.sent == []
    assert [(f.kind, f.reason) for f in item.failed] == [("24h", "mailbox unavailable")]
    assert store.appointments[1].reminders_sent == frozenset()

    dispatcher.failing = False
    second = scheduler.generate_due_reminders(NOW + timedelta(minutes=15))
    third = scheduler.generate_due_reminders(NOW + timedelta(minutes=30))

    assert second.for_appointment(1).sent == ["24h"]
    assert third.appointments == []
    assert dispatcher.templates == ["reminder_24h", "reminder_24h"]


def test_dispatch_error_is_recorded_and_batch_continues(dispatcher):
    store = InMemoryStore(make_appointment(1), make_appointment(2))
    dispatcher.raising = True

    report = make_scheduler(store, dispatcher).generate_due_reminders(NOW)

    assert [a.appointment_id for a in report.appointments] == [1, 2]
    assert all(a.failed[0].reason == "provider timeout" for a in report.appointments)
    assert report.failed_count == 2
    assert store.history == [(1, "reminder_24h", "both", False), (2, "reminder_24h", "both", False)]


def test_delayed_run_sends_every_crossed_threshold_oldest_first(dispatcher):
    store = InMemoryStore(make_appointment(starts_in=timedelta(minutes=90)))

    report = make_scheduler(store, dispatcher).generate_due_reminders(NOW)

    sent = report.for_appointment(1).sent
    assert sent == ["24h", "same_day", "2h"]
    assert sent.index("24h") < sent.index("2h")
    assert dispatcher.templates == ["reminder_24h", "reminder_same_day", "reminder_2h"]
    assert store.appointments[1].reminders_sent == {"24h", "2h", "same_day"}


def test_only_unsent_kinds_are_due():
    appointment = make_appointment(starts_in=timedelta(hours=3), reminders_sent=frozenset({"24h"}))
    assert due_reminder_kinds(appointment, NOW) == [ReminderKind.SAME_DAY]


def test_threshold_is_inclusive():
    appointment = make_appointment(starts_in=timedelta(hours=24))
    assert due_reminder_kinds(appointment, NOW) == [ReminderKind.DAY_BEFORE]
    assert due_reminder_kinds(appointment, NOW - timedelta(seconds=1)) == []


def test_data_store_error_only_aborts_that_appointment(dispatcher):
    store = InMemoryStore(make_appointment(1), make_appointment(2, starts_in=timedelta(hours=20)))
    store.broken_ids.add(1)

    report = make_scheduler(store, dispatcher).generate_due_reminders(NOW)

    assert report.for_appointment(1).error == "connection reset"
    assert report.for_appointment(1).sent == []
    assert report.for_appointment(2).sent == ["24h"]
    assert report.error_count == 1


def test_reminder_marked_by_concurrent_run_does_not_fail_the_batch(dispatcher):
    store = InMemoryStore(make_appointment())
    store.concurrent_ids.add(1)

    report = make_scheduler(store, dispatcher).generate_due_reminders(NOW)

    assert report.for_appointment(1).sent == ["24h"]
    assert report.for_appointment(1).error is None


def test_history_failure_does_not_cause_a_resend(dispatcher):
    store = InMemoryStore(make_appointment())
    store.history_broken = True
    scheduler = make_scheduler(store, dispatcher)

    first = scheduler.generate_due_reminders(NOW)

    item = first.for_appointment(1)
    assert item.sent == ["24h"]
    assert item.error is None
    assert store.appointments[1].reminders_sent == {"24h"}

    store.history_broken = False
    second = scheduler.generate_due_reminders(NOW + timedelta(minutes=15))

    assert second.appointments == []
    assert len(dispatcher.calls) == 1


def test_history_failure_does_not_stop_remaining_kinds(dispatcher):
    store = InMemoryStore(make_appointment(starts_in=timedelta(hours=1, minutes=30)))
    store.history_broken = True

    report = make_scheduler(store, dispatcher).generate_due_reminders(NOW)

    assert report.for_appointment(1).sent == ["24h", "same_day", "2h"]
    assert store.appointments[1].reminders_sent == {"24h", "same_day", "2h"}
    assert report.error_count == 0


def test_dispatch_uses_contact_and_preferred_channel(dispatcher):
    settings = ReminderSettings(preferred_channel="sms")
    store = InMemoryStore(make_appointment(settings=settings))

    make_scheduler(store, dispatcher).generate_due_reminders(NOW)

    destination, channel, template, payload = dispatcher.calls[0]
    assert destination.phone == "+15551230000"
    assert channel == "sms"
    assert payload["reminder_kind"] == "24h"
    assert payload["service_name"] == "Oil Change"
    assert payload["scheduled_at"] == NOW + timedelta(hours=23, minutes=50)


def test_clock_is_used_when_now_is_omitted(dispatcher):
    store = InMemoryStore(make_appointment())

    report = make_scheduler(store, dispatcher).generate_due_reminders()

    assert report.run_at == NOW
    assert report.sent_count == 1


def test_naive_now_is_rejected(dispatcher):
    scheduler = make_scheduler(InMemoryStore(), dispatcher)
    with pytest.raises(ValueError):
        scheduler.generate_due_reminders(datetime(2026, 3, 2, 12, 0))


def test_preview_does_not_send(dispatcher):
    store = InMemoryStore(make_appointment(1), make_appointment(2, starts_in=timedelta(hours=30)))

    preview = make_scheduler(store, dispatcher).preview_due_reminders(NOW)

    assert preview == {1: ["24h"]}
    assert dispatcher.calls == []
    assert store.appointments[1].reminders_sent == frozenset()


def test_confirmation_for_unknown_appointment_raises_not_found(dispatcher):
    scheduler = make_scheduler(InMemoryStore(), dispatcher)

    with pytest.raises(NotFoundError):
        scheduler.send_appointment_confirmation(404)
    assert dispatcher.calls == []


def test_confirmation_is_sent_on_every_call(dispatcher):
    store = InMemoryStore(make_appointment())
    scheduler = make_scheduler(store, dispatcher)

    first = scheduler.send_appointment_confirmation(1)
    second = scheduler.send_appointment_confirmation(1)

    assert first.success and second.success
    assert first.provider_message_id == "msg-1"
    assert second.provider_message_id == "msg-2"
    assert dispatcher.templates == ["confirmation", "confirmation"]
    assert store.appointments[1].reminders_sent == frozenset()


def test_confirmation_failure_is_returned_not_raised(dispatcher):
    store = InMemoryStore(make_appointment())
    dispatcher.raising = True

    outcome = make_scheduler(store, dispatcher).send_appointment_confirmation(1)

    assert not outcome.success
    assert outcome.reason == "provider timeout"
    assert store.history == [(1, "confirmation", "both", False)]


def test_confirmation_history_failure_still_returns_outcome(dispatcher):
    store = InMemoryStore(make_appointment())
    store.history_broken = True

    outcome = make_scheduler(store, dispatcher).send_appointment_confirmation(1)

    assert outcome.success
    assert outcome.provider_message_id == "msg-1"
    assert len(dispatcher.calls) == 1
    assert store.history == []

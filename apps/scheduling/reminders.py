"""
Appointment reminders and confirmations.

The scheduler only talks to two collaborators: an appointment store and a
notification dispatcher. It is kept free of Django and boto3 imports so the
same code runs from the management command and from the Lambda functions.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Protocol


logger = logging.getLogger(__name__)


ACTIVE_STATUSES = ("scheduled", "confirmed")

CHANNELS = ("email", "sms", "both")

CONFIRMATION_TEMPLATE = "confirmation"


class ReminderKind(str, enum.Enum):
    DAY_BEFORE = "24h"
    TWO_HOURS = "2h"
    SAME_DAY = "same_day"

    @property
    def lead_time(self) -> timedelta:
        return LEAD_TIMES[self]

    @property
    def template(self) -> str:
        return f"reminder_{self.value}"


# Same-day reminders go out 4 hours ahead, so a delayed run sends 24h, same_day, 2h in that order.
LEAD_TIMES = {
    ReminderKind.DAY_BEFORE: timedelta(hours=24),
    ReminderKind.TWO_HOURS: timedelta(hours=2),
    ReminderKind.SAME_DAY: timedelta(hours=4),
}

# Oldest threshold first.
KINDS_BY_LEAD_TIME = tuple(sorted(ReminderKind, key=lambda k: k.lead_time, reverse=True))
MAX_LEAD_TIME = KINDS_BY_LEAD_TIME[0].lead_time


class CommunicationError(Exception):
    pass


class NotFoundError(CommunicationError):
    def __init__(self, appointment_id: Any):
        super().__init__(f"Appointment {appointment_id} not found")
        self.appointment_id = appointment_id


class DispatchError(CommunicationError):
    pass


class DataStoreError(CommunicationError):
    pass


class MarkResult(str, enum.Enum):
    SUCCESS = "success"
    ALREADY_SENT = "already_sent"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ReminderSettings:
    send_24h_reminder: bool = True
    send_2h_reminder: bool = True
    send_same_day_reminder: bool = True
    preferred_channel: str = "both"

    def is_enabled(self, kind: ReminderKind) -> bool:
        return {
            ReminderKind.DAY_BEFORE: self.send_24h_reminder,
            ReminderKind.TWO_HOURS: self.send_2h_reminder,
            ReminderKind.SAME_DAY: self.send_same_day_reminder,
        }[kind]


@dataclass(frozen=True)
class Contact:
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class AppointmentSnapshot:
    """What the scheduler needs to know about one appointment."""

    id: Any
    scheduled_at: datetime
    status: str
    contact: Contact
    settings: ReminderSettings = field(default_factory=ReminderSettings)
    reminders_sent: frozenset = frozenset()
    vehicle_info: str = ""
    service_name: str = ""
    estimated_duration_minutes: Optional[int] = None

    def message_payload(self) -> dict:
        return {
            "appointment_id": self.id,
            "customer_name": self.contact.name,
            "scheduled_at": self.scheduled_at,
            "vehicle_info": self.vehicle_info,
            "service_name": self.service_name,
            "estimated_duration_minutes": self.estimated_duration_minutes,
        }


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class DispatchOutcome:
    success: bool
    provider_message_id: Optional[str] = None
    reason: Optional[str] = None
    channels: tuple = ()

    @classmethod
    def failure(cls, reason: str, channels: Iterable[ChannelResult] = ()) -> "DispatchOutcome":
        return cls(success=False, reason=reason, channels=tuple(channels))

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "provider_message_id": self.provider_message_id,
            "reason": self.reason,
            "channels": [
                {
                    "channel": c.channel,
                    "success": c.success,
                    "message_id": c.message_id,
                    "error": c.error,
                }
                for c in self.channels
            ],
        }


@dataclass
class FailedReminder:
    kind: str
    reason: str


@dataclass
class AppointmentReport:
    appointment_id: Any
    attempted: list = field(default_factory=list)
    sent: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {
            "appointment_id": self.appointment_id,
            "attempted": list(self.attempted),
            "sent": list(self.sent),
            "failed": [{"kind": f.kind, "reason": f.reason} for f in self.failed],
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class BatchReport:
    run_at: datetime
    appointments: list = field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(len(a.sent) for a in self.appointments)

    @property
    def failed_count(self) -> int:
        return sum(len(a.failed) for a in self.appointments)

    @property
    def error_count(self) -> int:
        return sum(1 for a in self.appointments if a.error)

    def for_appointment(self, appointment_id: Any) -> Optional[AppointmentReport]:
        for report in self.appointments:
            if report.appointment_id == appointment_id:
                return report
        return None

    def summary(self) -> dict:
        return {
            "run_at": self.run_at.isoformat(),
            "appointments": len(self.appointments),
            "sent": self.sent_count,
            "failed": self.failed_count,
            "errors": self.error_count,
        }

    def to_dict(self) -> dict:
        return {**self.summary(), "results": [a.to_dict() for a in self.appointments]}


class AppointmentStore(Protocol):
    def find_upcoming(
        self, statuses: Iterable[str], before: datetime, after: Optional[datetime] = None
    ) -> list: ...

    def get(self, appointment_id: Any) -> Optional[AppointmentSnapshot]: ...

    def mark_reminder_sent(
        self, appointment_id: Any, kind: ReminderKind, provider_message_id: Optional[str] = None
    ) -> MarkResult: ...

    def record_communication(
        self, appointment_id: Any, kind: str, channel: str, outcome: DispatchOutcome
    ) -> None: ...


class Dispatcher(Protocol):
    def send(self, destination: Contact, channel: str, template: str, payload: dict) -> DispatchOutcome: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def due_reminder_kinds(appointment: AppointmentSnapshot, now: datetime) -> list:
    """Reminder kinds due for ``appointment`` at ``now``, oldest threshold first."""
    if appointment.status not in ACTIVE_STATUSES:
        return []
    remaining = appointment.scheduled_at - now
    if remaining <= timedelta(0):
        return []
    sent = {getattr(k, "value", k) for k in appointment.reminders_sent}
    return [
        kind
        for kind in KINDS_BY_LEAD_TIME
        if appointment.settings.is_enabled(kind)
        and kind.value not in sent
        and remaining <= kind.lead_time
    ]


class ReminderScheduler:
    def __init__(
        self,
        store: AppointmentStore,
        dispatcher: Dispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock

    def _now(self, now: Optional[datetime]) -> datetime:
        now = now or self.clock()
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")
        return now

    def _candidates(self, now: datetime) -> list:
        return self.store.find_upcoming(ACTIVE_STATUSES, before=now + MAX_LEAD_TIME, after=now)

    def preview_due_reminders(self, now: Optional[datetime] = None) -> dict:
        """Map appointment id to due kinds, without sending anything."""
        now = self._now(now)
        preview = {}
        for appointment in self._candidates(now):
            kinds = due_reminder_kinds(appointment, now)
            if kinds:
                preview[appointment.id] = [k.value for k in kinds]
        return preview

    def generate_due_reminders(self, now: Optional[datetime] = None) -> BatchReport:
        """
        Send every reminder that is due at ``now`` and mark it as sent.

        A reminder is marked only after the dispatcher acknowledged it, so a
        failed send stays due and is picked up again by the next run.
        """
        now = self._now(now)
        report = BatchReport(run_at=now)

        candidates = self._candidates(now)
        logger.info("Evaluating %d upcoming appointment(s) for reminders", len(candidates))

        for appointment in candidates:
            kinds = due_reminder_kinds(appointment, now)
            if not kinds:
                continue
            item = AppointmentReport(appointment_id=appointment.id)
            report.appointments.append(item)
            try:
                for kind in kinds:
                    self._send_reminder(appointment, kind, item)
            except DataStoreError as e:
                item.error = str(e)
                logger.error("Data store error for appointment %s: %s", appointment.id, e)
            except Exception as e:
                item.error = str(e)
                logger.exception("Unexpected error sending reminders for appointment %s", appointment.id)

        logger.info(
            "Reminder run finished: %d sent, %d failed, %d appointment error(s)",
            report.sent_count,
            report.failed_count,
            report.error_count,
        )
        return report

    def _record(self, appointment: AppointmentSnapshot, kind: str, outcome: DispatchOutcome):
        try:
            self.store.record_communication(
                appointment.id, kind, appointment.settings.preferred_channel, outcome
            )
        except DataStoreError as e:
            logger.error("Could not record %s history for appointment %s: %s", kind, appointment.id, e)

    def _send_reminder(self, appointment: AppointmentSnapshot, kind: ReminderKind, item: AppointmentReport):
        item.attempted.append(kind.value)
        payload = {**appointment.message_payload(), "reminder_kind": kind.value}
        try:
            outcome = self.dispatcher.send(
                appointment.contact,
                appointment.settings.preferred_channel,
                kind.template,
                payload,
            )
        except DispatchError as e:
            outcome = DispatchOutcome.failure(str(e))

        if not outcome.success:
            self._record(appointment, kind.template, outcome)
            item.failed.append(FailedReminder(kind=kind.value, reason=outcome.reason or "dispatch failed"))
            logger.warning(
                "%s reminder for appointment %s failed: %s", kind.value, appointment.id, outcome.reason
            )
            return

        # Mark before writing history so a history failure cannot cause a resend.
        result = self.store.mark_reminder_sent(appointment.id, kind, outcome.provider_message_id)
        if result is MarkResult.ALREADY_SENT:
            logger.warning(
                "%s reminder for appointment %s was already marked by another run", kind.value, appointment.id
            )
        elif result is MarkResult.NOT_FOUND:
            logger.warning("Appointment %s disappeared before %s reminder was marked", appointment.id, kind.value)
        item.sent.append(kind.value)
        logger.info("%s reminder sent for appointment %s", kind.value, appointment.id)
        self._record(appointment, kind.template, outcome)

    def send_appointment_confirmation(self, appointment_id: Any) -> DispatchOutcome:
        """Send a confirmation. Unlike reminders, every call dispatches again."""
        appointment = self.store.get(appointment_id)
        if appointment is None:
            raise NotFoundError(appointment_id)

        try:
            outcome = self.dispatcher.send(
                appointment.contact,
                appointment.settings.preferred_channel,
                CONFIRMATION_TEMPLATE,
                appointment.message_payload(),
            )
        except DispatchError as e:
            outcome = DispatchOutcome.failure(str(e))

        self._record(appointment, CONFIRMATION_TEMPLATE, outcome)

        if outcome.success:
            logger.info("Confirmation sent for appointment %s", appointment_id)
        else:
            logger.warning("Confirmation for appointment %s failed: %s", appointment_id, outcome.reason)
        return outcome

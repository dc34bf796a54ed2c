import logging

from django.db import DatabaseError, IntegrityError, transaction

from .models import Appointment, CommunicationRecord, ReminderDelivery
from .reminders import (
    AppointmentSnapshot,
    Contact,
    DataStoreError,
    MarkResult,
    ReminderSettings,
)


logger = logging.getLogger(__name__)


def to_snapshot(appointment: Appointment) -> AppointmentSnapshot:
    customer = appointment.customer
    return AppointmentSnapshot(
        id=appointment.pk,
        scheduled_at=appointment.scheduled_at,
        status=appointment.status,
        contact=Contact(
            name=customer.name,
            email=customer.email or None,
            phone=customer.phone or None,
        ),
        settings=ReminderSettings(
            send_24h_reminder=appointment.send_24h_reminder,
            send_2h_reminder=appointment.send_2h_reminder,
            send_same_day_reminder=appointment.send_same_day_reminder,
            preferred_channel=appointment.preferred_channel,
        ),
        reminders_sent=appointment.reminders_sent,
        vehicle_info=str(appointment.vehicle) if appointment.vehicle else "",
        service_name=appointment.service.name,
        estimated_duration_minutes=appointment.estimated_duration_minutes,
    )


class DjangoAppointmentStore:
    """Appointment store backed by the Django ORM."""

    def _queryset(self):
        return Appointment.objects.select_related("customer", "vehicle", "service").prefetch_related(
            "reminder_deliveries"
        )

    def find_upcoming(self, statuses, before, after=None):
        qs = self._queryset().filter(status__in=list(statuses), scheduled_at__lte=before)
        if after is not None:
            qs = qs.filter(scheduled_at__gt=after)
        try:
            return [to_snapshot(a) for a in qs.order_by("scheduled_at", "id")]
        except DatabaseError as e:
            raise DataStoreError(f"upcoming appointment query failed: {e}") from e

    def get(self, appointment_id):
        try:
            appointment = self._queryset().filter(pk=appointment_id).first()
        except (ValueError, TypeError):
            return None
        except DatabaseError as e:
            raise DataStoreError(f"lookup of appointment {appointment_id} failed: {e}") from e
        return to_snapshot(appointment) if appointment else None

    def mark_reminder_sent(self, appointment_id, kind, provider_message_id=None):
        kind = getattr(kind, "value", kind)
        try:
            if not Appointment.objects.filter(pk=appointment_id).exists():
                return MarkResult.NOT_FOUND
            try:
                with transaction.atomic():
                    ReminderDelivery.objects.create(
                        appointment_id=appointment_id,
                        kind=kind,
                        provider_message_id=provider_message_id or "",
                    )
            except IntegrityError:
                # Also raised for a foreign key to an appointment deleted since the check.
                if not Appointment.objects.filter(pk=appointment_id).exists():
                    return MarkResult.NOT_FOUND
                return MarkResult.ALREADY_SENT
        except DatabaseError as e:
            raise DataStoreError(f"marking {kind} reminder for appointment {appointment_id} failed: {e}") from e
        return MarkResult.SUCCESS

    def record_communication(self, appointment_id, kind, channel, outcome):
        if outcome.channels:
            rows = [
                CommunicationRecord(
                    appointment_id=appointment_id,
                    kind=kind,
                    channel=c.channel,
                    status=CommunicationRecord.Status.SENT if c.success else CommunicationRecord.Status.FAILED,
                    message_id=c.message_id or "",
                    error_message=c.error or "",
                )
                for c in outcome.channels
            ]
        else:
            rows = [
                CommunicationRecord(
                    appointment_id=appointment_id,
                    kind=kind,
                    channel=channel,
                    status=CommunicationRecord.Status.SENT if outcome.success else CommunicationRecord.Status.FAILED,
                    message_id=outcome.provider_message_id or "",
                    error_message=outcome.reason or "",
                )
            ]
        try:
            CommunicationRecord.objects.bulk_create(rows)
        except DatabaseError as e:
            raise DataStoreError(f"recording {kind} for appointment {appointment_id} failed: {e}") from e

from django.db import models
from apps.customers.models import Customer, Vehicle
from apps.services.models import ServiceCatalog

from .reminders import ReminderKind


class Channel(models.TextChoices):
    EMAIL = "email", "Email"
    SMS = "sms", "SMS"
    BOTH = "both", "Email and SMS"


class Appointment(models.Model):
    class Status(models.TextChoices):
        SCHEDULED = "scheduled", "Scheduled"
        PENDING_APPROVAL = "pending_approval", "Pending Approval"
        CONFIRMED = "confirmed", "Confirmed"
        IN_PROGRESS = "in_progress", "In Progress"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"
        NO_SHOW = "no_show", "No Show"

    customer = models.ForeignKey(Customer, on_delete=models.CASCADE, related_name="appointments")
    vehicle = models.ForeignKey(
        Vehicle, on_delete=models.SET_NULL, null=True, blank=True, related_name="appointments"
    )
    service = models.ForeignKey(ServiceCatalog, on_delete=models.PROTECT)
    scheduled_at = models.DateTimeField()
    estimated_duration_minutes = models.PositiveIntegerField(default=60)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.SCHEDULED)
    notes = models.TextField(blank=True)

    send_24h_reminder = models.BooleanField(default=True)
    send_2h_reminder = models.BooleanField(default=True)
    send_same_day_reminder = models.BooleanField(default=True)
    preferred_channel = models.CharField(max_length=10, choices=Channel.choices, default=Channel.BOTH)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["status", "scheduled_at"])]

    def __str__(self):
        return f"Appointment {self.pk} ({self.scheduled_at:%Y-%m-%d %H:%M})"

    @property
    def reminders_sent(self):
        return frozenset(d.kind for d in self.reminder_deliveries.all())


class ReminderDelivery(models.Model):
    """One row per reminder kind actually sent; the unique constraint is the de-duplication."""

    appointment = models.ForeignKey(Appointment, on_delete=models.CASCADE, related_name="reminder_deliveries")
    kind = models.CharField(max_length=10, choices=[(k.value, k.value) for k in ReminderKind])
    provider_message_id = models.CharField(max_length=200, blank=True)
    sent_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["appointment", "kind"], name="unique_reminder_kind_per_appointment"),
        ]


class CommunicationRecord(models.Model):
    class Status(models.TextChoices):
        SENT = "sent", "Sent"
        FAILED = "failed", "Failed"

    appointment = models.ForeignKey(Appointment, on_delete=models.CASCADE, related_name="communications")
    kind = models.CharField(max_length=30)
    channel = models.CharField(max_length=10, choices=Channel.choices)
    status = models.CharField(max_length=10, choices=Status.choices)
    message_id = models.CharField(max_length=200, blank=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]

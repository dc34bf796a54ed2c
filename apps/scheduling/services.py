from django.conf import settings

from apps.notifications.dispatcher import NotificationDispatcher, build_aws_clients

from .reminders import ReminderScheduler
from .store import DjangoAppointmentStore


def build_dispatcher() -> NotificationDispatcher:
    ses, sns = build_aws_clients(settings.AWS_REGION, timeout=settings.NOTIFICATION_TIMEOUT)
    return NotificationDispatcher(
        ses,
        sns,
        from_email=settings.SES_FROM_EMAIL,
        sms_sender_id=settings.SMS_SENDER_ID,
        time_zone=settings.SHOP_TIME_ZONE,
        shop_name=settings.SHOP_NAME,
    )


def build_scheduler(dispatcher=None) -> ReminderScheduler:
    return ReminderScheduler(DjangoAppointmentStore(), dispatcher or build_dispatcher())

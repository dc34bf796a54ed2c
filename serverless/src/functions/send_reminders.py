import os, logging
from datetime import datetime, timezone
from functools import lru_cache

import boto3

from apps.notifications.dispatcher import NotificationDispatcher, build_aws_clients
from apps.scheduling.reminders import ReminderScheduler, DataStoreError

from .appointment_store import DynamoAppointmentStore

APPOINTMENTS_TABLE = os.getenv("APPOINTMENTS_TABLE_NAME")
SES_FROM_EMAIL = os.getenv("SES_FROM_EMAIL", "no-reply@example.com")
SMS_SENDER_ID = os.getenv("SMS_SENDER_ID", "AUTOSHOP")
SHOP_NAME = os.getenv("SHOP_NAME", "Auto Repair Shop")
SHOP_TIME_ZONE = os.getenv("SHOP_TIME_ZONE", "UTC")
API_TIMEOUT = int(os.getenv("API_TIMEOUT", "5"))

log = logging.getLogger("send-reminders")
log.setLevel(logging.INFO)
if not log.handlers:
    log.addHandler(logging.StreamHandler())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache(maxsize=1)
def get_scheduler() -> ReminderScheduler:
    # Built on first invocation and reused while the Lambda container is warm.
    table = boto3.resource("dynamodb").Table(APPOINTMENTS_TABLE)
    ses, sns = build_aws_clients(timeout=API_TIMEOUT)
    dispatcher = NotificationDispatcher(
        ses,
        sns,
        from_email=SES_FROM_EMAIL,
        sms_sender_id=SMS_SENDER_ID,
        time_zone=SHOP_TIME_ZONE,
        shop_name=SHOP_NAME,
    )
    return ReminderScheduler(DynamoAppointmentStore(table), dispatcher, clock=utcnow)


def handler(event, context):
    """Runs on an EventBridge schedule; a failed run is simply retried by the next one."""
    now = utcnow()
    correlation_id = f"reminders-{now.strftime('%Y%m%d%H%M%S')}"

    try:
        report = get_scheduler().generate_due_reminders(now)
    except DataStoreError as e:
        log.error(f"[{correlation_id}] could not load upcoming appointments: {e}")
        return {"status": "error", "error": str(e), "correlation_id": correlation_id}

    for item in report.appointments:
        for failure in item.failed:
            log.warning(f"[{correlation_id}] {item.appointment_id} {failure.kind} failed: {failure.reason}")
        if item.error:
            log.error(f"[{correlation_id}] {item.appointment_id} aborted: {item.error}")

    summary = report.summary()
    log.info(f"[{correlation_id}] sent {summary['sent']} reminder(s), {summary['failed']} failed")
    return {"status": "ok", "correlation_id": correlation_id, **summary}

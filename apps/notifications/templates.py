from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo


ARRIVAL_NOTE = "Please arrive 10 minutes early."
RESCHEDULE_NOTE = "Please call us if you need to reschedule."

MESSAGE_TEMPLATES = {
    "confirmation": {
        "subject": "Appointment Confirmation - {appointment_date} at {appointment_time}",
        "body": (
            "Dear {customer_name},\n\n"
            "Your appointment at {shop_name} has been scheduled.\n\n"
            "Date: {appointment_date}\n"
            "Time: {appointment_time}\n"
            "Vehicle: {vehicle_info}\n"
            "Service: {service_name}\n"
            "Estimated duration: {duration}\n\n"
            "Please arrive 10 minutes before your scheduled time and bring your "
            "vehicle registration and insurance information.\n"
        ),
        "sms": (
            "Appointment confirmed for {appointment_date} at {appointment_time}. "
            "Vehicle: {vehicle_info}. Service: {service_name}. " + ARRIVAL_NOTE
        ),
    },
    "reminder_24h": {
        "subject": "Appointment Reminder - Tomorrow at {appointment_time}",
        "body": (
            "Dear {customer_name},\n\n"
            "This is a reminder that your appointment at {shop_name} is tomorrow, "
            "{appointment_date} at {appointment_time}.\n\n"
            "Vehicle: {vehicle_info}\n"
            "Service: {service_name}\n\n" + RESCHEDULE_NOTE + "\n"
        ),
        "sms": (
            "Reminder: Your appointment is tomorrow at {appointment_time}. "
            "Vehicle: {vehicle_info}. Service: {service_name}. " + RESCHEDULE_NOTE
        ),
    },
    "reminder_2h": {
        "subject": "Appointment Reminder - Today at {appointment_time}",
        "body": (
            "Dear {customer_name},\n\n"
            "Your appointment at {shop_name} is in about 2 hours, at {appointment_time}.\n\n"
            "Vehicle: {vehicle_info}\n"
            "Service: {service_name}\n\n" + ARRIVAL_NOTE + "\n"
        ),
        "sms": (
            "Reminder: Your appointment is in 2 hours at {appointment_time}. "
            "Vehicle: {vehicle_info}. Service: {service_name}. " + ARRIVAL_NOTE
        ),
    },
    "reminder_same_day": {
        "subject": "Appointment Reminder - Today at {appointment_time}",
        "body": (
            "Dear {customer_name},\n\n"
            "Your appointment at {shop_name} is today at {appointment_time}.\n\n"
            "Vehicle: {vehicle_info}\n"
            "Service: {service_name}\n\n" + ARRIVAL_NOTE + "\n"
        ),
        "sms": (
            "Reminder: Your appointment is today at {appointment_time}. "
            "Vehicle: {vehicle_info}. Service: {service_name}. " + ARRIVAL_NOTE
        ),
    },
}


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str
    sms: str


class _Defaults(dict):
    def __missing__(self, key):
        return ""


def render_message(template: str, payload: dict, time_zone: str = "UTC", shop_name: str = "") -> RenderedMessage:
    """
    Render one of ``MESSAGE_TEMPLATES`` with the appointment payload.

    ``scheduled_at`` is shown in the shop's local time. Unknown placeholders
    render as empty strings; an unknown template name raises ``KeyError``.
    """
    tpl = MESSAGE_TEMPLATES[template]
    context = _Defaults(payload)
    context["shop_name"] = shop_name or "our shop"

    scheduled_at = payload.get("scheduled_at")
    if isinstance(scheduled_at, datetime):
        local = scheduled_at.astimezone(ZoneInfo(time_zone))
        context["appointment_date"] = local.strftime("%a %b %d, %Y").replace(" 0", " ")
        context["appointment_time"] = local.strftime("%H:%M")

    duration = payload.get("estimated_duration_minutes")
    context["duration"] = f"{duration} minutes" if duration else "to be confirmed"
    if not context.get("vehicle_info"):
        context["vehicle_info"] = "not specified"

    return RenderedMessage(
        subject=tpl["subject"].format_map(context),
        body=tpl["body"].format_map(context),
        sms=tpl["sms"].format_map(context),
    )

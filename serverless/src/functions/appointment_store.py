import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from apps.scheduling.reminders import (
    AppointmentSnapshot,
    Contact,
    DataStoreError,
    MarkResult,
    ReminderSettings,
)

STATUS_INDEX = "by_status_scheduled"

logger = logging.getLogger("appointment-store")


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def item_to_snapshot(item: Dict) -> AppointmentSnapshot:
    """
    Items carry a denormalized copy of the customer contact:
      {"appointment_id", "status", "scheduled_at", "customer": {...},
       "reminder_settings": {...}, "reminders_sent": {"24h", ...}, ...}
    """
    customer = item.get("customer") or {}
    settings = item.get("reminder_settings") or {}
    duration = item.get("estimated_duration_minutes")
    return AppointmentSnapshot(
        id=item["appointment_id"],
        scheduled_at=parse_iso(item["scheduled_at"]),
        status=item.get("status", "scheduled"),
        contact=Contact(
            name=customer.get("name", ""),
            email=customer.get("email") or None,
            phone=customer.get("phone_e164") or customer.get("phone") or None,
        ),
        settings=ReminderSettings(
            send_24h_reminder=settings.get("send_24h_reminder", True),
            send_2h_reminder=settings.get("send_2h_reminder", True),
            send_same_day_reminder=settings.get("send_same_day_reminder", True),
            preferred_channel=settings.get("preferred_channel", "both"),
        ),
        reminders_sent=frozenset(item.get("reminders_sent") or ()),
        vehicle_info=item.get("vehicle_info", ""),
        service_name=item.get("service_name", ""),
        estimated_duration_minutes=int(duration) if duration is not None else None,
    )


class DynamoAppointmentStore:
    def __init__(self, table, page_size: int = 200):
        self.table = table
        self.page_size = page_size

    def find_upcoming(self, statuses: Iterable[str], before: datetime, after: Optional[datetime] = None):
        lower = iso(after) if after else "0000"
        items: List[dict] = []
        for status in statuses:
            last = None
            while True:
                params = {
                    "IndexName": STATUS_INDEX,
                    "KeyConditionExpression": "#s = :status AND #t BETWEEN :after AND :before",
                    "ExpressionAttributeNames": {"#s": "status", "#t": "scheduled_at"},
                    "ExpressionAttributeValues": {
                        ":status": status,
                        ":after": lower,
                        ":before": iso(before),
                    },
                    "Limit": self.page_size,
                }
                if last:
                    params["ExclusiveStartKey"] = last
                try:
                    resp = self.table.query(**params)
                except (ClientError, BotoCoreError) as e:
                    raise DataStoreError(f"query for {status} appointments failed: {e}") from e
                items.extend(resp.get("Items", []))
                last = resp.get("LastEvaluatedKey")
                if not last:
                    break

        snapshots = []
        for item in items:
            try:
                snapshot = item_to_snapshot(item)
            except (KeyError, ValueError) as e:
                logger.warning(f"skipping malformed appointment item {item.get('appointment_id')}: {e}")
                continue
            # BETWEEN is inclusive on both ends.
            if after is not None and snapshot.scheduled_at <= after:
                continue
            snapshots.append(snapshot)
        snapshots.sort(key=lambda s: s.scheduled_at)
        return snapshots

    def get(self, appointment_id):
        try:
            resp = self.table.get_item(Key={"appointment_id": appointment_id})
        except (ClientError, BotoCoreError) as e:
            raise DataStoreError(f"get_item {appointment_id} failed: {e}") from e
        item = resp.get("Item")
        return item_to_snapshot(item) if item else None

    def mark_reminder_sent(self, appointment_id, kind, provider_message_id=None) -> MarkResult:
        kind = getattr(kind, "value", kind)
        try:
            self.table.update_item(
                Key={"appointment_id": appointment_id},
                UpdateExpression="ADD reminders_sent :kinds SET updated_at = :u",
                ConditionExpression="attribute_exists(appointment_id) AND NOT contains(reminders_sent, :kind)",
                ExpressionAttributeValues={
                    ":kinds": {kind},
                    ":kind": kind,
                    ":u": iso(datetime.now(timezone.utc)),
                },
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return MarkResult.ALREADY_SENT if e.response.get("Item") else MarkResult.NOT_FOUND
            raise DataStoreError(f"marking {kind} for {appointment_id} failed: {e}") from e
        except BotoCoreError as e:
            raise DataStoreError(f"marking {kind} for {appointment_id} failed: {e}") from e
        return MarkResult.SUCCESS

    def record_communication(self, appointment_id, kind, channel, outcome):
        sent_at = iso(datetime.now(timezone.utc))
        channels = outcome.channels or ()
        entries = [
            {
                "type": kind,
                "channel": c.channel,
                "status": "sent" if c.success else "failed",
                "message_id": c.message_id or "",
                "error_message": c.error or "",
                "sent_at": sent_at,
            }
            for c in channels
        ] or [
            {
                "type": kind,
                "channel": channel,
                "status": "sent" if outcome.success else "failed",
                "message_id": outcome.provider_message_id or "",
                "error_message": outcome.reason or "",
                "sent_at": sent_at,
            }
        ]
        try:
            self.table.update_item(
                Key={"appointment_id": appointment_id},
                UpdateExpression="SET communication_history = list_append(if_not_exists(communication_history, :empty), :entries)",
                ConditionExpression="attribute_exists(appointment_id)",
                ExpressionAttributeValues={":empty": [], ":entries": entries},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.warning(f"appointment {appointment_id} gone; {kind} history not recorded")
                return
            raise DataStoreError(f"recording {kind} for {appointment_id} failed: {e}") from e
        except BotoCoreError as e:
            raise DataStoreError(f"recording {kind} for {appointment_id} failed: {e}") from e

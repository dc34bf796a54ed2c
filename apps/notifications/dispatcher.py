"""
Email (SES) and SMS (SNS) delivery for appointment messages.

Provider errors never escape ``NotificationDispatcher.send``: each channel is
wrapped in ``DispatchError`` and folded into the returned ``DispatchOutcome``.
"""
import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from apps.scheduling.reminders import (
    CHANNELS,
    ChannelResult,
    Contact,
    DispatchError,
    DispatchOutcome,
)

from .templates import render_message


logger = logging.getLogger(__name__)


def build_aws_clients(region: Optional[str] = None, timeout: int = 5):
    """SES and SNS clients with bounded timeouts; a timeout counts as a failed send."""
    config = Config(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"max_attempts": 2, "mode": "standard"},
    )
    ses = boto3.client("ses", region_name=region, config=config)
    sns = boto3.client("sns", region_name=region, config=config)
    return ses, sns


class NotificationDispatcher:
    def __init__(
        self,
        ses_client,
        sns_client,
        from_email: str,
        sms_sender_id: str = "AUTOSHOP",
        time_zone: str = "UTC",
        shop_name: str = "",
    ):
        self.ses = ses_client
        self.sns = sns_client
        self.from_email = from_email
        self.sms_sender_id = sms_sender_id
        self.time_zone = time_zone
        self.shop_name = shop_name

    def send_email(self, to_addr: str, subject: str, body: str) -> str:
        try:
            resp = self.ses.send_email(
                Source=self.from_email,
                Destination={"ToAddresses": [to_addr]},
                Message={
                    "Subject": {"Data": subject},
                    "Body": {"Text": {"Data": body}},
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise DispatchError(f"email to {to_addr} failed: {e}") from e
        return resp["MessageId"]

    def send_sms(self, phone: str, body: str) -> str:
        try:
            resp = self.sns.publish(
                PhoneNumber=phone,
                Message=body,
                MessageAttributes={
                    "AWS.SNS.SMS.SenderID": {"DataType": "String", "StringValue": self.sms_sender_id},
                    "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise DispatchError(f"sms to {phone} failed: {e}") from e
        return resp["MessageId"]

    def send(self, destination: Contact, channel: str, template: str, payload: dict) -> DispatchOutcome:
        """
        Deliver ``template`` to ``destination`` over ``channel``.

        With ``both``, every channel the contact has an address for is tried
        and the send succeeds if at least one of them went through.
        """
        if channel not in CHANNELS:
            return DispatchOutcome.failure(f"unsupported channel {channel!r}")

        message = render_message(template, payload, time_zone=self.time_zone, shop_name=self.shop_name)

        wanted = ["email", "sms"] if channel == "both" else [channel]
        targets = []
        if "email" in wanted and destination.email:
            targets.append(("email", lambda: self.send_email(destination.email, message.subject, message.body)))
        if "sms" in wanted and destination.phone:
            targets.append(("sms", lambda: self.send_sms(destination.phone, message.sms)))

        if not targets:
            missing = " or ".join("email address" if c == "email" else "phone number" for c in wanted)
            return DispatchOutcome.failure(f"no {missing} on file for {destination.name or 'customer'}")

        results = []
        for name, deliver in targets:
            try:
                message_id = deliver()
                results.append(ChannelResult(channel=name, success=True, message_id=message_id))
                logger.info("%s %s sent (message id %s)", template, name, message_id)
            except DispatchError as e:
                results.append(ChannelResult(channel=name, success=False, error=str(e)))
                logger.warning("%s %s failed: %s", template, name, e)

        delivered = [r for r in results if r.success]
        if not delivered:
            return DispatchOutcome.failure("; ".join(r.error for r in results), results)
        return DispatchOutcome(
            success=True,
            provider_message_id=delivered[0].message_id,
            channels=tuple(results),
        )

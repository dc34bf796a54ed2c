import json
import uuid
import logging
from typing import Any

from apps.scheduling.reminders import DataStoreError, NotFoundError

from .send_reminders import get_scheduler


logger = logging.getLogger("send-confirmation")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler_ = logging.StreamHandler()
    formatter = logging.Formatter(
        '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "correlation_id": "%(correlation_id)s"}'
    )
    handler_.setFormatter(formatter)
    logger.addHandler(handler_)


def response(
    status: int, body: dict, correlation_id: str, headers: dict | None = None
) -> dict:
    """Standardized API Gateway response."""
    base_headers = {
        "Content-Type": "application/json",
        "Cache-Control": "no-store",
        "X-Correlation-Id": correlation_id,
    }
    if headers:
        base_headers.update(headers)

    body_with_correlation = {**body, "correlation_id": correlation_id}

    return {
        "statusCode": status,
        "headers": base_headers,
        "body": json.dumps(body_with_correlation),
    }


def get_header(event: dict, name: str) -> str | None:
    headers = event.get("headers") or {}
    name_lower = name.lower()
    for k, v in headers.items():
        if k.lower() == name_lower:
            return v
    return None


def get_appointment_id(event: dict) -> str | None:
    """Path parameter first, then the JSON body."""
    path_params = event.get("pathParameters") or {}
    if path_params.get("appointment_id"):
        return path_params["appointment_id"]
    payload = json.loads(event.get("body") or "{}")
    if not isinstance(payload, dict):
        return None
    return payload.get("appointment_id")


def handler(event: dict, context: Any) -> dict:
    """
    Lambda handler that (re-)sends an appointment confirmation.

    Expects:
        - Headers: X-Correlation-Id (optional)
        - Path parameter or JSON body: appointment_id

    Returns:
        API Gateway response: 200 when delivered, 404 for an unknown
        appointment, 502 when every channel failed.
    """
    correlation_id = get_header(event, "X-Correlation-Id") or f"cor-{uuid.uuid4().hex}"

    try:
        appointment_id = get_appointment_id(event)
    except json.JSONDecodeError as e:
        logger.warning(
            "Invalid JSON in request body",
            extra={"correlation_id": correlation_id, "error": str(e)},
        )
        return response(400, {"error": "Invalid JSON body"}, correlation_id)

    if not appointment_id:
        return response(400, {"error": "appointment_id is required"}, correlation_id)

    try:
        outcome = get_scheduler().send_appointment_confirmation(appointment_id)
    except NotFoundError:
        logger.warning(
            "Appointment not found",
            extra={"correlation_id": correlation_id, "appointment_id": appointment_id},
        )
        return response(404, {"error": "Appointment not found", "appointment_id": appointment_id}, correlation_id)
    except DataStoreError as e:
        logger.error(
            "Failed to load appointment",
            extra={"correlation_id": correlation_id, "appointment_id": appointment_id, "error": str(e)},
            exc_info=True,
        )
        return response(503, {"error": "Appointment store unavailable"}, correlation_id)

    if not outcome.success:
        logger.error(
            "Confirmation dispatch failed",
            extra={"correlation_id": correlation_id, "appointment_id": appointment_id, "reason": outcome.reason},
        )
        return response(502, {"appointment_id": appointment_id, **outcome.to_dict()}, correlation_id)

    logger.info(
        "Confirmation sent",
        extra={"correlation_id": correlation_id, "appointment_id": appointment_id},
    )
    return response(200, {"appointment_id": appointment_id, **outcome.to_dict()}, correlation_id)

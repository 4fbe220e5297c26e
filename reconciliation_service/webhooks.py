"""
Signed webhook ingestion: authenticate, parse, dispatch to the materializer.
"""
import json
import logging
from typing import Any, Dict, Optional
from pydantic import ValidationError
from common.error_handling import EventValidationError
from common.schemas import PaymentSucceededEvent, WebhookResponse
from common.security import verify_webhook_signature
from common.settings import Settings
from reconciliation_service.materializer import PaymentMaterializer

logger = logging.getLogger(__name__)

PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
HANDLED_EVENT_TYPES = (PAYMENT_INTENT_SUCCEEDED, CHECKOUT_SESSION_COMPLETED)

CLASS_CODE_KEYS = ("class_code", "class_id", "classId")
COURSE_CODE_KEYS = ("course_code", "courseCode")

def _first(mapping: Dict[str, Any], keys) -> Optional[Any]:
    for key in keys:
        if mapping.get(key):
            return mapping[key]
    return None

def _customer_id(value) -> Optional[str]:
    # expanded objects carry the id inside
    if isinstance(value, dict):
        return value.get("id")
    return value

def parse_payment_intent(event: Dict[str, Any]) -> PaymentSucceededEvent:
    intent = event["data"]["object"]
    metadata = intent.get("metadata") or {}
    charges = (intent.get("charges") or {}).get("data") or []
    return PaymentSucceededEvent(
        payment_intent_id=intent.get("id"),
        amount=intent.get("amount_received") or intent.get("amount"),
        email=intent.get("receipt_email") or metadata.get("email"),
        class_code=_first(metadata, CLASS_CODE_KEYS),
        course_code=_first(metadata, COURSE_CODE_KEYS),
        customer_id=_customer_id(intent.get("customer")),
        receipt_url=charges[0].get("receipt_url") if charges else None,
        event_id=event.get("id"),
        event_type=event["type"],
    )

def parse_checkout_session(event: Dict[str, Any]) -> PaymentSucceededEvent:
    session = event["data"]["object"]
    metadata = session.get("metadata") or {}
    details = session.get("customer_details") or {}
    return PaymentSucceededEvent(
        # free sessions carry no payment intent; the session id keys them instead
        payment_intent_id=_customer_id(session.get("payment_intent")) or session.get("id"),
        amount=session.get("amount_total"),
        email=details.get("email") or session.get("customer_email") or metadata.get("email"),
        class_code=_first(metadata, CLASS_CODE_KEYS),
        course_code=_first(metadata, COURSE_CODE_KEYS),
        customer_id=_customer_id(session.get("customer")),
        event_id=event.get("id"),
        event_type=event["type"],
    )

def parse_event(event: Dict[str, Any]) -> PaymentSucceededEvent:
    """Map a gateway event onto the fields the materializer needs."""
    parser = parse_payment_intent if event["type"] == PAYMENT_INTENT_SUCCEEDED else parse_checkout_session
    try:
        return parser(event)
    except ValidationError as e:
        first_error = e.errors()[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        raise EventValidationError(f"{event['type']} event is missing {field}: {first_error.get('msg')}", field=field)
    except (KeyError, TypeError, AttributeError) as e:
        raise EventValidationError(f"malformed {event['type']} event: {e}")

class WebhookGateway:
    def __init__(self, settings: Settings, materializer: PaymentMaterializer):
        self.settings = settings
        self.materializer = materializer

    def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResponse:
        verify_webhook_signature(payload, signature, self.settings)

        try:
            event = json.loads(payload)
            event_type = event["type"]
        except (ValueError, KeyError, TypeError) as e:
            raise EventValidationError(f"webhook body is not a gateway event: {e}")

        if event_type not in HANDLED_EVENT_TYPES:
            logger.info("Ignoring webhook event", extra={"event_type": event_type, "event_id": event.get("id")})
            return WebhookResponse(status="ignored", event_type=event_type)

        if event_type == CHECKOUT_SESSION_COMPLETED:
            payment_status = (event.get("data") or {}).get("object", {}).get("payment_status")
            if payment_status not in (None, "paid", "no_payment_required"):
                logger.info("Ignoring unpaid checkout session", extra={
                    "event_id": event.get("id"), "payment_status": payment_status,
                })
                return WebhookResponse(status="ignored", event_type=event_type)

        payment_event = parse_event(event)
        logger.info("Processing payment event", extra={
            "event_type": event_type,
            "event_id": payment_event.event_id,
            "payment_intent_id": payment_event.payment_intent_id,
        })

        result = self.materializer.materialize_payment(payment_event)
        if result.partial_failures:
            logger.warning("Payment recorded with follow-ups", extra={
                "payment_intent_id": payment_event.payment_intent_id,
                "failures": result.partial_failures,
            })

        return WebhookResponse(
            status=result.status,
            event_type=event_type,
            payment_intent_id=payment_event.payment_intent_id,
            student_id=result.student.id,
            enrollment_id=result.enrollment.id,
            payment_id=result.payment.id,
            invoice_ids=[invoice.id for invoice in result.invoices],
            failures=result.partial_failures,
        )

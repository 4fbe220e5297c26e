"""
Register of best-effort steps that failed after a payment was recorded.
Operators work through open rows by hand; nothing here retries automatically.
"""
import logging
from typing import List, Optional, Set
from sqlalchemy import select
from common.error_handling import NotFoundError
from reconciliation_service.db import storage_errors
from reconciliation_service.models import FollowUp, utcnow

logger = logging.getLogger(__name__)

AUDIT_FAILED = "audit_failed"
INVOICE_SCHEDULING_FAILED = "invoice_scheduling_failed"
MANUAL_INVOICING_REQUIRED = "manual_invoicing_required"
EXPORT_AUDIT_FAILED = "export_audit_failed"

class FollowUpRegister:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def record(self, kind: str, detail: str, payment_intent_id: Optional[str] = None,
               reference_type: Optional[str] = None, reference_id: Optional[str] = None) -> Optional[FollowUp]:
        """Persist an open follow-up. Returns None if storage refuses it; the failure is logged."""
        follow_up = FollowUp(
            kind=kind,
            detail=detail,
            payment_intent_id=payment_intent_id,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        try:
            with storage_errors("record follow-up"):
                with self.session_factory() as db:
                    db.add(follow_up)
                    db.commit()
        except Exception as e:
            logger.error(f"Could not record follow-up: {e}", extra={
                "kind": kind, "payment_intent_id": payment_intent_id, "detail": detail,
            })
            return None
        logger.warning(f"Follow-up recorded: {kind}", extra={
            "follow_up_id": follow_up.id, "payment_intent_id": payment_intent_id,
        })
        return follow_up

    def list_open(self) -> List[FollowUp]:
        with storage_errors("list follow-ups"):
            with self.session_factory() as db:
                return list(db.execute(
                    select(FollowUp).where(FollowUp.status == "open").order_by(FollowUp.created_at)
                ).scalars())

    def kinds_for_payment(self, payment_intent_id: str) -> Set[str]:
        """Kinds of every follow-up, open or resolved, recorded for a payment."""
        with storage_errors("read follow-ups"):
            with self.session_factory() as db:
                return set(db.execute(
                    select(FollowUp.kind).where(FollowUp.payment_intent_id == payment_intent_id)
                ).scalars())

    def resolve(self, follow_up_id: str) -> FollowUp:
        with storage_errors("resolve follow-up"):
            with self.session_factory() as db:
                follow_up = db.get(FollowUp, follow_up_id)
                if not follow_up:
                    raise NotFoundError(f"follow-up not found: {follow_up_id}")
                if follow_up.status != "resolved":
                    follow_up.status = "resolved"
                    follow_up.resolved_at = utcnow()
                    db.commit()
        return follow_up

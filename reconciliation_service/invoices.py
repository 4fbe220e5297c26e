"""
Follow-up tuition invoices for classes billed as registration fee + tuition.

The tuition is split into two installments (floor half now, remainder later)
whose due dates come from the class or, failing that, from its start date.
(payment_intent_id, invoice_sequence) is unique, so a payment can never be
invoiced twice for the same installment.
"""
import logging
from datetime import date
from typing import List, Optional
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from common.settings import Settings
from reconciliation_service.audit_log import ActionType, AuditLogWriter
from reconciliation_service.db import storage_errors
from reconciliation_service.follow_ups import (
    AUDIT_FAILED, MANUAL_INVOICING_REQUIRED, FollowUpRegister,
)
from reconciliation_service.models import AuditLogEntry, Invoice, InvoiceNumberClaim, Transaction, utcnow
from reconciliation_service.money import follow_up_due_dates, format_currency, split_installments

logger = logging.getLogger(__name__)

MAX_NUMBER_ALLOCATION_ATTEMPTS = 3

def next_invoice_number(db, start: int = 100001) -> int:
    """One past the highest number used by any invoice or transaction."""
    highest_invoice = db.execute(select(func.max(Invoice.invoice_number))).scalar()
    highest_transaction = db.execute(select(func.max(Transaction.invoice_number))).scalar()
    highest_claim = db.execute(select(func.max(InvoiceNumberClaim.invoice_number))).scalar()
    return max(highest_invoice or 0, highest_transaction or 0, highest_claim or 0, start - 1) + 1

def claim_invoice_numbers(db, owner_type: str, count: int = 1, start: int = 100001,
                          payment_intent_id: Optional[str] = None) -> int:
    """
    Reserve ``count`` consecutive numbers in the caller's session and return
    the first. Transactions and invoices share the sequence, so the claim rows
    make a number taken by either table collide on commit.
    """
    first = next_invoice_number(db, start)
    db.add_all(
        InvoiceNumberClaim(invoice_number=first + offset, owner_type=owner_type, payment_intent_id=payment_intent_id)
        for offset in range(count)
    )
    return first

class InvoiceScheduler:
    def __init__(self, session_factory, audit: AuditLogWriter, follow_ups: FollowUpRegister, settings: Settings):
        self.session_factory = session_factory
        self.audit = audit
        self.follow_ups = follow_ups
        self.settings = settings

    def schedule_follow_up_invoices(
        self,
        customer_id: str,
        tuition_amount: int,
        class_code: str,
        course_code: Optional[str],
        due_date_1: Optional[date] = None,
        due_date_2: Optional[date] = None,
        *,
        class_start_date: Optional[date] = None,
        customer_email: Optional[str] = None,
        class_id: Optional[str] = None,
        student_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        failures: Optional[List[str]] = None,
    ) -> List[Invoice]:
        """
        Create the two installment invoices for a tuition total.

        Returns an empty list, without inventing dates, when neither explicit
        due dates nor a class start date are known; the class is flagged for
        manual invoicing instead. Best-effort problems after the invoices are
        stored are appended to ``failures``.
        """
        now_amount, later_amount = split_installments(tuition_amount)
        due_dates = follow_up_due_dates(
            due_date_1,
            due_date_2,
            class_start_date,
            offset_1_days=self.settings.invoice_1_offset_days,
            offset_2_days=self.settings.invoice_2_offset_days,
            derive_from_start=self.settings.derive_due_dates_from_start,
        )
        if due_dates is None:
            message = f"class {class_code} has no invoice due dates and no start date; invoice manually"
            logger.warning(message, extra={"class_code": class_code, "payment_intent_id": payment_intent_id})
            self.follow_ups.record(
                MANUAL_INVOICING_REQUIRED, message,
                payment_intent_id=payment_intent_id, reference_type="class", reference_id=class_id,
            )
            if failures is not None:
                failures.append(MANUAL_INVOICING_REQUIRED)
            return []

        installments = [(1, now_amount, due_dates[0]), (2, later_amount, due_dates[1])]
        invoices = None
        for attempt in range(1, MAX_NUMBER_ALLOCATION_ATTEMPTS + 1):
            existing = self._existing_installments(payment_intent_id)
            if existing:
                logger.info("Follow-up invoices already scheduled", extra={"payment_intent_id": payment_intent_id})
                return existing
            try:
                invoices = self._insert_installments(
                    installments, customer_id, customer_email, class_code, course_code,
                    class_id, transaction_id, payment_intent_id,
                )
                break
            except IntegrityError:
                # lost an invoice-number race, or a concurrent delivery inserted the installments
                if attempt == MAX_NUMBER_ALLOCATION_ATTEMPTS:
                    raise
                logger.warning(f"Invoice number conflict, attempt {attempt}", extra={"payment_intent_id": payment_intent_id})

        logger.info("Scheduled follow-up invoices", extra={
            "payment_intent_id": payment_intent_id,
            "invoice_numbers": [invoice.invoice_number for invoice in invoices],
            "total": tuition_amount,
        })

        try:
            self.audit.append_batch(
                AuditLogEntry(
                    admin_user_id=None,
                    reference_type="invoice",
                    reference_id=invoice.id,
                    action_type=ActionType.INVOICE_SCHEDULED.value,
                    field_name="invoice_number",
                    new_value=str(invoice.invoice_number),
                    student_id=student_id,
                    class_id=class_id,
                    amount=invoice.item_amount,
                )
                for invoice in invoices
            )
        except Exception as e:
            message = f"invoice_scheduled audit rows not written: {e}"
            logger.error(message, extra={"payment_intent_id": payment_intent_id})
            self.follow_ups.record(AUDIT_FAILED, message, payment_intent_id=payment_intent_id)
            if failures is not None:
                failures.append(AUDIT_FAILED)

        return invoices

    def _existing_installments(self, payment_intent_id: Optional[str]) -> List[Invoice]:
        if not payment_intent_id:
            return []
        with storage_errors("read invoices"):
            with self.session_factory() as db:
                return list(db.execute(
                    select(Invoice)
                    .where(Invoice.payment_intent_id == payment_intent_id)
                    .order_by(Invoice.invoice_sequence)
                ).scalars())

    def _insert_installments(self, installments, customer_id, customer_email, class_code, course_code,
                             class_id, transaction_id, payment_intent_id) -> List[Invoice]:
        invoice_date = utcnow().date()
        with storage_errors("schedule invoices"):
            with self.session_factory() as db:
                number = claim_invoice_numbers(
                    db, "invoice", len(installments), self.settings.invoice_number_start, payment_intent_id,
                )
                invoices = []
                for offset, (sequence, amount, due_date) in enumerate(installments):
                    invoices.append(Invoice(
                        invoice_number=number + offset,
                        customer_id=customer_id,
                        customer_email=customer_email,
                        invoice_date=invoice_date,
                        due_date=due_date,
                        item=f"{course_code or ''}:{class_code}:tuition",
                        memo=f"Tuition installment {sequence} of {len(installments)} for {class_code}: {format_currency(amount)}",
                        item_amount=amount,
                        invoice_sequence=sequence,
                        category=course_code,
                        subcategory=class_code,
                        transaction_id=transaction_id,
                        payment_intent_id=payment_intent_id,
                        class_id=class_id,
                    ))
                db.add_all(invoices)
                db.commit()
        return invoices

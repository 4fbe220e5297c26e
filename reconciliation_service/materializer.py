"""
Turns one successful payment event into student, enrollment, payment and
transaction rows, then runs the best-effort steps (audit rows, follow-up
invoices).

The payment-intent id is the idempotency boundary for the whole pipeline: once
a Payment row exists for it, redelivery returns the stored records. It only
writes again when a best-effort step of that payment left neither its rows nor
a follow-up behind.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from common.error_handling import ConflictAlreadyProcessed
from common.retry import STORAGE_RETRY_CONFIG, RetryConfig, retry_call
from common.schemas import PaymentSucceededEvent
from reconciliation_service.audit_log import ActionType, AuditLogWriter
from reconciliation_service.db import storage_errors
from reconciliation_service.follow_ups import (
    AUDIT_FAILED, INVOICE_SCHEDULING_FAILED, MANUAL_INVOICING_REQUIRED, FollowUpRegister,
)
from reconciliation_service.identity import IdentityResolver
from reconciliation_service.invoices import InvoiceScheduler, claim_invoice_numbers
from reconciliation_service.models import (
    AuditLogEntry, ClassOffering, Enrollment, Invoice, Payment, Student, Transaction, utcnow,
)

logger = logging.getLogger(__name__)

MAX_TRANSACTION_NUMBER_ATTEMPTS = 3

@dataclass
class MaterializeResult:
    student: Student
    enrollment: Enrollment
    payment: Payment
    transaction: Optional[Transaction]
    invoices: List[Invoice] = field(default_factory=list)
    already_processed: bool = False
    partial_failures: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.partial_failures:
            return "partial"
        if self.already_processed:
            return "already_processed"
        return "processed"

class PaymentMaterializer:
    def __init__(
        self,
        session_factory,
        identity: IdentityResolver,
        invoices: InvoiceScheduler,
        audit: AuditLogWriter,
        follow_ups: FollowUpRegister,
        invoice_number_start: int = 100001,
        retry_config: RetryConfig = STORAGE_RETRY_CONFIG,
    ):
        self.session_factory = session_factory
        self.identity = identity
        self.invoices = invoices
        self.audit = audit
        self.follow_ups = follow_ups
        self.invoice_number_start = invoice_number_start
        self.retry_config = retry_config

    def materialize_payment(self, event: PaymentSucceededEvent) -> MaterializeResult:
        student = self.identity.resolve_student(event.email)
        customer_id = self.identity.resolve_external_customer(student, event.email, event.customer_id)
        klass = self.identity.resolve_class_by_code(event.class_code)
        enrollment = retry_call(self.upsert_enrollment, self.retry_config, student.id, klass.id)

        try:
            payment, transaction = retry_call(
                self.insert_payment, self.retry_config, enrollment, klass, event,
            )
        except ConflictAlreadyProcessed as conflict:
            logger.info("Payment already processed", extra={
                "payment_intent_id": conflict.key, "payment_id": conflict.existing_id,
            })
            result = self._existing_result(student, enrollment, event.payment_intent_id)
            self._complete_pending_steps(result, klass, customer_id, event)
            return result

        logger.info("Payment recorded", extra={
            "payment_intent_id": event.payment_intent_id,
            "payment_id": payment.id,
            "enrollment_id": enrollment.id,
            "amount": event.amount,
        })
        result = MaterializeResult(student=student, enrollment=enrollment, payment=payment, transaction=transaction)

        self._write_payment_audit(result, klass, event)

        if klass.has_split_tuition:
            self._schedule_invoices(result, klass, customer_id, event)

        return result

    def _schedule_invoices(self, result: MaterializeResult, klass: ClassOffering, customer_id: str,
                           event: PaymentSucceededEvent):
        try:
            result.invoices = self.invoices.schedule_follow_up_invoices(
                customer_id,
                klass.price,
                klass.class_code,
                klass.course_code,
                klass.invoice_1_due_date,
                klass.invoice_2_due_date,
                class_start_date=klass.class_start_date,
                customer_email=result.student.email,
                class_id=klass.id,
                student_id=result.student.id,
                transaction_id=result.transaction.id if result.transaction else None,
                payment_intent_id=event.payment_intent_id,
                failures=result.partial_failures,
            )
        except Exception as e:
            message = f"follow-up invoices not scheduled: {e}"
            logger.error(message, extra={"payment_intent_id": event.payment_intent_id})
            self.follow_ups.record(
                INVOICE_SCHEDULING_FAILED, message,
                payment_intent_id=event.payment_intent_id, reference_type="class", reference_id=klass.id,
            )
            result.partial_failures.append(INVOICE_SCHEDULING_FAILED)

    def _complete_pending_steps(self, result: MaterializeResult, klass: ClassOffering, customer_id: str,
                                event: PaymentSucceededEvent):
        """
        Redo the best-effort steps of an already stored payment that neither
        ran nor left a follow-up behind, e.g. after a crash right after the
        payment commit.
        """
        recorded = self.follow_ups.kinds_for_payment(event.payment_intent_id)

        if AUDIT_FAILED not in recorded and not self._payment_audited(event.payment_intent_id):
            logger.warning("Payment audit rows missing, writing them now", extra={
                "payment_intent_id": event.payment_intent_id,
            })
            self._write_payment_audit(result, klass, event)

        if (klass.has_split_tuition and not result.invoices
                and not recorded & {INVOICE_SCHEDULING_FAILED, MANUAL_INVOICING_REQUIRED}):
            logger.warning("Follow-up invoices missing, scheduling them now", extra={
                "payment_intent_id": event.payment_intent_id,
            })
            self._schedule_invoices(result, klass, customer_id, event)

    def _payment_audited(self, payment_intent_id: str) -> bool:
        with storage_errors("read payment audit"):
            with self.session_factory() as db:
                return db.execute(
                    select(AuditLogEntry.id)
                    .where(AuditLogEntry.action_type == ActionType.PAYMENT_SUCCESS.value)
                    .where(AuditLogEntry.new_value == payment_intent_id)
                    .limit(1)
                ).first() is not None

    def upsert_enrollment(self, student_id: str, class_id: str) -> Enrollment:
        """Return the enrollment for (student, class), creating it if needed."""
        stmt = select(Enrollment).where(Enrollment.student_id == student_id, Enrollment.class_id == class_id)
        with storage_errors("upsert enrollment"):
            with self.session_factory() as db:
                enrollment = db.execute(stmt).scalar_one_or_none()
                if enrollment:
                    return enrollment
                enrollment = Enrollment(student_id=student_id, class_id=class_id)
                db.add(enrollment)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return db.execute(stmt).scalar_one()
        logger.info("Enrollment created", extra={"enrollment_id": enrollment.id})
        return enrollment

    def insert_payment(self, enrollment: Enrollment, klass: ClassOffering,
                       event: PaymentSucceededEvent) -> Tuple[Payment, Transaction]:
        """
        Insert the payment and its bookkeeping transaction in one commit.

        Raises ConflictAlreadyProcessed when a payment with the same intent id
        is already stored.
        """
        if klass.has_split_tuition:
            transaction_type = "registration_fee"
        else:
            transaction_type = "tuition"

        for attempt in range(1, MAX_TRANSACTION_NUMBER_ATTEMPTS + 1):
            with storage_errors("insert payment"):
                with self.session_factory() as db:
                    paid_at = utcnow()
                    payment = Payment(
                        enrollment_id=enrollment.id,
                        payment_intent_id=event.payment_intent_id,
                        amount_cents=event.amount,
                        receipt_url=event.receipt_url,
                        payment_status="paid",
                        paid_at=paid_at,
                    )
                    transaction = Transaction(
                        invoice_number=claim_invoice_numbers(
                            db, "transaction", start=self.invoice_number_start,
                            payment_intent_id=event.payment_intent_id,
                        ),
                        student_id=enrollment.student_id,
                        class_id=klass.id,
                        payment_intent_id=event.payment_intent_id,
                        transaction_type=transaction_type,
                        amount_due=event.amount,
                        transaction_status="paid",
                        due_date=paid_at.date(),
                        created_at=paid_at,
                    )
                    db.add_all([payment, transaction])
                    try:
                        db.commit()
                        return payment, transaction
                    except IntegrityError:
                        db.rollback()
                        existing_id = db.execute(
                            select(Payment.id).where(Payment.payment_intent_id == event.payment_intent_id)
                        ).scalar_one_or_none()
                        if existing_id:
                            raise ConflictAlreadyProcessed(event.payment_intent_id, existing_id)
                        if attempt == MAX_TRANSACTION_NUMBER_ATTEMPTS:
                            raise
                        logger.warning(f"Transaction number conflict, attempt {attempt}", extra={
                            "payment_intent_id": event.payment_intent_id,
                        })

    def _existing_result(self, student: Student, enrollment: Enrollment, payment_intent_id: str) -> MaterializeResult:
        with storage_errors("load processed payment"):
            with self.session_factory() as db:
                payment = db.execute(
                    select(Payment).where(Payment.payment_intent_id == payment_intent_id)
                ).scalar_one()
                transaction = db.execute(
                    select(Transaction).where(Transaction.payment_intent_id == payment_intent_id)
                ).scalar_one_or_none()
                invoices = list(db.execute(
                    select(Invoice)
                    .where(Invoice.payment_intent_id == payment_intent_id)
                    .order_by(Invoice.invoice_sequence)
                ).scalars())
                if payment.enrollment_id != enrollment.id:
                    enrollment = db.get(Enrollment, payment.enrollment_id)
        return MaterializeResult(
            student=student,
            enrollment=enrollment,
            payment=payment,
            transaction=transaction,
            invoices=invoices,
            already_processed=True,
        )

    def _write_payment_audit(self, result: MaterializeResult, klass: ClassOffering, event: PaymentSucceededEvent):
        common = dict(
            admin_user_id=None,
            reference_type="class",
            reference_id=klass.id,
            student_id=result.student.id,
            class_id=klass.id,
        )
        try:
            self.audit.append_batch([
                AuditLogEntry(action_type=ActionType.STUDENT_REGISTERED.value, **common),
                AuditLogEntry(
                    action_type=ActionType.PAYMENT_SUCCESS.value,
                    field_name="payment_intent_id",
                    new_value=event.payment_intent_id,
                    amount=event.amount,
                    **common,
                ),
            ])
        except Exception as e:
            message = f"registration audit rows not written: {e}"
            logger.error(message, extra={"payment_intent_id": event.payment_intent_id})
            self.follow_ups.record(
                AUDIT_FAILED, message,
                payment_intent_id=event.payment_intent_id, reference_type="class", reference_id=klass.id,
            )
            result.partial_failures.append(AUDIT_FAILED)

"""
Idempotent lookups for the student, the gateway customer mapping and the class
an event refers to. "Not found" is an expected branch for students and
customer mappings; it is only an error for classes.
"""
import logging
from typing import Optional
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from common.error_handling import (
    ErrorCodes, EventValidationError, GatewayValidationError, NotFoundError,
)
from common.retry import STORAGE_RETRY_CONFIG, RetryConfig, retry_call
from reconciliation_service.db import storage_errors
from reconciliation_service.gateway import CustomerAlreadyExists
from reconciliation_service.models import ClassOffering, ExternalPaymentCustomer, Student

logger = logging.getLogger(__name__)

def normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if not normalized:
        raise EventValidationError("payer email is required", field="email")
    return normalized

class IdentityResolver:
    def __init__(self, session_factory, gateway, retry_config: RetryConfig = STORAGE_RETRY_CONFIG):
        self.session_factory = session_factory
        self.gateway = gateway
        self.retry_config = retry_config

    def resolve_student(self, email: str) -> Student:
        return retry_call(self._resolve_student, self.retry_config, normalize_email(email))

    def _resolve_student(self, email: str) -> Student:
        stmt = select(Student).where(Student.email == email)
        with storage_errors("resolve student"):
            with self.session_factory() as db:
                student = db.execute(stmt).scalar_one_or_none()
                if student:
                    return student

                student = Student(email=email)
                db.add(student)
                try:
                    db.commit()
                except IntegrityError:
                    # a concurrent delivery created it first
                    db.rollback()
                    logger.info("Student created concurrently, re-reading", extra={"email": email})
                    return db.execute(stmt).scalar_one()

        logger.info("Created student", extra={"student_id": student.id})
        return student

    def resolve_external_customer(self, student: Student, email: str, payment_customer_id: Optional[str] = None) -> str:
        """Return the gateway customer id for a student, creating and storing it at most once."""
        existing = retry_call(self._stored_customer_id, self.retry_config, student.id)
        if existing:
            return existing

        customer_id = payment_customer_id
        if not customer_id:
            email = normalize_email(email)
            try:
                customer_id = self.gateway.create_customer(
                    email,
                    idempotency_key=f"customer:{student.id}",
                    metadata={"student_id": student.id},
                )
            except CustomerAlreadyExists:
                customer_id = self.gateway.find_customer_by_email(email)
                if not customer_id:
                    raise GatewayValidationError(f"gateway reported an existing customer for {email} but none was found")
                logger.info("Reusing existing gateway customer", extra={"student_id": student.id})

        return retry_call(self._store_mapping, self.retry_config, student.id, customer_id)

    def _stored_customer_id(self, student_id: str) -> Optional[str]:
        with storage_errors("read customer mapping"):
            with self.session_factory() as db:
                return db.execute(
                    select(ExternalPaymentCustomer.customer_id)
                    .where(ExternalPaymentCustomer.student_id == student_id)
                ).scalar_one_or_none()

    def _store_mapping(self, student_id: str, customer_id: str) -> str:
        with storage_errors("store customer mapping"):
            with self.session_factory() as db:
                db.add(ExternalPaymentCustomer(student_id=student_id, customer_id=customer_id))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    stored = db.execute(
                        select(ExternalPaymentCustomer.customer_id)
                        .where(ExternalPaymentCustomer.student_id == student_id)
                    ).scalar_one()
                    logger.info("Customer mapping stored concurrently", extra={"student_id": student_id})
                    return stored
        return customer_id

    def resolve_class_by_code(self, code: str) -> ClassOffering:
        normalized = (code or "").strip().upper()
        if not normalized:
            raise EventValidationError("class code is required", field="class_code")
        return retry_call(self._resolve_class, self.retry_config, normalized)

    def _resolve_class(self, code: str) -> ClassOffering:
        with storage_errors("resolve class"):
            with self.session_factory() as db:
                klass = db.execute(
                    select(ClassOffering).where(func.upper(ClassOffering.class_code) == code)
                ).scalar_one_or_none()
                if klass:
                    return klass

                # rows written before codes were normalised
                candidates = db.execute(
                    select(ClassOffering).where(ClassOffering.class_code.ilike(f"%{code}%")).limit(2)
                ).scalars().all()

        if len(candidates) == 1:
            logger.warning("Class resolved by partial code match", extra={
                "class_code": code, "matched": candidates[0].class_code,
            })
            return candidates[0]

        context = {"class_code": code}
        if candidates:
            context["reason"] = "ambiguous"
        raise NotFoundError(f"Class not found with class code: {code}", code=ErrorCodes.CLASS_NOT_FOUND, context=context)

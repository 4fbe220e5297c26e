import uuid
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import (
    BigInteger, Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric,
    String, Text, UniqueConstraint, event,
)
from sqlalchemy.orm import declarative_base, validates

Base = declarative_base()

def new_id() -> str:
    return str(uuid.uuid4())

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Student(Base):
    __tablename__ = "students"
    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(320), nullable=False, unique=True)
    first_name = Column(String(128))
    last_name = Column(String(128))
    full_name = Column(String(256))
    phone = Column(String(32))
    has_required_info = Column(Boolean, nullable=False, default=False)
    t_shirt_size = Column(String(8))
    emergency_contact_name = Column(String(256))
    emergency_contact_phone = Column(String(32))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @validates("email")
    def _normalize_email(self, key, value):
        return value.strip().lower()

    @property
    def display_name(self) -> str:
        name = self.full_name or f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or "Unknown Student"

class ExternalPaymentCustomer(Base):
    __tablename__ = "external_payment_customers"
    id = Column(String(36), primary_key=True, default=new_id)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False, unique=True)
    customer_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

class ClassOffering(Base):
    __tablename__ = "classes"
    id = Column(String(36), primary_key=True, default=new_id)
    class_code = Column(String(64), nullable=False, unique=True)
    class_name = Column(String(256))
    course_code = Column(String(64))
    price = Column(BigInteger)  # tuition, cents
    registration_fee = Column(BigInteger)  # cents
    enrollment_start = Column(Date)
    enrollment_close = Column(Date)
    class_start_date = Column(Date)
    class_close_date = Column(Date)
    invoice_1_due_date = Column(Date)
    invoice_2_due_date = Column(Date)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    @validates("class_code")
    def _normalize_code(self, key, value):
        return value.strip().upper()

    @property
    def has_split_tuition(self) -> bool:
        return bool(self.price) and bool(self.registration_fee)

class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("student_id", "class_id", name="uq_enrollment_student_class"),)
    id = Column(String(36), primary_key=True, default=new_id)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False)
    class_id = Column(String(36), ForeignKey("classes.id"), nullable=False)
    enrollment_status = Column(String(32), nullable=False, default="registered")
    onboarding_complete = Column(Boolean, nullable=False, default=False)
    enrolled_at = Column(DateTime(timezone=True), default=utcnow)

class WaitlistEntry(Base):
    __tablename__ = "waitlist"
    __table_args__ = (UniqueConstraint("student_id", "course_code", name="uq_waitlist_student_course"),)
    id = Column(String(36), primary_key=True, default=new_id)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False)
    course_code = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @validates("course_code")
    def _normalize_code(self, key, value):
        return value.strip().upper()

class Payment(Base):
    __tablename__ = "payments"
    id = Column(String(36), primary_key=True, default=new_id)
    enrollment_id = Column(String(36), ForeignKey("enrollments.id"), nullable=False)
    payment_intent_id = Column(String(128), nullable=False, unique=True)
    amount_cents = Column(BigInteger, nullable=False)
    receipt_url = Column(String(512))
    payment_status = Column(String(16), nullable=False, default="paid")
    paid_at = Column(DateTime(timezone=True), default=utcnow)

class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String(36), primary_key=True, default=new_id)
    invoice_number = Column(Integer, unique=True)
    student_id = Column(String(36), ForeignKey("students.id"))
    class_id = Column(String(36), ForeignKey("classes.id"))
    payment_intent_id = Column(String(128), unique=True)
    transaction_type = Column(String(32))  # registration_fee|tuition|tuition_a|tuition_b
    quantity = Column(Numeric(10, 2), nullable=False, default=Decimal("1"))
    amount_due = Column(BigInteger, nullable=False, default=0)
    transaction_status = Column(String(16), nullable=False, default="paid")
    due_date = Column(Date)
    payout_id = Column(String(64), index=True)
    payout_date = Column(Date)
    reconciled = Column(Boolean, nullable=False, default=False, index=True)
    reconciliation_date = Column(DateTime(timezone=True))
    downloaded = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (UniqueConstraint("payment_intent_id", "invoice_sequence", name="uq_invoice_installment"),)
    id = Column(String(36), primary_key=True, default=new_id)
    invoice_number = Column(Integer, nullable=False, unique=True)
    customer_id = Column(String(64))
    customer_email = Column(String(320))
    invoice_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    item = Column(String(256), nullable=False)
    memo = Column(Text)
    item_amount = Column(BigInteger, nullable=False)
    item_quantity = Column(Numeric(10, 2), nullable=False, default=Decimal("1"))
    item_rate = Column(Numeric(10, 2), nullable=False, default=Decimal("0.5"))
    invoice_sequence = Column(Integer, nullable=False)
    category = Column(String(64))
    subcategory = Column(String(64))
    transaction_id = Column(String(36), ForeignKey("transactions.id"))
    payment_intent_id = Column(String(128))
    class_id = Column(String(36), ForeignKey("classes.id"))
    downloaded = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

class InvoiceNumberClaim(Base):
    """One row per number handed out, whichever table ends up using it."""
    __tablename__ = "invoice_number_claims"
    invoice_number = Column(Integer, primary_key=True, autoincrement=False)
    owner_type = Column(String(16), nullable=False)  # transaction|invoice
    payment_intent_id = Column(String(128))
    claimed_at = Column(DateTime(timezone=True), default=utcnow)

class Admin(Base):
    __tablename__ = "admins"
    id = Column(String(36), primary_key=True, default=new_id)
    display_name = Column(String(128), nullable=False)

class AuditLogEntry(Base):
    __tablename__ = "audit_logs"
    id = Column(String(36), primary_key=True, default=new_id)
    admin_user_id = Column(String(36))  # null means system-originated
    reference_type = Column(String(16), nullable=False, index=True)
    reference_id = Column(String(36), nullable=False, index=True)
    action_type = Column(String(32), nullable=False)
    field_name = Column(String(64))
    old_value = Column(Text)
    new_value = Column(Text)
    batch_id = Column(String(36), index=True)
    student_id = Column(String(36))
    class_id = Column(String(36))
    amount = Column(BigInteger)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)

class FollowUp(Base):
    __tablename__ = "follow_ups"
    id = Column(String(36), primary_key=True, default=new_id)
    kind = Column(String(48), nullable=False)
    payment_intent_id = Column(String(128), index=True)
    reference_type = Column(String(16))
    reference_id = Column(String(36))
    detail = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="open", index=True)  # open|resolved
    created_at = Column(DateTime(timezone=True), default=utcnow)
    resolved_at = Column(DateTime(timezone=True))

@event.listens_for(AuditLogEntry, "before_update")
def _audit_rows_are_immutable(mapper, connection, target):
    raise ValueError("audit log entries are write-once")

@event.listens_for(AuditLogEntry, "before_delete")
def _audit_rows_are_undeletable(mapper, connection, target):
    raise ValueError("audit log entries are write-once")

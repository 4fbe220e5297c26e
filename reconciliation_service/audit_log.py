"""
Append-only, field-level audit log.

Rows are written once and never touched again (see the mapper guards in
models.py). Multi-field edits share a batch id so a display layer can group
them without losing per-field granularity. format_message renders a row as
the sentence shown on detail pages.
"""
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import aliased
from reconciliation_service.db import storage_errors
from reconciliation_service.models import Admin, AuditLogEntry, ClassOffering, Student
from reconciliation_service.money import format_currency, format_short_date

logger = logging.getLogger(__name__)

class ActionType(str, Enum):
    DETAIL_UPDATED = "detail_updated"
    CLASS_CREATED = "class_created"
    CLASS_DELETED = "class_deleted"
    STUDENT_ADDED = "student_added"
    STUDENT_REMOVED = "student_removed"
    STUDENT_REGISTERED = "student_registered"
    PAYMENT_SUCCESS = "payment_success"
    INVOICE_SCHEDULED = "invoice_scheduled"
    TRANSACTION_RECONCILED = "transaction_reconciled"
    TRANSACTION_UNRECONCILED = "transaction_unreconciled"
    PAYOUT_RECORDED = "payout_recorded"
    TRANSACTION_EXPORTED = "transaction_exported"
    INVOICE_EXPORTED = "invoice_exported"
    WAITLIST_JOINED = "waitlist_joined"

FIELD_LABELS: Dict[str, Dict[str, str]] = {
    "program": {
        "name": "Program Name",
        "price": "Price",
        "registration_fee": "Registration Fee",
    },
    "course": {
        "name": "Course Name",
        "price": "Price",
        "registration_fee": "Registration Fee",
    },
    "class": {
        "name": "Class Name",
        "class_name": "Class Name",
        "start_date": "Start Date",
        "class_start_date": "Start Date",
        "end_date": "End Date",
        "class_close_date": "End Date",
        "location": "Location",
        "enrollment_start": "Enrollment Start",
        "enrollment_close": "Enrollment Close",
        "is_online": "Online Class",
        "length_of_class": "Length of Class",
        "certification_length": "Cert. Length",
        "graduation_rate": "Graduation Rate",
        "registration_limit": "Registration Limit",
        "price": "Price",
        "registration_fee": "Registration Fee",
    },
    "student": {
        "first_name": "First Name",
        "last_name": "Last Name",
        "email": "Email",
        "phone": "Phone Number",
        "t_shirt_size": "T-Shirt Size",
        "emergency_contact_name": "Emergency Contact Name",
        "emergency_contact_phone": "Emergency Contact Phone",
        "has_required_info": "Has Required Info",
    },
    "transaction": {
        "reconciled": "Reconciled",
        "payout_id": "Payout",
        "downloaded": "Downloaded",
    },
}

@dataclass
class AuditLogRecord:
    """An audit row joined with the names needed to render it."""
    id: str
    action_type: str
    reference_type: str
    reference_id: str
    timestamp: datetime
    admin_user_id: Optional[str] = None
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    batch_id: Optional[str] = None
    amount: Optional[int] = None
    admin_display_name: Optional[str] = None
    student_first_name: Optional[str] = None
    student_last_name: Optional[str] = None
    student_email: Optional[str] = None
    class_code: Optional[str] = None

def field_label(reference_type: str, field_name: str) -> str:
    labels = FIELD_LABELS.get(reference_type, {})
    if field_name in labels:
        return labels[field_name]
    return " ".join(word[:1].upper() + word[1:] for word in field_name.split("_"))

def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

def format_timestamp(timestamp: datetime, now: Optional[datetime] = None) -> str:
    now = _as_utc(now or datetime.now(timezone.utc))
    seconds = int((now - _as_utc(timestamp)).total_seconds())
    if seconds < 5:
        return "just now"
    if seconds < 60:
        return f"{seconds} seconds ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    if days < 7:
        return f"{days} day{'s' if days != 1 else ''} ago"
    return format_short_date(_as_utc(timestamp))

def _actor_name(record: AuditLogRecord) -> str:
    if record.admin_user_id is None:
        return "System"
    return record.admin_display_name or "Unknown Admin"

def _student_label(record: AuditLogRecord) -> str:
    name = f"{record.student_first_name or ''} {record.student_last_name or ''}".strip()
    name = name or "Unknown Student"
    if record.student_email:
        return f"{name} ({record.student_email})"
    return name

def _format_detail_update(record: AuditLogRecord, actor: str) -> str:
    if not record.field_name:
        return f"{actor} updated this {record.reference_type}"
    label = field_label(record.reference_type, record.field_name)
    if record.old_value in (None, ""):
        return f'{actor} added {label}: "{record.new_value or ""}"'
    if record.new_value in (None, ""):
        return f"{actor} removed {label}"
    return f'{actor} updated the {label} from "{record.old_value}" to "{record.new_value}"'

def format_message(record: AuditLogRecord, now: Optional[datetime] = None) -> str:
    actor = _actor_name(record)
    action = record.action_type

    if action == ActionType.DETAIL_UPDATED:
        body = _format_detail_update(record, actor)
    elif action == ActionType.CLASS_CREATED:
        if record.reference_type in ("course", "program") and record.class_code:
            body = f"{actor} created Class ID {record.class_code}"
        else:
            body = f"{actor} created this class"
    elif action == ActionType.CLASS_DELETED:
        body = f"{actor} deleted this class"
    elif action == ActionType.STUDENT_ADDED:
        body = f"{actor} added {_student_label(record)} to this class"
    elif action == ActionType.STUDENT_REMOVED:
        body = f"{actor} removed {_student_label(record)} from this class"
    elif action == ActionType.STUDENT_REGISTERED:
        body = f"{_student_label(record)} registered for this class"
    elif action == ActionType.PAYMENT_SUCCESS:
        body = f"{_student_label(record)} paid {format_currency(record.amount or 0)}"
    elif action == ActionType.INVOICE_SCHEDULED:
        body = f"{actor} scheduled invoice #{record.new_value} for {format_currency(record.amount or 0)}"
    elif action == ActionType.TRANSACTION_RECONCILED:
        body = f"{actor} marked this transaction as reconciled"
    elif action == ActionType.TRANSACTION_UNRECONCILED:
        body = f"{actor} undid the reconciliation of this transaction"
    elif action == ActionType.PAYOUT_RECORDED:
        body = f"{actor} added this transaction to payout {record.new_value}"
    elif action == ActionType.TRANSACTION_EXPORTED:
        body = f"{actor} exported this transaction"
    elif action == ActionType.INVOICE_EXPORTED:
        body = f"{actor} exported this invoice"
    elif action == ActionType.WAITLIST_JOINED:
        body = f"{_student_label(record)} joined the waitlist for {record.new_value}"
    else:
        body = "Action performed"

    return f"{body} – {format_timestamp(record.timestamp, now)}"

def stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)

class AuditLogWriter:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        with storage_errors("audit append"):
            with self.session_factory() as db:
                db.add(entry)
                db.commit()
        logger.info("Audit entry written", extra={
            "action_type": entry.action_type,
            "reference_type": entry.reference_type,
            "reference_id": entry.reference_id,
        })
        return entry

    def append_batch(self, entries: Iterable[AuditLogEntry], db=None) -> Optional[str]:
        """
        Write every entry under one new batch id, all or nothing.

        With ``db`` the rows join the caller's unit of work and are committed
        together with the change they describe.
        """
        entries = list(entries)
        if not entries:
            return None
        batch_id = str(uuid.uuid4())
        for entry in entries:
            entry.batch_id = batch_id
        if db is not None:
            db.add_all(entries)
            return batch_id
        with storage_errors("audit batch append"):
            with self.session_factory() as session:
                session.add_all(entries)
                session.commit()
        logger.info("Audit batch written", extra={"batch_id": batch_id, "entries": len(entries)})
        return batch_id

    def record_changes(
        self,
        actor_id: Optional[str],
        reference_type: str,
        reference_id: str,
        before: Dict[str, Any],
        update: BaseModel,
        db=None,
    ) -> Optional[str]:
        """One detail_updated row per field present in the update whose value changed."""
        entries = []
        for field, new_value in update.model_dump(exclude_unset=True).items():
            old_value = before.get(field)
            if old_value == new_value:
                continue
            entries.append(AuditLogEntry(
                admin_user_id=actor_id,
                reference_type=reference_type,
                reference_id=reference_id,
                action_type=ActionType.DETAIL_UPDATED.value,
                field_name=field,
                old_value=stringify(old_value),
                new_value=stringify(new_value),
                student_id=reference_id if reference_type == "student" else None,
            ))
        return self.append_batch(entries, db=db)

class AuditLogReader:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def list_for_reference(self, reference_type: str, reference_id: str) -> List[AuditLogRecord]:
        admin = aliased(Admin)
        student = aliased(Student)
        klass = aliased(ClassOffering)
        stmt = (
            select(AuditLogEntry, admin.display_name, student.first_name, student.last_name,
                   student.email, klass.class_code)
            .outerjoin(admin, admin.id == AuditLogEntry.admin_user_id)
            .outerjoin(student, student.id == AuditLogEntry.student_id)
            .outerjoin(klass, klass.id == AuditLogEntry.class_id)
            .where(AuditLogEntry.reference_type == reference_type,
                   AuditLogEntry.reference_id == reference_id)
            .order_by(AuditLogEntry.timestamp.desc())
        )
        with storage_errors("audit read"):
            with self.session_factory() as db:
                rows = db.execute(stmt).all()

        return [
            AuditLogRecord(
                id=entry.id,
                action_type=entry.action_type,
                reference_type=entry.reference_type,
                reference_id=entry.reference_id,
                timestamp=entry.timestamp,
                admin_user_id=entry.admin_user_id,
                field_name=entry.field_name,
                old_value=entry.old_value,
                new_value=entry.new_value,
                batch_id=entry.batch_id,
                amount=entry.amount,
                admin_display_name=admin_name,
                student_first_name=first_name,
                student_last_name=last_name,
                student_email=email,
                class_code=class_code,
            )
            for entry, admin_name, first_name, last_name, email, class_code in rows
        ]

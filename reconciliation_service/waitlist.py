"""
Course waitlist. Signing up is the second way a student record comes into
being; (student, course code) is unique, so a repeat signup is reported as
already on the list.
"""
import logging
from typing import List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from common.error_handling import BusinessLogicError, ErrorCodes
from common.retry import STORAGE_RETRY_CONFIG, RetryConfig, retry_call
from common.schemas import WaitlistEntryView
from reconciliation_service.audit_log import ActionType, AuditLogWriter
from reconciliation_service.db import storage_errors
from reconciliation_service.identity import IdentityResolver
from reconciliation_service.models import AuditLogEntry, Student, WaitlistEntry

logger = logging.getLogger(__name__)

def split_full_name(full_name: str) -> Tuple[Optional[str], Optional[str]]:
    """First word is the first name, the rest is the last name."""
    parts = (full_name or "").split()
    if not parts:
        return None, None
    return parts[0], " ".join(parts[1:]) or None

def entry_view(entry: WaitlistEntry, student: Optional[Student] = None) -> WaitlistEntryView:
    view = WaitlistEntryView.model_validate(entry)
    if student is not None:
        view.first_name = student.first_name
        view.last_name = student.last_name
        view.email = student.email
    return view

class WaitlistRegister:
    def __init__(self, session_factory, identity: IdentityResolver, audit: AuditLogWriter,
                 retry_config: RetryConfig = STORAGE_RETRY_CONFIG):
        self.session_factory = session_factory
        self.identity = identity
        self.audit = audit
        self.retry_config = retry_config

    def join_waitlist(self, email: str, full_name: str, course_code: str) -> Tuple[WaitlistEntryView, bool]:
        """
        Put the student with this email on the waitlist for a course.

        Creates the student when the email is new and fills in a missing first
        or last name from ``full_name``. Returns the entry and whether it
        already existed.
        """
        first_name, last_name = split_full_name(full_name)
        if not first_name:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "Full name is required", field="full_name")
        code = (course_code or "").strip().upper()
        if not code:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "Course code is required", field="course_code")

        student = self.identity.resolve_student(email)
        student = retry_call(self._fill_missing_name, self.retry_config, student.id, first_name, last_name)
        entry, already = retry_call(self._add_entry, self.retry_config, student, code)
        return entry_view(entry, student), already

    def _fill_missing_name(self, student_id: str, first_name: str, last_name: Optional[str]) -> Student:
        with storage_errors("fill student name"):
            with self.session_factory() as db:
                student = db.get(Student, student_id)
                names = (student.first_name or first_name, student.last_name or last_name)
                if names == (student.first_name, student.last_name):
                    return student
                student.first_name, student.last_name = names
                student.full_name = f"{student.first_name or ''} {student.last_name or ''}".strip() or None
                db.commit()
        logger.info("Student name filled from waitlist signup", extra={"student_id": student_id})
        return student

    def _add_entry(self, student: Student, course_code: str) -> Tuple[WaitlistEntry, bool]:
        stmt = select(WaitlistEntry).where(
            WaitlistEntry.student_id == student.id, WaitlistEntry.course_code == course_code,
        )
        with storage_errors("join waitlist"):
            with self.session_factory() as db:
                existing = db.execute(stmt).scalar_one_or_none()
                if existing:
                    logger.info("Student already on waitlist", extra={
                        "student_id": student.id, "course_code": course_code,
                    })
                    return existing, True

                entry = WaitlistEntry(student_id=student.id, course_code=course_code)
                db.add(entry)
                self.audit.append_batch([AuditLogEntry(
                    admin_user_id=None,
                    reference_type="course",
                    reference_id=course_code,
                    action_type=ActionType.WAITLIST_JOINED.value,
                    field_name="course_code",
                    new_value=course_code,
                    student_id=student.id,
                )], db=db)
                try:
                    db.commit()
                except IntegrityError:
                    # a concurrent signup inserted it first
                    db.rollback()
                    return db.execute(stmt).scalar_one(), True

        logger.info("Student joined waitlist", extra={"student_id": student.id, "course_code": course_code})
        return entry, False

    def list_for_course(self, course_code: str) -> List[WaitlistEntryView]:
        """Entries for a course with the student's name and email, newest first."""
        code = (course_code or "").strip().upper()
        with storage_errors("list waitlist"):
            with self.session_factory() as db:
                rows = db.execute(
                    select(WaitlistEntry, Student)
                    .join(Student, Student.id == WaitlistEntry.student_id)
                    .where(WaitlistEntry.course_code == code)
                    .order_by(WaitlistEntry.created_at.desc())
                ).all()
        return [entry_view(entry, student) for entry, student in rows]

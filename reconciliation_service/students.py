import logging
from typing import Optional, Tuple
from common.error_handling import NotFoundError
from common.schemas import StudentUpdate
from reconciliation_service.audit_log import AuditLogWriter
from reconciliation_service.db import storage_errors
from reconciliation_service.models import Student

logger = logging.getLogger(__name__)

class StudentEditor:
    """Profile edits; only fields present in the update are written and audited."""

    def __init__(self, session_factory, audit: AuditLogWriter):
        self.session_factory = session_factory
        self.audit = audit

    def update_student(self, student_id: str, update: StudentUpdate, actor_id: str) -> Tuple[Student, Optional[str]]:
        changes = update.model_dump(exclude_unset=True)
        with storage_errors("update student"):
            with self.session_factory() as db:
                student = db.get(Student, student_id)
                if not student:
                    raise NotFoundError(f"Student not found: {student_id}", context={"student_id": student_id})

                before = {name: getattr(student, name) for name in changes}
                batch_id = self.audit.record_changes(actor_id, "student", student.id, before, update, db=db)
                for name, value in changes.items():
                    setattr(student, name, value)
                if "first_name" in changes or "last_name" in changes:
                    student.full_name = f"{student.first_name or ''} {student.last_name or ''}".strip() or None
                db.commit()

        logger.info("Student updated", extra={
            "student_id": student_id, "fields": sorted(changes), "batch_id": batch_id,
        })
        return student, batch_id

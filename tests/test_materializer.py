import unittest
from datetime import date
from unittest import mock
from sqlalchemy import func, select
from common.error_handling import ConflictAlreadyProcessed, NotFoundError
from common.schemas import PaymentSucceededEvent
from reconciliation_service.models import (
    AuditLogEntry, Enrollment, FollowUp, Invoice, Payment, Student, Transaction,
)
from service_fixtures import make_container, seed_class

def event(**overrides):
    values = {
        "payment_intent_id": "pi_001",
        "amount": 10000,
        "email": "a@b.com",
        "class_code": "CCT-001",
    }
    values.update(overrides)
    return PaymentSucceededEvent(**values)

class MaterializerTestCase(unittest.TestCase):

    def setUp(self):
        self.container = make_container()
        self.materializer = self.container.materializer

    def count(self, model):
        with self.container.session_factory() as db:
            return db.execute(select(func.count()).select_from(model)).scalar()

    def rows(self, model):
        with self.container.session_factory() as db:
            return list(db.execute(select(model)).scalars())

class TestMaterializePayment(MaterializerTestCase):
    """One payment event becomes exactly one student, enrollment and payment"""

    def test_first_delivery_creates_records(self):
        klass = seed_class(self.container.session_factory)
        result = self.materializer.materialize_payment(event())

        self.assertEqual(result.status, "processed")
        self.assertEqual(result.student.email, "a@b.com")
        self.assertEqual(result.enrollment.class_id, klass.id)
        self.assertEqual(result.enrollment.enrollment_status, "registered")
        self.assertFalse(result.enrollment.onboarding_complete)
        self.assertEqual(result.payment.amount_cents, 10000)
        self.assertEqual(result.payment.payment_status, "paid")
        self.assertEqual(result.transaction.amount_due, 10000)
        self.assertEqual(result.transaction.transaction_type, "tuition")
        self.assertEqual(result.transaction.invoice_number, 100001)
        self.assertEqual(result.invoices, [])

    def test_redelivery_changes_nothing(self):
        seed_class(self.container.session_factory)
        first = self.materializer.materialize_payment(event())
        audit_rows = self.count(AuditLogEntry)

        second = self.materializer.materialize_payment(event())

        self.assertTrue(second.already_processed)
        self.assertEqual(second.status, "already_processed")
        self.assertEqual(second.payment.id, first.payment.id)
        self.assertEqual(second.enrollment.id, first.enrollment.id)
        self.assertEqual(second.student.id, first.student.id)
        self.assertEqual(self.count(Student), 1)
        self.assertEqual(self.count(Enrollment), 1)
        self.assertEqual(self.count(Payment), 1)
        self.assertEqual(self.count(Transaction), 1)
        self.assertEqual(self.count(AuditLogEntry), audit_rows)

    def test_duplicate_payment_insert_raises_conflict(self):
        klass = seed_class(self.container.session_factory)
        result = self.materializer.materialize_payment(event())
        with self.assertRaises(ConflictAlreadyProcessed) as ctx:
            self.materializer.insert_payment(result.enrollment, klass, event())
        self.assertEqual(ctx.exception.key, "pi_001")
        self.assertEqual(ctx.exception.existing_id, result.payment.id)

    def test_second_payment_reuses_enrollment(self):
        seed_class(self.container.session_factory)
        first = self.materializer.materialize_payment(event())
        second = self.materializer.materialize_payment(event(payment_intent_id="pi_002", amount=5000))
        self.assertFalse(second.already_processed)
        self.assertEqual(second.enrollment.id, first.enrollment.id)
        self.assertEqual(self.count(Payment), 2)
        self.assertEqual(second.transaction.invoice_number, 100002)

    def test_unknown_class_is_fatal_and_writes_no_payment(self):
        with self.assertRaises(NotFoundError):
            self.materializer.materialize_payment(event(class_code="NOPE-1"))
        self.assertEqual(self.count(Payment), 0)
        self.assertEqual(self.count(Enrollment), 0)

    def test_system_audit_rows_are_written(self):
        klass = seed_class(self.container.session_factory)
        result = self.materializer.materialize_payment(event())

        entries = self.rows(AuditLogEntry)
        by_action = {entry.action_type: entry for entry in entries}
        self.assertEqual(set(by_action), {"student_registered", "payment_success"})
        self.assertEqual(by_action["payment_success"].amount, 10000)
        self.assertEqual(by_action["payment_success"].student_id, result.student.id)
        self.assertEqual(by_action["student_registered"].class_id, klass.id)
        self.assertTrue(all(entry.admin_user_id is None for entry in entries))
        self.assertEqual(len({entry.batch_id for entry in entries}), 1)

    def test_audit_failure_does_not_lose_payment(self):
        seed_class(self.container.session_factory)
        with mock.patch.object(self.container.audit, "append_batch", side_effect=RuntimeError("disk full")):
            result = self.materializer.materialize_payment(event())

        self.assertEqual(result.status, "partial")
        self.assertEqual(result.partial_failures, ["audit_failed"])
        self.assertEqual(self.count(Payment), 1)
        [follow_up] = self.rows(FollowUp)
        self.assertEqual(follow_up.kind, "audit_failed")
        self.assertEqual(follow_up.payment_intent_id, "pi_001")
        self.assertEqual(follow_up.status, "open")

class TestRegistrationFeePayments(MaterializerTestCase):
    """A registration-fee payment schedules the tuition as two invoices"""

    def test_invoices_scheduled_for_split_tuition_class(self):
        seed_class(self.container.session_factory, price=20000, registration_fee=5000,
                   class_start_date=date(2025, 6, 1))
        result = self.materializer.materialize_payment(event(amount=5000))

        self.assertEqual(result.status, "processed")
        self.assertEqual(result.transaction.transaction_type, "registration_fee")
        self.assertEqual([i.invoice_sequence for i in result.invoices], [1, 2])
        self.assertEqual(sum(i.item_amount for i in result.invoices), 20000)
        self.assertEqual([i.due_date for i in result.invoices], [date(2025, 5, 11), date(2025, 6, 8)])
        self.assertTrue(all(i.transaction_id == result.transaction.id for i in result.invoices))
        self.assertTrue(all(i.customer_id == "cus_0001" for i in result.invoices))

    def test_redelivery_does_not_schedule_again(self):
        seed_class(self.container.session_factory, price=20000, registration_fee=5000,
                   class_start_date=date(2025, 6, 1))
        first = self.materializer.materialize_payment(event(amount=5000))
        second = self.materializer.materialize_payment(event(amount=5000))
        self.assertEqual([i.id for i in second.invoices], [i.id for i in first.invoices])
        self.assertEqual(self.count(Invoice), 2)

    def test_scheduler_failure_is_partial_success(self):
        seed_class(self.container.session_factory, price=20000, registration_fee=5000,
                   class_start_date=date(2025, 6, 1))
        with mock.patch.object(self.container.invoices, "schedule_follow_up_invoices",
                               side_effect=RuntimeError("accounting offline")):
            result = self.materializer.materialize_payment(event(amount=5000))

        self.assertEqual(result.status, "partial")
        self.assertIn("invoice_scheduling_failed", result.partial_failures)
        self.assertEqual(self.count(Payment), 1)
        self.assertEqual([f.kind for f in self.rows(FollowUp)], ["invoice_scheduling_failed"])

    def store_payment_only(self, payment_event):
        """Leave the state a crash right after the payment commit would leave."""
        student = self.container.identity.resolve_student(payment_event.email)
        klass = self.container.identity.resolve_class_by_code(payment_event.class_code)
        enrollment = self.materializer.upsert_enrollment(student.id, klass.id)
        self.materializer.insert_payment(enrollment, klass, payment_event)

    def test_redelivery_completes_steps_skipped_by_a_crash(self):
        seed_class(self.container.session_factory, price=20000, registration_fee=5000,
                   class_start_date=date(2025, 6, 1))
        self.store_payment_only(event(amount=5000))

        result = self.materializer.materialize_payment(event(amount=5000))

        self.assertTrue(result.already_processed)
        self.assertEqual(result.status, "already_processed")
        self.assertEqual([i.invoice_sequence for i in result.invoices], [1, 2])
        self.assertEqual(self.count(Invoice), 2)
        actions = sorted(entry.action_type for entry in self.rows(AuditLogEntry))
        self.assertEqual(actions, ["invoice_scheduled", "invoice_scheduled", "payment_success", "student_registered"])

        again = self.materializer.materialize_payment(event(amount=5000))
        self.assertEqual([i.id for i in again.invoices], [i.id for i in result.invoices])
        self.assertEqual(self.count(AuditLogEntry), 4)

    def test_redelivery_leaves_recorded_follow_ups_to_operators(self):
        seed_class(self.container.session_factory, price=20000, registration_fee=5000,
                   class_start_date=date(2025, 6, 1))
        with mock.patch.object(self.container.invoices, "schedule_follow_up_invoices",
                               side_effect=RuntimeError("accounting offline")):
            self.materializer.materialize_payment(event(amount=5000))

        result = self.materializer.materialize_payment(event(amount=5000))

        self.assertEqual(result.status, "already_processed")
        self.assertEqual(result.invoices, [])
        self.assertEqual(self.count(Invoice), 0)
        self.assertEqual([f.kind for f in self.rows(FollowUp)], ["invoice_scheduling_failed"])

    def test_redelivery_reports_a_failed_catch_up(self):
        seed_class(self.container.session_factory, price=20000, registration_fee=5000,
                   class_start_date=date(2025, 6, 1))
        self.store_payment_only(event(amount=5000))
        with mock.patch.object(self.container.invoices, "schedule_follow_up_invoices",
                               side_effect=RuntimeError("accounting offline")):
            result = self.materializer.materialize_payment(event(amount=5000))

        self.assertTrue(result.already_processed)
        self.assertEqual(result.status, "partial")
        self.assertEqual(result.partial_failures, ["invoice_scheduling_failed"])

    def test_class_without_dates_is_flagged_for_manual_invoicing(self):
        seed_class(self.container.session_factory, price=20000, registration_fee=5000)
        result = self.materializer.materialize_payment(event(amount=5000))

        self.assertEqual(result.invoices, [])
        self.assertEqual(result.status, "partial")
        self.assertEqual(result.partial_failures, ["manual_invoicing_required"])
        self.assertEqual([f.kind for f in self.rows(FollowUp)], ["manual_invoicing_required"])
        self.assertEqual(self.count(Invoice), 0)

if __name__ == "__main__":
    unittest.main()

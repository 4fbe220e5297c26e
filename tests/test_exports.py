import csv
import io
import unittest
from datetime import date, datetime
from decimal import Decimal
from unittest import mock
from sqlalchemy import select
from reconciliation_service.exports import (
    INVOICE_HEADER, TRANSACTION_HEADER, ExportResult, NothingToExport, item_description,
)
from reconciliation_service.models import AuditLogEntry, FollowUp, Invoice, Student, Transaction
from service_fixtures import make_container, seed_class

def parse(result: ExportResult):
    return list(csv.reader(io.StringIO(result.csv_bytes.decode("utf-8"))))

class TestTransactionExport(unittest.TestCase):
    """Pending transactions are exported and marked exactly once"""

    def setUp(self):
        self.container = make_container()
        self.exports = self.container.exports
        self.klass = seed_class(self.container.session_factory, class_name="Truck, Class A",
                                class_start_date=date(2025, 6, 1))
        with self.container.session_factory() as db:
            student = Student(email="a@b.com", full_name='Ada "The Countess" Lovelace')
            db.add(student)
            db.flush()
            self.student_id = student.id
            db.commit()

    def add_transaction(self, invoice_number, amount_due, created_at, **fields):
        values = {
            "invoice_number": invoice_number,
            "student_id": self.student_id,
            "class_id": self.klass.id,
            "payment_intent_id": f"pi_{invoice_number}",
            "transaction_type": "registration_fee",
            "amount_due": amount_due,
            "due_date": created_at.date(),
            "created_at": created_at,
        }
        values.update(fields)
        transaction = Transaction(**values)
        with self.container.session_factory() as db:
            db.add(transaction)
            db.commit()
        return transaction

    def downloaded_flags(self):
        with self.container.session_factory() as db:
            return {t.invoice_number: t.downloaded for t in db.execute(select(Transaction)).scalars()}

    def test_cents_scenario_and_exactly_once(self):
        self.add_transaction(100001, 333, datetime(2025, 5, 2, 10))
        self.add_transaction(100002, 334, datetime(2025, 5, 9, 10))

        result = self.exports.export_pending()

        self.assertIsInstance(result, ExportResult)
        rows = parse(result)
        self.assertEqual(rows[0], TRANSACTION_HEADER)
        self.assertEqual([row[11] for row in rows[1:]], ["3.33", "3.34"])
        self.assertEqual(result.row_count, 2)
        self.assertEqual(self.downloaded_flags(), {100001: True, 100002: True})
        self.assertIsInstance(self.exports.export_pending(), NothingToExport)

    def test_row_layout(self):
        self.add_transaction(100001, 165000, datetime(2025, 5, 2, 10), quantity=Decimal("0.5"))
        [_, row] = parse(self.exports.export_pending())
        self.assertEqual(row, [
            "100001",
            'Ada "The Countess" Lovelace',
            "5/2/2025",
            "5/2/2025",
            "",
            "",
            "CCT-001",
            "Registration Fee",
            "Registration Fee for Truck, Class A starting on June 1, 2025",
            "1",
            "0.5",
            "1650.00",
            "N",
            "",
            "6/1/2025",
        ])

    def test_fields_with_commas_and_quotes_are_escaped(self):
        self.add_transaction(100001, 100, datetime(2025, 5, 2, 10))
        text = self.exports.export_pending().csv_bytes.decode("utf-8")
        self.assertIn('"Ada ""The Countess"" Lovelace"', text)
        self.assertIn('"Registration Fee for Truck, Class A starting on June 1, 2025"', text)

    def test_filename_covers_date_range(self):
        self.add_transaction(100001, 100, datetime(2025, 5, 2, 10))
        self.add_transaction(100002, 100, datetime(2025, 6, 30, 10))
        self.assertEqual(self.exports.export_pending().filename, "invoices-050225-063025.csv")

    def test_only_pending_rows_are_exported(self):
        self.add_transaction(100001, 100, datetime(2025, 5, 2, 10), downloaded=True)
        self.add_transaction(100002, 200, datetime(2025, 5, 3, 10))
        result = self.exports.export_pending()
        self.assertEqual([row[0] for row in parse(result)[1:]], ["100002"])

    def test_rows_added_after_export_wait_for_next_run(self):
        self.add_transaction(100001, 100, datetime(2025, 5, 2, 10))
        first = self.exports.export_pending()
        self.add_transaction(100002, 200, datetime(2025, 5, 3, 10))

        self.assertEqual(self.downloaded_flags(), {100001: True, 100002: False})
        second = self.exports.export_pending()
        self.assertEqual([row[0] for row in parse(second)[1:]], ["100002"])
        self.assertNotEqual(first.exported_ids, second.exported_ids)

    def test_each_exported_row_is_audited(self):
        first = self.add_transaction(100001, 100, datetime(2025, 5, 2, 10))
        self.exports.export_pending(actor_id="admin-1")
        with self.container.session_factory() as db:
            [entry] = db.execute(select(AuditLogEntry)).scalars().all()
        self.assertEqual(entry.action_type, "transaction_exported")
        self.assertEqual(entry.reference_id, first.id)
        self.assertEqual(entry.admin_user_id, "admin-1")

    def test_audit_failure_after_commit_keeps_export(self):
        self.add_transaction(100001, 100, datetime(2025, 5, 2, 10))
        with mock.patch.object(self.container.audit, "append_batch", side_effect=RuntimeError("down")):
            result = self.exports.export_pending()
        self.assertIsInstance(result, ExportResult)
        self.assertEqual(self.downloaded_flags(), {100001: True})
        with self.container.session_factory() as db:
            [follow_up] = db.execute(select(FollowUp)).scalars().all()
        self.assertEqual(follow_up.kind, "export_audit_failed")

    def test_item_descriptions(self):
        self.assertEqual(item_description("tuition_a", "Truck", date(2025, 6, 1)),
                         "First payment for Truck starting on June 1, 2025")
        self.assertEqual(item_description("tuition_b", None, None), "Final payment")
        self.assertEqual(item_description("tuition", "Truck", None), "Tuition for Truck")

class TestInvoiceExport(unittest.TestCase):

    def setUp(self):
        self.container = make_container()
        self.exports = self.container.exports

    def test_nothing_to_export(self):
        result = self.exports.export_pending_invoices()
        self.assertIsInstance(result, NothingToExport)
        self.assertEqual(result.message, "No new invoices to download")

    def test_scheduled_invoices_export_once(self):
        self.container.invoices.schedule_follow_up_invoices(
            "cus_1", 20001, "CCT-001", "CCT",
            class_start_date=date(2025, 6, 1), customer_email="a@b.com", payment_intent_id="pi_001",
        )
        result = self.exports.export_pending_invoices()
        rows = parse(result)
        self.assertEqual(rows[0], INVOICE_HEADER)
        self.assertEqual([row[0] for row in rows[1:]], ["100001", "100002"])
        self.assertEqual(rows[1][1:4], ["a@b.com", rows[1][2], "5/11/2025"])
        self.assertEqual(rows[2][3], "6/8/2025")
        self.assertEqual([row[5] for row in rows[1:]], ["CCT-001", "CCT-001"])
        self.assertEqual([row[6:9] for row in rows[1:]], [["1", "0.5", "100.00"], ["1", "0.5", "100.01"]])
        with self.container.session_factory() as db:
            self.assertTrue(all(i.downloaded for i in db.execute(select(Invoice)).scalars()))
        self.assertIsInstance(self.exports.export_pending_invoices(), NothingToExport)

if __name__ == "__main__":
    unittest.main()

import unittest
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy import select
from common.error_handling import NotFoundError
from common.schemas import TransactionView
from reconciliation_service.models import AuditLogEntry, Student, Transaction
from reconciliation_service.reconciliation import group_by_payout
from service_fixtures import make_container

def view(id, payout_id=None, payout_date=None, amount_due=1000, quantity=None, created_at=None):
    return TransactionView(
        id=id,
        payout_id=payout_id,
        payout_date=payout_date,
        amount_due=amount_due,
        quantity=quantity,
        created_at=created_at,
    )

class TestGroupByPayout(unittest.TestCase):
    """Pure grouping of transactions by payout batch"""

    def test_rows_without_payout_are_excluded(self):
        groups = group_by_payout([view("t1"), view("t2", payout_id="po_1")])
        self.assertEqual([g.payout_id for g in groups], ["po_1"])
        self.assertEqual([t.id for t in groups[0].transactions], ["t2"])

    def test_total_is_amount_times_quantity(self):
        groups = group_by_payout([
            view("t1", payout_id="po_1", amount_due=1000),
            view("t2", payout_id="po_1", amount_due=3000, quantity=Decimal("0.5")),
            view("t3", payout_id="po_1", amount_due=333, quantity=Decimal("0.5")),
        ])
        # 1000 + 1500 + 166.5 rounded half up
        self.assertEqual(groups[0].payout_total, 2667)

    def test_groups_newest_payout_first_undated_last(self):
        groups = group_by_payout([
            view("t1", payout_id="po_old", payout_date=date(2025, 1, 1)),
            view("t2", payout_id="po_undated"),
            view("t3", payout_id="po_new", payout_date=date(2025, 3, 1)),
        ])
        self.assertEqual([g.payout_id for g in groups], ["po_new", "po_old", "po_undated"])

    def test_members_newest_first(self):
        groups = group_by_payout([
            view("t1", payout_id="po_1", created_at=datetime(2025, 1, 1, 9)),
            view("t2", payout_id="po_1", created_at=datetime(2025, 1, 3, 9)),
            view("t3", payout_id="po_1", created_at=datetime(2025, 1, 2, 9)),
        ])
        self.assertEqual([t.id for t in groups[0].transactions], ["t2", "t3", "t1"])

    def test_empty_input(self):
        self.assertEqual(group_by_payout([]), [])

    def test_plain_mappings_and_rows_are_accepted(self):
        groups = group_by_payout([
            {"id": "t1", "payout_id": "po_1", "amount_due": 500},
            {"id": "t2", "amount_due": 900},
            Transaction(id="t3", payout_id="po_1", amount_due=250, reconciled=False),
        ])
        self.assertEqual([g.payout_id for g in groups], ["po_1"])
        self.assertEqual(groups[0].payout_total, 750)
        self.assertEqual({t.id for t in groups[0].transactions}, {"t1", "t3"})

class TestPayoutReporter(unittest.TestCase):
    """Reconciled flag toggles and payout assignment"""

    def setUp(self):
        self.container = make_container()
        self.reporter = self.container.payouts
        with self.container.session_factory() as db:
            student = Student(email="a@b.com", first_name="Ada", last_name="Lovelace")
            db.add(student)
            db.flush()
            self.transaction = Transaction(
                invoice_number=100001, student_id=student.id, payment_intent_id="pi_001", amount_due=5000,
            )
            db.add(self.transaction)
            db.add(Transaction(invoice_number=100002, payment_intent_id="pi_002", amount_due=2500))
            db.commit()

    def audit_rows(self):
        with self.container.session_factory() as db:
            return list(db.execute(select(AuditLogEntry).order_by(AuditLogEntry.timestamp)).scalars())

    def load(self, transaction_id):
        with self.container.session_factory() as db:
            return db.get(Transaction, transaction_id)

    def test_reconcile_then_undo_restores_state(self):
        before = self.load(self.transaction.id)
        self.reporter.reconcile(self.transaction.id, "admin-1")
        reconciled = self.load(self.transaction.id)
        self.assertTrue(reconciled.reconciled)
        self.assertIsNotNone(reconciled.reconciliation_date)

        self.reporter.undo_reconciliation(self.transaction.id, "admin-1")
        after = self.load(self.transaction.id)
        self.assertEqual(after.reconciled, before.reconciled)
        self.assertIsNone(after.reconciliation_date)

    def test_setting_same_value_is_a_no_op(self):
        _, changed = self.reporter.reconcile(self.transaction.id)
        self.assertTrue(changed)
        _, changed = self.reporter.reconcile(self.transaction.id)
        self.assertFalse(changed)
        _, changed = self.reporter.set_reconciled(self.transaction.id, True)
        self.assertFalse(changed)
        self.assertEqual([e.action_type for e in self.audit_rows()], ["transaction_reconciled"])

    def test_each_change_is_audited_with_actor(self):
        self.reporter.reconcile(self.transaction.id, "admin-1")
        self.reporter.undo_reconciliation(self.transaction.id, "admin-2")
        rows = self.audit_rows()
        self.assertEqual(
            sorted((e.action_type, e.admin_user_id, e.old_value, e.new_value) for e in rows),
            [("transaction_reconciled", "admin-1", "false", "true"),
             ("transaction_unreconciled", "admin-2", "true", "false")],
        )

    def test_unknown_transaction(self):
        with self.assertRaises(NotFoundError):
            self.reporter.reconcile("missing")

    def test_record_payout_and_group(self):
        self.reporter.record_payout("po_1", date(2025, 6, 15), ["pi_001", "pi_002"], "admin-1")
        [group] = self.reporter.payout_groups()
        self.assertEqual(group.payout_id, "po_1")
        self.assertEqual(group.payout_date, date(2025, 6, 15))
        self.assertEqual(group.payout_total, 7500)
        names = {t.payment_intent_id: t.student_name for t in group.transactions}
        self.assertEqual(names["pi_001"], "Ada Lovelace")
        self.assertIsNone(names["pi_002"])

    def test_record_payout_is_idempotent(self):
        self.reporter.record_payout("po_1", date(2025, 6, 15), ["pi_001"])
        self.reporter.record_payout("po_1", date(2025, 6, 15), ["pi_001"])
        self.assertEqual([e.action_type for e in self.audit_rows()], ["payout_recorded"])

    def test_record_payout_unknown_intent(self):
        with self.assertRaises(NotFoundError) as ctx:
            self.reporter.record_payout("po_1", date(2025, 6, 15), ["pi_001", "pi_404"])
        self.assertEqual(ctx.exception.context["payment_intent_ids"], ["pi_404"])
        self.assertIsNone(self.load(self.transaction.id).payout_id)

if __name__ == "__main__":
    unittest.main()

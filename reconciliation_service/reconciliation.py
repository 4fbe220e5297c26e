"""
Payout reconciliation: group paid-out transactions by payout batch and keep
their reconciled flag.
"""
import logging
from collections import OrderedDict
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple
from sqlalchemy import select
from common.error_handling import ErrorCodes, NotFoundError
from common.schemas import PayoutGroup, TransactionView
from reconciliation_service.audit_log import ActionType, AuditLogWriter, stringify
from reconciliation_service.db import storage_errors
from reconciliation_service.models import AuditLogEntry, ClassOffering, Student, Transaction, utcnow
from reconciliation_service.money import line_total, round_half_up

logger = logging.getLogger(__name__)

def group_by_payout(transactions: Iterable[TransactionView]) -> List[PayoutGroup]:
    """
    Group transactions by payout id. Rows without a payout id are skipped.

    Groups come newest payout first with undated payouts last; members are
    ordered newest first.
    """
    members = OrderedDict()
    for transaction in transactions:
        if not isinstance(transaction, TransactionView):
            transaction = TransactionView.model_validate(transaction)
        if not transaction.payout_id:
            continue
        members.setdefault(transaction.payout_id, []).append(transaction)

    groups = []
    for payout_id, rows in members.items():
        rows.sort(key=lambda t: (t.created_at is not None, t.created_at or datetime.min), reverse=True)
        total = sum((line_total(t.amount_due, t.quantity) for t in rows), Decimal(0))
        payout_date = next((t.payout_date for t in rows if t.payout_date), None)
        groups.append(PayoutGroup(
            payout_id=payout_id,
            payout_date=payout_date,
            payout_total=round_half_up(total),
            transactions=rows,
        ))

    groups.sort(key=lambda g: (g.payout_date is not None, g.payout_date or date.min), reverse=True)
    return groups

class PayoutReporter:
    def __init__(self, session_factory, audit: AuditLogWriter):
        self.session_factory = session_factory
        self.audit = audit

    def reconcile(self, transaction_id: str, actor_id: Optional[str] = None) -> Tuple[Transaction, bool]:
        return self.set_reconciled(transaction_id, True, actor_id)

    def undo_reconciliation(self, transaction_id: str, actor_id: Optional[str] = None) -> Tuple[Transaction, bool]:
        return self.set_reconciled(transaction_id, False, actor_id)

    def set_reconciled(self, transaction_id: str, reconciled: bool,
                       actor_id: Optional[str] = None) -> Tuple[Transaction, bool]:
        """Set the flag; returns (transaction, changed). Setting the current value changes nothing."""
        with storage_errors("set reconciled"):
            with self.session_factory() as db:
                transaction = db.get(Transaction, transaction_id)
                if not transaction:
                    raise NotFoundError(
                        f"Transaction not found: {transaction_id}",
                        code=ErrorCodes.TRANSACTION_NOT_FOUND,
                        context={"transaction_id": transaction_id},
                    )
                if transaction.reconciled == reconciled:
                    return transaction, False

                previous = transaction.reconciled
                transaction.reconciled = reconciled
                transaction.reconciliation_date = utcnow() if reconciled else None
                action = ActionType.TRANSACTION_RECONCILED if reconciled else ActionType.TRANSACTION_UNRECONCILED
                self.audit.append_batch([AuditLogEntry(
                    admin_user_id=actor_id,
                    reference_type="transaction",
                    reference_id=transaction.id,
                    action_type=action.value,
                    field_name="reconciled",
                    old_value=stringify(previous),
                    new_value=stringify(reconciled),
                    student_id=transaction.student_id,
                    class_id=transaction.class_id,
                    amount=transaction.amount_due,
                )], db=db)
                db.commit()

        logger.info("Reconciliation flag changed", extra={
            "transaction_id": transaction_id, "reconciled": reconciled, "actor_id": actor_id,
        })
        return transaction, True

    def record_payout(self, payout_id: str, payout_date: date, payment_intent_ids: List[str],
                      actor_id: Optional[str] = None) -> List[Transaction]:
        """Assign transactions, by payment intent, to a payout batch."""
        wanted = set(payment_intent_ids)
        with storage_errors("record payout"):
            with self.session_factory() as db:
                transactions = list(db.execute(
                    select(Transaction).where(Transaction.payment_intent_id.in_(wanted))
                ).scalars())
                missing = wanted - {t.payment_intent_id for t in transactions}
                if missing:
                    raise NotFoundError(
                        "No transaction for payment intents: " + ", ".join(sorted(missing)),
                        code=ErrorCodes.TRANSACTION_NOT_FOUND,
                        context={"payment_intent_ids": sorted(missing)},
                    )

                entries = []
                for transaction in transactions:
                    if transaction.payout_id == payout_id and transaction.payout_date == payout_date:
                        continue
                    entries.append(AuditLogEntry(
                        admin_user_id=actor_id,
                        reference_type="transaction",
                        reference_id=transaction.id,
                        action_type=ActionType.PAYOUT_RECORDED.value,
                        field_name="payout_id",
                        old_value=transaction.payout_id,
                        new_value=payout_id,
                        student_id=transaction.student_id,
                        class_id=transaction.class_id,
                        amount=transaction.amount_due,
                    ))
                    transaction.payout_id = payout_id
                    transaction.payout_date = payout_date
                self.audit.append_batch(entries, db=db)
                db.commit()

        logger.info("Payout recorded", extra={
            "payout_id": payout_id, "transactions": len(transactions), "changed": len(entries),
        })
        return transactions

    def payout_groups(self) -> List[PayoutGroup]:
        stmt = (
            select(Transaction, Student, ClassOffering.class_code)
            .outerjoin(Student, Student.id == Transaction.student_id)
            .outerjoin(ClassOffering, ClassOffering.id == Transaction.class_id)
            .where(Transaction.payout_id.isnot(None))
        )
        with storage_errors("load payouts"):
            with self.session_factory() as db:
                rows = db.execute(stmt).all()

        views = []
        for transaction, student, class_code in rows:
            view = TransactionView.model_validate(transaction)
            view.student_name = student.display_name if student else None
            view.class_code = class_code
            views.append(view)
        return group_by_payout(views)

"""
Exactly-once CSV exports for the accounting system.

Pending rows are read, rendered and marked downloaded inside one database
transaction, and only the ids captured by that read are marked. Rows committed
after the read stay pending for the next run.
"""
import csv
import io
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union
from sqlalchemy import select, update
from common.settings import Settings
from reconciliation_service.audit_log import ActionType, AuditLogWriter
from reconciliation_service.db import storage_errors
from reconciliation_service.follow_ups import EXPORT_AUDIT_FAILED, FollowUpRegister
from reconciliation_service.models import AuditLogEntry, ClassOffering, Invoice, Student, Transaction, utcnow
from reconciliation_service.money import (
    cents_to_dollars, format_date_mdy, format_date_mmddyy, format_long_date, format_quantity,
)

logger = logging.getLogger(__name__)

NOTHING_TO_EXPORT_MESSAGE = "No new invoices to download"

TRANSACTION_HEADER = [
    "InvoiceNo", "Customer", "InvoiceDate", "DueDate", "Terms", "Location", "Memo",
    "Item(Product/Service)", "ItemDescription", "ItemQuantity", "ItemRate", "ItemAmount",
    "Taxable", "TaxRate", "Service Date",
]

INVOICE_HEADER = [
    "InvoiceNo", "Customer", "InvoiceDate", "DueDate", "Item", "ItemDescription",
    "ItemQuantity", "ItemRate", "ItemAmount", "Taxable",
]

ITEM_TYPES = {
    "registration_fee": "Registration Fee",
    "tuition": "Tuition",
    "tuition_a": "Tuition",
    "tuition_b": "Tuition",
}

@dataclass
class ExportResult:
    csv_bytes: bytes
    filename: str
    exported_ids: List[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.exported_ids)

@dataclass
class NothingToExport:
    message: str = NOTHING_TO_EXPORT_MESSAGE

def item_description(transaction_type: Optional[str], class_name: Optional[str], class_start_date) -> str:
    if transaction_type == "tuition_a":
        description = "First payment"
    elif transaction_type == "tuition_b":
        description = "Final payment"
    else:
        description = ITEM_TYPES.get(transaction_type, "Registration Fee")
    if class_name:
        description += f" for {class_name}"
    if class_start_date:
        description += f" starting on {format_long_date(class_start_date)}"
    return description

def render_csv(header: List[str], rows: List[list]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")

def export_filename(prefix: str, earliest, latest) -> str:
    return f"{prefix}-{format_date_mmddyy(earliest)}-{format_date_mmddyy(latest)}.csv"

class ExportMarker:
    def __init__(self, session_factory, audit: AuditLogWriter, follow_ups: FollowUpRegister, settings: Settings):
        self.session_factory = session_factory
        self.audit = audit
        self.follow_ups = follow_ups
        self.settings = settings

    def export_pending(self, actor_id: Optional[str] = None) -> Union[ExportResult, NothingToExport]:
        """Export every transaction not yet downloaded and mark exactly those rows."""
        stmt = (
            select(Transaction, Student.full_name, ClassOffering)
            .outerjoin(Student, Student.id == Transaction.student_id)
            .outerjoin(ClassOffering, ClassOffering.id == Transaction.class_id)
            .where(Transaction.downloaded.is_(False))
            .order_by(Transaction.created_at, Transaction.invoice_number)
            .with_for_update(of=Transaction)
        )
        with storage_errors("export transactions"):
            with self.session_factory() as db:
                rows = db.execute(stmt).all()
                if not rows:
                    logger.info("No transactions pending export")
                    return NothingToExport()

                csv_rows = []
                for transaction, student_name, klass in rows:
                    class_name = klass.class_name if klass else None
                    class_start = klass.class_start_date if klass else None
                    csv_rows.append([
                        transaction.invoice_number,
                        student_name or "",
                        format_date_mdy(transaction.created_at),
                        format_date_mdy(transaction.due_date),
                        "",
                        "",
                        klass.class_code if klass else "",
                        ITEM_TYPES.get(transaction.transaction_type, "Registration Fee"),
                        item_description(transaction.transaction_type, class_name, class_start),
                        "1",
                        format_quantity(transaction.quantity),
                        cents_to_dollars(transaction.amount_due or 0),
                        "N",
                        "",
                        format_date_mdy(class_start),
                    ])

                ids = [transaction.id for transaction, _, _ in rows]
                dates = [transaction.created_at for transaction, _, _ in rows if transaction.created_at] or [utcnow()]
                db.execute(
                    update(Transaction).where(Transaction.id.in_(ids)).values(downloaded=True)
                )
                db.commit()

        result = ExportResult(
            csv_bytes=render_csv(TRANSACTION_HEADER, csv_rows),
            filename=export_filename(self.settings.export_filename_prefix, min(dates), max(dates)),
            exported_ids=ids,
        )
        logger.info("Transactions exported", extra={"rows": result.row_count, "export_filename": result.filename})
        self._audit_export(ActionType.TRANSACTION_EXPORTED, "transaction", ids, actor_id)
        return result

    def export_pending_invoices(self, actor_id: Optional[str] = None) -> Union[ExportResult, NothingToExport]:
        """Export every scheduled follow-up invoice not yet downloaded and mark exactly those rows."""
        stmt = (
            select(Invoice)
            .where(Invoice.downloaded.is_(False))
            .order_by(Invoice.invoice_number)
            .with_for_update()
        )
        with storage_errors("export invoices"):
            with self.session_factory() as db:
                invoices = list(db.execute(stmt).scalars())
                if not invoices:
                    logger.info("No invoices pending export")
                    return NothingToExport()

                csv_rows = [
                    [
                        invoice.invoice_number,
                        invoice.customer_email or "",
                        format_date_mdy(invoice.invoice_date),
                        format_date_mdy(invoice.due_date),
                        "Tuition",
                        invoice.subcategory or invoice.class_id or "",
                        format_quantity(invoice.item_quantity),
                        format_quantity(invoice.item_rate),
                        cents_to_dollars(invoice.item_amount),
                        "N",
                    ]
                    for invoice in invoices
                ]
                ids = [invoice.id for invoice in invoices]
                dates = [invoice.invoice_date for invoice in invoices]
                db.execute(update(Invoice).where(Invoice.id.in_(ids)).values(downloaded=True))
                db.commit()

        result = ExportResult(
            csv_bytes=render_csv(INVOICE_HEADER, csv_rows),
            filename=export_filename(f"{self.settings.export_filename_prefix}-installments", min(dates), max(dates)),
            exported_ids=ids,
        )
        logger.info("Invoices exported", extra={"rows": result.row_count, "export_filename": result.filename})
        self._audit_export(ActionType.INVOICE_EXPORTED, "invoice", ids, actor_id)
        return result

    def _audit_export(self, action: ActionType, reference_type: str, ids: List[str], actor_id: Optional[str]):
        # the rows are already marked; a lost audit batch is a follow-up, not a failed export
        try:
            self.audit.append_batch(
                AuditLogEntry(
                    admin_user_id=actor_id,
                    reference_type=reference_type,
                    reference_id=row_id,
                    action_type=action.value,
                    field_name="downloaded",
                    old_value="false",
                    new_value="true",
                )
                for row_id in ids
            )
        except Exception as e:
            message = f"{action.value} audit rows not written for {len(ids)} rows: {e}"
            logger.error(message)
            self.follow_ups.record(EXPORT_AUDIT_FAILED, message, reference_type=reference_type)

"""
Reconciliation Service

Turns signed payment gateway webhooks into students, enrollments, payments and
follow-up invoices, and serves the payout, export and audit operations built
on top of them.
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool
from common.documentation import create_custom_openapi
from common.error_handling import add_error_handlers
from common.schemas import (
    AuditMessage, FollowUpView, PayoutGroup, PayoutRequest, ReconcileRequest, ReconcileResponse,
    StudentUpdate, TransactionView, WaitlistEntryView, WaitlistRequest, WaitlistResponse, WebhookResponse,
)
from common.security import admin_id_from_header
from common.settings import settings as default_settings
from common.tracing import TraceIdFilter, tracing_middleware
from reconciliation_service.audit_log import format_message
from reconciliation_service.container import ServiceContainer
from reconciliation_service.exports import ExportResult
from reconciliation_service.models import Base

logging.basicConfig(
    level=default_settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - [%(trace_id)s] %(message)s",
)
for handler in logging.getLogger().handlers:
    handler.addFilter(TraceIdFilter())
logger = logging.getLogger(__name__)

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container

def admin_actor(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """Bearer admin JWT; its subject is recorded as the audit actor."""
    return admin_id_from_header(authorization, get_container(request).settings)

def export_response(result) -> Response:
    if isinstance(result, ExportResult):
        return Response(
            content=result.csv_bytes,
            media_type="text/csv",
            headers={
                "Content-Disposition": f'attachment; filename="{result.filename}"',
                "X-Exported-Rows": str(result.row_count),
            },
        )
    return JSONResponse({"success": False, "message": result.message, "count": 0})

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    container = container or ServiceContainer(default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if container.settings.create_tables:
            Base.metadata.create_all(bind=container.engine)
        logger.info(f"{container.settings.service_name} started")
        yield
        container.engine.dispose()

    app = FastAPI(title="Reconciliation Service", version="1.0.0", lifespan=lifespan)
    app.state.container = container
    app.middleware("http")(tracing_middleware(container.settings.service_name))
    add_error_handlers(app)

    @app.post("/webhooks/stripe", response_model=WebhookResponse, tags=["Webhooks"])
    async def stripe_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    ):
        """Signed gateway event. 503 responses are retryable; redelivery is safe."""
        payload = await request.body()
        return await run_in_threadpool(container.webhooks.handle, payload, stripe_signature)

    @app.post("/transactions/reconciliation", response_model=ReconcileResponse, tags=["Reconciliation"])
    def set_reconciliation(body: ReconcileRequest, actor_id: str = Depends(admin_actor)):
        transaction, changed = container.payouts.set_reconciled(body.transaction_id, body.reconciled, actor_id)
        return ReconcileResponse(transaction_id=transaction.id, reconciled=transaction.reconciled, changed=changed)

    @app.post("/payouts/{payout_id}", tags=["Reconciliation"])
    def record_payout(payout_id: str, body: PayoutRequest, actor_id: str = Depends(admin_actor)):
        transactions = container.payouts.record_payout(payout_id, body.payout_date, body.payment_intent_ids, actor_id)
        return {
            "success": True,
            "payout_id": payout_id,
            "transactions": [TransactionView.model_validate(t) for t in transactions],
        }

    @app.get("/payouts", response_model=List[PayoutGroup], tags=["Reconciliation"])
    def list_payouts(actor_id: str = Depends(admin_actor)):
        return container.payouts.payout_groups()

    @app.get("/exports/transactions", tags=["Exports"])
    def export_transactions(actor_id: str = Depends(admin_actor)):
        return export_response(container.exports.export_pending(actor_id))

    @app.get("/exports/invoices", tags=["Exports"])
    def export_invoices(actor_id: str = Depends(admin_actor)):
        return export_response(container.exports.export_pending_invoices(actor_id))

    @app.get("/follow-ups", response_model=List[FollowUpView], tags=["Operations"])
    def list_follow_ups(actor_id: str = Depends(admin_actor)):
        return [FollowUpView.model_validate(f) for f in container.follow_ups.list_open()]

    @app.post("/follow-ups/{follow_up_id}/resolve", response_model=FollowUpView, tags=["Operations"])
    def resolve_follow_up(follow_up_id: str, actor_id: str = Depends(admin_actor)):
        follow_up = container.follow_ups.resolve(follow_up_id)
        logger.info("Follow-up resolved", extra={"follow_up_id": follow_up_id, "actor_id": actor_id})
        return FollowUpView.model_validate(follow_up)

    @app.get("/logs/{reference_type}/{reference_id}", response_model=List[AuditMessage], tags=["Operations"])
    def list_logs(reference_type: str, reference_id: str, actor_id: str = Depends(admin_actor)):
        records = container.audit_reader.list_for_reference(reference_type, reference_id)
        return [
            AuditMessage(
                id=record.id,
                action_type=record.action_type,
                batch_id=record.batch_id,
                timestamp=record.timestamp,
                message=format_message(record),
            )
            for record in records
        ]

    @app.patch("/students/{student_id}", tags=["Operations"])
    def update_student(student_id: str, body: StudentUpdate, actor_id: str = Depends(admin_actor)):
        student, batch_id = container.students.update_student(student_id, body, actor_id)
        return {
            "success": True,
            "student_id": student.id,
            "batch_id": batch_id,
            "updated_fields": sorted(body.model_dump(exclude_unset=True)),
        }

    @app.post("/waitlist", response_model=WaitlistResponse, tags=["Waitlist"])
    def join_waitlist(body: WaitlistRequest):
        """Public signup; creates the student on first contact."""
        entry, already = container.waitlist.join_waitlist(body.email, body.full_name, body.course_code)
        message = "You are already on the waitlist for this course" if already else "Successfully added to waitlist"
        return WaitlistResponse(message=message, already_on_waitlist=already, waitlist_entry=entry)

    @app.get("/waitlist/{course_code}", response_model=List[WaitlistEntryView], tags=["Waitlist"])
    def list_waitlist(course_code: str, actor_id: str = Depends(admin_actor)):
        return container.waitlist.list_for_course(course_code)

    @app.get("/health", tags=["Operations"])
    def health():
        return {"ok": True, "service": container.settings.service_name}

    app.openapi = lambda: create_custom_openapi(
        app,
        title="Reconciliation Service",
        version="1.0.0",
        description="Payment event reconciliation: webhooks, payouts, exports and audit log",
    )
    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8010)

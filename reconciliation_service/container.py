from common.settings import Settings
from reconciliation_service.audit_log import AuditLogReader, AuditLogWriter
from reconciliation_service.db import create_engine_from_settings, create_session_factory
from reconciliation_service.exports import ExportMarker
from reconciliation_service.follow_ups import FollowUpRegister
from reconciliation_service.gateway import StripeGateway
from reconciliation_service.identity import IdentityResolver
from reconciliation_service.invoices import InvoiceScheduler
from reconciliation_service.materializer import PaymentMaterializer
from reconciliation_service.reconciliation import PayoutReporter
from reconciliation_service.students import StudentEditor
from reconciliation_service.waitlist import WaitlistRegister
from reconciliation_service.webhooks import WebhookGateway

class ServiceContainer:
    """Every component the HTTP layer needs, wired from one Settings object."""

    def __init__(self, settings: Settings, engine=None, gateway=None):
        self.settings = settings
        self.engine = engine if engine is not None else create_engine_from_settings(settings)
        self.session_factory = create_session_factory(self.engine)
        self.gateway = gateway if gateway is not None else StripeGateway(settings)

        self.audit = AuditLogWriter(self.session_factory)
        self.audit_reader = AuditLogReader(self.session_factory)
        self.follow_ups = FollowUpRegister(self.session_factory)
        self.identity = IdentityResolver(self.session_factory, self.gateway)
        self.invoices = InvoiceScheduler(self.session_factory, self.audit, self.follow_ups, settings)
        self.materializer = PaymentMaterializer(
            self.session_factory,
            self.identity,
            self.invoices,
            self.audit,
            self.follow_ups,
            invoice_number_start=settings.invoice_number_start,
        )
        self.webhooks = WebhookGateway(settings, self.materializer)
        self.payouts = PayoutReporter(self.session_factory, self.audit)
        self.exports = ExportMarker(self.session_factory, self.audit, self.follow_ups, settings)
        self.students = StudentEditor(self.session_factory, self.audit)
        self.waitlist = WaitlistRegister(self.session_factory, self.identity, self.audit)

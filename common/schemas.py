from datetime import date, datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional

class PaymentSucceededEvent(BaseModel):
    payment_intent_id: str
    amount: int = Field(ge=0)
    email: str
    class_code: str
    course_code: Optional[str] = None
    customer_id: Optional[str] = None
    receipt_url: Optional[str] = None
    event_id: Optional[str] = None
    event_type: str = "payment_intent.succeeded"

class ReconcileRequest(BaseModel):
    transaction_id: str
    reconciled: bool = True

class PayoutRequest(BaseModel):
    payout_date: date
    payment_intent_ids: List[str] = Field(min_length=1)

class StudentUpdate(BaseModel):
    """Only fields explicitly present in the request body are written."""
    model_config = ConfigDict(extra="forbid")

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    t_shirt_size: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    has_required_info: Optional[bool] = None

class TransactionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    invoice_number: Optional[int] = None
    student_id: Optional[str] = None
    class_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    transaction_type: Optional[str] = None
    quantity: Optional[Decimal] = None
    amount_due: Optional[int] = None
    transaction_status: Optional[str] = None
    due_date: Optional[date] = None
    payout_id: Optional[str] = None
    payout_date: Optional[date] = None
    reconciled: bool = False
    reconciliation_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    student_name: Optional[str] = None
    class_code: Optional[str] = None

class PayoutGroup(BaseModel):
    payout_id: str
    payout_date: Optional[date] = None
    payout_total: int
    transactions: List[TransactionView]

class WebhookResponse(BaseModel):
    status: Literal["processed", "already_processed", "partial", "ignored"]
    event_type: str
    payment_intent_id: Optional[str] = None
    student_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    payment_id: Optional[str] = None
    invoice_ids: List[str] = []
    failures: List[str] = []

class ReconcileResponse(BaseModel):
    success: bool = True
    transaction_id: str
    reconciled: bool
    changed: bool

class FollowUpView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: str
    payment_intent_id: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    detail: str
    status: str
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

class AuditMessage(BaseModel):
    id: str
    action_type: str
    batch_id: Optional[str] = None
    timestamp: datetime
    message: str

class WaitlistRequest(BaseModel):
    email: str = Field(min_length=3)
    full_name: str = Field(min_length=1)
    course_code: str = Field(min_length=1)

class WaitlistEntryView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    course_code: str
    created_at: Optional[datetime] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

class WaitlistResponse(BaseModel):
    success: bool = True
    message: str
    already_on_waitlist: bool
    waitlist_entry: WaitlistEntryView

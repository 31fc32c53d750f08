from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from models.common import PaymentStatus, ClientPaymentStanding, DeliveryStatus


class Payment(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    delivery_id: str
    client_id:   str
    amount:      float
    currency:    str = "PHP"
    status:      PaymentStatus = PaymentStatus.PENDING
    # Dates
    delivery_date: Optional[datetime] = None
    due_date:      datetime
    paid_at:       Optional[datetime] = None
    # PayMongo references
    payment_intent_id: Optional[str] = None
    client_key:        Optional[str] = None
    source_id:         Optional[str] = None
    source_type:       Optional[str] = None
    payment_link_id:   Optional[str] = None
    payment_link_url:  Optional[str] = None
    gateway_payment_id: Optional[str] = None
    # Settlement
    payment_method:  Optional[str]   = None
    transaction_fee: float           = 0.0
    net_amount:      Optional[float] = None
    failure_reason:  Optional[str]   = None
    # Cancellation / overdue
    cancelled_at:        Optional[datetime] = None
    cancellation_reason: Optional[str]      = None
    overdue_at:          Optional[datetime] = None
    is_legacy_payment: bool = False     # created by the reconciliation pass, no gateway intent
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentCreate(BaseModel):
    delivery_id: str
    amount:      float = Field(..., gt=0)
    currency:    Optional[str] = None


class PaymentProcess(BaseModel):
    payment_intent_id: str


class EwalletRedirect(BaseModel):
    success: str
    failed:  str


class EwalletRequest(BaseModel):
    payment_id:     str
    payment_method: str       # gcash | grab_pay | paymaya
    redirect:       EwalletRedirect


class StatusOverride(BaseModel):
    status: PaymentStatus
    notes:  Optional[str] = None


class PaymentView(BaseModel):
    """Billing line derived from a delivery, without any write."""
    delivery_id:     str
    client_id:       Optional[str] = None
    truck_id:        Optional[str] = None
    payment_id:      Optional[str] = None
    amount:          float
    currency:        str = "PHP"
    status:          PaymentStatus
    delivery_status: DeliveryStatus
    delivery_date:   Optional[datetime] = None
    due_date:        datetime


class ClientPaymentSummary(BaseModel):
    client_id:         str
    total_amount_due:  float = 0.0
    total_amount_paid: float = 0.0
    pending_payments:  int = 0
    overdue_payments:  int = 0
    paid_payments:     int = 0
    can_book_trucks:   bool = True
    payments:          list[PaymentView] = []


class ReconcileResult(BaseModel):
    client_id:       str
    payment_status:  ClientPaymentStanding
    can_book_trucks: bool
    overdue_count:   int
    newly_overdue:   int = 0

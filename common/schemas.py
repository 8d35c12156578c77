from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

class FeeSplit(BaseModel):
    commission: int
    processing_fee: int
    provider_amount: int

class CreatePaymentIntent(BaseModel):
    booking_id: str
    amount: int = Field(..., description="Gross amount in minor currency units")
    currency: str = "USD"

class PaymentIntentResponse(BaseModel):
    payment_id: str
    external_reference_id: str
    client_token: str
    amount: int
    currency: str
    split: FeeSplit

class RequestRefund(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)

class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)

class CreateOrder(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    currency: str = "USD"

class UpdateOrderStatus(BaseModel):
    status: Literal["shipped", "delivered", "cancelled"]
    tracking_number: Optional[str] = None

class CreateDispute(BaseModel):
    booking_id: str
    type: Literal["payment", "service", "cancellation", "no_show"]
    reason: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    evidence: Optional[Any] = None

class AddEvidence(BaseModel):
    evidence: Any

class ResolveDispute(BaseModel):
    outcome: Literal["under_review", "resolved", "rejected"]
    resolution: Optional[str] = None

class WebhookAck(BaseModel):
    status: Literal["applied", "duplicate", "ignored", "retry"]
    event_id: str
    detail: Optional[str] = None

class SecurityReport(BaseModel):
    total_alerts: int
    resolved_alerts: int
    critical_alerts: int
    alert_resolution_rate: float
    disputes: int
    resolved_disputes: int
    dispute_resolution_rate: float
    alerts_by_severity: Dict[str, int]

import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, BigInteger, Boolean, DateTime, Text, JSON, ForeignKey
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

def new_id() -> str:
    return uuid.uuid4().hex

def utcnow() -> datetime:
    # Naive UTC: MySQL DATETIME and SQLite both drop tzinfo
    return datetime.now(timezone.utc).replace(tzinfo=None)

class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class PaymentStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    # States that keep a booking from opening another authorization
    BLOCKING = (PENDING, PROCESSING, SUCCEEDED)
    ALL = (PENDING, PROCESSING, SUCCEEDED, FAILED, REFUNDED)

class OrderStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

class StockState:
    NONE = "none"
    APPLIED = "applied"
    RESTORED = "restored"

class DisputeStatus:
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"

    ACTIVE = (OPEN, UNDER_REVIEW)
    TERMINAL = (RESOLVED, REJECTED)

DISPUTE_TYPES = ("payment", "service", "cancellation", "no_show")

class Severity:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    ALL = (LOW, MEDIUM, HIGH, CRITICAL)

class Booking(Base):
    __tablename__ = "bookings"
    id = Column(String(64), primary_key=True, default=new_id)
    client_id = Column(String(64), nullable=False, index=True)
    provider_id = Column(String(64), nullable=False, index=True)
    service_id = Column(String(64), nullable=False)
    total_amount = Column(BigInteger, nullable=False, default=0)
    commission = Column(BigInteger, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(16), nullable=False, default=BookingStatus.PENDING)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def is_counterparty(self, actor_id: str) -> bool:
        return actor_id in (self.client_id, self.provider_id)

class Payment(Base):
    __tablename__ = "payments"
    id = Column(String(64), primary_key=True, default=new_id)
    booking_id = Column(String(64), ForeignKey("bookings.id"), nullable=True, index=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=True, unique=True)
    payer_id = Column(String(64), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), nullable=False, default=PaymentStatus.PENDING)
    external_reference_id = Column(String(128), nullable=False, unique=True)
    commission = Column(BigInteger, nullable=False)
    processing_fee = Column(BigInteger, nullable=False)
    provider_amount = Column(BigInteger, nullable=False)
    # Equals booking_id while the payment blocks the booking, NULL otherwise.
    # The unique index is what makes "one live payment per booking" atomic.
    active_booking_id = Column(String(64), nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    succeeded_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

class Product(Base):
    __tablename__ = "products"
    id = Column(String(64), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    price = Column(BigInteger, nullable=False)
    stock = Column(Integer, nullable=False, default=0)

class Order(Base):
    __tablename__ = "orders"
    id = Column(String(64), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    total_amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(16), nullable=False, default=OrderStatus.PENDING)
    stock_state = Column(String(16), nullable=False, default=StockState.NONE)
    tracking_number = Column(String(128), nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    items = relationship("OrderItem", back_populates="order", lazy="selectin")

class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(BigInteger, nullable=False)
    order = relationship("Order", back_populates="items")

class Dispute(Base):
    __tablename__ = "disputes"
    id = Column(String(64), primary_key=True, default=new_id)
    booking_id = Column(String(64), ForeignKey("bookings.id"), nullable=False, index=True)
    client_id = Column(String(64), nullable=False, index=True)
    provider_id = Column(String(64), nullable=False, index=True)
    created_by = Column(String(64), nullable=False)
    type = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=DisputeStatus.OPEN)
    reason = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    evidence = Column(JSON, nullable=False, default=list)
    resolution = Column(Text, nullable=True)
    resolver_id = Column(String(64), nullable=True)
    # "<booking_id>:<type>" while OPEN/UNDER_REVIEW, NULL once terminal
    active_key = Column(String(96), nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)

class FraudAlert(Base):
    __tablename__ = "fraud_alerts"
    id = Column(String(64), primary_key=True, default=new_id)
    subject_id = Column(String(64), nullable=False, index=True)
    subject_type = Column(String(16), nullable=False)  # 'user' or 'booking'
    severity = Column(String(16), nullable=False)
    signal_type = Column(String(64), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_by = Column(String(64), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

class PaymentEvent(Base):
    __tablename__ = "payment_events"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    external_event_id = Column(String(128), nullable=False, unique=True)
    event_type = Column(String(64), nullable=False)
    payload_digest = Column(String(64), nullable=False)
    received_at = Column(DateTime, nullable=False, default=utcnow)

"""
Per-entity data access.

Every state change goes through a conditional UPDATE ... WHERE status = <expected>
and reports whether a row actually moved, so two handlers racing on a stale read
cannot both win.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple
from sqlalchemy import select, update, func, or_
from sqlalchemy.orm import Session
from payment_service.models import (
    Booking, Payment, PaymentStatus, Product, Order, Dispute, DisputeStatus,
    FraudAlert, PaymentEvent,
)

class BookingRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, booking_id: str) -> Optional[Booking]:
        return self.db.get(Booking, booking_id)

    def update_totals(self, booking_id: str, total_amount: int, commission: int) -> None:
        self.db.execute(
            update(Booking).where(Booking.id == booking_id)
            .values(total_amount=total_amount, commission=commission)
            .execution_options(synchronize_session=False)
        )

    def set_status(self, booking_id: str, status: str, from_statuses: Sequence[str]) -> bool:
        result = self.db.execute(
            update(Booking).where(Booking.id == booking_id, Booking.status.in_(from_statuses))
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

class PaymentRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, payment: Payment) -> Payment:
        self.db.add(payment)
        self.db.flush()
        return payment

    def get(self, payment_id: str) -> Optional[Payment]:
        return self.db.get(Payment, payment_id)

    def get_by_reference(self, reference_id: str) -> Optional[Payment]:
        return self.db.scalars(select(Payment).where(Payment.external_reference_id == reference_id)).first()

    def find_blocking_for_booking(self, booking_id: str) -> Optional[Payment]:
        return self.db.scalars(
            select(Payment).where(Payment.booking_id == booking_id, Payment.status.in_(PaymentStatus.BLOCKING))
        ).first()

    def count_for_booking(self, booking_id: str) -> int:
        return self.db.scalar(select(func.count()).select_from(Payment).where(Payment.booking_id == booking_id))

    def transition(self, payment_id: str, from_status: str, to_status: str, now: datetime) -> bool:
        values = {"status": to_status, "updated_at": now}
        if to_status == PaymentStatus.SUCCEEDED:
            values["succeeded_at"] = now
        elif to_status == PaymentStatus.FAILED:
            values["failed_at"] = now
            values["active_booking_id"] = None
        elif to_status == PaymentStatus.REFUNDED:
            values["refunded_at"] = now
            values["active_booking_id"] = None
        result = self.db.execute(
            update(Payment).where(Payment.id == payment_id, Payment.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def count_failed_since(self, payer_id: str, since: datetime) -> int:
        return self.db.scalar(
            select(func.count()).select_from(Payment)
            .where(Payment.payer_id == payer_id, Payment.status == PaymentStatus.FAILED, Payment.failed_at >= since)
        )

    def _visible_to(self, user_id: str):
        return (
            select(Payment)
            .outerjoin(Booking, Payment.booking_id == Booking.id)
            .where(or_(Payment.payer_id == user_id, Booking.client_id == user_id, Booking.provider_id == user_id))
        )

    def list_for_user(self, user_id: str, status: Optional[str] = None, limit: int = 20,
                      offset: int = 0) -> Tuple[List[Payment], int]:
        query = self._visible_to(user_id)
        if status is not None:
            query = query.where(Payment.status == status)
        total = self.db.scalar(select(func.count()).select_from(query.subquery()))
        rows = self.db.scalars(
            query.order_by(Payment.created_at.desc(), Payment.id).limit(limit).offset(offset)
        ).all()
        return list(rows), total

    def statistics(self) -> dict:
        counts = dict(self.db.execute(
            select(Payment.status, func.count()).group_by(Payment.status)
        ).all())
        revenue, commission = self.db.execute(
            select(func.coalesce(func.sum(Payment.amount), 0), func.coalesce(func.sum(Payment.commission), 0))
            .where(Payment.status == PaymentStatus.SUCCEEDED)
        ).one()
        return {"counts": counts, "revenue": int(revenue), "commission": int(commission)}

class ProductRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_many(self, product_ids: Iterable[str]) -> dict:
        rows = self.db.scalars(select(Product).where(Product.id.in_(list(product_ids)))).all()
        return {p.id: p for p in rows}

    def adjust_stock(self, product_id: str, delta: int) -> None:
        self.db.execute(
            update(Product).where(Product.id == product_id)
            .values(stock=Product.stock + delta)
            .execution_options(synchronize_session=False)
        )

    def stock_of(self, product_id: str) -> int:
        return self.db.scalar(select(Product.stock).where(Product.id == product_id))

class OrderRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, order: Order) -> Order:
        self.db.add(order)
        self.db.flush()
        return order

    def get(self, order_id: str) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def list_for_user(self, user_id: str) -> List[Order]:
        return list(self.db.scalars(
            select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc())
        ).all())

    def set_status(self, order_id: str, status: str, from_statuses: Sequence[str], **values) -> bool:
        result = self.db.execute(
            update(Order).where(Order.id == order_id, Order.status.in_(from_statuses))
            .values(status=status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def move_stock_state(self, order_id: str, from_state: str, to_state: str) -> bool:
        result = self.db.execute(
            update(Order).where(Order.id == order_id, Order.stock_state == from_state)
            .values(stock_state=to_state)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def stock_state_of(self, order_id: str) -> Optional[str]:
        return self.db.scalar(select(Order.stock_state).where(Order.id == order_id))

class DisputeRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, dispute: Dispute) -> Dispute:
        self.db.add(dispute)
        self.db.flush()
        return dispute

    def get(self, dispute_id: str) -> Optional[Dispute]:
        return self.db.get(Dispute, dispute_id)

    def list_for_user(self, user_id: str, role: str) -> List[Dispute]:
        column = Dispute.client_id if role == "client" else Dispute.provider_id
        return list(self.db.scalars(
            select(Dispute).where(column == user_id).order_by(Dispute.created_at.desc())
        ).all())

    def find_active(self, booking_id: str, dispute_type: str) -> Optional[Dispute]:
        return self.db.scalars(
            select(Dispute).where(
                Dispute.booking_id == booking_id,
                Dispute.type == dispute_type,
                Dispute.status.in_(DisputeStatus.ACTIVE),
            )
        ).first()

    def has_terminal(self, booking_id: str) -> bool:
        return self.db.scalar(
            select(func.count()).select_from(Dispute)
            .where(Dispute.booking_id == booking_id, Dispute.status.in_(DisputeStatus.TERMINAL))
        ) > 0

    def count_for_booking_since(self, booking_id: str, since: datetime) -> int:
        return self.db.scalar(
            select(func.count()).select_from(Dispute)
            .where(Dispute.booking_id == booking_id, Dispute.created_at >= since)
        )

    def count_between(self, start: datetime, end: datetime, statuses: Sequence[str] = None) -> int:
        query = select(func.count()).select_from(Dispute).where(Dispute.created_at >= start, Dispute.created_at <= end)
        if statuses:
            query = query.where(Dispute.status.in_(statuses))
        return self.db.scalar(query)

    def transition(self, dispute_id: str, from_statuses: Sequence[str], to_status: str, now: datetime, **values) -> bool:
        values = {"status": to_status, "updated_at": now, **values}
        if to_status in DisputeStatus.TERMINAL:
            values["active_key"] = None
            values["resolved_at"] = now
        result = self.db.execute(
            update(Dispute).where(Dispute.id == dispute_id, Dispute.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def replace_evidence(self, dispute_id: str, evidence: list, now: datetime) -> bool:
        result = self.db.execute(
            update(Dispute).where(Dispute.id == dispute_id, Dispute.status == DisputeStatus.OPEN)
            .values(evidence=evidence, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

class FraudAlertRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, alert: FraudAlert) -> FraudAlert:
        self.db.add(alert)
        self.db.flush()
        return alert

    def get(self, alert_id: str) -> Optional[FraudAlert]:
        return self.db.get(FraudAlert, alert_id)

    def find_open(self, subject_id: str, signal_type: str) -> Optional[FraudAlert]:
        return self.db.scalars(
            select(FraudAlert).where(
                FraudAlert.subject_id == subject_id,
                FraudAlert.signal_type == signal_type,
                FraudAlert.is_resolved.is_(False),
            )
        ).first()

    def list(self, severity: Optional[str] = None, is_resolved: Optional[bool] = None) -> List[FraudAlert]:
        query = select(FraudAlert)
        if severity is not None:
            query = query.where(FraudAlert.severity == severity)
        if is_resolved is not None:
            query = query.where(FraudAlert.is_resolved.is_(is_resolved))
        return list(self.db.scalars(query.order_by(FraudAlert.created_at.desc())).all())

    def resolve(self, alert_id: str, resolver_id: str, now: datetime) -> bool:
        result = self.db.execute(
            update(FraudAlert).where(FraudAlert.id == alert_id, FraudAlert.is_resolved.is_(False))
            .values(is_resolved=True, resolved_by=resolver_id, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def count_between(self, start: datetime, end: datetime, **filters) -> int:
        query = select(func.count()).select_from(FraudAlert).where(FraudAlert.created_at >= start, FraudAlert.created_at <= end)
        for name, value in filters.items():
            query = query.where(getattr(FraudAlert, name) == value)
        return self.db.scalar(query)

class PaymentEventRepository:
    def __init__(self, db: Session):
        self.db = db

    def record(self, external_event_id: str, event_type: str, payload_digest: str, now: datetime) -> PaymentEvent:
        """Insert into the idempotency ledger; IntegrityError means already seen."""
        event = PaymentEvent(
            external_event_id=external_event_id,
            event_type=event_type,
            payload_digest=payload_digest,
            received_at=now,
        )
        self.db.add(event)
        self.db.flush()
        return event

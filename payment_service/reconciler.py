"""
Applies payment processor webhooks to local payment, booking and order state.

Delivery is at-least-once and unordered. Each event is first inserted into the
payment_events ledger inside the same transaction that applies its effects; the
ledger's unique key turns a redelivery into a no-op. Anything transient rolls
the whole transaction back, ledger row included, and asks the processor to
redeliver.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from common.error_handling import InvariantViolationError, ValidationError
from common.tracing import TraceSpan
from payment_service.fraud import FraudAlertEngine, FraudSignal, SignalKind
from payment_service.models import BookingStatus, OrderStatus, Payment, PaymentStatus, utcnow
from payment_service.orders import apply_order_stock, restore_order_stock
from payment_service.repositories import (
    BookingRepository, OrderRepository, PaymentEventRepository, PaymentRepository,
)
from payment_service.webhook_security import WebhookSignatureError, WebhookVerifier

logger = logging.getLogger(__name__)

class EventKind:
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"

EVENT_TYPES = {
    "payment.processing": EventKind.PROCESSING,
    "payment_intent.processing": EventKind.PROCESSING,
    "payment.succeeded": EventKind.SUCCEEDED,
    "payment_intent.succeeded": EventKind.SUCCEEDED,
    "payment.failed": EventKind.FAILED,
    "payment_intent.payment_failed": EventKind.FAILED,
    "payment.refunded": EventKind.REFUNDED,
    "charge.refunded": EventKind.REFUNDED,
}

# Event kind -> current payment status -> statuses to walk through.
# A processor may skip the processing notification, so PENDING reaches an
# outcome through PROCESSING within the same transaction.
TRANSITIONS = {
    EventKind.PROCESSING: {
        PaymentStatus.PENDING: [PaymentStatus.PROCESSING],
    },
    EventKind.SUCCEEDED: {
        PaymentStatus.PENDING: [PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED],
        PaymentStatus.PROCESSING: [PaymentStatus.SUCCEEDED],
    },
    EventKind.FAILED: {
        PaymentStatus.PENDING: [PaymentStatus.PROCESSING, PaymentStatus.FAILED],
        PaymentStatus.PROCESSING: [PaymentStatus.FAILED],
    },
    EventKind.REFUNDED: {
        PaymentStatus.SUCCEEDED: [PaymentStatus.REFUNDED],
    },
}

class AckStatus:
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    RETRY = "retry"

@dataclass(frozen=True)
class Ack:
    status: str
    event_id: str
    detail: Optional[str] = None

    @property
    def should_redeliver(self) -> bool:
        return self.status == AckStatus.RETRY

@dataclass
class _Outcome:
    ack: Ack
    notifications: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    signals: List[FraudSignal] = field(default_factory=list)

class _DuplicateDelivery(Exception):
    pass

class _RedeliverLater(Exception):
    pass

def extract_reference(payload: Dict[str, Any]) -> Optional[str]:
    """Find the processor's payment reference in an event's data block."""
    for key in ("referenceId", "reference_id", "payment_intent", "id"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    nested = payload.get("object")
    if isinstance(nested, dict):
        return extract_reference(nested)
    return None

class WebhookReconciler:
    def __init__(self, session_factory, verifier: WebhookVerifier, notifier, fraud_engine: FraudAlertEngine,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.verifier = verifier
        self.notifier = notifier
        self.fraud_engine = fraud_engine
        self.clock = clock

    def receive(self, raw_body: bytes, signature_header: Optional[str]) -> Ack:
        """Verify a signed delivery and hand it to handle_event."""
        try:
            self.verifier.verify(raw_body, signature_header)
        except WebhookSignatureError as e:
            raise ValidationError(f"Webhook rejected: {e}", field="signature")

        try:
            body = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(body, dict):
            raise ValidationError("Webhook body must be a JSON object")
        event_id, event_type, payload = body.get("id"), body.get("type"), body.get("data") or {}
        if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str):
            raise ValidationError("Webhook event needs string id and type")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook data must be a JSON object", field="data")
        return self.handle_event(event_id, event_type, payload, raw_body=raw_body)

    def handle_event(self, external_event_id: str, event_type: str, payload: Dict[str, Any],
                     raw_body: Optional[bytes] = None) -> Ack:
        digest_source = raw_body if raw_body is not None else json.dumps(payload, sort_keys=True).encode("utf-8")
        digest = hashlib.sha256(digest_source).hexdigest()
        kind = EVENT_TYPES.get(event_type)
        reference_id = extract_reference(payload)

        with TraceSpan("webhook.handle", event_id=external_event_id, event_type=event_type) as span:
            try:
                with self.session_factory() as db, db.begin():
                    now = self.clock()
                    try:
                        PaymentEventRepository(db).record(external_event_id, event_type, digest, now)
                    except IntegrityError:
                        raise _DuplicateDelivery()
                    outcome = self._dispatch(db, external_event_id, kind, reference_id, now)
            except _DuplicateDelivery:
                logger.info(f"Duplicate delivery of {external_event_id} acknowledged without effects")
                return Ack(AckStatus.DUPLICATE, external_event_id)
            except _RedeliverLater as e:
                logger.warning(f"Event {external_event_id} deferred for redelivery: {e}")
                return Ack(AckStatus.RETRY, external_event_id, str(e))
            except InvariantViolationError as e:
                logger.critical(f"Invariant violation while applying {external_event_id}: {e.message}",
                                extra={"context": e.context})
                self.fraud_engine.evaluate(FraudSignal(
                    kind=SignalKind.INVARIANT_VIOLATION,
                    payment_id=reference_id,
                    details={"event_id": external_event_id, "event_type": event_type, **e.context},
                ))
                raise
            except SQLAlchemyError as e:
                logger.error(f"Store error while applying {external_event_id}, asking for redelivery: {e}")
                return Ack(AckStatus.RETRY, external_event_id, "temporary storage failure")
            span.add_tag("ack", outcome.ack.status)

        self._after_commit(outcome)
        return outcome.ack

    def _dispatch(self, db, event_id: str, kind: Optional[str], reference_id: Optional[str], now: datetime) -> _Outcome:
        if kind is None:
            return _Outcome(Ack(AckStatus.IGNORED, event_id, "unhandled event type"))
        if reference_id is None:
            return _Outcome(Ack(AckStatus.IGNORED, event_id, "event carries no payment reference"))
        payment = PaymentRepository(db).get_by_reference(reference_id)
        if payment is None:
            # The intent may not be committed locally yet
            raise _RedeliverLater(f"unknown payment reference {reference_id}")
        return self._apply(db, event_id, payment, kind, now)

    def _apply(self, db, event_id: str, payment: Payment, kind: str, now: datetime) -> _Outcome:
        path = TRANSITIONS[kind].get(payment.status)
        if path is None:
            logger.info(f"Ignoring {kind} for payment {payment.id} in status {payment.status}")
            return _Outcome(Ack(AckStatus.IGNORED, event_id, f"invalid transition from {payment.status}"))

        payments = PaymentRepository(db)
        current = payment.status
        for target in path:
            if not payments.transition(payment.id, current, target, now):
                raise _RedeliverLater(f"payment {payment.id} changed concurrently")
            current = target

        outcome = _Outcome(Ack(AckStatus.APPLIED, event_id))
        notice = {
            "payment_id": payment.id,
            "booking_id": payment.booking_id,
            "order_id": payment.order_id,
            "payer_id": payment.payer_id,
            "amount": payment.amount,
            "currency": payment.currency,
        }
        if current == PaymentStatus.SUCCEEDED:
            self._on_succeeded(db, payment)
            outcome.notifications.append(("PaymentSucceeded", notice))
        elif current == PaymentStatus.FAILED:
            self._on_failed(db, payment)
            outcome.notifications.append(("PaymentFailed", notice))
            outcome.signals.append(FraudSignal(kind=SignalKind.PAYMENT_FAILED, actor_id=payment.payer_id,
                                               booking_id=payment.booking_id, payment_id=payment.id))
        elif current == PaymentStatus.REFUNDED:
            self._on_refunded(db, payment)
            outcome.notifications.append(("PaymentRefunded", notice))
            outcome.signals.append(FraudSignal(kind=SignalKind.PAYMENT_REFUNDED, actor_id=payment.payer_id,
                                               booking_id=payment.booking_id, payment_id=payment.id))
        logger.info(f"Payment {payment.id}: {payment.status} -> {current} via {event_id}")
        return outcome

    def _on_succeeded(self, db, payment: Payment) -> None:
        if payment.booking_id:
            if not BookingRepository(db).set_status(payment.booking_id, BookingStatus.CONFIRMED,
                                                    (BookingStatus.PENDING, BookingStatus.CONFIRMED)):
                raise InvariantViolationError(
                    f"Payment {payment.id} succeeded for booking {payment.booking_id} that is no longer open",
                    context={"booking_id": payment.booking_id},
                )
        if payment.order_id:
            order = OrderRepository(db).get(payment.order_id)
            if not OrderRepository(db).set_status(order.id, OrderStatus.PROCESSING, (OrderStatus.PENDING,)):
                raise InvariantViolationError(
                    f"Payment {payment.id} succeeded for order {order.id} in status {order.status}",
                    context={"order_id": order.id, "order_status": order.status},
                )
            apply_order_stock(db, order)

    def _on_failed(self, db, payment: Payment) -> None:
        if payment.booking_id:
            BookingRepository(db).set_status(payment.booking_id, BookingStatus.CANCELLED,
                                             (BookingStatus.PENDING, BookingStatus.CONFIRMED))
        if payment.order_id:
            OrderRepository(db).set_status(payment.order_id, OrderStatus.CANCELLED, (OrderStatus.PENDING,))

    def _on_refunded(self, db, payment: Payment) -> None:
        if payment.booking_id:
            BookingRepository(db).set_status(payment.booking_id, BookingStatus.CANCELLED,
                                             (BookingStatus.PENDING, BookingStatus.CONFIRMED))
        if payment.order_id:
            orders = OrderRepository(db)
            order = orders.get(payment.order_id)
            restore_order_stock(db, order)
            orders.set_status(order.id, OrderStatus.CANCELLED,
                              (OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED))

    def _after_commit(self, outcome: _Outcome) -> None:
        for event_type, payload in outcome.notifications:
            try:
                self.notifier.notify(event_type, payload)
            except Exception as e:
                logger.warning(f"Notification {event_type} failed: {e}")
        for signal in outcome.signals:
            self.fraud_engine.evaluate(signal)

"""
Payment intents for bookings, refund requests and payment queries.

The gateway call happens between two short store transactions and no lock or
transaction is held across it. If the gateway fails or times out nothing is
written; the unique active_booking_id index settles races between concurrent
requests for the same booking.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from sqlalchemy.exc import IntegrityError
from common.error_handling import AuthorizationError, ConflictError, NotFoundError, ValidationError
from common.security import Actor
from common.tracing import TraceSpan
from payment_service.abuse_guard import AbuseGuard
from payment_service.fees import FeeCalculator, FeeSplit
from payment_service.fraud import FraudAlertEngine, FraudSignal, SignalKind
from payment_service.gateway import PaymentGateway
from payment_service.models import Booking, BookingStatus, Payment, PaymentStatus, new_id, utcnow
from payment_service.repositories import BookingRepository, PaymentRepository

logger = logging.getLogger(__name__)

CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")
PAYMENT_INTENT_SCOPE = "payment_intent"

def normalize_currency(currency: str) -> str:
    if not isinstance(currency, str) or not CURRENCY_RE.match(currency):
        raise ValidationError("Currency must be a three-letter ISO code", field="currency")
    return currency.upper()

@dataclass(frozen=True)
class PaymentIntent:
    payment_id: str
    external_reference_id: str
    client_token: str
    amount: int
    currency: str
    split: FeeSplit

class PaymentIntentOrchestrator:
    def __init__(self, session_factory, fee_calculator: FeeCalculator, gateway: PaymentGateway,
                 abuse_guard: AbuseGuard, fraud_engine: FraudAlertEngine,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.fee_calculator = fee_calculator
        self.gateway = gateway
        self.abuse_guard = abuse_guard
        self.fraud_engine = fraud_engine
        self.clock = clock

    def create_payment_intent(self, booking_id: str, requested_amount: int, currency: str, actor: Actor) -> PaymentIntent:
        self.abuse_guard.enforce(actor.actor_id, PAYMENT_INTENT_SCOPE)
        currency = normalize_currency(currency)
        split = self.fee_calculator.compute_split(requested_amount)

        with TraceSpan("payment_intent.create", booking_id=booking_id) as span:
            with self.session_factory() as db:
                booking = self._load_payable_booking(db, booking_id, actor)
                attempt = PaymentRepository(db).count_for_booking(booking_id)

            authorization = self.gateway.open_authorization(
                requested_amount,
                currency,
                metadata={
                    "bookingId": booking.id,
                    "clientId": booking.client_id,
                    "providerId": booking.provider_id,
                    "serviceId": booking.service_id,
                    "commission": str(split.commission),
                    "processingFee": str(split.processing_fee),
                    "providerAmount": str(split.provider_amount),
                },
                # Concurrent retries of the same attempt share a key, so the
                # processor hands back one authorization rather than two.
                idempotency_key=f"booking-{booking.id}-{attempt}",
            )
            span.add_tag("reference_id", authorization.reference_id)

            now = self.clock()
            try:
                with self.session_factory() as db, db.begin():
                    payment = PaymentRepository(db).add(Payment(
                        id=new_id(),
                        booking_id=booking.id,
                        payer_id=actor.actor_id,
                        amount=requested_amount,
                        currency=currency,
                        status=PaymentStatus.PENDING,
                        external_reference_id=authorization.reference_id,
                        commission=split.commission,
                        processing_fee=split.processing_fee,
                        provider_amount=split.provider_amount,
                        active_booking_id=booking.id,
                        created_at=now,
                        updated_at=now,
                    ))
                    BookingRepository(db).update_totals(booking.id, requested_amount, split.commission)
            except IntegrityError:
                logger.warning(f"Lost race creating payment for booking {booking.id}; "
                               f"authorization {authorization.reference_id} is not recorded locally")
                raise ConflictError("A payment is already in progress for this booking",
                                    context={"booking_id": booking.id})

        logger.info(f"Payment {payment.id} created for booking {booking.id}: amount={requested_amount} {currency}")
        self.fraud_engine.evaluate(FraudSignal(
            kind=SignalKind.PAYMENT_CREATED,
            actor_id=actor.actor_id,
            booking_id=booking.id,
            payment_id=payment.id,
            amount=requested_amount,
        ))

        return PaymentIntent(
            payment_id=payment.id,
            external_reference_id=authorization.reference_id,
            client_token=authorization.client_token,
            amount=requested_amount,
            currency=currency,
            split=split,
        )

    def _load_payable_booking(self, db, booking_id: str, actor: Actor) -> Booking:
        booking = BookingRepository(db).get(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        if not booking.is_counterparty(actor.actor_id):
            raise AuthorizationError("Unauthorized to access this booking")
        if booking.status in (BookingStatus.CANCELLED, BookingStatus.COMPLETED):
            raise ConflictError(f"Booking is {booking.status} and cannot be paid")
        existing = PaymentRepository(db).find_blocking_for_booking(booking_id)
        if existing is not None:
            raise ConflictError("A payment is already in progress for this booking",
                                context={"payment_id": existing.id, "status": existing.status})
        return booking

    def get_payment(self, payment_id: str, actor: Actor) -> Payment:
        with self.session_factory() as db:
            payment = PaymentRepository(db).get(payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            booking: Optional[Booking] = BookingRepository(db).get(payment.booking_id) if payment.booking_id else None
            allowed = actor.is_admin or actor.actor_id == payment.payer_id or (
                booking is not None and booking.is_counterparty(actor.actor_id))
            if not allowed:
                raise AuthorizationError("Unauthorized to view this payment")
            return payment

    def request_refund(self, payment_id: str, actor: Actor, reason: str) -> Dict[str, Any]:
        """Ask the processor to refund a SUCCEEDED payment.

        The payment stays SUCCEEDED until the processor's refunded event
        arrives; the reconciler applies the booking and stock effects then.
        """
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required", field="reason")
        payment = self.get_payment(payment_id, actor)
        if payment.status != PaymentStatus.SUCCEEDED:
            raise ConflictError(f"Only a succeeded payment can be refunded (currently {payment.status})")

        with TraceSpan("payment.refund", payment_id=payment.id) as span:
            refund = self.gateway.create_refund(
                payment.external_reference_id,
                metadata={"paymentId": payment.id, "requestedBy": actor.actor_id, "reason": reason.strip()},
                idempotency_key=f"refund-{payment.id}",
            )
            span.add_tag("refund_id", refund.refund_id)

        logger.info(f"Refund {refund.refund_id} requested for payment {payment.id} by {actor.actor_id}")
        return {
            "payment_id": payment.id,
            "refund_id": refund.refund_id,
            "refund_status": refund.status,
            "amount": payment.amount,
            "currency": payment.currency,
        }

    def list_payments(self, actor: Actor, status: Optional[str] = None, limit: int = 20,
                      offset: int = 0) -> Dict[str, Any]:
        if status is not None and status not in PaymentStatus.ALL:
            raise ValidationError(f"Unknown payment status {status!r}", field="status")
        if not 1 <= limit <= 100 or offset < 0:
            raise ValidationError("limit must be 1-100 and offset non-negative", field="limit")
        with self.session_factory() as db:
            payments, total = PaymentRepository(db).list_for_user(actor.actor_id, status, limit, offset)
        return {
            "payments": payments,
            "total_count": total,
            "pagination": {"limit": limit, "offset": offset, "has_more": offset + limit < total},
        }

    def payment_statistics(self, actor: Actor) -> Dict[str, Any]:
        if not actor.is_admin:
            raise AuthorizationError("Admin access required")
        with self.session_factory() as db:
            stats = PaymentRepository(db).statistics()
        counts = stats["counts"]
        total = sum(counts.values())
        succeeded = counts.get(PaymentStatus.SUCCEEDED, 0)
        return {
            "total_payments": total,
            "by_status": {status: counts.get(status, 0) for status in PaymentStatus.ALL},
            "total_revenue": stats["revenue"],
            "total_commission": stats["commission"],
            "success_rate": round(succeeded / total * 100, 2) if total else 0.0,
        }

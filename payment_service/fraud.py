"""
Rule-based fraud alerting.

The engine runs after the triggering transaction has committed and in its own
transaction. Anything that goes wrong while evaluating is logged and dropped:
a broken rule must never fail a payment or a dispute.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from common.error_handling import AuthorizationError, ConflictError, NotFoundError, ValidationError
from common.security import Actor
from payment_service.models import FraudAlert, Payment, Severity, DisputeStatus, utcnow
from payment_service.repositories import DisputeRepository, FraudAlertRepository, PaymentRepository

logger = logging.getLogger(__name__)

def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

class SignalKind:
    PAYMENT_CREATED = "payment_created"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    DISPUTE_CREATED = "dispute_created"
    INVARIANT_VIOLATION = "invariant_violation"

@dataclass
class FraudSignal:
    kind: str
    actor_id: Optional[str] = None
    booking_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

@dataclass
class RuleHit:
    subject_id: str
    subject_type: str
    severity: str
    signal_type: str
    details: Dict[str, Any]

@dataclass
class FraudThresholds:
    failed_payment_threshold: int = 3
    failed_payment_window: timedelta = timedelta(hours=1)
    dispute_window: timedelta = timedelta(days=90)
    rapid_refund_window: timedelta = timedelta(hours=1)
    high_value_amount: int = 100000

    @classmethod
    def from_settings(cls, settings):
        return cls(
            failed_payment_threshold=settings.fraud_failed_payment_threshold,
            failed_payment_window=timedelta(seconds=settings.fraud_failed_payment_window_seconds),
            dispute_window=timedelta(days=settings.fraud_dispute_window_days),
            rapid_refund_window=timedelta(seconds=settings.fraud_rapid_refund_window_seconds),
            high_value_amount=settings.fraud_high_value_amount,
        )

class FraudAlertEngine:
    def __init__(self, session_factory, thresholds: FraudThresholds = None, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.thresholds = thresholds or FraudThresholds()
        self.clock = clock
        self._rules = {
            SignalKind.PAYMENT_CREATED: self._high_value_payment,
            SignalKind.PAYMENT_FAILED: self._repeated_payment_failures,
            SignalKind.PAYMENT_REFUNDED: self._rapid_refund,
            SignalKind.DISPUTE_CREATED: self._repeated_disputes,
            SignalKind.INVARIANT_VIOLATION: self._invariant_violation,
        }

    def evaluate(self, signal: FraudSignal) -> Optional[FraudAlert]:
        rule = self._rules.get(signal.kind)
        if rule is None:
            return None
        try:
            with self.session_factory() as db, db.begin():
                hit = rule(db, signal)
                if hit is None:
                    return None
                alerts = FraudAlertRepository(db)
                if alerts.find_open(hit.subject_id, hit.signal_type) is not None:
                    logger.info(f"Open {hit.signal_type} alert already exists for {hit.subject_id}")
                    return None
                alert = alerts.add(FraudAlert(
                    subject_id=hit.subject_id,
                    subject_type=hit.subject_type,
                    severity=hit.severity,
                    signal_type=hit.signal_type,
                    details=hit.details,
                    created_at=self.clock(),
                ))
            logger.warning(f"Fraud alert raised: {alert.signal_type} ({alert.severity}) for {alert.subject_type} {alert.subject_id}")
            return alert
        except Exception as e:
            logger.error(f"Fraud evaluation failed for {signal.kind}: {e}", exc_info=True)
            return None

    # Rules

    def _high_value_payment(self, db, signal: FraudSignal) -> Optional[RuleHit]:
        if signal.actor_id is None or signal.amount is None or signal.amount < self.thresholds.high_value_amount:
            return None
        return RuleHit(signal.actor_id, "user", Severity.MEDIUM, "high_value_payment",
                       {"payment_id": signal.payment_id, "amount": signal.amount})

    def _repeated_payment_failures(self, db, signal: FraudSignal) -> Optional[RuleHit]:
        if signal.actor_id is None:
            return None
        since = self.clock() - self.thresholds.failed_payment_window
        failures = PaymentRepository(db).count_failed_since(signal.actor_id, since)
        if failures <= self.thresholds.failed_payment_threshold:
            return None
        return RuleHit(signal.actor_id, "user", Severity.MEDIUM, "repeated_payment_failures",
                       {"failed_payments": failures, "window_seconds": int(self.thresholds.failed_payment_window.total_seconds())})

    def _rapid_refund(self, db, signal: FraudSignal) -> Optional[RuleHit]:
        payment = db.get(Payment, signal.payment_id) if signal.payment_id else None
        if payment is None or payment.succeeded_at is None or payment.refunded_at is None:
            return None
        elapsed = payment.refunded_at - payment.succeeded_at
        if elapsed > self.thresholds.rapid_refund_window:
            return None
        return RuleHit(payment.payer_id, "user", Severity.LOW, "rapid_refund",
                       {"payment_id": payment.id, "seconds_after_success": int(elapsed.total_seconds())})

    def _repeated_disputes(self, db, signal: FraudSignal) -> Optional[RuleHit]:
        if signal.booking_id is None:
            return None
        since = self.clock() - self.thresholds.dispute_window
        disputes = DisputeRepository(db).count_for_booking_since(signal.booking_id, since)
        if disputes <= 1:
            return None
        return RuleHit(signal.booking_id, "booking", Severity.HIGH, "repeated_disputes",
                       {"disputes": disputes, "window_days": self.thresholds.dispute_window.days})

    def _invariant_violation(self, db, signal: FraudSignal) -> Optional[RuleHit]:
        subject = signal.booking_id or signal.payment_id
        if subject is None:
            return None
        subject_type = "booking" if signal.booking_id else "payment"
        return RuleHit(subject, subject_type, Severity.CRITICAL, "invariant_violation", dict(signal.details))

    # Administrative surface

    def list_alerts(self, actor: Actor, severity: Optional[str] = None, is_resolved: Optional[bool] = None) -> List[FraudAlert]:
        if not actor.is_admin:
            raise AuthorizationError("Admin access required")
        if severity is not None and severity not in Severity.ALL:
            raise ValidationError(f"Unknown severity {severity!r}", field="severity")
        with self.session_factory() as db:
            return FraudAlertRepository(db).list(severity=severity, is_resolved=is_resolved)

    def resolve_alert(self, alert_id: str, actor: Actor) -> FraudAlert:
        if not actor.is_admin:
            raise AuthorizationError("Admin access required")
        with self.session_factory() as db, db.begin():
            alerts = FraudAlertRepository(db)
            alert = alerts.get(alert_id)
            if alert is None:
                raise NotFoundError("Fraud alert not found")
            if not alerts.resolve(alert_id, actor.actor_id, self.clock()):
                raise ConflictError("Fraud alert is already resolved")
            db.refresh(alert)
        logger.info(f"Fraud alert {alert_id} resolved by {actor.actor_id}")
        return alert

    def security_report(self, actor: Actor, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        if not actor.is_admin:
            raise AuthorizationError("Admin access required")
        end = _naive_utc(end) if end else self.clock()
        start = _naive_utc(start) if start else end.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start > end:
            raise ValidationError("start must not be after end", field="start")
        with self.session_factory() as db:
            alerts = FraudAlertRepository(db)
            disputes = DisputeRepository(db)
            total_alerts = alerts.count_between(start, end)
            resolved_alerts = alerts.count_between(start, end, is_resolved=True)
            by_severity = {s: alerts.count_between(start, end, severity=s) for s in Severity.ALL}
            total_disputes = disputes.count_between(start, end)
            resolved_disputes = disputes.count_between(start, end, statuses=DisputeStatus.TERMINAL)
        return {
            "total_alerts": total_alerts,
            "resolved_alerts": resolved_alerts,
            "critical_alerts": by_severity[Severity.CRITICAL],
            "alert_resolution_rate": round(resolved_alerts / total_alerts * 100, 2) if total_alerts else 0.0,
            "disputes": total_disputes,
            "resolved_disputes": resolved_disputes,
            "dispute_resolution_rate": round(resolved_disputes / total_disputes * 100, 2) if total_disputes else 0.0,
            "alerts_by_severity": by_severity,
        }

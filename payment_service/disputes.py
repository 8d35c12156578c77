import logging
from datetime import datetime
from typing import Any, Callable, List, Optional
from sqlalchemy.exc import IntegrityError
from common.error_handling import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError,
)
from common.security import Actor
from payment_service.abuse_guard import AbuseGuard
from payment_service.fraud import FraudAlertEngine, FraudSignal, SignalKind
from payment_service.models import DISPUTE_TYPES, Dispute, DisputeStatus, new_id, utcnow
from payment_service.repositories import BookingRepository, DisputeRepository

logger = logging.getLogger(__name__)

DISPUTE_SCOPE = "dispute"

OUTCOMES = {
    "resolved": DisputeStatus.RESOLVED,
    "rejected": DisputeStatus.REJECTED,
}

def _evidence_entry(actor_id: str, content: Any, now: datetime) -> dict:
    return {"submitted_by": actor_id, "submitted_at": now.isoformat(), "content": content}

class DisputeManager:
    """Buyer/seller disputes on bookings.

    Counterparties open disputes and add evidence while OPEN; only an admin
    moves a dispute to UNDER_REVIEW and on to RESOLVED or REJECTED. At most one
    OPEN/UNDER_REVIEW dispute exists per (booking, type), enforced by the
    unique active_key column.
    """

    def __init__(self, session_factory, abuse_guard: AbuseGuard, fraud_engine: FraudAlertEngine,
                 notifier, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.abuse_guard = abuse_guard
        self.fraud_engine = fraud_engine
        self.notifier = notifier
        self.clock = clock

    def create_dispute(self, booking_id: str, actor: Actor, dispute_type: str, reason: str, description: str,
                       evidence: Any = None) -> Dispute:
        self.abuse_guard.enforce(actor.actor_id, DISPUTE_SCOPE)
        if dispute_type not in DISPUTE_TYPES:
            raise ValidationError(f"Dispute type must be one of {', '.join(DISPUTE_TYPES)}", field="type")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required", field="reason")
        if not description or not description.strip():
            raise ValidationError("A description is required", field="description")

        now = self.clock()
        try:
            with self.session_factory() as db, db.begin():
                booking = BookingRepository(db).get(booking_id)
                if booking is None:
                    raise NotFoundError("Booking not found")
                if not booking.is_counterparty(actor.actor_id):
                    raise AuthorizationError("Only the booking's client or provider may open a dispute")

                disputes = DisputeRepository(db)
                if disputes.has_terminal(booking_id):
                    raise ConflictError("Disputes on this booking have already been settled")
                existing = disputes.find_active(booking_id, dispute_type)
                if existing is not None:
                    raise ConflictError("An active dispute of this type already exists for this booking",
                                        context={"dispute_id": existing.id})

                dispute = disputes.add(Dispute(
                    id=new_id(),
                    booking_id=booking_id,
                    client_id=booking.client_id,
                    provider_id=booking.provider_id,
                    created_by=actor.actor_id,
                    type=dispute_type,
                    status=DisputeStatus.OPEN,
                    reason=reason.strip(),
                    description=description.strip(),
                    evidence=[_evidence_entry(actor.actor_id, evidence, now)] if evidence is not None else [],
                    active_key=f"{booking_id}:{dispute_type}",
                    created_at=now,
                    updated_at=now,
                ))
        except IntegrityError:
            raise ConflictError("An active dispute of this type already exists for this booking")

        logger.info(f"Dispute {dispute.id} ({dispute_type}) opened on booking {booking_id} by {actor.actor_id}")
        self._notify("DisputeCreated", dispute)
        self.fraud_engine.evaluate(FraudSignal(kind=SignalKind.DISPUTE_CREATED, actor_id=actor.actor_id,
                                               booking_id=booking_id))
        return dispute

    def add_evidence(self, dispute_id: str, actor: Actor, evidence: Any) -> Dispute:
        if evidence is None:
            raise ValidationError("Evidence is required", field="evidence")
        with self.session_factory() as db, db.begin():
            disputes = DisputeRepository(db)
            dispute = self._get_for_party(disputes, dispute_id, actor, allow_admin=False)
            if dispute.status != DisputeStatus.OPEN:
                raise ConflictError(f"Evidence can only be added while a dispute is OPEN (currently {dispute.status})")
            updated = list(dispute.evidence or []) + [_evidence_entry(actor.actor_id, evidence, self.clock())]
            if not disputes.replace_evidence(dispute_id, updated, self.clock()):
                raise ConflictError("Dispute changed while adding evidence")
            db.refresh(dispute)
        return dispute

    def start_review(self, dispute_id: str, resolver: Actor) -> Dispute:
        self._require_admin(resolver)
        with self.session_factory() as db, db.begin():
            disputes = DisputeRepository(db)
            dispute = disputes.get(dispute_id)
            if dispute is None:
                raise NotFoundError("Dispute not found")
            if not disputes.transition(dispute_id, (DisputeStatus.OPEN,), DisputeStatus.UNDER_REVIEW, self.clock()):
                raise ConflictError(f"Dispute is {dispute.status} and cannot move to review")
            db.refresh(dispute)
        logger.info(f"Dispute {dispute_id} under review by {resolver.actor_id}")
        return dispute

    def resolve_dispute(self, dispute_id: str, resolver: Actor, outcome: str, resolution: Optional[str] = None) -> Dispute:
        self._require_admin(resolver)
        target = OUTCOMES.get((outcome or "").lower())
        if target is None:
            raise ValidationError("Outcome must be 'resolved' or 'rejected'", field="outcome")

        now = self.clock()
        with self.session_factory() as db, db.begin():
            disputes = DisputeRepository(db)
            dispute = disputes.get(dispute_id)
            if dispute is None:
                raise NotFoundError("Dispute not found")
            if dispute.status in DisputeStatus.TERMINAL:
                raise ConflictError(f"Dispute is already {dispute.status}")
            if dispute.status == DisputeStatus.OPEN:
                if not disputes.transition(dispute_id, (DisputeStatus.OPEN,), DisputeStatus.UNDER_REVIEW, now):
                    raise ConflictError("Dispute changed while being resolved")
            if not disputes.transition(dispute_id, (DisputeStatus.UNDER_REVIEW,), target, now,
                                       resolution=resolution, resolver_id=resolver.actor_id):
                raise ConflictError("Dispute changed while being resolved")
            db.refresh(dispute)

        logger.info(f"Dispute {dispute_id} {target} by {resolver.actor_id}")
        self._notify("DisputeResolved", dispute)
        return dispute

    def get_dispute(self, dispute_id: str, actor: Actor) -> Dispute:
        with self.session_factory() as db:
            return self._get_for_party(DisputeRepository(db), dispute_id, actor, allow_admin=True)

    def list_disputes(self, actor: Actor, role: str = "client") -> List[Dispute]:
        if role not in ("client", "provider"):
            raise ValidationError("role must be 'client' or 'provider'", field="role")
        with self.session_factory() as db:
            return DisputeRepository(db).list_for_user(actor.actor_id, role)

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise AuthorizationError("Only an administrator may review or resolve disputes")

    @staticmethod
    def _get_for_party(disputes: DisputeRepository, dispute_id: str, actor: Actor, allow_admin: bool) -> Dispute:
        dispute = disputes.get(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute not found")
        if actor.actor_id in (dispute.client_id, dispute.provider_id):
            return dispute
        if allow_admin and actor.is_admin:
            return dispute
        raise AuthorizationError("Unauthorized to access this dispute")

    def _notify(self, event_type: str, dispute: Dispute) -> None:
        try:
            self.notifier.notify(event_type, {
                "dispute_id": dispute.id,
                "booking_id": dispute.booking_id,
                "client_id": dispute.client_id,
                "provider_id": dispute.provider_id,
                "type": dispute.type,
                "status": dispute.status,
            })
        except Exception as e:
            logger.warning(f"Notification {event_type} failed: {e}")

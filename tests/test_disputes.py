import unittest
from common.error_handling import (
    AuthorizationError, ConflictError, NotFoundError, RateLimitedError, ValidationError,
)
from payment_service.models import Dispute, DisputeStatus
from tests.helpers import ADMIN, CLIENT, PROVIDER, STRANGER, EngineTestCase

class DisputeTestCase(EngineTestCase):
    def open_dispute(self, booking_id=None, actor=CLIENT, dispute_type="service", evidence=None):
        booking_id = booking_id or self.add_booking()
        return self.services.disputes.create_dispute(booking_id, actor, dispute_type, "Cleaner never arrived",
                                                     "Waited two hours, nobody came.", evidence)

class TestCreateDispute(DisputeTestCase):
    def test_counterparty_opens_dispute(self):
        booking_id = self.add_booking()
        dispute = self.open_dispute(booking_id, actor=PROVIDER, evidence={"photo": "s3://bucket/1.jpg"})

        self.assertEqual(dispute.status, DisputeStatus.OPEN)
        self.assertEqual(dispute.created_by, PROVIDER.actor_id)
        self.assertEqual(dispute.client_id, CLIENT.actor_id)
        self.assertEqual(dispute.evidence[0]["content"], {"photo": "s3://bucket/1.jpg"})
        self.assertEqual(self.notifier.types(), ["DisputeCreated"])

    def test_keyword_arguments(self):
        booking_id = self.add_booking()
        dispute = self.services.disputes.create_dispute(
            booking_id=booking_id, actor=CLIENT, dispute_type="no_show",
            reason="Nobody came", description="Provider did not show up",
        )
        self.assertEqual(dispute.type, "no_show")
        self.assertEqual(dispute.active_key, f"{booking_id}:no_show")

    def test_stranger_cannot_open(self):
        booking_id = self.add_booking()
        with self.assertRaises(AuthorizationError):
            self.open_dispute(booking_id, actor=STRANGER)

    def test_missing_booking(self):
        with self.assertRaises(NotFoundError):
            self.open_dispute("missing")

    def test_invalid_input(self):
        booking_id = self.add_booking()
        with self.assertRaises(ValidationError):
            self.open_dispute(booking_id, dispute_type="vibes")
        with self.assertRaises(ValidationError):
            self.services.disputes.create_dispute(booking_id, CLIENT, "service", "   ", "details")

    def test_one_active_dispute_per_type(self):
        """Test that a second dispute of the same type conflicts while the first is active"""
        booking_id = self.add_booking()
        first = self.open_dispute(booking_id)
        with self.assertRaises(ConflictError) as ctx:
            self.open_dispute(booking_id, actor=PROVIDER)
        self.assertEqual(ctx.exception.context["dispute_id"], first.id)

        self.services.disputes.start_review(first.id, ADMIN)
        with self.assertRaises(ConflictError):
            self.open_dispute(booking_id)

    def test_second_payment_dispute_while_open_conflicts(self):
        booking_id = self.add_booking()
        self.open_dispute(booking_id, dispute_type="payment")
        with self.assertRaises(ConflictError):
            self.open_dispute(booking_id, dispute_type="payment")

    def test_other_type_allowed_and_flagged(self):
        booking_id = self.add_booking()
        self.open_dispute(booking_id, dispute_type="service")
        second = self.open_dispute(booking_id, dispute_type="payment")
        self.assertEqual(second.status, DisputeStatus.OPEN)

        alerts = self.alerts("repeated_disputes")
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].severity, "high")
        self.assertEqual(alerts[0].subject_id, booking_id)

    def test_settled_booking_takes_no_new_disputes(self):
        booking_id = self.add_booking()
        dispute = self.open_dispute(booking_id)
        self.services.disputes.resolve_dispute(dispute.id, ADMIN, "resolved", "Refund issued")
        for dispute_type in ("service", "payment"):
            with self.assertRaises(ConflictError):
                self.open_dispute(booking_id, dispute_type=dispute_type)

class TestDisputeLifecycle(DisputeTestCase):
    def test_evidence_only_while_open(self):
        dispute = self.open_dispute()
        updated = self.services.disputes.add_evidence(dispute.id, PROVIDER, "Provider's GPS log")
        self.assertEqual([e["submitted_by"] for e in updated.evidence], [PROVIDER.actor_id])

        self.services.disputes.start_review(dispute.id, ADMIN)
        with self.assertRaises(ConflictError):
            self.services.disputes.add_evidence(dispute.id, CLIENT, "late photo")

    def test_evidence_from_outsiders_rejected(self):
        dispute = self.open_dispute()
        for actor in (STRANGER, ADMIN):
            with self.assertRaises(AuthorizationError):
                self.services.disputes.add_evidence(dispute.id, actor, "note")

    def test_review_then_resolve(self):
        dispute = self.open_dispute()
        reviewed = self.services.disputes.start_review(dispute.id, ADMIN)
        self.assertEqual(reviewed.status, DisputeStatus.UNDER_REVIEW)

        resolved = self.services.disputes.resolve_dispute(dispute.id, ADMIN, "rejected", "No evidence")
        self.assertEqual(resolved.status, DisputeStatus.REJECTED)
        self.assertEqual(resolved.resolver_id, ADMIN.actor_id)
        self.assertEqual(resolved.resolution, "No evidence")
        self.assertEqual(resolved.resolved_at, self.clock())
        self.assertIsNone(resolved.active_key)
        self.assertEqual(self.notifier.types(), ["DisputeCreated", "DisputeResolved"])

    def test_resolve_straight_from_open(self):
        dispute = self.open_dispute()
        resolved = self.services.disputes.resolve_dispute(dispute.id, ADMIN, "RESOLVED")
        self.assertEqual(resolved.status, DisputeStatus.RESOLVED)

    def test_terminal_disputes_are_frozen(self):
        dispute = self.open_dispute()
        self.services.disputes.resolve_dispute(dispute.id, ADMIN, "resolved")
        with self.assertRaises(ConflictError):
            self.services.disputes.resolve_dispute(dispute.id, ADMIN, "rejected")
        with self.assertRaises(ConflictError):
            self.services.disputes.start_review(dispute.id, ADMIN)
        with self.assertRaises(ConflictError):
            self.services.disputes.add_evidence(dispute.id, CLIENT, "more")
        self.assertEqual(self.load(Dispute, dispute.id).status, DisputeStatus.RESOLVED)

    def test_only_admin_reviews_or_resolves(self):
        dispute = self.open_dispute()
        for actor in (CLIENT, PROVIDER):
            with self.assertRaises(AuthorizationError):
                self.services.disputes.start_review(dispute.id, actor)
            with self.assertRaises(AuthorizationError):
                self.services.disputes.resolve_dispute(dispute.id, actor, "resolved")

    def test_unknown_outcome(self):
        dispute = self.open_dispute()
        with self.assertRaises(ValidationError):
            self.services.disputes.resolve_dispute(dispute.id, ADMIN, "maybe")

    def test_get_and_list(self):
        dispute = self.open_dispute()
        self.assertEqual(self.services.disputes.get_dispute(dispute.id, ADMIN).id, dispute.id)
        self.assertEqual(self.services.disputes.get_dispute(dispute.id, PROVIDER).id, dispute.id)
        with self.assertRaises(AuthorizationError):
            self.services.disputes.get_dispute(dispute.id, STRANGER)

        self.assertEqual([d.id for d in self.services.disputes.list_disputes(CLIENT, "client")], [dispute.id])
        self.assertEqual(self.services.disputes.list_disputes(CLIENT, "provider"), [])
        self.assertEqual([d.id for d in self.services.disputes.list_disputes(PROVIDER, "provider")], [dispute.id])
        with self.assertRaises(ValidationError):
            self.services.disputes.list_disputes(CLIENT, "admin")

class TestDisputeRateLimit(DisputeTestCase):
    settings_overrides = {"rate_limit_disputes": 1}

    def test_second_dispute_in_window_refused(self):
        self.open_dispute()
        with self.assertRaises(RateLimitedError):
            self.open_dispute()

if __name__ == "__main__":
    unittest.main()

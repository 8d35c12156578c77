"""
Shared fixtures for the engine tests: an in-memory SQLite store, a fixed
clock and stand-ins for the gateway, Kafka and Redis.
"""
import json
import unittest
from datetime import datetime, timedelta, timezone
from typing import Optional
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool
from common.redis_client import RedisClient
from common.security import Actor
from common.settings import Settings
from payment_service.container import build_services
from payment_service.db import make_session_factory
from payment_service.gateway import GatewayAuthorization, GatewayRefund
from payment_service.models import Base, Booking, BookingStatus, FraudAlert, Product, new_id
from payment_service.webhook_security import WebhookVerifier, sign_payload

WEBHOOK_SECRET = "whsec_test"

class FixedClock:
    """Naive-UTC clock that only moves when told to"""

    def __init__(self, start: datetime = datetime(2026, 3, 14, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def epoch(self) -> float:
        return self.now.replace(tzinfo=timezone.utc).timestamp()

class FakeGateway:
    def __init__(self):
        self.calls = []
        self.refunds = []
        self.error: Optional[Exception] = None
        self.before_return = None
        self._counter = 0

    def open_authorization(self, amount, currency, metadata, idempotency_key):
        self.calls.append({"amount": amount, "currency": currency, "metadata": metadata,
                           "idempotency_key": idempotency_key})
        if self.error is not None:
            raise self.error
        self._counter += 1
        if self.before_return is not None:
            self.before_return()
        return GatewayAuthorization(reference_id=f"pi_test_{self._counter}",
                                    client_token=f"pi_test_{self._counter}_secret")

    def create_refund(self, reference_id, metadata, idempotency_key):
        self.refunds.append({"reference_id": reference_id, "metadata": metadata,
                             "idempotency_key": idempotency_key})
        if self.error is not None:
            raise self.error
        return GatewayRefund(refund_id=f"re_test_{len(self.refunds)}", status="pending")

class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, event_type, payload):
        self.sent.append((event_type, payload))

    def types(self):
        return [event_type for event_type, _ in self.sent]

class InMemoryRedis:
    """Implements the pipeline subset of redis-py that RedisClient uses"""

    def __init__(self):
        self.values = {}
        self.expiries = {}

    def pipeline(self):
        return _Pipeline(self)

    def ping(self):
        return True

class _Pipeline:
    def __init__(self, store: InMemoryRedis):
        self.store = store
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key, None))
        return self

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))
        return self

    def execute(self):
        results = []
        for op, key, arg in self.ops:
            if op == "incr":
                self.store.values[key] = self.store.values.get(key, 0) + 1
                results.append(self.store.values[key])
            else:
                self.store.expiries[key] = arg
                results.append(True)
        self.ops = []
        return results

CLIENT = Actor("client-1")
PROVIDER = Actor("provider-1")
STRANGER = Actor("stranger-9")
ADMIN = Actor("admin-1", role="admin")

class EngineTestCase(unittest.TestCase):
    """Builds a full Services graph over a private in-memory database"""

    settings_overrides = {}

    def setUp(self):
        self.engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(self.engine)
        self.session_factory = make_session_factory(self.engine)
        self.clock = FixedClock()
        self.gateway = FakeGateway()
        self.notifier = RecordingNotifier()
        self.redis = InMemoryRedis()
        self.settings = Settings(**{
            "webhook_secret": WEBHOOK_SECRET,
            "rate_limit_payment_intents": 100,
            "rate_limit_disputes": 100,
            "rate_limit_webhooks": 1000,
            **self.settings_overrides,
        })
        self.services = build_services(
            self.settings,
            session_factory=self.session_factory,
            gateway=self.gateway,
            redis_client=RedisClient(client=self.redis, clock=self.clock.epoch),
            notifier=self.notifier,
            verifier=WebhookVerifier(WEBHOOK_SECRET, self.settings.webhook_tolerance_seconds, clock=self.clock.epoch),
            clock=self.clock,
        )

    def tearDown(self):
        self.engine.dispose()

    # Fixtures

    def add_booking(self, client_id: str = CLIENT.actor_id, provider_id: str = PROVIDER.actor_id,
                    status: str = BookingStatus.PENDING) -> str:
        booking_id = new_id()
        with self.session_factory() as db, db.begin():
            db.add(Booking(id=booking_id, client_id=client_id, provider_id=provider_id, service_id="svc-1",
                           status=status, created_at=self.clock()))
        return booking_id

    def add_product(self, price: int = 2500, stock: int = 10, name: str = "Widget") -> str:
        product_id = new_id()
        with self.session_factory() as db, db.begin():
            db.add(Product(id=product_id, name=name, price=price, stock=stock))
        return product_id

    def load(self, model, key):
        with self.session_factory() as db:
            return db.get(model, key)

    def stock_of(self, product_id: str) -> int:
        return self.load(Product, product_id).stock

    def alerts(self, signal_type: Optional[str] = None):
        with self.session_factory() as db:
            query = select(FraudAlert)
            if signal_type is not None:
                query = query.where(FraudAlert.signal_type == signal_type)
            return list(db.scalars(query).all())

    # Webhooks

    def signed_event(self, event_id: str, event_type: str, reference_id: str, secret: str = WEBHOOK_SECRET):
        raw = json.dumps({"id": event_id, "type": event_type, "data": {"referenceId": reference_id}}).encode("utf-8")
        return raw, sign_payload(secret, raw, timestamp=int(self.clock.epoch()))

    def deliver(self, event_id: str, event_type: str, reference_id: str):
        raw, header = self.signed_event(event_id, event_type, reference_id)
        return self.services.reconciler.receive(raw, header)

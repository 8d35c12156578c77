"""
Explicit wiring of the engine's services. Nothing here is a module-level
singleton; the FastAPI app builds one Services object at startup and tests
build their own with fakes.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from common.kafka import KafkaNotifier, make_producer
from common.redis_client import RedisClient
from common.retry import RetryConfig
from payment_service.abuse_guard import AbuseGuard
from payment_service.db import make_engine, make_session_factory
from payment_service.disputes import DISPUTE_SCOPE, DisputeManager
from payment_service.fees import FeeCalculator
from payment_service.fraud import FraudAlertEngine, FraudThresholds
from payment_service.gateway import GatewayUnavailable, PaymentGateway
from payment_service.models import Base, utcnow
from payment_service.orchestrator import PAYMENT_INTENT_SCOPE, PaymentIntentOrchestrator
from payment_service.orders import OrderService
from payment_service.reconciler import WebhookReconciler
from payment_service.webhook_security import WebhookVerifier

WEBHOOK_SCOPE = "webhook"

@dataclass
class Services:
    session_factory: object
    abuse_guard: AbuseGuard
    fraud: FraudAlertEngine
    orchestrator: PaymentIntentOrchestrator
    orders: OrderService
    reconciler: WebhookReconciler
    disputes: DisputeManager

def build_services(settings, session_factory=None, gateway=None, redis_client=None, notifier=None,
                   verifier=None, clock: Callable[[], datetime] = utcnow) -> Services:
    if session_factory is None:
        engine = make_engine(settings.database_url)
        Base.metadata.create_all(bind=engine)
        session_factory = make_session_factory(engine)
    if gateway is None:
        gateway = PaymentGateway(
            settings.gateway_base_url,
            settings.gateway_api_key,
            timeout=settings.gateway_timeout_seconds,
            retry_config=RetryConfig(max_attempts=settings.gateway_max_attempts, base_delay=0.5, max_delay=8.0,
                                     retryable_exceptions=[GatewayUnavailable]),
        )
    if notifier is None:
        notifier = KafkaNotifier(make_producer(settings.kafka_bootstrap))
    if verifier is None:
        verifier = WebhookVerifier(settings.webhook_secret, settings.webhook_tolerance_seconds)

    abuse_guard = AbuseGuard(
        redis_client or RedisClient(settings.redis_url),
        limits={
            PAYMENT_INTENT_SCOPE: settings.rate_limit_payment_intents,
            DISPUTE_SCOPE: settings.rate_limit_disputes,
            WEBHOOK_SCOPE: settings.rate_limit_webhooks,
        },
        window_seconds=settings.rate_limit_window_seconds,
    )
    fees = FeeCalculator.from_settings(settings)
    fraud = FraudAlertEngine(session_factory, FraudThresholds.from_settings(settings), clock=clock)

    return Services(
        session_factory=session_factory,
        abuse_guard=abuse_guard,
        fraud=fraud,
        orchestrator=PaymentIntentOrchestrator(session_factory, fees, gateway, abuse_guard, fraud, clock=clock),
        orders=OrderService(session_factory, fees, gateway, abuse_guard, clock=clock),
        reconciler=WebhookReconciler(session_factory, verifier, notifier, fraud, clock=clock),
        disputes=DisputeManager(session_factory, abuse_guard, fraud, notifier, clock=clock),
    )

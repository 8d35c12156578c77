import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import jwt
from fastapi import FastAPI, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from common.error_handling import add_error_handlers
from common.schemas import (
    AddEvidence, CreateDispute, CreateOrder, CreatePaymentIntent, PaymentIntentResponse,
    RequestRefund, ResolveDispute, SecurityReport, UpdateOrderStatus, WebhookAck,
)
from common.security import Actor, actor_from_token
from common.settings import settings
from common.tracing import tracing_middleware
from payment_service.container import WEBHOOK_SCOPE, Services, build_services
from payment_service.serializers import alert_to_dict, dispute_to_dict, order_to_dict, payment_to_dict
from payment_service.webhook_security import SIGNATURE_HEADER

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

def client_key(request: Request) -> str:
    """Caller address for rate limiting, taken from the proxy chain when present."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"

def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        logger.info("🚀 Payment service started")
        yield

    app = FastAPI(title="Marketplace Payment Service", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.middleware("http")(tracing_middleware)
    add_error_handlers(app)

    def get_services(request: Request) -> Services:
        return request.app.state.services

    # Identity comes from the auth provider's bearer token
    def current_actor(authorization: Optional[str] = Header(None)) -> Actor:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(401, "missing bearer token")
        token = authorization.split(" ", 1)[1]
        try:
            return actor_from_token(token)
        except jwt.PyJWTError:
            raise HTTPException(401, "invalid token")

    @app.get("/health")
    def health():
        return {"ok": True, "service": "payments"}

    @app.post("/payments/intent", response_model=PaymentIntentResponse)
    def create_payment_intent(body: CreatePaymentIntent, actor: Actor = Depends(current_actor),
                              services: Services = Depends(get_services)):
        intent = services.orchestrator.create_payment_intent(body.booking_id, body.amount, body.currency, actor)
        return PaymentIntentResponse(
            payment_id=intent.payment_id,
            external_reference_id=intent.external_reference_id,
            client_token=intent.client_token,
            amount=intent.amount,
            currency=intent.currency,
            split=intent.split.to_dict(),
        )

    @app.get("/payments")
    def list_payments(status: Optional[str] = None, limit: int = 20, offset: int = 0,
                      actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
        result = services.orchestrator.list_payments(actor, status, limit, offset)
        result["payments"] = [payment_to_dict(p) for p in result["payments"]]
        return result

    # Declared before /payments/{payment_id} so the path is not read as an id
    @app.get("/payments/statistics")
    def payment_statistics(actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
        return services.orchestrator.payment_statistics(actor)

    @app.get("/payments/{payment_id}")
    def get_payment(payment_id: str, actor: Actor = Depends(current_actor),
                    services: Services = Depends(get_services)):
        return payment_to_dict(services.orchestrator.get_payment(payment_id, actor))

    @app.post("/payments/{payment_id}/refund", status_code=202)
    def request_refund(payment_id: str, body: RequestRefund, actor: Actor = Depends(current_actor),
                       services: Services = Depends(get_services)):
        return services.orchestrator.request_refund(payment_id, actor, body.reason)

    @app.post("/orders", status_code=201)
    def create_order(body: CreateOrder, actor: Actor = Depends(current_actor),
                     services: Services = Depends(get_services)):
        return services.orders.create_order(actor, [item.model_dump() for item in body.items], body.currency)

    @app.get("/orders")
    def list_orders(actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
        return [order_to_dict(o) for o in services.orders.get_user_orders(actor.actor_id)]

    @app.get("/orders/{order_id}")
    def get_order(order_id: str, actor: Actor = Depends(current_actor),
                  services: Services = Depends(get_services)):
        return order_to_dict(services.orders.get_order(order_id, actor))

    @app.patch("/orders/{order_id}")
    def update_order(order_id: str, body: UpdateOrderStatus, actor: Actor = Depends(current_actor),
                     services: Services = Depends(get_services)):
        return order_to_dict(services.orders.update_status(order_id, body.status, actor, body.tracking_number))

    @app.post("/webhooks/payment", response_model=WebhookAck)
    async def payment_webhook(request: Request):
        services: Services = request.app.state.services
        await run_in_threadpool(services.abuse_guard.enforce, client_key(request), WEBHOOK_SCOPE)
        raw_body = await request.body()
        ack = await run_in_threadpool(services.reconciler.receive, raw_body, request.headers.get(SIGNATURE_HEADER))
        body = WebhookAck(status=ack.status, event_id=ack.event_id, detail=ack.detail).model_dump()
        # A non-2xx answer makes the processor redeliver later
        return JSONResponse(status_code=503 if ack.should_redeliver else 200, content=body)

    @app.post("/disputes", status_code=201)
    def create_dispute(body: CreateDispute, actor: Actor = Depends(current_actor),
                       services: Services = Depends(get_services)):
        dispute = services.disputes.create_dispute(body.booking_id, actor, body.type, body.reason,
                                                   body.description, body.evidence)
        return {"dispute_id": dispute.id, "status": dispute.status}

    @app.get("/disputes")
    def list_disputes(role: str = "client", actor: Actor = Depends(current_actor),
                      services: Services = Depends(get_services)):
        return [dispute_to_dict(d) for d in services.disputes.list_disputes(actor, role)]

    @app.get("/disputes/{dispute_id}")
    def get_dispute(dispute_id: str, actor: Actor = Depends(current_actor),
                    services: Services = Depends(get_services)):
        return dispute_to_dict(services.disputes.get_dispute(dispute_id, actor))

    @app.post("/disputes/{dispute_id}/evidence")
    def add_evidence(dispute_id: str, body: AddEvidence, actor: Actor = Depends(current_actor),
                     services: Services = Depends(get_services)):
        return dispute_to_dict(services.disputes.add_evidence(dispute_id, actor, body.evidence))

    @app.patch("/disputes/{dispute_id}")
    def update_dispute(dispute_id: str, body: ResolveDispute, actor: Actor = Depends(current_actor),
                       services: Services = Depends(get_services)):
        if body.outcome == "under_review":
            dispute = services.disputes.start_review(dispute_id, actor)
        else:
            dispute = services.disputes.resolve_dispute(dispute_id, actor, body.outcome, body.resolution)
        return dispute_to_dict(dispute)

    @app.get("/fraud-alerts")
    def list_fraud_alerts(severity: Optional[str] = None, is_resolved: Optional[bool] = None,
                          actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
        return [alert_to_dict(a) for a in services.fraud.list_alerts(actor, severity, is_resolved)]

    @app.patch("/fraud-alerts/{alert_id}")
    def resolve_fraud_alert(alert_id: str, actor: Actor = Depends(current_actor),
                            services: Services = Depends(get_services)):
        return alert_to_dict(services.fraud.resolve_alert(alert_id, actor))

    @app.get("/security/report", response_model=SecurityReport)
    def security_report(start: Optional[datetime] = None, end: Optional[datetime] = None,
                        actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
        return services.fraud.security_report(actor, start, end)

    return app

app = create_app()

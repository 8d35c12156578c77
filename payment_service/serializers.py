from typing import Any, Dict, Optional
from payment_service.models import Dispute, FraudAlert, Order, Payment

def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None

def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "booking_id": payment.booking_id,
        "order_id": payment.order_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "external_reference_id": payment.external_reference_id,
        "split": {
            "commission": payment.commission,
            "processing_fee": payment.processing_fee,
            "provider_amount": payment.provider_amount,
        },
        "created_at": _iso(payment.created_at),
        "succeeded_at": _iso(payment.succeeded_at),
        "refunded_at": _iso(payment.refunded_at),
    }

def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "status": order.status,
        "tracking_number": order.tracking_number,
        "items": [
            {"product_id": i.product_id, "quantity": i.quantity, "unit_price": i.unit_price}
            for i in order.items
        ],
        "created_at": _iso(order.created_at),
        "shipped_at": _iso(order.shipped_at),
        "delivered_at": _iso(order.delivered_at),
    }

def dispute_to_dict(dispute: Dispute) -> Dict[str, Any]:
    return {
        "id": dispute.id,
        "booking_id": dispute.booking_id,
        "client_id": dispute.client_id,
        "provider_id": dispute.provider_id,
        "type": dispute.type,
        "status": dispute.status,
        "reason": dispute.reason,
        "description": dispute.description,
        "evidence": dispute.evidence,
        "resolution": dispute.resolution,
        "created_at": _iso(dispute.created_at),
        "resolved_at": _iso(dispute.resolved_at),
    }

def alert_to_dict(alert: FraudAlert) -> Dict[str, Any]:
    return {
        "id": alert.id,
        "subject_id": alert.subject_id,
        "subject_type": alert.subject_type,
        "severity": alert.severity,
        "signal_type": alert.signal_type,
        "details": alert.details,
        "is_resolved": alert.is_resolved,
        "resolved_by": alert.resolved_by,
        "created_at": _iso(alert.created_at),
        "resolved_at": _iso(alert.resolved_at),
    }

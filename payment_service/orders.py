"""
Storefront orders: creation with a gateway authorization, fulfilment status,
and administrative cancellation with exactly-once stock restoration.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional
from common.error_handling import (
    AuthorizationError, ConflictError, InvariantViolationError, NotFoundError, ValidationError,
)
from common.security import Actor
from payment_service.abuse_guard import AbuseGuard
from payment_service.fees import FeeCalculator
from payment_service.gateway import PaymentGateway
from payment_service.models import (
    Order, OrderItem, OrderStatus, Payment, PaymentStatus, StockState, new_id, utcnow,
)
from payment_service.orchestrator import PAYMENT_INTENT_SCOPE, normalize_currency
from payment_service.repositories import OrderRepository, PaymentRepository, ProductRepository

logger = logging.getLogger(__name__)

# Target status -> statuses an order may move from by an administrative update.
# pending -> processing only ever happens through a successful payment event;
# a pending order can be cancelled before any stock was taken.
FULFILMENT_TRANSITIONS = {
    OrderStatus.SHIPPED: (OrderStatus.PROCESSING,),
    OrderStatus.DELIVERED: (OrderStatus.SHIPPED,),
    OrderStatus.CANCELLED: (OrderStatus.PENDING, OrderStatus.PROCESSING),
}

def restore_order_stock(db, order: Order) -> bool:
    """Put back what the successful payment took, at most once per order.

    Returns False when the stock was already restored. Raises
    InvariantViolationError when it was never taken.
    """
    orders = OrderRepository(db)
    if orders.move_stock_state(order.id, StockState.APPLIED, StockState.RESTORED):
        products = ProductRepository(db)
        for item in order.items:
            products.adjust_stock(item.product_id, item.quantity)
        return True
    state = orders.stock_state_of(order.id)
    if state == StockState.RESTORED:
        return False
    raise InvariantViolationError(
        f"Refusing to restore stock for order {order.id}: stock was never decremented",
        context={"order_id": order.id, "stock_state": state},
    )

def apply_order_stock(db, order: Order) -> None:
    """Take the reserved quantities out of stock, exactly once per order."""
    if not OrderRepository(db).move_stock_state(order.id, StockState.NONE, StockState.APPLIED):
        raise InvariantViolationError(
            f"Stock for order {order.id} was already decremented",
            context={"order_id": order.id},
        )
    products = ProductRepository(db)
    for item in order.items:
        products.adjust_stock(item.product_id, -item.quantity)
        remaining = products.stock_of(item.product_id)
        if remaining < 0:
            logger.warning(f"Product {item.product_id} oversold by {-remaining} after order {order.id}")

class OrderService:
    def __init__(self, session_factory, fee_calculator: FeeCalculator, gateway: PaymentGateway,
                 abuse_guard: AbuseGuard, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.fee_calculator = fee_calculator
        self.gateway = gateway
        self.abuse_guard = abuse_guard
        self.clock = clock

    def create_order(self, actor: Actor, items: Iterable[Dict], currency: str = "USD") -> Dict:
        self.abuse_guard.enforce(actor.actor_id, PAYMENT_INTENT_SCOPE)
        currency = normalize_currency(currency)
        quantities = self._merge_items(items)

        with self.session_factory() as db:
            products = ProductRepository(db).get_many(quantities.keys())
        lines = []
        total = 0
        for product_id, quantity in quantities.items():
            product = products.get(product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found", field="items")
            if product.stock < quantity:
                raise ConflictError(f"Insufficient stock for product {product.name}",
                                    context={"product_id": product_id, "available": product.stock})
            lines.append((product_id, quantity, product.price))
            total += product.price * quantity

        split = self.fee_calculator.compute_split(total)
        order_id = new_id()
        authorization = self.gateway.open_authorization(
            total, currency,
            metadata={"orderId": order_id, "userId": actor.actor_id},
            idempotency_key=f"order-{order_id}",
        )

        now = self.clock()
        with self.session_factory() as db, db.begin():
            order = Order(id=order_id, user_id=actor.actor_id, total_amount=total, currency=currency,
                          status=OrderStatus.PENDING, stock_state=StockState.NONE, created_at=now)
            order.items = [OrderItem(product_id=pid, quantity=qty, unit_price=price) for pid, qty, price in lines]
            OrderRepository(db).add(order)
            payment = PaymentRepository(db).add(Payment(
                id=new_id(),
                order_id=order_id,
                payer_id=actor.actor_id,
                amount=total,
                currency=currency,
                status=PaymentStatus.PENDING,
                external_reference_id=authorization.reference_id,
                commission=split.commission,
                processing_fee=split.processing_fee,
                provider_amount=split.provider_amount,
                created_at=now,
                updated_at=now,
            ))

        logger.info(f"Order {order_id} created for user {actor.actor_id}: total={total} {currency}")
        return {
            "order_id": order_id,
            "payment_id": payment.id,
            "client_token": authorization.client_token,
            "external_reference_id": authorization.reference_id,
            "total_amount": total,
            "currency": currency,
            "split": split.to_dict(),
        }

    def update_status(self, order_id: str, status: str, actor: Actor, tracking_number: Optional[str] = None) -> Order:
        if not actor.is_admin:
            raise AuthorizationError("Admin access required")
        if status not in FULFILMENT_TRANSITIONS:
            raise ValidationError(f"Orders cannot be moved to {status!r} manually", field="status")

        now = self.clock()
        with self.session_factory() as db, db.begin():
            orders = OrderRepository(db)
            order = orders.get(order_id)
            if order is None:
                raise NotFoundError("Order not found")
            values = {}
            if status == OrderStatus.SHIPPED:
                values = {"tracking_number": tracking_number, "shipped_at": now}
            elif status == OrderStatus.DELIVERED:
                values = {"delivered_at": now}
            if not orders.set_status(order_id, status, FULFILMENT_TRANSITIONS[status], **values):
                raise ConflictError(f"Order is {order.status} and cannot move to {status}")
            if status == OrderStatus.CANCELLED and orders.stock_state_of(order_id) != StockState.NONE:
                restore_order_stock(db, order)
            db.refresh(order)

        logger.info(f"Order {order_id} moved to {status} by {actor.actor_id}")
        return order

    def get_order(self, order_id: str, actor: Actor) -> Order:
        with self.session_factory() as db:
            order = OrderRepository(db).get(order_id)
            if order is None:
                raise NotFoundError("Order not found")
            if not (actor.is_admin or order.user_id == actor.actor_id):
                raise AuthorizationError("Unauthorized to view this order")
            return order

    def get_user_orders(self, user_id: str) -> List[Order]:
        with self.session_factory() as db:
            return OrderRepository(db).list_for_user(user_id)

    @staticmethod
    def _merge_items(items: Iterable[Dict]) -> "OrderedDict[str, int]":
        quantities: "OrderedDict[str, int]" = OrderedDict()
        for item in items:
            product_id = item.get("product_id")
            quantity = item.get("quantity")
            if not product_id:
                raise ValidationError("Each item needs a product_id", field="items")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise ValidationError("Quantity must be a positive integer", field="items")
            quantities[product_id] = quantities.get(product_id, 0) + quantity
        if not quantities:
            raise ValidationError("An order needs at least one item", field="items")
        return quantities

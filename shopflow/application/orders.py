from typing import Optional

from sqlalchemy.orm import Session

from shopflow.application.pricing import PricingCalculator, compute_line_tax, quantize_money
from shopflow.core import get_logger
from shopflow.domain.errors import InvalidArgument, InvalidStatusTransition, OrderNotFound
from shopflow.domain.models import Order, OrderItem, OrderStatus
from shopflow.payments import ProviderRegistry, RefundResult

logger = get_logger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}


class OrderService:
    """Reads and administrative corrections on stored orders."""

    def __init__(self, db: Session, pricing: PricingCalculator, registry: Optional[ProviderRegistry] = None):
        self.db = db
        self.pricing = pricing
        self.registry = registry

    def list(self, status: Optional[str] = None, user_id: Optional[int] = None):
        query = self.db.query(Order)
        if status is not None:
            query = query.filter(Order.status == status)
        if user_id is not None:
            query = query.filter(Order.user_id == user_id)
        return query.order_by(Order.id).all()

    def get(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if not order:
            raise OrderNotFound(order_id)
        return order

    def update_status(self, order_id: int, new_status: str, override: bool = False) -> Order:
        """Move an order along pending -> processing -> completed|cancelled.

        ``override`` lets an administrator make any move between valid statuses.
        """
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise InvalidArgument(f"Invalid status: {new_status}") from None

        order = self.get(order_id)
        current = OrderStatus(order.status)
        if not override and target != current and target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStatusTransition(current.value, target.value)

        order.status = target.value
        self.db.commit()
        self.db.refresh(order)
        logger.info(f"Order {order_id} status {current.value} -> {target.value} (override={override})")
        return order

    def _get_item(self, order_id: int, item_id: int) -> OrderItem:
        item = self.db.get(OrderItem, item_id)
        if not item or item.order_id != order_id:
            raise OrderNotFound(order_id, item_id)
        return item

    def update_item_quantity(self, order_id: int, item_id: int, quantity: int) -> OrderItem:
        # Order.total is left alone; see recompute_total
        if quantity <= 0:
            raise InvalidArgument("Quantity must be a positive integer.")
        item = self._get_item(order_id, item_id)
        item.quantity = quantity
        self.db.commit()
        self.db.refresh(item)
        return item

    def recalculate_item_tax(self, order_id: int, item_id: int) -> OrderItem:
        item = self._get_item(order_id, item_id)
        if item.tax_rate is None:
            item.tax_amount = quantize_money(0)
        else:
            item.tax_amount = quantize_money(
                compute_line_tax(item.price, item.tax_rate, self.pricing.tax_included_in_price)
            )
        self.db.commit()
        self.db.refresh(item)
        return item

    def recompute_total(self, order_id: int) -> Order:
        order = self.get(order_id)
        order.total = quantize_money(order.calculated_total)
        self.db.commit()
        self.db.refresh(order)
        return order

    def refund(self, order_id: int) -> tuple[Order, RefundResult]:
        """Refund the captured payment and cancel the order."""
        order = self.get(order_id)
        if self.registry is None:
            raise InvalidArgument("No payment gateways configured.")
        if not order.payment_reference:
            raise InvalidArgument(f"Order {order_id} has no recorded payment to refund.")
        if order.status == OrderStatus.CANCELLED.value:
            raise InvalidStatusTransition(order.status, OrderStatus.CANCELLED.value)

        provider = self.registry.resolve(order.payment_gateway)
        result = provider.refund(order.payment_reference)

        order.status = OrderStatus.CANCELLED.value
        self.db.commit()
        self.db.refresh(order)
        logger.info(f"Order {order_id} refunded via {order.payment_gateway}: {result.refund_id}")
        return order, result

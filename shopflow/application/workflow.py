"""
Order creation and payment settlement.

One call to ``create_order`` (or ``resume_payment``) is one checkout attempt
and runs to a terminal state before returning::

    Validating -> Pricing -> Charging -> Persisting -> Completed
                                     +-> AwaitingRedirect
    (any state) -> Failed

Nothing is written before Persisting, and Persisting is a single
transaction: the order row, its items and every inventory decrement commit
together or not at all.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session

from shopflow.application.inventory import InventoryLedger
from shopflow.application.pricing import PricingCalculator
from shopflow.application.schemas import CartLine, PaymentDetails
from shopflow.core import generate_request_id, get_logger, set_request_context
from shopflow.domain.errors import (
    AuthenticationFailure,
    CommerceError,
    InsufficientInventory,
    InvalidArgument,
    PaymentError,
    PaymentOutcomeUnknown,
    PostChargePersistenceFailure,
    ProductNotFound,
)
from shopflow.domain.models import CartItem, Order, OrderItem, OrderStatus, Product
from shopflow.payments import ProviderRegistry

logger = get_logger(__name__)


class WorkflowState(str, Enum):
    VALIDATING = "validating"
    PRICING = "pricing"
    CHARGING = "charging"
    AWAITING_REDIRECT = "awaiting_redirect"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PendingRedirect:
    """Returned instead of an order when the payer must approve off-site.

    The caller keeps ``external_order_id`` (e.g. in the session) and passes
    it back to ``resume_payment``.
    """

    redirect_url: str
    external_order_id: str
    gateway: str


@dataclass
class CheckoutAttempt:
    user_id: Optional[int]
    gateway: Optional[str]
    attempt_id: str = field(default_factory=generate_request_id)
    state: WorkflowState = WorkflowState.VALIDATING
    total: Optional[Decimal] = None
    history: list[WorkflowState] = field(default_factory=list)

    def advance(self, state: WorkflowState) -> None:
        self.state = state
        self.history.append(state)
        logger.info(
            f"Checkout {self.attempt_id} -> {state.value}",
            extra={'extra_fields': {'user_id': self.user_id, 'gateway': self.gateway, 'state': state.value}},
        )


class OrderWorkflow:
    def __init__(
        self,
        db: Session,
        registry: ProviderRegistry,
        pricing: PricingCalculator,
        redirect_gateway: str = "paypal",
    ):
        self.db = db
        self.registry = registry
        self.pricing = pricing
        self.redirect_gateway = redirect_gateway
        self.ledger = InventoryLedger(db)
        self.last_attempt: Optional[CheckoutAttempt] = None

    def create_order(
        self,
        user_id: Optional[int],
        cart_items: Iterable[Any],
        payment_details: Union[PaymentDetails, Mapping[str, Any]],
    ) -> Union[Order, PendingRedirect]:
        """Validate, price and charge the cart, then store the order.

        Returns the committed ``Order`` for synchronous gateways and a
        ``PendingRedirect`` for two-phase gateways, in which case nothing
        has been stored and ``resume_payment`` finishes the job.
        """
        details = self._payment_details(payment_details)
        gateway = details.get("gateway") or self.registry.default_gateway
        attempt = self._begin(user_id, gateway)

        try:
            lines = self._validate(attempt, cart_items)
            total = self._price(attempt, lines)
            provider = self.registry.resolve(gateway)

            attempt.advance(WorkflowState.CHARGING)
            charge = provider.charge(total, details)
        except CommerceError as e:
            self._fail(attempt, e)
            raise
        except Exception:
            self._crash(attempt)
            raise

        if charge.requires_redirect:
            attempt.advance(WorkflowState.AWAITING_REDIRECT)
            return PendingRedirect(
                redirect_url=charge.redirect_url,
                external_order_id=charge.external_order_id,
                gateway=charge.gateway,
            )

        return self._persist(attempt, lines, total, charge.reference)

    def resume_payment(
        self,
        external_order_id: str,
        user_id: Optional[int],
        cart_items: Iterable[Any],
        gateway: Optional[str] = None,
    ) -> Order:
        """Capture an approved two-phase payment and store the order.

        The total is recomputed from ``cart_items``; nothing from the first
        call is trusted.
        """
        gateway = gateway or self.redirect_gateway
        attempt = self._begin(user_id, gateway)

        try:
            if not external_order_id:
                raise InvalidArgument("An external order id is required to resume a payment.")
            lines = self._validate(attempt, cart_items)
            total = self._price(attempt, lines)
            provider = self.registry.resolve(gateway)

            attempt.advance(WorkflowState.CHARGING)
            execution = provider.execute(external_order_id)
        except CommerceError as e:
            self._fail(attempt, e)
            raise
        except Exception:
            self._crash(attempt)
            raise

        return self._persist(attempt, lines, total, execution.transaction_id or external_order_id)

    def _begin(self, user_id: Optional[int], gateway: Optional[str]) -> CheckoutAttempt:
        attempt = CheckoutAttempt(user_id=user_id, gateway=gateway)
        self.last_attempt = attempt
        set_request_context(checkout_id=attempt.attempt_id, user_id=user_id)
        attempt.advance(WorkflowState.VALIDATING)
        return attempt

    @staticmethod
    def _payment_details(payment_details) -> dict:
        if isinstance(payment_details, PaymentDetails):
            return payment_details.model_dump(exclude_none=True)
        return dict(payment_details or {})

    @staticmethod
    def _coerce_line(item: Any) -> CartLine:
        if isinstance(item, CartLine):
            return item
        if isinstance(item, CartItem):
            return CartLine.from_cart_item(item)
        try:
            return CartLine.model_validate(item)
        except ValidationError as e:
            raise InvalidArgument(f"Malformed cart line: {e}") from e

    def _validate(self, attempt: CheckoutAttempt, cart_items: Iterable[Any]) -> list[CartLine]:
        lines = [self._coerce_line(item) for item in cart_items]
        if not lines:
            raise InvalidArgument("Cannot create an order from an empty cart.")

        requested: dict[int, int] = defaultdict(int)
        for line in lines:
            if line.quantity <= 0:
                raise InvalidArgument(f"Quantity for product ID {line.product_id} must be a positive integer.")
            if line.price < 0 or line.tax_amount < 0:
                raise InvalidArgument(f"Price and tax for product ID {line.product_id} must be non-negative.")
            requested[line.product_id] += line.quantity

        # All lines are checked before any payment call is made
        for product_id, quantity in requested.items():
            if self.db.get(Product, product_id) is None:
                raise ProductNotFound(product_id)
            if not self.ledger.check_available(product_id, quantity):
                raise InsufficientInventory(
                    product_id, requested=quantity, available=self.ledger.quantity(product_id)
                )
        return lines

    def _price(self, attempt: CheckoutAttempt, lines: list[CartLine]) -> Decimal:
        attempt.advance(WorkflowState.PRICING)
        attempt.total = self.pricing.order_total(lines)
        return attempt.total

    def _persist(
        self,
        attempt: CheckoutAttempt,
        lines: list[CartLine],
        total: Decimal,
        charge_reference: Optional[str],
    ) -> Order:
        attempt.advance(WorkflowState.PERSISTING)
        try:
            order = Order(
                user_id=attempt.user_id,
                total=total,
                status=OrderStatus.PROCESSING.value,
                payment_gateway=attempt.gateway,
                payment_reference=charge_reference,
            )
            self.db.add(order)
            self.db.flush()  # assign id

            for line in lines:
                order.items.append(OrderItem(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    price=line.price,
                    tax_rate=self.pricing.effective_rate(line.tax_rate),
                    tax_amount=line.tax_amount,
                ))
                self.ledger.decrement(line.product_id, line.quantity)

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            failure = PostChargePersistenceFailure(attempt.gateway, charge_reference, e)
            attempt.advance(WorkflowState.FAILED)
            logger.critical(
                f"RECONCILIATION REQUIRED: {failure}",
                exc_info=True,
                extra={'extra_fields': {
                    'gateway': attempt.gateway,
                    'charge_reference': charge_reference,
                    'user_id': attempt.user_id,
                    'total': str(total),
                    'cause': type(e).__name__,
                }},
            )
            raise failure from e

        self.db.refresh(order)
        attempt.advance(WorkflowState.COMPLETED)
        logger.info(f"Order {order.id} created for user {attempt.user_id}, total {order.total}")
        return order

    def _fail(self, attempt: CheckoutAttempt, error: CommerceError) -> None:
        attempt.advance(WorkflowState.FAILED)
        if isinstance(error, PaymentOutcomeUnknown):
            logger.critical(
                f"RECONCILIATION REQUIRED: {error}",
                extra={'extra_fields': {
                    'gateway': attempt.gateway,
                    'charge_reference': error.charge_reference,
                    'user_id': attempt.user_id,
                    'total': str(attempt.total),
                    'cause': type(error.cause).__name__ if error.cause else None,
                }},
            )
        elif isinstance(error, PostChargePersistenceFailure):
            # Logged at CRITICAL by _persist
            return
        elif isinstance(error, AuthenticationFailure):
            # Credentials are a deployment problem, not something the payer can fix
            logger.error(
                f"Payment gateway {attempt.gateway} rejected our credentials: {error}",
                extra={'extra_fields': {'gateway': attempt.gateway, 'alert': 'operator'}},
            )
        elif isinstance(error, PaymentError):
            logger.warning(f"Payment failed via {attempt.gateway}: {error}")
        else:
            logger.info(f"Checkout {attempt.attempt_id} rejected: {error}")

    def _crash(self, attempt: CheckoutAttempt) -> None:
        stage = attempt.state
        attempt.advance(WorkflowState.FAILED)
        logger.exception(f"Checkout {attempt.attempt_id} failed unexpectedly while {stage.value}")

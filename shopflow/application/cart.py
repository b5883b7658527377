from decimal import Decimal

from sqlalchemy.orm import Session

from shopflow.application.pricing import PricingCalculator
from shopflow.application.schemas import CartLine
from shopflow.core import get_logger
from shopflow.domain.errors import CartItemNotFound, InvalidArgument, ProductNotFound
from shopflow.domain.models import CartItem, Product

logger = get_logger(__name__)


class CartService:
    """Per-user cart rows keyed by (user_id, product_id)."""

    def __init__(self, db: Session, pricing: PricingCalculator):
        self.db = db
        self.pricing = pricing

    def _find(self, user_id: int, product_id: int):
        return self.db.query(CartItem).filter(
            CartItem.user_id == user_id,
            CartItem.product_id == product_id,
        ).first()

    def add_or_update(self, user_id: int, product_id: int, quantity: int) -> CartItem:
        """Add ``quantity`` of a product, accumulating onto an existing row.

        The price and tax snapshot are refreshed from the catalog each time.
        """
        if quantity <= 0:
            raise InvalidArgument("Quantity must be a positive integer.")

        product = self.db.get(Product, product_id)
        if not product:
            raise ProductNotFound(product_id)

        tax_amount = self.pricing.line_tax(product.price, product.tax_rate)

        item = self._find(user_id, product_id)
        if item is None:
            item = CartItem(user_id=user_id, product_id=product_id, quantity=0)
            self.db.add(item)

        item.price = product.price
        item.tax_amount = tax_amount
        item.quantity += quantity
        self.db.commit()
        self.db.refresh(item)
        logger.info(f"Cart updated: user={user_id} product={product_id} quantity={item.quantity}")
        return item

    def update(self, user_id: int, product_id: int, quantity: int) -> CartItem:
        if quantity <= 0:
            raise InvalidArgument("Quantity must be a positive integer.")

        item = self._find(user_id, product_id)
        if not item:
            raise CartItemNotFound(user_id, product_id)

        item.quantity = quantity
        self.db.commit()
        self.db.refresh(item)
        return item

    def remove(self, user_id: int, product_id: int) -> None:
        self.db.query(CartItem).filter(
            CartItem.user_id == user_id,
            CartItem.product_id == product_id,
        ).delete()
        self.db.commit()

    def items(self, user_id: int) -> list[CartItem]:
        return self.db.query(CartItem).filter(CartItem.user_id == user_id).order_by(CartItem.id).all()

    def lines(self, user_id: int) -> list[CartLine]:
        return [CartLine.from_cart_item(item) for item in self.items(user_id)]

    def total(self, user_id: int) -> Decimal:
        return self.pricing.order_total(self.items(user_id))

    def clear(self, user_id: int) -> None:
        self.db.query(CartItem).filter(CartItem.user_id == user_id).delete()
        self.db.commit()

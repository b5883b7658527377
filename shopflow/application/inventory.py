from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from shopflow.core import get_logger
from shopflow.domain.errors import InsufficientInventory, InvalidArgument, InventoryNotFound, ProductNotFound
from shopflow.domain.models import Inventory, Product

logger = get_logger(__name__)


class InventoryLedger:
    """Stock per product. Never commits: writes join the caller's transaction."""

    def __init__(self, db: Session):
        self.db = db

    def quantity(self, product_id: int) -> Optional[int]:
        return self.db.execute(
            select(Inventory.quantity).where(Inventory.product_id == product_id)
        ).scalar_one_or_none()

    def check_available(self, product_id: int, requested_qty: int) -> bool:
        current = self.quantity(product_id)
        return current is not None and current >= requested_qty

    def decrement(self, product_id: int, qty: int) -> None:
        if qty <= 0:
            raise InvalidArgument("Quantity must be a positive integer.")

        # Sufficiency is re-checked by the UPDATE itself so concurrent
        # sales can never take the row below zero.
        result = self.db.execute(
            update(Inventory)
            .where(Inventory.product_id == product_id, Inventory.quantity >= qty)
            .values(quantity=Inventory.quantity - qty)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.debug(f"Inventory decremented: product={product_id} qty={qty}")
            return

        current = self.quantity(product_id)
        if current is None:
            raise InventoryNotFound(product_id)
        raise InsufficientInventory(product_id, requested=qty, available=current)

    def increment(self, product_id: int, qty: int) -> None:
        if qty < 0:
            raise InvalidArgument("Restock quantity must be non-negative.")

        result = self.db.execute(
            update(Inventory)
            .where(Inventory.product_id == product_id)
            .values(quantity=Inventory.quantity + qty)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if self.db.get(Product, product_id) is None:
                raise ProductNotFound(product_id)
            self.db.add(Inventory(product_id=product_id, quantity=qty))
            self.db.flush()
        logger.debug(f"Inventory incremented: product={product_id} qty={qty}")

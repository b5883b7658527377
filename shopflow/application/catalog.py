from sqlalchemy.orm import Session

from shopflow.application.inventory import InventoryLedger
from shopflow.application.pricing import quantize_money
from shopflow.application.schemas import ProductCreate, ProductUpdate
from shopflow.core import get_logger
from shopflow.domain.errors import ProductNotFound
from shopflow.domain.models import CartItem, OrderItem, Product

logger = get_logger(__name__)


class CatalogService:
    def __init__(self, db: Session):
        self.db = db

    def list(self):
        return self.db.query(Product).order_by(Product.id).all()

    def get(self, product_id: int) -> Product:
        product = self.db.get(Product, product_id)
        if not product:
            raise ProductNotFound(product_id)
        return product

    def create(self, data: ProductCreate) -> Product:
        product_data = data.model_dump()
        product_data["price"] = quantize_money(product_data["price"])
        obj = Product(**product_data)
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        logger.info(f"Product created: id={obj.id} sku={obj.sku}")
        return obj

    def update(self, product_id: int, data: ProductUpdate) -> Product:
        product = self.get(product_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            if field == "price" and value is not None:
                value = quantize_money(value)
            setattr(product, field, value)
        self.db.commit()
        self.db.refresh(product)
        return product

    def restock(self, product_id: int, quantity: int) -> int:
        ledger = InventoryLedger(self.db)
        ledger.increment(product_id, quantity)
        self.db.commit()
        logger.info(f"Product {product_id} restocked with {quantity}")
        return ledger.quantity(product_id)

    def delete(self, product_id: int) -> None:
        """Remove a product with its inventory, cart rows and order lines."""
        product = self.get(product_id)
        # Mirrors the ON DELETE CASCADE foreign keys
        self.db.query(CartItem).filter(CartItem.product_id == product_id).delete()
        self.db.query(OrderItem).filter(OrderItem.product_id == product_id).delete()
        self.db.delete(product)
        self.db.commit()
        logger.info(f"Product deleted: id={product_id}")

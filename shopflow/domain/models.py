import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TimestampMixin:
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class Product(TimestampMixin, Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[Optional[str]] = mapped_column(String(50), unique=True, index=True, nullable=True)
    name: Mapped[str] = mapped_column(String(200))
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    # Fraction, e.g. 0.2 for 20%; None falls back to the configured default rate
    tax_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    inventory: Mapped[Optional["Inventory"]] = relationship(
        "Inventory", back_populates="product", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def formatted_price(self) -> str:
        return f"{self.price:,.2f}"


class Inventory(TimestampMixin, Base):
    __tablename__ = "inventories"
    __table_args__ = (CheckConstraint("quantity >= 0", name="ck_inventories_quantity_non_negative"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), unique=True, index=True
    )
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    product: Mapped[Product] = relationship("Product", back_populates="inventory")


class CartItem(TimestampMixin, Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"))
    # Snapshots taken when the item was added or last updated
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    quantity: Mapped[int] = mapped_column(Integer)
    product: Mapped[Product] = relationship("Product", lazy="joined")

    @property
    def total_price(self) -> Decimal:
        return (self.price + self.tax_amount) * self.quantity


class Order(TimestampMixin, Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    # Nullable: guest checkout
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value)
    payment_gateway: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    # Provider transaction id (synchronous) or external order id (two-phase)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan"
    )

    @property
    def calculated_total(self) -> Decimal:
        return sum((item.total_price for item in self.items), Decimal("0"))


class OrderItem(TimestampMixin, Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"))
    quantity: Mapped[int] = mapped_column(Integer)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    tax_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4), nullable=True)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    order: Mapped[Order] = relationship("Order", back_populates="items")

    @property
    def total_price(self) -> Decimal:
        return (self.price + self.tax_amount) * self.quantity

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProductCreate(BaseModel):
    name: str
    price: Decimal = Field(ge=0)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    sku: Optional[str] = None
    description: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    sku: Optional[str] = None
    description: Optional[str] = None


class ProductRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    price: Decimal
    tax_rate: Optional[Decimal] = None
    sku: Optional[str] = None
    description: Optional[str] = None
    formatted_price: str


class InventoryRead(BaseModel):
    product_id: int
    quantity: int


class RestockRequest(BaseModel):
    quantity: int = Field(ge=0)


class CartItemCreate(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class CartItemUpdate(BaseModel):
    quantity: int = Field(gt=0)


class CartItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    quantity: int
    price: Decimal
    tax_amount: Decimal
    total_price: Decimal


class CartRead(BaseModel):
    user_id: int
    items: list[CartItemRead]
    total: Decimal
    formatted_total: str


class CartLine(BaseModel):
    """One line handed to the order workflow.

    ``price`` and ``tax_amount`` are the snapshots captured when the line
    was put in the cart; the workflow does not re-read them from the catalog.
    """

    product_id: int
    quantity: int
    price: Decimal
    tax_amount: Decimal
    tax_rate: Optional[Decimal] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_product(cls, data: Any) -> Any:
        # Cart rows carry the rate on their product: {"product": {"tax_rate": ...}}
        if isinstance(data, dict) and "tax_rate" not in data:
            product = data.get("product")
            if isinstance(product, dict):
                data = {**data, "tax_rate": product.get("tax_rate")}
        return data

    @classmethod
    def from_cart_item(cls, item) -> "CartLine":
        return cls(
            product_id=item.product_id,
            quantity=item.quantity,
            price=item.price,
            tax_amount=item.tax_amount,
            tax_rate=item.product.tax_rate if item.product is not None else None,
        )


class PaymentDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    gateway: Optional[str] = None
    token: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutRequest(BaseModel):
    user_id: int
    payment: PaymentDetails


class ResumeRequest(BaseModel):
    user_id: int
    external_order_id: str
    gateway: Optional[str] = None


class PendingRedirectRead(BaseModel):
    redirect_url: str
    external_order_id: str
    gateway: str


class OrderItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    quantity: int
    price: Decimal
    tax_rate: Optional[Decimal] = None
    tax_amount: Decimal


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[int] = None
    total: Decimal
    status: str
    payment_gateway: Optional[str] = None
    payment_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: list[OrderItemRead]


class OrderStatusUpdate(BaseModel):
    status: str
    override: bool = False


class OrderItemQuantityUpdate(BaseModel):
    quantity: int

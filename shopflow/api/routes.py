from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from shopflow.application.cart import CartService
from shopflow.application.catalog import CatalogService
from shopflow.application.inventory import InventoryLedger
from shopflow.application.orders import OrderService
from shopflow.application.pricing import PricingCalculator
from shopflow.application.schemas import (
    CartItemCreate,
    CartItemRead,
    CartItemUpdate,
    CartRead,
    CheckoutRequest,
    InventoryRead,
    OrderItemQuantityUpdate,
    OrderItemRead,
    OrderRead,
    OrderStatusUpdate,
    PendingRedirectRead,
    ProductCreate,
    ProductRead,
    ProductUpdate,
    RestockRequest,
    ResumeRequest,
)
from shopflow.application.workflow import OrderWorkflow, PendingRedirect
from shopflow.core_settings import Settings, get_settings
from shopflow.domain.errors import InventoryNotFound
from shopflow.infrastructure.db import get_db
from shopflow.payments import ProviderRegistry


@lru_cache
def get_registry() -> ProviderRegistry:
    return ProviderRegistry.from_settings(get_settings())


def get_pricing(settings: Settings = Depends(get_settings)) -> PricingCalculator:
    return PricingCalculator.from_settings(settings)


products_router = APIRouter(prefix="/products", tags=["products"])
inventory_router = APIRouter(prefix="/inventory", tags=["inventory"])
cart_router = APIRouter(prefix="/cart", tags=["cart"])
orders_router = APIRouter(prefix="/orders", tags=["orders"])


@products_router.get("/", response_model=list[ProductRead])
def list_products(db: Session = Depends(get_db)):
    return CatalogService(db).list()


@products_router.get("/{product_id}", response_model=ProductRead)
def get_product(product_id: int, db: Session = Depends(get_db)):
    return CatalogService(db).get(product_id)


@products_router.post("/", response_model=ProductRead, status_code=201)
def create_product(payload: ProductCreate, db: Session = Depends(get_db)):
    return CatalogService(db).create(payload)


@products_router.put("/{product_id}", response_model=ProductRead)
def update_product(product_id: int, payload: ProductUpdate, db: Session = Depends(get_db)):
    return CatalogService(db).update(product_id, payload)


@products_router.delete("/{product_id}", status_code=204)
def delete_product(product_id: int, db: Session = Depends(get_db)):
    CatalogService(db).delete(product_id)
    return None


@inventory_router.get("/{product_id}", response_model=InventoryRead)
def get_inventory(product_id: int, db: Session = Depends(get_db)):
    quantity = InventoryLedger(db).quantity(product_id)
    if quantity is None:
        raise InventoryNotFound(product_id)
    return InventoryRead(product_id=product_id, quantity=quantity)


@inventory_router.post("/{product_id}/restock", response_model=InventoryRead)
def restock(product_id: int, payload: RestockRequest, db: Session = Depends(get_db)):
    quantity = CatalogService(db).restock(product_id, payload.quantity)
    return InventoryRead(product_id=product_id, quantity=quantity)


def _cart_read(cart: CartService, user_id: int) -> CartRead:
    total = cart.total(user_id)
    return CartRead(
        user_id=user_id,
        items=[CartItemRead.model_validate(item) for item in cart.items(user_id)],
        total=total,
        formatted_total=f"{get_settings().CURRENCY_SYMBOL}{total:,.2f}",
    )


@cart_router.get("/{user_id}", response_model=CartRead)
def get_cart(user_id: int, db: Session = Depends(get_db), pricing: PricingCalculator = Depends(get_pricing)):
    return _cart_read(CartService(db, pricing), user_id)


@cart_router.post("/{user_id}/items", response_model=CartRead, status_code=201)
def add_to_cart(
    user_id: int,
    payload: CartItemCreate,
    db: Session = Depends(get_db),
    pricing: PricingCalculator = Depends(get_pricing),
):
    cart = CartService(db, pricing)
    cart.add_or_update(user_id, payload.product_id, payload.quantity)
    return _cart_read(cart, user_id)


@cart_router.put("/{user_id}/items/{product_id}", response_model=CartRead)
def update_cart_item(
    user_id: int,
    product_id: int,
    payload: CartItemUpdate,
    db: Session = Depends(get_db),
    pricing: PricingCalculator = Depends(get_pricing),
):
    cart = CartService(db, pricing)
    cart.update(user_id, product_id, payload.quantity)
    return _cart_read(cart, user_id)


@cart_router.delete("/{user_id}/items/{product_id}", status_code=204)
def remove_cart_item(user_id: int, product_id: int, db: Session = Depends(get_db), pricing: PricingCalculator = Depends(get_pricing)):
    CartService(db, pricing).remove(user_id, product_id)
    return None


@cart_router.delete("/{user_id}", status_code=204)
def clear_cart(user_id: int, db: Session = Depends(get_db), pricing: PricingCalculator = Depends(get_pricing)):
    CartService(db, pricing).clear(user_id)
    return None


@orders_router.post("/checkout", status_code=201, responses={202: {"model": PendingRedirectRead}})
def checkout(
    payload: CheckoutRequest,
    response: Response,
    db: Session = Depends(get_db),
    pricing: PricingCalculator = Depends(get_pricing),
    registry: ProviderRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    """Turn the user's cart into an order, or start an off-site payment."""
    cart = CartService(db, pricing)
    workflow = OrderWorkflow(db, registry, pricing, redirect_gateway=settings.REDIRECT_GATEWAY)
    result = workflow.create_order(payload.user_id, cart.lines(payload.user_id), payload.payment)

    if isinstance(result, PendingRedirect):
        response.status_code = 202
        return PendingRedirectRead(
            redirect_url=result.redirect_url,
            external_order_id=result.external_order_id,
            gateway=result.gateway,
        )

    cart.clear(payload.user_id)
    return OrderRead.model_validate(result)


@orders_router.post("/resume", response_model=OrderRead, status_code=201)
def resume_payment(
    payload: ResumeRequest,
    db: Session = Depends(get_db),
    pricing: PricingCalculator = Depends(get_pricing),
    registry: ProviderRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    """Finish a two-phase payment after the payer returns from the gateway."""
    cart = CartService(db, pricing)
    workflow = OrderWorkflow(db, registry, pricing, redirect_gateway=settings.REDIRECT_GATEWAY)
    order = workflow.resume_payment(
        payload.external_order_id,
        payload.user_id,
        cart.lines(payload.user_id),
        gateway=payload.gateway,
    )
    cart.clear(payload.user_id)
    return order


@orders_router.get("/", response_model=list[OrderRead])
def list_orders(
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    db: Session = Depends(get_db),
    pricing: PricingCalculator = Depends(get_pricing),
):
    return OrderService(db, pricing).list(status=status, user_id=user_id)


@orders_router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, db: Session = Depends(get_db), pricing: PricingCalculator = Depends(get_pricing)):
    return OrderService(db, pricing).get(order_id)


@orders_router.put("/{order_id}/status", response_model=OrderRead)
def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    db: Session = Depends(get_db),
    pricing: PricingCalculator = Depends(get_pricing),
):
    return OrderService(db, pricing).update_status(order_id, payload.status, override=payload.override)


@orders_router.put("/{order_id}/items/{item_id}", response_model=OrderItemRead)
def update_order_item(
    order_id: int,
    item_id: int,
    payload: OrderItemQuantityUpdate,
    db: Session = Depends(get_db),
    pricing: PricingCalculator = Depends(get_pricing),
):
    return OrderService(db, pricing).update_item_quantity(order_id, item_id, payload.quantity)


@orders_router.post("/{order_id}/items/{item_id}/recalculate-tax", response_model=OrderItemRead)
def recalculate_item_tax(
    order_id: int,
    item_id: int,
    db: Session = Depends(get_db),
    pricing: PricingCalculator = Depends(get_pricing),
):
    return OrderService(db, pricing).recalculate_item_tax(order_id, item_id)


@orders_router.post("/{order_id}/recompute-total", response_model=OrderRead)
def recompute_total(order_id: int, db: Session = Depends(get_db), pricing: PricingCalculator = Depends(get_pricing)):
    return OrderService(db, pricing).recompute_total(order_id)


@orders_router.post("/{order_id}/refund", response_model=OrderRead)
def refund_order(
    order_id: int,
    db: Session = Depends(get_db),
    pricing: PricingCalculator = Depends(get_pricing),
    registry: ProviderRegistry = Depends(get_registry),
):
    order, _ = OrderService(db, pricing, registry).refund(order_id)
    return order

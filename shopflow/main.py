"""
Shopflow order-processing service

Cart, catalog/inventory administration and the checkout workflow behind
one FastAPI application.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shopflow.api.routes import cart_router, get_registry, inventory_router, orders_router, products_router
from shopflow.core import RequestLoggingMiddleware, ServiceHealth, get_logger, setup_logging
from shopflow.core_settings import get_settings
from shopflow.domain.errors import (
    AuthenticationFailure,
    CartItemNotFound,
    CommerceError,
    GatewayError,
    InsufficientInventory,
    InvalidArgument,
    InventoryNotFound,
    OrderNotFound,
    PaymentNotImplemented,
    PostChargePersistenceFailure,
    ProductNotFound,
)
from shopflow.infrastructure.db import get_engine, init_models

settings = get_settings()

SERVICE_DESCRIPTION = "Cart, pricing, inventory and payment settlement"

setup_logging(
    service_name=settings.SERVICE_NAME,
    level=settings.LOG_LEVEL,
    version=settings.SERVICE_VERSION,
)

logger = get_logger(__name__)

# Most specific first: the first matching class wins
ERROR_STATUS = [
    (PostChargePersistenceFailure, 500),
    (AuthenticationFailure, 503),
    (PaymentNotImplemented, 501),
    (GatewayError, 402),
    (InsufficientInventory, 409),
    (ProductNotFound, 404),
    (InventoryNotFound, 404),
    (OrderNotFound, 404),
    (CartItemNotFound, 404),
    (InvalidArgument, 400),
]


def status_for(error: CommerceError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(error, error_class):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.SERVICE_NAME} version {settings.SERVICE_VERSION}")

    try:
        init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise

    # Unknown gateway keys in configuration stop the service here
    registry = get_registry()
    logger.info(f"{settings.SERVICE_NAME} started with gateways {registry.gateways}")

    yield

    logger.info(f"Shutting down {settings.SERVICE_NAME}")


app = FastAPI(
    title=settings.SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}")
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, (InsufficientInventory, ProductNotFound, InventoryNotFound, CartItemNotFound)):
        body["product_id"] = exc.product_id
    return JSONResponse(status_code=status_code, content=body)


health_service = ServiceHealth(settings.SERVICE_NAME, get_engine, settings.SERVICE_VERSION)
app.include_router(health_service.create_health_router())

app.include_router(products_router)
app.include_router(inventory_router)
app.include_router(cart_router)
app.include_router(orders_router)


@app.get("/")
async def root():
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs",
    }

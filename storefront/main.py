"""
FastAPI application exposing the storefront cart service.
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.cart_service import CartReconciliationService
from storefront.catalog import (
    ProductCatalog,
    RedisProductCatalog,
    StaticProductCatalog,
    search_products
)
from storefront.checkout_service import PurchaseHistoryService
from storefront.config import Config
from storefront.exceptions import (
    NotAuthenticatedError,
    PartialCheckoutFailure,
    ProductNotFoundError,
    RemoteUnavailableError,
    ValidationError
)
from storefront.log import configure_logging
from storefront.middleware import MetricsMiddleware
from storefront.models import (
    CartItemRequest,
    CartResponse,
    CheckoutResponse,
    MutationResponse,
    MutationResult,
    Product,
    PurchaseHistoryEntry,
    SearchResult,
    SessionResponse,
    SignInRequest,
    UpdateQuantityRequest
)
from storefront.redis_client import get_redis_client
from storefront.remote_store import RedisRemoteStore
from storefront.session import CartSession, SessionRegistry

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Seed an empty Redis catalog on startup; release sessions on shutdown"""
    catalog = get_catalog()
    if isinstance(catalog, RedisProductCatalog):
        try:
            await catalog.seed_if_empty()
        except RemoteUnavailableError as e:
            logger.warning(f"Catalog not seeded, Redis unavailable: {e}")
    yield
    if _registry is not None:
        logger.info(f"Closing {len(_registry)} cart session(s)")
        _registry.close_all()


# Initialize FastAPI app
app = FastAPI(
    title="Storefront Cart API",
    description="Cart reconciliation, checkout and purchase history",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Metrics middleware
app.add_middleware(MetricsMiddleware)

_catalog: Optional[ProductCatalog] = None
_registry: Optional[SessionRegistry] = None


def get_catalog() -> ProductCatalog:
    """Get or create the product catalog (singleton)"""
    global _catalog
    if _catalog is None:
        if Config.CATALOG_SOURCE == "redis":
            _catalog = RedisProductCatalog()
        else:
            _catalog = StaticProductCatalog()
    return _catalog


def get_registry(catalog: ProductCatalog = Depends(get_catalog)) -> SessionRegistry:
    """Get or create the session registry (singleton)"""
    global _registry
    if _registry is None:
        _registry = SessionRegistry(remote_store=RedisRemoteStore(), catalog=catalog)
    return _registry


def get_history_service(registry: SessionRegistry = Depends(get_registry)) -> PurchaseHistoryService:
    return PurchaseHistoryService(registry.remote_store, registry.catalog)


async def get_session(
    session_id: str = Header(..., alias="X-Session-ID", description="Client session identifier"),
    registry: SessionRegistry = Depends(get_registry)
) -> CartSession:
    return await registry.get_or_create(session_id)


def _cart_response(cart: CartReconciliationService) -> CartResponse:
    identity = cart.identity
    return CartResponse(
        session_state=cart.state,
        user_id=identity.user_id if identity else None,
        items=cart.snapshot(),
        total_items=cart.get_item_count(),
        total_price=cart.get_cart_total()
    )


def _mutation_response(
    request: Request,
    cart: CartReconciliationService,
    result: MutationResult,
    start_time: float,
    metric_name: str
) -> MutationResponse:
    request.state.metric_name = metric_name if result.synced else "CartSyncLag"
    latency_ms = (time.time() - start_time) * 1000
    return MutationResponse(
        sync=result,
        cart=_cart_response(cart),
        latency_ms=round(latency_ms, 2)
    )


# Health check endpoint for ALB
@app.get("/health")
async def health_check():
    """
    Health check endpoint.
    Always returns HTTP 200 if the application is running.
    Checks Redis connectivity but does not fail if Redis is unavailable.
    """
    redis_status = "healthy"
    redis_latency_ms = None

    try:
        redis_client = get_redis_client()
        ping_start = time.time()
        ping_result = await redis_client.ping()
        redis_latency_ms = round((time.time() - ping_start) * 1000, 2)

        if not ping_result:
            redis_status = "unhealthy"
    except RemoteUnavailableError:
        redis_status = "unhealthy"

    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": "storefront-cart-api",
            "redis": {
                "status": redis_status,
                "latency_ms": redis_latency_ms
            },
            "timestamp": time.time()
        }
    )


# Catalog endpoints
@app.get("/products", response_model=SearchResult)
async def list_products(
    q: Optional[str] = None,
    catalog: ProductCatalog = Depends(get_catalog)
):
    """List products, optionally filtered by a substring query"""
    return await search_products(catalog, q or "")


@app.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: str, catalog: ProductCatalog = Depends(get_catalog)):
    product = await catalog.get_product_by_id(product_id)
    if product is None:
        raise ProductNotFoundError(product_id)
    return product


# Session endpoints
@app.post("/session/sign-in", response_model=SessionResponse)
async def sign_in(request: SignInRequest, session: CartSession = Depends(get_session)):
    """
    Sign the session in.
    Replaces the cart with the user's saved cart.
    """
    hydration = await session.sign_in(request.user_id)
    return SessionResponse(hydration=hydration, cart=_cart_response(session.cart))


@app.post("/session/sign-out", response_model=SessionResponse)
async def sign_out(session: CartSession = Depends(get_session)):
    """Sign the session out and fall back to the anonymous cart"""
    hydration = await session.sign_out()
    return SessionResponse(hydration=hydration, cart=_cart_response(session.cart))


# Cart endpoints
@app.get("/cart", response_model=CartResponse)
async def get_cart(session: CartSession = Depends(get_session)):
    """Get cart contents"""
    return _cart_response(session.cart)


@app.post("/cart/items", response_model=MutationResponse)
async def add_cart_item(
    request: Request,
    item: CartItemRequest,
    session: CartSession = Depends(get_session)
):
    """Add an item, or more of an item already in the cart"""
    start_time = time.time()
    result = await session.cart.add_to_cart(item.product_id, item.quantity)
    return _mutation_response(request, session.cart, result, start_time, "CartItemAdded")


@app.put("/cart/items/{product_id}", response_model=MutationResponse)
async def update_cart_item(
    request: Request,
    product_id: str,
    update: UpdateQuantityRequest,
    session: CartSession = Depends(get_session)
):
    """Set an item's quantity; 0 removes it"""
    start_time = time.time()
    result = await session.cart.update_quantity(product_id, update.quantity)
    return _mutation_response(request, session.cart, result, start_time, "CartItemUpdated")


@app.delete("/cart/items/{product_id}", response_model=MutationResponse)
async def remove_cart_item(
    request: Request,
    product_id: str,
    session: CartSession = Depends(get_session)
):
    """Remove item from cart"""
    start_time = time.time()
    result = await session.cart.remove_from_cart(product_id)
    return _mutation_response(request, session.cart, result, start_time, "CartItemRemoved")


@app.delete("/cart", response_model=MutationResponse)
async def clear_cart(request: Request, session: CartSession = Depends(get_session)):
    """Clear all items from cart"""
    start_time = time.time()
    result = await session.cart.clear_cart()
    return _mutation_response(request, session.cart, result, start_time, "CartCleared")


@app.post("/checkout", response_model=CheckoutResponse)
async def checkout(request: Request, session: CartSession = Depends(get_session)):
    """
    Place the order.
    Records one purchase per cart line, then empties the cart.
    """
    result = await session.cart.checkout()
    request.state.metric_name = "CheckoutCompleted"
    return CheckoutResponse(
        order_id=result.order_id,
        total=result.total,
        items=result.recorded,
        failed_items=result.failed,
        message=result.message,
        cart=_cart_response(session.cart)
    )


@app.get("/purchases", response_model=List[PurchaseHistoryEntry])
async def purchase_history(
    session: CartSession = Depends(get_session),
    history: PurchaseHistoryService = Depends(get_history_service)
):
    """Past purchases of the signed-in user, newest first"""
    identity = session.cart.identity
    if identity is None or not identity.is_authenticated:
        raise NotAuthenticatedError("Sign in to view your purchase history")
    return await history.get_history(identity.user_id)


# Error handlers
@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc):
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "message": str(exc)}
    )


@app.exception_handler(ProductNotFoundError)
async def not_found_handler(request, exc):
    return JSONResponse(
        status_code=404,
        content={"error": "Not found", "message": str(exc)}
    )


@app.exception_handler(NotAuthenticatedError)
async def not_authenticated_handler(request, exc):
    return JSONResponse(
        status_code=401,
        content={"error": "Not authenticated", "message": str(exc)}
    )


@app.exception_handler(PartialCheckoutFailure)
async def partial_checkout_handler(request, exc):
    return JSONResponse(
        status_code=409,
        content={
            "error": "Checkout incomplete",
            "message": exc.result.message,
            "result": exc.result.model_dump(mode="json")
        }
    )


@app.exception_handler(RemoteUnavailableError)
async def remote_error_handler(request, exc):
    return JSONResponse(
        status_code=503,
        content={"error": "Service unavailable", "message": "Remote store unavailable"}
    )


# Generic exception handler for unhandled errors
@app.exception_handler(Exception)
async def generic_exception_handler(request, exc):
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc),
            "type": type(exc).__name__
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)

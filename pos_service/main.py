"""
main.py — FastAPI Entry Point for the POS Payment Service

This module provides the REST API used by the point-of-sale frontend. It wires the
Open Payments client, the inventory gateway and the in-memory stores into the
orchestrators once at startup and exposes them over HTTP.

Responsibilities:
    • Charges: create an incoming payment for a cart and poll its status
    • Checkouts: let a customer pay from their own wallet after an interaction redirect
    • Map every service error to a JSON error response with a stable message
    • Provide configuration and health information
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .checkout import CheckoutOrchestrator
from .clients import OpenPaymentsClient, RestInventoryGateway
from .config import Settings, get_settings
from .exceptions import NotFoundError, PosError
from .logging_config import get_logger, setup_logging
from .models import (
    CheckoutFinishRequest,
    CheckoutStartRequest,
    CreateOrderRequest,
    InteractionRequired,
    InventoryReviewRequest,
)
from .orders import OrderOrchestrator
from .reconciliation import ReconciliationService
from .retry import RetryPolicy
from .store import InMemoryEntityStore

log = get_logger(__name__)


@dataclass
class PosServices:
    """Orchestrators shared by all requests, plus the clients to close on shutdown."""
    orders: OrderOrchestrator
    reconciliation: ReconciliationService
    checkout: CheckoutOrchestrator
    closables: List[Any] = field(default_factory=list)

    def close(self):
        for closable in self.closables:
            closable.close()


def build_services(settings: Settings) -> PosServices:
    """
    Constructs the protocol client, inventory gateway, stores and orchestrators.

    Args:
        settings (Settings): Process configuration.

    Returns:
        PosServices: Ready-to-use services.
    """
    timeout = settings.request_timeout_seconds
    client = OpenPaymentsClient(settings.merchant_wallet_address_url, timeout=timeout)
    closables = [client]

    inventory = None
    if settings.inventory_configured:
        inventory = RestInventoryGateway(
            settings.inventory_url,
            api_key=settings.inventory_api_key,
            table=settings.inventory_table,
            id_column=settings.inventory_id_column,
            name_column=settings.inventory_name_column,
            stock_column=settings.inventory_stock_column,
            updated_column=settings.inventory_updated_column,
            timeout=timeout,
        )
        closables.append(inventory)
    else:
        log.warning("INVENTORY_URL nicht gesetzt. Der Bestand wird NICHT aktualisiert.")

    orders = InMemoryEntityStore(name="orders")
    return PosServices(
        orders=OrderOrchestrator(
            client,
            orders,
            merchant_wallet_address_url=settings.merchant_wallet_address_url,
            finish_url=settings.finish_url,
            default_asset_code=settings.asset_code,
            default_asset_scale=settings.asset_scale,
            timeout=timeout,
        ),
        reconciliation=ReconciliationService(
            client,
            orders,
            inventory=inventory,
            default_asset_code=settings.asset_code,
            default_asset_scale=settings.asset_scale,
            timeout=timeout,
        ),
        checkout=CheckoutOrchestrator(
            client,
            InMemoryEntityStore(name="checkouts"),
            finish_url=settings.finish_url,
            wallet_retry=RetryPolicy.from_retries(settings.wallet_retry_attempts, settings.wallet_retry_backoff_seconds),
            timeout=timeout,
        ),
        closables=closables,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the services from the settings unless they were injected (tests),
    and closes the HTTP clients on shutdown.
    """
    settings: Settings = app.state.settings
    log.info("POS-Service startet...")
    log.info(f"Händler-Wallet: {settings.merchant_wallet_address_url}")
    if not settings.private_key:
        log.warning("PRIVATE_KEY ist leer. Anfragen an Autorisierungsserver werden nicht signiert.")

    owned = app.state.services is None
    if owned:
        app.state.services = build_services(settings)

    yield

    log.info("POS-Service wird beendet...")
    if owned:
        app.state.services.close()


def get_services(request: Request) -> PosServices:
    return request.app.state.services


router = APIRouter()


@router.get("/health", response_class=PlainTextResponse)
def health_check():
    """Liveness probe for container orchestrators."""
    return "ok"


@router.get("/config")
def get_config(services: PosServices = Depends(get_services)):
    """
    Exposes the merchant wallet and its asset.

    Returns:
        dict: merchantWalletAddressUrl, assetCode, assetScale, inventoryConfigured.
    """
    wallet = services.orders.merchant_wallet()
    asset_code, asset_scale = services.orders.asset_of(wallet)
    return {
        "merchantWalletAddressUrl": wallet.id,
        "assetCode": asset_code,
        "assetScale": asset_scale,
        "inventoryConfigured": services.reconciliation.inventory is not None,
    }


@router.post("/pos/create-order")
def create_order(body: CreateOrderRequest, services: PosServices = Depends(get_services)):
    """
    Creates an incoming payment for the cart.

    Returns:
        200 {orderId, paymentUrl}, or 403 {error, interactRedirect} while the
        merchant's approval of the grant is pending.
    """
    result = services.orders.create_order(body.items, body.tax_percent(), finish_url=body.finishUrl)
    if isinstance(result, InteractionRequired):
        return JSONResponse(
            status_code=403,
            content={"error": "Merchant approval required", "interactRedirect": result.redirect_url},
        )
    return {"orderId": result.id, "paymentUrl": result.incomingPaymentUrl}


@router.get("/pos/order-status")
def order_status(orderId: Optional[str] = Query(None), services: PosServices = Depends(get_services)):
    """Returns the payment state of an order; reconciles inventory once it is paid."""
    if not orderId:
        raise NotFoundError("Order not found")
    view = services.reconciliation.refresh_status(orderId)
    return {"status": view.model_dump(mode="json")}


@router.post("/pos/inventory-review")
def inventory_review(body: InventoryReviewRequest, services: PosServices = Depends(get_services)):
    """Operator verdict for an order whose stock update timed out."""
    order = services.reconciliation.resolve_review(body.orderId, body.applied)
    return {
        "orderId": order.id,
        "inventoryReconciled": order.inventoryReconciled,
        "inventoryNeedsReview": order.inventoryNeedsReview,
    }


@router.post("/checkout/start")
def checkout_start(body: CheckoutStartRequest, services: PosServices = Depends(get_services)):
    started = services.checkout.start_checkout(
        body.customerWalletAddressUrl, body.receiverPaymentUrl, finish_url=body.finishUrl
    )
    return {"checkoutId": started.checkout_id, "interactRedirect": started.redirect_url}


@router.post("/checkout/finish")
def checkout_finish(body: CheckoutFinishRequest, services: PosServices = Depends(get_services)):
    payment_id = services.checkout.finish_checkout(body.checkoutId, body.interactRef)
    return {"ok": True, "outgoingPaymentId": payment_id}


def create_app(settings: Optional[Settings] = None, services: Optional[PosServices] = None) -> FastAPI:
    """
    Builds the FastAPI application.

    Args:
        settings (Settings | None): Defaults to the process settings.
        services (PosServices | None): Pre-built services; built in the lifespan when omitted.
    """
    settings = settings or get_settings()
    app = FastAPI(title="POS Open Payments", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        log.info(f"{request.method} {request.url.path} from {request.headers.get('origin', '-')}")
        return await call_next(request)

    @app.exception_handler(PosError)
    async def pos_error_handler(request: Request, exc: PosError):
        operation = getattr(exc, "operation", None)
        log.warning(f"{request.url.path}: {exc.error_code} - {exc.message}" + (f" (bei {operation})" if operation else ""))
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        log.warning(f"{request.url.path}: Ungültige Anfrage: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "error_code": "validation_error", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        log.error(f"{request.url.path}: Unerwarteter Fehler: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error", "error_code": "internal_error", "details": None},
        )

    app.include_router(router)
    return app


# Initialization
# Configure logging and initialize FastAPI app
_settings = get_settings()
setup_logging(_settings.log_level, _settings.log_file)
app = create_app(_settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=_settings.host, port=_settings.port)

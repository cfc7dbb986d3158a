"""
Credits Billing Server
======================
FastAPI server for the credit top-up flow:
- Processor webhooks (signature check, parse, reconcile)
- SPEI order creation
- Account credit history
- Operator alerts (admin)
- Health monitoring

pip install fastapi uvicorn pydantic structlog httpx asyncpg
"""

import hmac
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from billing.errors import BillingError, NotFoundError, UnauthorizedError
from billing.models import Processor
from billing.services import BillingServices
from config import config
from database import PostgresAlertRepository, PostgresCreditStore, close_database, init_database

VERSION = "1.0.0"


def configure_logging(production: bool = False):
    renderer = structlog.processors.JSONRenderer() if production else structlog.dev.ConsoleRenderer(colors=True)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    )


configure_logging(config.is_production)

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class OrderRequest(BaseModel):
    """Request to create a bank-transfer order"""
    processor: Processor
    account_id: str = Field(..., min_length=1, max_length=128)
    credits: int = Field(..., gt=0)
    payer_email: str = Field(..., min_length=3)
    payer_name: Optional[str] = None


class WebhookResponse(BaseModel):
    received: bool = True
    outcome: str


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    env: str
    uptime_seconds: float
    store_backend: str
    processors: Dict[str, bool]


START_TIME = datetime.now(timezone.utc)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_services(request: Request) -> BillingServices:
    return request.app.state.services


def require_admin(request: Request, x_admin_token: Optional[str] = Header(default=None)):
    expected = request.app.state.config.ADMIN_TOKEN
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        logger.warning("admin_auth_failed", path=request.url.path)
        raise UnauthorizedError("Missing or invalid admin token")


router = APIRouter()


# =============================================================================
# HEALTH ENDPOINTS
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, services: BillingServices = Depends(get_services)):
    """Health check endpoint"""
    cfg = request.app.state.config
    return HealthResponse(
        status="healthy",
        version=VERSION,
        env=cfg.ENV,
        uptime_seconds=(datetime.now(timezone.utc) - START_TIME).total_seconds(),
        store_backend=type(services.store).__name__,
        processors={p.value: creds.configured for p, creds in services.credentials.items()},
    )


@router.get("/ready")
async def readiness_check(services: BillingServices = Depends(get_services)):
    """Kubernetes readiness probe"""
    if not await services.store.ping():
        return JSONResponse(status_code=503, content={"ready": False})
    return {"ready": True}


@router.get("/live")
async def liveness_check():
    """Kubernetes liveness probe"""
    return {"live": True}


# =============================================================================
# WEBHOOKS
# =============================================================================

@router.post("/webhooks/{processor}", response_model=WebhookResponse)
async def processor_webhook(processor: Processor, request: Request, services: BillingServices = Depends(get_services)):
    """
    Payment processor webhook.

    200 for anything acknowledged (acted on, ignored, duplicate, or escalated
    to operators); 400 for bad signature or body; 500 for transient failures
    the processor should retry; 503 when the processor is not configured.
    """
    raw_body = await request.body()
    result = await services.webhooks.handle(
        processor,
        raw_body,
        request.headers,
        correlation_id=request.state.request_id,
    )
    return WebhookResponse(outcome=result.outcome.value)


# =============================================================================
# ORDERS
# =============================================================================

@router.post("/orders")
async def create_order(order_request: OrderRequest, services: BillingServices = Depends(get_services)):
    """Create a SPEI order and return the CLABE the user must transfer to."""
    order = await services.gateway.create_order(
        order_request.processor,
        order_request.account_id,
        order_request.credits,
        order_request.payer_email,
        order_request.payer_name,
    )
    return order.model_dump(mode="json")


# =============================================================================
# ACCOUNTS
# =============================================================================

@router.get("/accounts/{account_id}/receipts")
async def list_account_receipts(account_id: str, limit: int = 50, services: BillingServices = Depends(get_services)):
    balance = await services.store.get_balance(account_id)
    if balance is None:
        raise NotFoundError(f"Account not found: {account_id}")
    receipts = await services.store.list_receipts(account_id, limit=min(max(limit, 1), 200))
    return {
        "account_id": account_id,
        "credits": balance,
        "receipts": [r.model_dump(mode="json") for r in receipts],
    }


# =============================================================================
# ADMIN
# =============================================================================

@router.get("/admin/alerts", dependencies=[Depends(require_admin)])
async def list_alerts(include_acknowledged: bool = False, limit: int = 100, services: BillingServices = Depends(get_services)):
    alerts = await services.alerts.list_alerts(include_acknowledged=include_acknowledged, limit=limit)
    return {"alerts": [a.model_dump(mode="json") for a in alerts], "count": len(alerts)}


@router.post("/admin/alerts/{alert_id}/ack", dependencies=[Depends(require_admin)])
async def acknowledge_alert(alert_id: str, services: BillingServices = Depends(get_services)):
    alert = await services.alerts.acknowledge(alert_id)
    if alert is None:
        raise NotFoundError(f"Alert not found: {alert_id}")
    return alert.model_dump(mode="json")


# =============================================================================
# FASTAPI APP
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    cfg = app.state.config
    logger.info("server_starting", version=VERSION, env=cfg.ENV, store_backend=cfg.STORE_BACKEND)

    owns_database = False
    if getattr(app.state, "services", None) is None:
        if cfg.STORE_BACKEND == "postgres":
            await init_database()
            owns_database = True
            app.state.services = BillingServices.from_config(
                cfg,
                store=PostgresCreditStore(),
                alert_repository=PostgresAlertRepository(),
            )
        else:
            app.state.services = BillingServices.from_config(cfg)

    for processor, creds in app.state.services.credentials.items():
        if not creds.configured:
            logger.warning("processor_not_configured", processor=processor.value)
        elif not creds.webhook_secret:
            logger.warning("processor_webhook_secret_missing", processor=processor.value, production=cfg.is_production)

    yield

    logger.info("server_shutting_down")
    await app.state.services.notifier.drain()
    if owns_database:
        await close_database()


async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
    )


def create_app(cfg=config, services: Optional[BillingServices] = None) -> FastAPI:
    app = FastAPI(
        title="Credits Billing",
        description="Payment webhook reconciliation and SPEI top-ups",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = cfg
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_context(request: Request, call_next):
        """Bind a request ID to every log line and echo it back"""
        request_id = request.headers.get("x-request-id") or str(uuid4())
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=not config.is_production,
        log_level="info",
    )

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

from marketplace.config import settings
from marketplace.context import AppContext
from marketplace.database import Base
from marketplace.errors import MarketplaceError
from marketplace.events import KafkaEventPublisher
from marketplace.middleware.metrics import MetricsMiddleware
from marketplace.middleware.request_id import RequestIDMiddleware
from marketplace.routers import orders, payments
from marketplace.services.payment_service import run_reconciler
from marketplace.tracing import setup_tracing
from marketplace.utils.logging import setup_logging

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)

tracing_enabled = setup_tracing("marketplace", settings.otlp_endpoint)


@asynccontextmanager
async def lifespan(app: FastAPI):
    context: AppContext | None = getattr(app.state, "context", None)
    owns_context = context is None
    if context is None:
        context = AppContext.from_settings(settings)
        app.state.context = context

    logger.info("Starting up, creating database tables")
    async with context.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=context.engine.sync_engine)

    if isinstance(context.publisher, KafkaEventPublisher):
        await context.publisher.start()

    reconciler: asyncio.Task | None = None
    if context.settings.reconcile_interval > 0:
        reconciler = asyncio.create_task(run_reconciler(context))
    logger.info("Startup complete")

    yield

    if reconciler is not None:
        reconciler.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reconciler
    if owns_context:
        await context.aclose()
    logger.info("Shutting down")


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Request failed",
        extra={
            "request_id": request_id,
            "kind": exc.kind,
            "status_code": exc.status_code,
            "error": exc.message,
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"kind": exc.kind, "message": exc.message}, "request_id": request_id},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": {
                "kind": "validation",
                "message": "Request body or parameters are invalid",
                "details": jsonable_encoder(exc.errors()),
            },
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def create_app(context: AppContext | None = None) -> FastAPI:
    app = FastAPI(
        title="Marketplace Orders & Payments",
        description="Order placement and mobile-money payment reconciliation",
        version="1.0.0",
        lifespan=lifespan,
    )
    if context is not None:
        app.state.context = context

    if tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(orders.router, prefix="/orders", tags=["orders"])
    app.include_router(payments.router, prefix="/payments", tags=["payments"])

    # Expose Prometheus metrics at /metrics
    app.mount("/metrics", make_asgi_app())

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()

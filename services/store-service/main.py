"""Main application entry point."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis
import httpx
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from config import API_VERSION, PAYMENT_PROCESSOR, REDIS_URL
from database import init_db, engine
from errors import StoreError, status_code_for
from monitoring import init_profiling
from logging_config import setup_logging
from routers import admin, auth as auth_router, cart, orders, payments, products
from services.notification_service import NotificationClient
from services.payment_processor import HttpPaymentProcessor, MockPaymentProcessor, PaymentProcessor

# Setup structured logging
setup_logging()
logger = logging.getLogger(__name__)


def build_payment_processor(http_client: httpx.AsyncClient) -> PaymentProcessor:
    """Processor selected by ``PAYMENT_PROCESSOR``."""
    if PAYMENT_PROCESSOR == "http":
        return HttpPaymentProcessor(http_client)
    if PAYMENT_PROCESSOR != "mock":
        logger.warning("Unknown payment processor, using mock", extra={
            "payment_processor": PAYMENT_PROCESSOR
        })
    return MockPaymentProcessor()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting application...")

    # Initialize database
    init_db()

    # Instrument and attach Redis client
    redis_client = redis.from_url(REDIS_URL, decode_responses=True)
    RedisInstrumentor().instrument()
    app.state.redis_client = redis_client
    logger.info("Redis client initialized")

    # Initialize HTTP client
    http_client = httpx.AsyncClient(timeout=30.0)
    HTTPXClientInstrumentor().instrument_client(http_client)
    app.state.http_client = http_client
    logger.info("HTTP client initialized")

    # Collaborators shared by the request-scoped services
    app.state.payment_processor = build_payment_processor(http_client)
    app.state.notification_client = NotificationClient(http_client)
    logger.info("Payment processor initialized", extra={
        "gateway": app.state.payment_processor.gateway
    })

    # Initialize profiling
    init_profiling()

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await http_client.aclose()
    redis_client.close()
    logger.info("Application shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="WebStore Store Service",
    version=API_VERSION,
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

# Instrument FastAPI and SQLAlchemy
FastAPIInstrumentor.instrument_app(app)
SQLAlchemyInstrumentor().instrument(engine=engine)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Map StoreError subclasses to HTTP responses."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("Unhandled store error", extra={
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "error": str(exc)
        })
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


# Health check endpoint
@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}

# Include routers
app.include_router(auth_router.router)
app.include_router(products.router)
app.include_router(cart.router)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(admin.router)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)

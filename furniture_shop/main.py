"""
FastAPI Application Entry Point - Furniture Shop
"""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from furniture_shop import __version__
from furniture_shop.config import MpesaConfig, settings
from furniture_shop.database import init_db
from furniture_shop.errors import ShopError
from furniture_shop.api import health, orders, payments
from furniture_shop.services.mpesa_client import MpesaClient

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

# Create FastAPI application
app = FastAPI(
    title="Furniture Shop",
    description="Orders, stock reservation and M-Pesa payments for the furniture store",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router)
app.include_router(orders.router)
app.include_router(payments.router)

# Prometheus metrics
Instrumentator().instrument(app).expose(app)

# Gateway configuration is fixed for the process lifetime
app.state.mpesa_client = MpesaClient(MpesaConfig.from_settings(settings))


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    """Map domain errors to their HTTP status"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__}
    )


@app.on_event("startup")
def startup_event():
    """Initialize database on startup"""
    logger.info("Starting %s...", settings.SERVICE_NAME)
    init_db()
    logger.info("Database initialized")
    
    mpesa_config = app.state.mpesa_client.config
    missing = mpesa_config.missing_fields()
    if missing:
        logger.warning("M-Pesa config incomplete, missing: %s", ", ".join(missing))
    else:
        logger.info("M-Pesa configured (%s mode)", mpesa_config.environment)
    logger.info("%s is running on port %s", settings.SERVICE_NAME, settings.SERVICE_PORT)


@app.on_event("shutdown")
def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("Shutting down %s...", settings.SERVICE_NAME)

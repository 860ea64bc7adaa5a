# backend/bloom_booking/main.py
"""
FastAPI application for the booking core.

Routers are mounted under ``/api/v1``; Prometheus metrics are served from
``/api/v1/metrics/prometheus``.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import settings
from .database import init_db
from .errors import register_error_handlers
from .routes.v1 import (
    applications as applications_v1,
    bookings as bookings_v1,
    health as health_v1,
    management as management_v1,
    offers as offers_v1,
    payments as payments_v1,
    prometheus as prometheus_v1,
    reservations as reservations_v1,
    slots as slots_v1,
    sync as sync_v1,
    webhooks as webhooks_v1,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

API_TITLE = "Bloom Booking API"
API_VERSION = "1.0.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(f"{API_TITLE} starting up...")
    logger.info(f"Environment: {settings.environment} (SITE_MODE={settings.site_mode})")
    init_db()
    yield
    logger.info(f"{API_TITLE} shutting down...")


app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
)
register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.onboarding_base_url.rstrip("/")],
    allow_credentials=True,
    allow_methods=["GET", "HEAD", "OPTIONS", "POST"],
    allow_headers=["*"],
)

api_v1 = APIRouter(prefix="/api/v1")

api_v1.include_router(health_v1.router)
api_v1.include_router(reservations_v1.router, prefix="/reservations")
api_v1.include_router(slots_v1.router, prefix="/slots")
api_v1.include_router(payments_v1.router, prefix="/payments")
api_v1.include_router(bookings_v1.router, prefix="/bookings")
api_v1.include_router(applications_v1.router, prefix="/applications")
api_v1.include_router(offers_v1.router)
api_v1.include_router(management_v1.router, prefix="/management")
api_v1.include_router(sync_v1.router, prefix="/sync")
api_v1.include_router(webhooks_v1.router, prefix="/webhooks")
api_v1.include_router(prometheus_v1.router, prefix="/metrics")

app.include_router(api_v1)

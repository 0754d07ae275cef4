from __future__ import annotations

import logging

from fastapi import FastAPI

from analytics import UtilisationAnalytics
from api import create_router
from config import Config
from repository import InMemoryBookingRepository, InMemoryResourceRepository
from services import FacilityService

# Configure logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title=Config.APP_NAME, version="1.0.0")

# Wire up dependencies (in-memory storage; swap the repositories for a database adapter)
_resources = InMemoryResourceRepository()
_bookings = InMemoryBookingRepository()
_service = FacilityService(_resources, _bookings)
_analytics = UtilisationAnalytics(
    _resources,
    _bookings,
    default_hours_per_day=Config.DEFAULT_AVAILABLE_HOURS_PER_DAY,
    window_days=Config.ANALYTICS_WINDOW_DAYS,
)

app.include_router(create_router(_service, _analytics))

logger.info(f"{Config.APP_NAME} ready")

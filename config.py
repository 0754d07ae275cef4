import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    # Core Application
    APP_NAME = os.getenv('APP_NAME', 'Facility Booking API')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

    # Utilisation analytics
    # Resources without usable availability slots are assumed open this many hours per day
    DEFAULT_AVAILABLE_HOURS_PER_DAY = float(os.getenv('FACILITY_DEFAULT_HOURS_PER_DAY', 10))
    ANALYTICS_WINDOW_DAYS = int(os.getenv('FACILITY_ANALYTICS_WINDOW_DAYS', 29))

    # Booking listing
    MAX_BOOKING_LIST_LIMIT = int(os.getenv('FACILITY_MAX_BOOKING_LIST_LIMIT', 500))

"""Application constants and configuration values."""

from datetime import timedelta

from core.config import FRONTEND_URL

# Database field lengths
MAX_STRING_LENGTH = 255
MAX_TITLE_LENGTH = 500

# Database connection settings
DB_POOL_RECYCLE_SECONDS = 300  # 5 minutes

# CORS origins for development and production
_CORS_ORIGINS_RAW = [
    "http://localhost:5173",      # React dev server (Vite)
    FRONTEND_URL,
]

# Filter out None values and empty strings to avoid CORS errors
CORS_ORIGINS = [origin for origin in _CORS_ORIGINS_RAW if origin and origin.strip()]

# Token refresh
TOKEN_REFRESH_BUFFER = timedelta(minutes=5)  # Refresh tokens expiring within this window
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600  # Used when the provider omits expires_in

# Circuit breaker for external connections
CIRCUIT_FAILURE_THRESHOLD = 3  # Consecutive failures before the circuit opens
CIRCUIT_OPEN_TIMEOUT = timedelta(minutes=5)  # Wait before a half-open retry

# Conflict detection
ADJACENT_GAP_MINUTES = 5  # Appointments within this gap are reported as adjacent
SUGGESTION_DAY_START_HOUR = 8
SUGGESTION_DAY_END_HOUR = 17
SUGGESTION_SAME_DAY_STEP_MINUTES = 15
SUGGESTION_NEXT_DAY_STEP_MINUTES = 30

# Blocked time rows use a placeholder client
BLOCKED_TIME_CLIENT_ID = "00000000-0000-0000-0000-000000000001"
BLOCKED_TIME_TYPE = "blocked_time"

# Appointment types created by sync
EXTERNAL_EVENT_TYPE = "external_event"

# External provider requests
PROVIDER_EVENTS_PAGE_LIMIT = 50
PROVIDER_REQUEST_TIMEOUT_SECONDS = 30.0

# Recurring availability
DAYS_OF_WEEK = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
MAX_AVAILABILITY_SLOTS_PER_DAY = 3

# Sync scheduler
SYNC_SCHEDULER_MAX_INSTANCES = 1  # Prevent overlapping sync runs

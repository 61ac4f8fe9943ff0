"""
Application configuration using python-dotenv.

This module loads environment variables from .env file into os.environ
for use throughout the calendar sync backend.
"""

import os
import pathlib
from dotenv import load_dotenv


# Determine if we're running in a test environment
# Don't load .env file during testing to ensure predictable test behavior
is_testing = os.getenv("PYTEST_VERSION") is not None or any("pytest" in str(frame) for frame in __import__('inspect').stack(0))

# Load .env file into os.environ (only outside of testing)
if not is_testing:
    possible_paths = [
        pathlib.Path(__file__).parent.parent.parent / ".env",  # backend/.env (when run from backend/src)
        pathlib.Path(__file__).parent.parent.parent.parent / ".env",  # .env at repo root
        pathlib.Path.cwd() / ".env",
        pathlib.Path.cwd().parent / ".env",
    ]

    for env_path in possible_paths:
        if env_path.exists():
            load_dotenv(env_path)
            break


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_database_url():
    """Get the database URL from environment."""
    return os.getenv(
        "DATABASE_URL",
        "sqlite:///./calendar_sync.db"
    )

DATABASE_URL = get_database_url()
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# API key authentication for the versioned calendar API
CALENDAR_API_KEYS = [key.strip() for key in os.getenv("CALENDAR_API_KEYS", "").split(",") if key.strip()]

# Encryption for provider tokens at rest
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "")

# Nylas calendar integration
NYLAS_CLIENT_ID = os.getenv("NYLAS_CLIENT_ID", "")
NYLAS_CLIENT_SECRET = os.getenv("NYLAS_CLIENT_SECRET", "")
NYLAS_API_URI = os.getenv("NYLAS_API_URI", "https://api.us.nylas.com")

# Google Calendar integration
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")

# Scheduling defaults
DEFAULT_PRACTICE_TIMEZONE = os.getenv("DEFAULT_PRACTICE_TIMEZONE", "America/Chicago")

# Background sync
SYNC_SCHEDULER_ENABLED = _get_bool("SYNC_SCHEDULER_ENABLED", False)
SYNC_INTERVAL_MINUTES = int(os.getenv("SYNC_INTERVAL_MINUTES", "15"))
SYNC_WINDOW_DAYS = int(os.getenv("SYNC_WINDOW_DAYS", "30"))

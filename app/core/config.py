"""
Application Configuration

Loads environment variables and provides typed settings
for the application. Uses python-dotenv to load from .env file.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file from the project root
_env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(dotenv_path=_env_path)

# --- App Settings ---
API_V1_PREFIX = "/api/v1"
PROJECT_NAME = "BabeCycle"
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

# --- Supabase ---
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

# --- Scheduling defaults ---
# Used when a user has no stored notification preferences.
DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "UTC")
DEFAULT_QUIET_HOURS_START: str = os.getenv("DEFAULT_QUIET_HOURS_START", "22:00")
DEFAULT_QUIET_HOURS_END: str = os.getenv("DEFAULT_QUIET_HOURS_END", "08:00")

# --- Notification queue ---
# "supabase" persists records in the notification_queue table; "memory" keeps
# them in this process only (tests, local runs without a database).
NOTIFICATION_QUEUE_BACKEND: str = os.getenv("NOTIFICATION_QUEUE_BACKEND", "supabase")

# --- Dispatcher ---
DISPATCH_POLL_INTERVAL_SECONDS: float = float(
    os.getenv("DISPATCH_POLL_INTERVAL_SECONDS", "60")
)
DISPATCH_WORKER_COUNT: int = int(os.getenv("DISPATCH_WORKER_COUNT", "4"))
DISPATCH_SEND_TIMEOUT_SECONDS: float = float(
    os.getenv("DISPATCH_SEND_TIMEOUT_SECONDS", "10")
)


def validate_supabase_config() -> bool:
    """Check that all required Supabase credentials are present and non-empty."""
    missing = []
    if not SUPABASE_URL:
        missing.append("SUPABASE_URL")
    if not SUPABASE_SERVICE_ROLE_KEY:
        missing.append("SUPABASE_SERVICE_ROLE_KEY")
    if missing:
        raise EnvironmentError(
            f"Missing required Supabase environment variables: {', '.join(missing)}. "
            f"Please fill in your .env file at: {_env_path}"
        )
    return True


def is_supabase_configured() -> bool:
    """
    Check if Supabase credentials are available without raising exceptions.

    Used at startup to warn early instead of failing on the first request.
    """
    return bool(SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY)

"""
Supabase Client

Provides the initialized Supabase client used by the notification engine.
Scheduling and dispatch run as background work across all users, so they
use the service role key (bypasses RLS).
"""

from supabase import create_client, Client
from app.core.config import (
    SUPABASE_URL,
    SUPABASE_SERVICE_ROLE_KEY,
    validate_supabase_config,
)

# Initialized lazily on first use
_service_client: Client | None = None


def get_service_client() -> Client:
    """
    Get the Supabase client using the service_role (admin) key.

    WARNING: This client BYPASSES Row Level Security.
    Only use for background work (scheduling, preference sync) that needs
    access across all users.
    """
    global _service_client
    if _service_client is None:
        validate_supabase_config()
        _service_client = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
    return _service_client

"""
Database connection

Supabase client used by the service layer. The service-role key bypasses RLS,
so this client must only be used server-side.
"""

import os
import logging
from typing import Optional

from supabase import create_client, Client

logger = logging.getLogger(__name__)

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

_supabase_service: Optional[Client] = None


def get_supabase_service() -> Optional[Client]:
    """Get singleton Supabase service-role client, or None if not configured."""
    global _supabase_service
    if _supabase_service is None:
        if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
            logger.error("SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY not set")
            return None
        try:
            _supabase_service = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
        except Exception as e:
            logger.error(f"Failed to create Supabase client: {e}", exc_info=True)
            return None
    return _supabase_service

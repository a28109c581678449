"""
Supabase access helpers.

The supabase-py client is SYNCHRONOUS: every .execute() blocks the calling
thread. All calls from async code go through `run_db(fn)`, which moves them to
a worker thread via asyncio.to_thread().
"""

import asyncio
import logging

import config

logger = logging.getLogger(__name__)

# Postgres error code for unique_violation
UNIQUE_VIOLATION = "23505"

_supabase_client = None


def get_supabase():
    """Lazy-initialize the service-role Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if not (config.SUPABASE_URL and config.SUPABASE_SERVICE_KEY):
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be configured")
        from supabase import create_client
        _supabase_client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_KEY)
        logger.info("Supabase client initialised")
    return _supabase_client


async def run_db(fn):
    """Run a synchronous Supabase call in a thread pool to avoid blocking the event loop."""
    return await asyncio.to_thread(fn)


def is_unique_violation(error: Exception) -> bool:
    """True when a PostgREST error carries the unique_violation code."""
    code = getattr(error, "code", None)
    if code == UNIQUE_VIOLATION:
        return True
    return UNIQUE_VIOLATION in str(error)

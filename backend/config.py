"""
Process configuration.

Everything is read from the environment (optionally seeded from backend/.env).
Credentials for the commerce and marketing APIs are static and consumed as-is.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or '').strip()
    return int(raw) if raw else default


def _float_env(name: str, default: float) -> float:
    raw = (os.environ.get(name) or '').strip()
    return float(raw) if raw else default


def _list_env(name: str, default: list[str]) -> list[str]:
    raw = (os.environ.get(name) or '').strip()
    if not raw:
        return default
    return [item.strip() for item in raw.split(',') if item.strip()]


# Supabase
SUPABASE_URL = (os.environ.get('SUPABASE_URL') or '').strip()
SUPABASE_SERVICE_KEY = (os.environ.get('SUPABASE_SERVICE_KEY') or '').strip()
SUPABASE_JWT_SECRET = (os.environ.get('SUPABASE_JWT_SECRET') or '').strip()

# Shared secret used by the external scheduler
CRON_SECRET = (os.environ.get('CRON_SECRET') or '').strip()

# Commerce API (system of record for contacts and orders)
COMMERCE_API_URL = (os.environ.get('COMMERCE_API_URL') or '').strip().rstrip('/')
COMMERCE_API_TOKEN = (os.environ.get('COMMERCE_API_TOKEN') or '').strip()
COMMERCE_API_SECRET = (os.environ.get('COMMERCE_API_SECRET') or '').strip()

# Marketing API (receives contacts and status tags)
MARKETING_URL = (os.environ.get('MARKETING_URL') or '').strip().rstrip('/')
MARKETING_CLIENT_ID = (os.environ.get('MARKETING_CLIENT_ID') or '').strip()
MARKETING_CLIENT_SECRET = (os.environ.get('MARKETING_CLIENT_SECRET') or '').strip()
MARKETING_IDENTITY_FIELD = os.environ.get('MARKETING_IDENTITY_FIELD', 'idcommerce')
MARKETING_COMPANY_NAME = os.environ.get('MARKETING_COMPANY_NAME', '')
MARKETING_SEARCH_CHUNK_SIZE = _int_env('MARKETING_SEARCH_CHUNK_SIZE', 10)
MARKETING_API_DELAY = _float_env('MARKETING_API_DELAY', 0.2)  # seconds between per-contact calls

# Job engine
PAGES_PER_STEP = _int_env('PAGES_PER_STEP', 1)
STALE_JOB_TIMEOUT_SECONDS = _int_env('STALE_JOB_TIMEOUT_SECONDS', 300)
ORDER_REFRESH_BATCH_SIZE = _int_env('ORDER_REFRESH_BATCH_SIZE', 100)
ORDER_HISTORY_MAX_AGE_HOURS = _int_env('ORDER_HISTORY_MAX_AGE_HOURS', 24)  # contacts older than this get their orders re-listed
FINAL_ORDER_STATUSES = _list_env('FINAL_ORDER_STATUSES', ['Cancelado', 'Entregue', 'Pedido Entregue'])
SYNC_INTERVAL_MINUTES = _int_env('SYNC_INTERVAL_MINUTES', 0)  # 0 disables the in-process schedule
WORKER_QUEUE_SIZE = _int_env('WORKER_QUEUE_SIZE', 100)

# Defaults used when the settings row is missing
DEFAULT_BATCH_SIZE = 50

# HTTP server
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

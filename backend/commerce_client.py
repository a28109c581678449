"""
Commerce API client (system of record for contacts and orders).

Endpoints used:
- GET /v2/site/pessoa   paged contact listing, sortable by id
- GET /v2/site/pedido   orders filtered by tax id (cpfCnpj)
- GET /v2/site/pedido/{id}  single order detail

Authentication is HTTP Basic with the static API token/secret pair.
"""

import asyncio
import base64
import logging
import time
from collections import defaultdict
from typing import Optional, Dict, Any, List

import httpx

import config

logger = logging.getLogger(__name__)

COMMERCE_TIMEOUT = 30.0
COMMERCE_MAX_REQUESTS_PER_SECOND = 5
COMMERCE_RATE_LIMIT_WINDOW = 1.0  # seconds
COMMERCE_MAX_RETRIES = 3  # retries of a request answered with 429
COMMERCE_DEFAULT_BACKOFF = 2.0  # seconds, when 429 carries no usable Retry-After
COMMERCE_MAX_BACKOFF = 60.0


def retry_after_seconds(response: httpx.Response) -> float:
    """Delay requested by a 429, from a numeric Retry-After header (HTTP-date form falls back to the default)."""
    raw = (response.headers.get("Retry-After") or "").strip()
    try:
        seconds = float(raw)
    except ValueError:
        return COMMERCE_DEFAULT_BACKOFF
    return min(max(seconds, 0.0), COMMERCE_MAX_BACKOFF)


class CommerceRateLimiter:
    """
    Per-base-URL request budget for the commerce API.

    Requests are spread over a sliding window; when the API answers 429 the key
    is paused until its Retry-After has elapsed, so every caller sharing the
    limiter waits instead of retrying into the same limit.
    """

    def __init__(self, max_requests: int = COMMERCE_MAX_REQUESTS_PER_SECOND, window: float = COMMERCE_RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._sent = defaultdict(list)
        self._paused_until: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def back_off(self, key: str, seconds: float) -> None:
        resume_at = time.monotonic() + seconds
        self._paused_until[key] = max(self._paused_until.get(key, 0.0), resume_at)

    def paused_for(self, key: str) -> float:
        return max(self._paused_until.get(key, 0.0) - time.monotonic(), 0.0)

    async def acquire(self, key: str = "default"):
        async with self._lock:
            pause = self.paused_for(key)
            if pause > 0:
                logger.info(f"Commerce API back-off: waiting {pause:.2f}s")
                await asyncio.sleep(pause)

            now = time.monotonic()
            recent = [t for t in self._sent[key] if now - t < self.window]
            if len(recent) >= self.max_requests:
                wait_time = self.window - (now - recent[0])
                if wait_time > 0:
                    await asyncio.sleep(wait_time)
                    now = time.monotonic()
                    recent = [t for t in recent if now - t < self.window]
            recent.append(now)
            self._sent[key] = recent


_commerce_rate_limiter = CommerceRateLimiter()


class CommerceAPIError(Exception):
    """Non-2xx response or transport failure from the commerce API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CommerceClient:
    """Thin async client for the commerce REST API."""

    def __init__(
        self,
        base_url: str = None,
        api_token: str = None,
        api_secret: str = None,
        transport: httpx.AsyncBaseTransport = None,
        rate_limiter: CommerceRateLimiter = None,
    ):
        self.base_url = (base_url if base_url is not None else config.COMMERCE_API_URL).rstrip('/')
        token = api_token if api_token is not None else config.COMMERCE_API_TOKEN
        secret = api_secret if api_secret is not None else config.COMMERCE_API_SECRET
        credentials = base64.b64encode(f"{token}:{secret}".encode()).decode()
        self._auth_header = f"Basic {credentials}"
        self._transport = transport
        self._rate_limiter = rate_limiter or _commerce_rate_limiter

    async def _get(self, path: str, params: dict = None) -> dict:
        """GET a JSON document, raising CommerceAPIError on any failure. 429 answers are retried."""
        if not self.base_url:
            raise CommerceAPIError("COMMERCE_API_URL is not configured")

        url = f"{self.base_url}{path}"
        headers = {"Authorization": self._auth_header, "Accept": "application/json"}
        for attempt in range(COMMERCE_MAX_RETRIES + 1):
            await self._rate_limiter.acquire(self.base_url)
            try:
                async with httpx.AsyncClient(timeout=COMMERCE_TIMEOUT, transport=self._transport) as client:
                    response = await client.get(url, headers=headers, params=params)
            except httpx.TimeoutException:
                raise CommerceAPIError(f"Timeout calling {path}")
            except httpx.RequestError as e:
                raise CommerceAPIError(f"Connection error calling {path}: {str(e)}")

            if response.status_code != 429 or attempt == COMMERCE_MAX_RETRIES:
                break
            delay = retry_after_seconds(response)
            logger.warning(f"Commerce API rate limited on {path}; retry {attempt + 1} in {delay:.1f}s")
            self._rate_limiter.back_off(self.base_url, delay)

        if response.status_code >= 400:
            logger.error(f"Commerce API error {response.status_code} on {path}: {response.text[:300]}")
            raise CommerceAPIError(f"API error {response.status_code} on {path}", status_code=response.status_code)
        try:
            return response.json()
        except ValueError:
            raise CommerceAPIError(f"Invalid JSON from {path}", status_code=response.status_code)

    # ==================== Contacts ====================

    async def list_contacts(self, page: int, limit: int, order_direction: str = "desc") -> Dict[str, Any]:
        """One page of contacts ordered by id. Returns {"items": [...], "total": n}."""
        result = await self._get("/v2/site/pessoa", params={
            "page": page,
            "orderBy": "id",
            "orderDirection": order_direction,
            "limit": limit,
        })
        data = result.get("data") or {}
        return {
            "items": data.get("items") or [],
            "total": int(data.get("total") or 0),
        }

    async def count_contacts(self) -> int:
        """Total contacts reported by the listing."""
        listing = await self.list_contacts(page=1, limit=1)
        return listing["total"]

    # ==================== Orders ====================

    async def list_orders(self, tax_id: str) -> List[Dict[str, Any]]:
        result = await self._get("/v2/site/pedido", params={"cpfCnpj": tax_id})
        data = result.get("data") or {}
        return data.get("items") or []

    async def get_order(self, external_order_id: str) -> Optional[Dict[str, Any]]:
        result = await self._get(f"/v2/site/pedido/{external_order_id}")
        return result.get("data") or None

"""
Marketing API client (contacts + tags).

OAuth2 client_credentials against /oauth/v2/token; the access token is cached
until shortly before it expires and refreshed once on a 401.
"""

import logging
import time
from typing import Optional, Dict, Any, List

import httpx

import config

logger = logging.getLogger(__name__)

MARKETING_TIMEOUT = 30.0
TOKEN_EXPIRY_MARGIN = 60  # seconds before expiry at which the token is renewed


class MarketingAPIError(Exception):
    """Custom exception for marketing API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MarketingClient:
    def __init__(
        self,
        base_url: str = None,
        client_id: str = None,
        client_secret: str = None,
        identity_field: str = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.base_url = (base_url if base_url is not None else config.MARKETING_URL).rstrip('/')
        self.client_id = client_id if client_id is not None else config.MARKETING_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else config.MARKETING_CLIENT_SECRET
        self.identity_field = identity_field or config.MARKETING_IDENTITY_FIELD
        self._transport = transport
        self._access_token = None
        self._token_expires_at = 0.0

    # ==================== OAuth ====================

    async def _get_token(self, force: bool = False) -> str:
        if not force and self._access_token and time.time() < self._token_expires_at:
            return self._access_token
        if not self.base_url:
            raise MarketingAPIError("MARKETING_URL is not configured")

        try:
            async with httpx.AsyncClient(timeout=MARKETING_TIMEOUT, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/oauth/v2/token", data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                })
        except httpx.RequestError as e:
            raise MarketingAPIError(f"Token request failed: {str(e)}")

        if response.status_code != 200:
            logger.error(f"Marketing token error: {response.status_code} - {response.text[:300]}")
            raise MarketingAPIError(f"Token request failed: {response.status_code}", status_code=response.status_code)

        try:
            data = response.json()
            access_token = data["access_token"]
            expires_in = int(data.get("expires_in") or 3600)
        except (ValueError, KeyError, TypeError, AttributeError):
            raise MarketingAPIError("Malformed token response", status_code=response.status_code)
        self._access_token = access_token
        self._token_expires_at = time.time() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        return self._access_token

    async def _call(self, method: str, path: str, data=None, params: dict = None, retry_auth: bool = True):
        token = await self._get_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        url = f"{self.base_url}{path}"

        try:
            async with httpx.AsyncClient(timeout=MARKETING_TIMEOUT, transport=self._transport) as client:
                response = await client.request(method, url, headers=headers, json=data, params=params)
        except httpx.TimeoutException:
            raise MarketingAPIError(f"Timeout calling {path}")
        except httpx.RequestError as e:
            raise MarketingAPIError(f"Connection error calling {path}: {str(e)}")

        if response.status_code == 401 and retry_auth:
            await self._get_token(force=True)
            return await self._call(method, path, data=data, params=params, retry_auth=False)
        if response.status_code >= 400:
            logger.error(f"Marketing API error {response.status_code} on {method} {path}: {response.text[:300]}")
            raise MarketingAPIError(f"API error {response.status_code} on {path}", status_code=response.status_code)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            result = response.json()
        except ValueError:
            logger.error(f"Marketing API returned non-JSON on {method} {path}: {response.text[:300]}")
            raise MarketingAPIError(f"Invalid JSON from {path}", status_code=response.status_code)
        if not isinstance(result, dict):
            raise MarketingAPIError(f"Unexpected response shape from {path}", status_code=response.status_code)
        return result

    # ==================== Contacts ====================

    def _parse_contact(self, raw: dict) -> Optional[Dict[str, Any]]:
        fields = (raw.get("fields") or {}).get("all") or {}
        identity = fields.get(self.identity_field)
        if identity in (None, ""):
            return None
        tags = []
        for t in raw.get("tags") or []:
            name = t.get("tag") if isinstance(t, dict) else t
            if name:
                tags.append(str(name))
        return {"id": raw.get("id"), "identity": str(identity), "tags": tags}

    async def search_contacts(self, identities: List[str]) -> Dict[str, Dict[str, Any]]:
        """
        Look up contacts by identity field. Returns identity → {"id", "identity", "tags"}.
        Identities not known to the marketing platform are absent from the result.
        """
        if not identities:
            return {}
        search = " or ".join(f"{self.identity_field}:{i}" for i in identities)
        result = await self._call("GET", "/api/contacts", params={"search": search, "limit": len(identities)})
        contacts = result.get("contacts") or {}
        if isinstance(contacts, dict):
            contacts = list(contacts.values())

        found = {}
        for raw in contacts:
            parsed = self._parse_contact(raw)
            if parsed:
                found[parsed["identity"]] = parsed
        return found

    @staticmethod
    def _batch_errors(result: dict) -> Dict[int, str]:
        """Per-item errors of a batch response, keyed by payload index."""
        errors = result.get("errors") or {}
        if isinstance(errors, list):
            errors = dict(enumerate(errors))
        parsed = {}
        for key, value in errors.items():
            if not value:
                continue
            message = value.get("message") if isinstance(value, dict) else str(value)
            parsed[int(key)] = message or "unknown error"
        return parsed

    async def batch_create(self, payloads: List[dict]) -> Dict[int, str]:
        result = await self._call("POST", "/api/contacts/batch/new", data=payloads)
        return self._batch_errors(result)

    async def batch_edit(self, payloads: List[dict]) -> Dict[int, str]:
        """Each payload must carry the marketing contact "id"."""
        result = await self._call("PATCH", "/api/contacts/batch/edit", data=payloads)
        return self._batch_errors(result)

    async def create_contact(self, payload: dict) -> dict:
        result = await self._call("POST", "/api/contacts/new", data=payload)
        return result.get("contact") or {}

    async def edit_contact(self, contact_id, payload: dict) -> dict:
        result = await self._call("PATCH", f"/api/contacts/{contact_id}/edit", data=payload)
        return result.get("contact") or {}

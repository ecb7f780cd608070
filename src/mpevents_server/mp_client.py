"""Thin async client for the MinistryPlatform REST API.

Only what webhook enrichment needs: a server-side OAuth token and
fetch-by-id on a table.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional

import httpx

from .logging_config import get_logger

logger = get_logger(__name__)

MP_SCOPE = "http://www.thinkministry.com/dataplatform/scopes/all"

# Refresh this many seconds before the token really expires
TOKEN_EXPIRY_MARGIN_S = 100


class MinistryPlatformError(RuntimeError):
    """Raised when MinistryPlatform cannot be reached or rejects a request."""


class MinistryPlatformClient:
    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        timeout_s: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._http = httpx.AsyncClient(timeout=timeout_s, transport=transport)
        self._token: Optional[str] = None
        self._token_expiry = 0.0
        self._token_lock = asyncio.Lock()

    async def close(self) -> None:
        await self._http.aclose()

    async def get_token(self) -> str:
        """Client-credentials token, cached until shortly before expiry."""
        if self._token and time.monotonic() < self._token_expiry:
            return self._token

        # One refresh at a time; waiters reuse the token it fetched
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expiry:
                return self._token
            return await self._fetch_token()

    async def _fetch_token(self) -> str:
        logger.info("Fetching new MinistryPlatform OAuth token")
        try:
            r = await self._http.post(
                f"{self.base_url}/oauth/connect/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "scope": MP_SCOPE,
                },
            )
        except httpx.HTTPError as ex:
            raise MinistryPlatformError(f"token request failed: {ex}") from ex

        if r.status_code != 200:
            raise MinistryPlatformError(f"Failed to get OAuth token: {r.status_code}")

        try:
            payload = r.json()
            token = payload.get("access_token")
            expires_in = int(payload.get("expires_in", 3600))
        except (ValueError, TypeError, AttributeError) as ex:
            raise MinistryPlatformError(f"malformed token response: {ex}") from ex
        if not token:
            raise MinistryPlatformError("token response has no access_token")
        self._token = token
        self._token_expiry = time.monotonic() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_S)
        return token

    async def get_record(
        self,
        table: str,
        record_id: int,
        select: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Fetch one record by id.

        Args:
            table: MinistryPlatform table name, e.g. ``Event_Metrics``
            record_id: Primary key value
            select: Optional ``$select`` column list

        Returns:
            The record, or None if it does not exist
        """
        token = await self.get_token()
        params = {"$select": select} if select else None
        try:
            r = await self._http.get(
                f"{self.base_url}/tables/{table}/{record_id}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as ex:
            raise MinistryPlatformError(f"{table} #{record_id}: {ex}") from ex

        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            logger.error(f"Failed to fetch {table} #{record_id}: {r.status_code} {r.text[:500]}")
            raise MinistryPlatformError(f"{table} #{record_id}: HTTP {r.status_code}")

        try:
            data = r.json()
        except ValueError as ex:
            # Proxies and maintenance pages answer 200 with HTML
            raise MinistryPlatformError(f"{table} #{record_id}: response is not JSON") from ex
        # Table endpoints answer with a list even for a single id
        if isinstance(data, list):
            data = data[0] if data else None
        if data is not None and not isinstance(data, dict):
            raise MinistryPlatformError(f"{table} #{record_id}: unexpected record shape {type(data).__name__}")
        return data

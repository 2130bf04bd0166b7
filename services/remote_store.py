"""PostgREST client used to replay queued mutations against the remote database."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import requests

from core.logs import get_logger
from core.settings import OFFLINE_SYNC, REMOTE
from services.errors import RemoteConnectivityError, RemoteRejectedError


# Not the operation's fault: gateway trouble, throttling, expired session.
CONNECTIVITY_STATUS = {401, 408, 429, 502, 503, 504}
# Unique violation on insert means an earlier delivery already landed.
ALREADY_APPLIED_CODES = {"23505"}

logger = get_logger("remote")


class PostgrestRemoteStore:
    """Applies insert/update/delete calls through the PostgREST HTTP API."""

    def __init__(
        self,
        base_url: str = REMOTE.base_url,
        api_key: str = REMOTE.api_key,
        *,
        timeout: float = REMOTE.request_timeout_sec,
        rest_prefix: str = REMOTE.rest_prefix,
        primary_key: str = OFFLINE_SYNC.primary_key,
        session: Optional[requests.Session] = None,
        access_token: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.rest_prefix = "/" + rest_prefix.strip("/")
        self.primary_key = primary_key
        self.access_token = access_token
        self.session = session or requests.Session()

    def close(self) -> None:
        if self.session:
            self.session.close()

    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.access_token or self.api_key}"
        return headers

    def _url(self, table: str) -> str:
        return f"{self.base_url}{self.rest_prefix}/{table}"

    def _filter(self, data: Dict[str, Any]) -> Dict[str, str]:
        key = data.get(self.primary_key)
        if key is None:
            raise RemoteRejectedError(f"Operation requires '{self.primary_key}' field")
        return {self.primary_key: f"eq.{key}"}

    def apply_blocking(self, table: str, operation: str, data: Dict[str, Any]) -> None:
        url = self._url(table)
        try:
            if operation == "insert":
                response = self.session.post(url, json=data, headers=self._headers(), timeout=self.timeout)
            elif operation == "update":
                body = {k: v for k, v in data.items() if k != self.primary_key}
                response = self.session.patch(
                    url, params=self._filter(data), json=body, headers=self._headers(), timeout=self.timeout
                )
            elif operation == "delete":
                response = self.session.delete(
                    url, params=self._filter(data), headers=self._headers(), timeout=self.timeout
                )
            else:
                raise RemoteRejectedError(f"Unsupported operation: {operation}")
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise RemoteConnectivityError(str(exc)) from exc
        except requests.RequestException as exc:
            raise RemoteConnectivityError(f"Request to {url} failed: {exc}") from exc

        self._check(response, table, operation)

    def _check(self, response: requests.Response, table: str, operation: str) -> None:
        if response.ok:
            return

        code: Optional[str] = None
        message = (response.text or "")[:500]
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            code = payload.get("code")
            message = payload.get("message") or message

        status = response.status_code
        if operation == "insert" and code in ALREADY_APPLIED_CODES:
            logger.warning("Insert on %s already applied remotely (%s), skipping", table, code)
            return
        if status in CONNECTIVITY_STATUS:
            raise RemoteConnectivityError(
                f"{operation} on {table} failed with HTTP {status}: {message}",
                status_code=status,
                code=code,
            )
        raise RemoteRejectedError(
            f"{operation} on {table} rejected with HTTP {status}: {message}",
            status_code=status,
            code=code,
        )

    async def apply(self, table: str, operation: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.apply_blocking, table, operation, data)

    def ping(self, path: str = REMOTE.health_path) -> bool:
        """True when the server answers at all, whatever the status."""
        try:
            self.session.head(
                f"{self.base_url}{path}",
                headers=self._headers(),
                timeout=min(self.timeout, 5.0),
            )
        except requests.RequestException:
            return False
        return True


__all__ = ["ALREADY_APPLIED_CODES", "CONNECTIVITY_STATUS", "PostgrestRemoteStore"]

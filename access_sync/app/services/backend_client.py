"""
Async HTTP client for the access backend.

Endpoints used:
- ``GET access/status`` for initial-load resolution
- ``GET approval/status`` for the polling fallback
- ``GET submissions/stream`` (server-sent events) for live grants and revokes
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from pydantic import ValidationError

from ...config import AccessSyncConfig
from ..schemas.notifications import AccessStatusResponse, ApprovalStatusResponse
from .exceptions import AccessBackendError

logger = logging.getLogger(__name__)

ACCESS_STATUS_PATH = "access/status"
APPROVAL_STATUS_PATH = "approval/status"
STREAM_PATH = "submissions/stream"


class AccessBackendClient:
    """Thin wrapper over :class:`httpx.AsyncClient` for the access endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        connect_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: AccessSyncConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "AccessBackendClient":
        return cls(
            config.api_base_url,
            timeout=config.request_timeout_seconds,
            connect_timeout=config.connect_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AccessBackendClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def _request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, self._url(endpoint), params=params)
        except httpx.TimeoutException as exc:
            raise AccessBackendError(code="timeout", message=f"Request timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise AccessBackendError(code="connection_error", message=f"Connection error: {exc}") from exc

        if response.status_code >= 400:
            raise AccessBackendError(
                code="http_error",
                message=f"Access backend returned {response.status_code} for {endpoint}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise AccessBackendError(
                code="invalid_json",
                message=f"Access backend returned a non-JSON body for {endpoint}",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, dict):
            raise AccessBackendError(
                code="invalid_payload",
                message=f"Access backend returned an unexpected payload for {endpoint}",
                status_code=response.status_code,
            )
        return data

    async def get_access_status(self, feature: str, feature_ref: str, email: str) -> AccessStatusResponse:
        data = await self._request(
            "GET",
            ACCESS_STATUS_PATH,
            params={"feature": feature, "featureId": feature_ref, "email": email},
        )
        try:
            return AccessStatusResponse.model_validate(data)
        except ValidationError as exc:
            raise AccessBackendError(code="invalid_payload", message=str(exc)) from exc

    async def get_approval_status(self, request_id: str) -> ApprovalStatusResponse:
        data = await self._request("GET", APPROVAL_STATUS_PATH, params={"requestId": request_id})
        try:
            return ApprovalStatusResponse.model_validate(data)
        except ValidationError as exc:
            raise AccessBackendError(code="invalid_payload", message=str(exc)) from exc

    @asynccontextmanager
    async def open_stream(self, email: str, *, last_event_id: Optional[str] = None) -> AsyncIterator[httpx.Response]:
        """Open the per-email event stream; raises ``AccessBackendError`` on HTTP failure."""

        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id
        async with self._client.stream(
            "GET",
            self._url(STREAM_PATH),
            params={"email": email},
            headers=headers,
            timeout=httpx.Timeout(None, connect=self._client.timeout.connect),
        ) as response:
            if response.status_code >= 400:
                raise AccessBackendError(
                    code="http_error",
                    message=f"Event stream returned {response.status_code}",
                    status_code=response.status_code,
                )
            logger.debug("Event stream opened", extra={"email": email})
            yield response

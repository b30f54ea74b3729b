from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from caseguard.core.config import get_settings
from caseguard.core.errors import StateUnavailableError


logger = logging.getLogger(__name__)


class StateProvider(Protocol):
    async def fetch_current_state(self, *, tenant_id: str, subject_type: str, subject_id: str) -> dict[str, Any]:
        ...


class HttpStateProvider:
    """Reads live subject state from the host platform.

    ``GET {base}/tenants/{tenant}/subjects/{type}/{id}/state`` must return a
    JSON object; anything else is reported as ``StateUnavailableError``.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        token: str | None = None,
        timeout_ms: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.state_provider_base_url).rstrip("/")
        self._token = token if token is not None else settings.state_provider_token
        self._timeout = (timeout_ms or settings.guardian_lookup_timeout_ms) / 1000
        self._transport = transport

    async def fetch_current_state(self, *, tenant_id: str, subject_type: str, subject_id: str) -> dict[str, Any]:
        url = (
            f"{self._base_url}/tenants/{quote(tenant_id, safe='')}"
            f"/subjects/{quote(subject_type, safe='')}/{quote(subject_id, safe='')}/state"
        )
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "workflow_state_fetch_failed tenant_id=%s subject_id=%s error=%s",
                tenant_id,
                subject_id,
                type(exc).__name__,
            )
            raise StateUnavailableError(f"state lookup failed: {type(exc).__name__}") from exc
        if response.status_code >= 400:
            logger.warning(
                "workflow_state_fetch_failed tenant_id=%s subject_id=%s status=%s",
                tenant_id,
                subject_id,
                response.status_code,
            )
            raise StateUnavailableError(f"state lookup returned {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise StateUnavailableError("state lookup returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise StateUnavailableError("state lookup did not return an object")
        return body

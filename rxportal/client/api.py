"""HTTP gateway to the portal API.

Every call is a blocking ``requests`` round trip executed through
:func:`asyncio.to_thread` so controllers can await it without stalling the
event loop.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, Mapping, Optional

import requests
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 10.0


class ApiError(Exception):
    """Raised for transport failures and non-2xx responses."""

    def __init__(self, status: Optional[int], message: str, payload: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.payload = payload


def _error_message(payload: Any, default: str) -> str:
    if not isinstance(payload, Mapping):
        return default
    error = payload.get("error")
    if isinstance(error, str) and error:
        return error
    if isinstance(error, Mapping) and error.get("message"):
        return str(error["message"])
    detail = payload.get("detail")
    if isinstance(detail, str) and detail:
        return detail
    return default


class PortalApiClient:
    """Thin wrapper around the endpoints used by the controllers."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("api_request_failed", method=method, path=path, error=str(exc))
            raise ApiError(None, f"Request failed: {exc}") from exc
        try:
            payload = resp.json() if resp.content else {}
        except ValueError:
            payload = {"error": resp.text}
        if not resp.ok:
            raise ApiError(
                resp.status_code,
                _error_message(payload, f"HTTP {resp.status_code}"),
                payload,
            )
        return payload if isinstance(payload, dict) else {"data": payload}

    async def _call(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    # Prescriptions -------------------------------------------------------

    async def status_batch(
        self,
        *,
        user_id: Optional[str] = None,
        prescription_ids: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if user_id:
            body["user_id"] = user_id
        if prescription_ids is not None:
            body["prescription_ids"] = list(prescription_ids)
        return await self._call("POST", "/api/prescriptions/status-batch", json=body)

    async def submit_to_pharmacy(self, prescription_id: str) -> Dict[str, Any]:
        return await self._call(
            "POST", f"/api/prescriptions/{prescription_id}/submit-to-pharmacy"
        )

    # Refills -------------------------------------------------------------

    async def list_refills(self, search: str = "") -> Dict[str, Any]:
        return await self._call("GET", "/api/refills", params={"search": search} if search else None)

    async def list_scheduled(self, search: str = "") -> Dict[str, Any]:
        return await self._call(
            "GET", "/api/refills/scheduled", params={"search": search} if search else None
        )

    async def skip_refill(self, prescription_id: str) -> Dict[str, Any]:
        return await self._call("POST", f"/api/refills/{prescription_id}/skip")

    async def cancel_refills(self, prescription_id: str) -> Dict[str, Any]:
        return await self._call("POST", f"/api/refills/{prescription_id}/cancel")

    # Tags ----------------------------------------------------------------

    async def list_tags(self, page: int, limit: int, search: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if search:
            params["search"] = search
        return await self._call("GET", "/api/admin/tags", params=params)

    async def create_tag(self, name: str) -> Dict[str, Any]:
        return await self._call("POST", "/api/admin/tags", json={"name": name})

    async def update_tag(self, tag_id: str, name: str) -> Dict[str, Any]:
        return await self._call("PUT", f"/api/admin/tags/{tag_id}", json={"name": name})

    async def delete_tag(self, tag_id: str) -> Dict[str, Any]:
        return await self._call("DELETE", f"/api/admin/tags/{tag_id}")

    def close(self) -> None:
        self._session.close()


__all__ = ["ApiError", "PortalApiClient"]

"""HTTP client for the pairing API."""

import logging
from typing import Any, Optional

import aiohttp

from qrpass.errors import QrPassError

logger = logging.getLogger(__name__)


class ApiError(QrPassError):
    """Non-2xx response from the pairing API.

    Attributes:
        status: HTTP status code.
        code: Error code from the response body.
        body: Decoded JSON body, or {} if the body was not JSON.
    """

    def __init__(self, status: int, code: str, message: str, body: dict[str, Any]):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.code = code
        self.body = body


class SessionGoneApiError(ApiError):
    """404 or 410: the session is unknown or already cleaned up."""

    @property
    def final_status(self) -> Optional[str]:
        """Terminal status reported with a 410, if any."""
        status = self.body.get("status")
        return status if isinstance(status, str) else None


class PairingApiClient:
    """Client for the pairing session endpoints.

    Usage:
        async with PairingApiClient("http://127.0.0.1:8780", token) as client:
            created = await client.create_session("event-ticket", data)
            status = await client.get_status(created["sessionId"])
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ):
        """Initialize client.

        Args:
            base_url: Server base URL.
            token: Bearer token for owner operations.
            session: Existing aiohttp session to use (not closed by us).
            timeout: Per-request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def __aenter__(self) -> "PairingApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        auth: bool = True,
    ) -> dict[str, Any]:
        headers = {}
        if auth and self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        async with self._http().request(
            method, f"{self.base_url}{path}", json=payload, headers=headers
        ) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = None
            if not isinstance(body, dict):
                body = {}

            if resp.status >= 400:
                code = str(body.get("error", "http_error"))
                message = str(body.get("message", resp.reason or ""))
                if resp.status in (404, 410):
                    raise SessionGoneApiError(resp.status, code, message, body)
                raise ApiError(resp.status, code, message, body)

            return body

    async def create_session(
        self,
        target_kind: str,
        target_data: dict[str, Any],
        lifetime_seconds: Optional[int] = None,
    ) -> dict[str, Any]:
        """POST /api/sessions."""
        payload: dict[str, Any] = {"targetKind": target_kind, "targetData": target_data}
        if lifetime_seconds is not None:
            payload["lifetimeSeconds"] = lifetime_seconds
        return await self._request("POST", "/api/sessions", payload)

    async def get_status(self, session_id: str) -> dict[str, Any]:
        """GET /api/sessions/{id}."""
        return await self._request("GET", f"/api/sessions/{session_id}")

    async def list_sessions(self) -> dict[str, Any]:
        """GET /api/sessions."""
        return await self._request("GET", "/api/sessions")

    async def complete(self, session_id: str, scanner_ref: Optional[str] = None) -> dict[str, Any]:
        """POST /api/sessions/{id}/complete (no owner credentials)."""
        payload = {"scannerRef": scanner_ref} if scanner_ref else {}
        return await self._request(
            "POST", f"/api/sessions/{session_id}/complete", payload, auth=False
        )

    async def cancel(self, session_id: str) -> dict[str, Any]:
        """DELETE /api/sessions/{id}."""
        return await self._request("DELETE", f"/api/sessions/{session_id}")

    async def acknowledge(self, session_id: str) -> dict[str, Any]:
        """POST /api/sessions/{id}/ack."""
        return await self._request("POST", f"/api/sessions/{session_id}/ack")

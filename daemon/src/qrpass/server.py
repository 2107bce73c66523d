"""HTTP server for the pairing API.

Single aiohttp server handling all routes:
- /health - Health check
- /api/sessions - Create / list pairing sessions (initiating device)
- /api/sessions/{id} - Status / cancel (initiating device)
- /api/sessions/{id}/ack - Drop a finished session (initiating device)
- /api/sessions/{id}/complete - Complete a session (scanning device)
- /scan/{id} - Page opened by the phone camera, completes the session
"""

import html
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from qrpass.auth import OwnerResolver, require_owner
from qrpass.errors import (
    AlreadyFinalizedError,
    QrPassError,
    ResourceCreationError,
    SessionExpiredError,
    SessionGoneError,
    SessionNotFoundError,
    TooManySessionsError,
    ValidationError,
)
from qrpass.ip_provider import IpDiscoveryError, IpProvider
from qrpass.logging import short_id
from qrpass.pairing.manager import PairingManager
from qrpass.pairing.session import PairingSession

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"localhost", "::1"}


# =============================================================================
# Rate Limiter
# =============================================================================

class RateLimiter:
    """Simple sliding window rate limiter.

    Keys come from unauthenticated requests (client IPs, guessed session
    IDs), so keys with no request inside the window are dropped once per
    window.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, list] = {}
        self._clock = clock
        self._last_prune = clock()

    def is_allowed(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_seconds
        if now - self._last_prune >= self.window_seconds:
            self._prune(cutoff)
            self._last_prune = now

        recent = [t for t in self.requests.get(key, ()) if t > cutoff]
        if len(recent) >= self.max_requests:
            self.requests[key] = recent
            return False
        recent.append(now)
        self.requests[key] = recent
        return True

    def _prune(self, cutoff: float) -> None:
        for key, times in list(self.requests.items()):
            if not times or times[-1] <= cutoff:
                del self.requests[key]


def _split_host(host: str) -> tuple[str, Optional[str]]:
    """Split a Host header into hostname and optional port."""
    if host.startswith("["):
        end = host.find("]")
        name = host[1:end]
        rest = host[end + 1:]
        return name, rest[1:] if rest.startswith(":") else None
    name, sep, port = host.partition(":")
    return name, port if sep else None


def _is_loopback(hostname: str) -> bool:
    return hostname in LOOPBACK_HOSTS or hostname.startswith("127.")


def _session_created_dict(session: PairingSession) -> dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "payload": session.payload,
        "expiresAt": session.expires_at,
        "lifetimeSeconds": session.lifetime_seconds,
        "targetKind": session.target_kind,
        "status": session.status.value,
    }


# =============================================================================
# Pairing Server
# =============================================================================

class PairingServer:
    """HTTP server exposing the pairing session operations."""

    def __init__(
        self,
        manager: PairingManager,
        owner_resolver: OwnerResolver,
        ip_provider: Optional[IpProvider] = None,
        public_base_url: Optional[str] = None,
        complete_rate_per_session: int = 10,
        complete_rate_per_ip: int = 100,
    ):
        """Initialize pairing server.

        Args:
            manager: Pairing session lifecycle manager.
            owner_resolver: Turns bearer tokens into owner refs.
            ip_provider: Replaces loopback hosts in scan URLs with a LAN IP.
            public_base_url: Fixed base for scan URLs; overrides the request host.
            complete_rate_per_session: Complete calls per session per minute.
            complete_rate_per_ip: Complete calls per client IP per minute.
        """
        self.manager = manager
        self.owner_resolver = owner_resolver
        self.ip_provider = ip_provider
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

        self._session_limiter = RateLimiter(max_requests=complete_rate_per_session, window_seconds=60)
        self._ip_limiter = RateLimiter(max_requests=complete_rate_per_ip, window_seconds=60)

        self.app = web.Application()
        self._setup_routes()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._port: int = 0

    def _setup_routes(self) -> None:
        """Set up all HTTP routes."""
        self.app.router.add_get("/health", self._handle_health)

        # Initiating device
        self.app.router.add_post("/api/sessions", self._handle_create)
        self.app.router.add_get("/api/sessions", self._handle_list)
        self.app.router.add_get("/api/sessions/{session_id}", self._handle_status)
        self.app.router.add_delete("/api/sessions/{session_id}", self._handle_cancel)
        self.app.router.add_post("/api/sessions/{session_id}/ack", self._handle_acknowledge)

        # Scanning device
        self.app.router.add_post("/api/sessions/{session_id}/complete", self._handle_complete)
        self.app.router.add_get("/scan/{session_id}", self._handle_scan_page)

    # =========================================================================
    # Health
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.Response(text="OK")

    # =========================================================================
    # Initiating device
    # =========================================================================

    async def _handle_create(self, request: web.Request) -> web.Response:
        """Create a pairing session."""
        try:
            owner_ref = await self._owner(request)
            body = await self._json_body(request)
            base_url = await self._base_url(request)

            session = await self.manager.create(
                target_kind=body.get("targetKind"),
                target_data=body.get("targetData"),
                owner_ref=owner_ref,
                base_url=base_url,
                lifetime_seconds=body.get("lifetimeSeconds"),
            )
        except QrPassError as e:
            return self._error_response(e)

        logger.info(f"Scan URL for {short_id(session.session_id)}: {session.payload}")
        return web.json_response(_session_created_dict(session), status=201)

    async def _handle_list(self, request: web.Request) -> web.Response:
        """List the caller's pairing sessions."""
        try:
            owner_ref = await self._owner(request)
            sessions = await self.manager.list_sessions(owner_ref)
        except QrPassError as e:
            return self._error_response(e)

        now = self.manager.now()
        return web.json_response({
            "sessions": [s.to_status_dict(now) for s in sessions],
            "count": len(sessions),
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Get pairing session status (polled by the initiating device)."""
        session_id = request.match_info["session_id"]

        try:
            owner_ref = await self._owner(request)
            session = await self.manager.status(session_id, owner_ref=owner_ref)
        except QrPassError as e:
            return self._error_response(e)

        return web.json_response(session.to_status_dict(self.manager.now()))

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        """Cancel a pairing session."""
        session_id = request.match_info["session_id"]

        try:
            owner_ref = await self._owner(request)
            session = await self.manager.cancel(session_id, owner_ref)
        except QrPassError as e:
            return self._error_response(e)

        return web.json_response({"sessionId": session_id, "status": session.status.value})

    async def _handle_acknowledge(self, request: web.Request) -> web.Response:
        """Drop a finished session the owner has seen."""
        session_id = request.match_info["session_id"]

        try:
            owner_ref = await self._owner(request)
            await self.manager.acknowledge(session_id, owner_ref)
        except QrPassError as e:
            return self._error_response(e)

        return web.json_response({"sessionId": session_id, "status": "acknowledged"})

    # =========================================================================
    # Scanning device
    # =========================================================================

    def _check_rate(self, request: web.Request, session_id: str) -> None:
        client_ip = request.remote or "unknown"
        if not self._ip_limiter.is_allowed(client_ip):
            raise TooManySessionsError("Rate limited")
        if not self._session_limiter.is_allowed(session_id):
            raise TooManySessionsError("Rate limited")

    async def _handle_complete(self, request: web.Request) -> web.Response:
        """Complete a session (JSON API for scanner apps)."""
        session_id = request.match_info["session_id"]

        try:
            self._check_rate(request, session_id)
            body = await self._json_body(request, required=False)
            scanner_ref = body.get("scannerRef")
            if scanner_ref is not None and not isinstance(scanner_ref, str):
                raise ValidationError("scannerRef must be a string")
            outcome = await self.manager.complete(session_id, scanner_ref=scanner_ref)
        except QrPassError as e:
            return self._error_response(e)
        except Exception as e:
            logger.error(f"Completion error for {short_id(session_id)}: {e}")
            return web.json_response(
                {"error": "internal_error", "message": "Failed to process scan"},
                status=500,
            )

        session = outcome.session
        return web.json_response({
            "sessionId": session_id,
            "status": session.status.value,
            "resultRef": session.result_ref,
            "created": outcome.created,
        })

    async def _handle_scan_page(self, request: web.Request) -> web.Response:
        """Complete a session from a phone camera opening the scan URL."""
        session_id = request.match_info["session_id"]

        try:
            self._check_rate(request, session_id)
            outcome = await self.manager.complete(session_id)
        except SessionNotFoundError:
            return self._html_page(404, "QR Code Not Found", "This QR code is invalid or was never issued.")
        except SessionGoneError as e:
            if e.final_status == "completed":
                return self._html_page(409, "Already Scanned", "This QR code has already been used.")
            return self._html_page(410, "QR Code Expired", "This QR code is no longer valid. Please generate a new one.")
        except SessionExpiredError:
            return self._html_page(410, "QR Code Expired", "This QR code has expired. Please generate a new one.")
        except AlreadyFinalizedError:
            return self._html_page(409, "QR Code Cancelled", "This QR code was cancelled on the other device.")
        except ResourceCreationError as e:
            if e.rolled_back:
                message = "Your pass could not be saved. Please scan the code again."
            else:
                message = "The scan worked, but your pass could not be saved."
            return self._html_page(502, "Pass Not Saved", message)
        except TooManySessionsError:
            return self._html_page(429, "Too Many Attempts", "Please wait a moment and try again.")
        except Exception as e:
            logger.error(f"Scan page error for {short_id(session_id)}: {e}")
            return self._html_page(500, "Something Went Wrong", "Failed to process the scan.")

        title = outcome.session.target_data.get("title") or outcome.session.target_kind
        if outcome.created:
            return self._html_page(200, "Pass Created", f"{title} was added to your account.")
        return self._html_page(200, "Already Added", f"{title} is already in your account.")

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _owner(self, request: web.Request) -> str:
        return await require_owner(self.owner_resolver, request.headers.get("Authorization"))

    async def _json_body(self, request: web.Request, required: bool = True) -> dict[str, Any]:
        """Parse a JSON object body.

        Raises:
            ValidationError: Body is not a JSON object.
        """
        if not request.can_read_body:
            if required:
                raise ValidationError("Request body is required")
            return {}

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body must be JSON")

        if body is None and not required:
            return {}
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        return body

    async def _base_url(self, request: web.Request) -> str:
        """Base URL the scanning device will use to reach this server.

        A loopback host is useless to a phone, so it is replaced with
        the LAN IP while keeping the port.
        """
        if self.public_base_url:
            return self.public_base_url

        hostname, port = _split_host(request.host)
        if _is_loopback(hostname) and self.ip_provider is not None:
            try:
                hostname = await self.ip_provider.get_ip()
            except IpDiscoveryError as e:
                logger.warning(f"Could not replace loopback host in scan URL: {e}")

        if ":" in hostname:
            hostname = f"[{hostname}]"
        host = f"{hostname}:{port}" if port else hostname
        return f"{request.scheme}://{host}"

    def _error_response(self, error: QrPassError) -> web.Response:
        """Create JSON error response from the error taxonomy."""
        body: dict[str, Any] = {"error": error.code, "message": str(error)}

        if isinstance(error, SessionGoneError) and error.final_status:
            body["status"] = error.final_status
        elif isinstance(error, SessionExpiredError):
            body["status"] = "expired"
        elif isinstance(error, AlreadyFinalizedError):
            body["status"] = error.session.status.value
        elif isinstance(error, ResourceCreationError):
            body["status"] = "active" if error.rolled_back else "completed"

        if error.status >= 500:
            logger.error(f"Request failed: {error}")

        return web.json_response(body, status=error.status)

    def _html_page(self, status: int, heading: str, message: str) -> web.Response:
        """Simple page for the phone browser."""
        color = "#28a745" if status == 200 else "#dc3545"
        page = f"""<!DOCTYPE html>
<html>
<head>
    <title>{html.escape(heading)}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{ font-family: system-ui, sans-serif; text-align: center; padding: 50px; background: #f5f5f5; }}
        .message {{ color: {color}; font-size: 24px; margin: 20px; }}
    </style>
</head>
<body>
    <h1>{html.escape(heading)}</h1>
    <p class="message">{html.escape(message)}</p>
</body>
</html>
"""
        return web.Response(status=status, text=page, content_type="text/html")

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(self, host: str, port: int) -> web.AppRunner:
        """Start the server.

        Args:
            host: Host to bind to.
            port: Port to bind to (0 for random).

        Returns:
            App runner for cleanup.
        """
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()

        # Get actual port
        if self._site._server and self._site._server.sockets:
            self._port = self._site._server.sockets[0].getsockname()[1]
        else:
            self._port = port

        logger.info(f"Pairing server started on {host}:{self._port}")
        return self._runner

    def get_port(self) -> int:
        """Get the actual bound port."""
        return self._port

    async def close(self) -> None:
        """Stop server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        logger.info("Pairing server closed")

"""
Liveness REST API - HTTP surface of the ledger and of the monitor.

Ledger endpoints:
- GET  /health - Health check
- GET  /api/v1/params - Interval, grace and current ledger time
- GET  /api/v1/operators/{operator} - Operator record
- POST /api/v1/operators/{operator}/register - Register (admin key)
- POST /api/v1/operators/{operator}/proofs - Submit a proof of life
- POST /api/v1/operators/{operator}/penalties - Apply a penalty (slasher key)

Monitor endpoints:
- GET  /health - Health check
- GET  /status - Status report as JSON
- GET  /status.txt - Status report as rendered text
- GET  /metrics - Prometheus metrics

Authentication:
- API key in header (X-API-Key) for the admin and slasher roles; a role
  without a configured key is open
- Proofs need the operator's own key in X-Operator-Key; an operator with no
  configured key cannot submit proofs over HTTP

Ledger mutations fsync the snapshot and call the penalty authority, so the
app runs them in the default executor.
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

from aiohttp import web

from ..config import ApiConfig
from ..ledger import (
    LedgerError,
    LivenessLedger,
    PenaltyAuthorityError,
)
from ..models import normalize_operator
from ..report import render_status_report

if TYPE_CHECKING:
    from ..monitor import LivenessMonitor

logger = logging.getLogger(__name__)

MAX_NOTE_LENGTH = 1024


# =============================================================================
# API Response Types
# =============================================================================

@dataclass
class ApiResponse:
    """Standard API response."""
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    timestamp: int = 0
    details: Dict[str, Any] = field(default_factory=dict)
    status: int = 200

    def __post_init__(self):
        if self.timestamp == 0:
            self.timestamp = int(time.time() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "timestamp": self.timestamp,
        }
        body.update(self.details)
        return body

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def success_response(data: Any) -> ApiResponse:
    return ApiResponse(success=True, data=data)


def error_response(error: str, status: int = 400, **details: Any) -> ApiResponse:
    return ApiResponse(success=False, error=error, details=details, status=status)


def ledger_error_response(exc: LedgerError) -> ApiResponse:
    details = exc.to_dict()
    details.pop("message", None)
    if isinstance(exc, PenaltyAuthorityError):
        return error_response(exc.reason, 502, **details)
    return error_response(str(exc), 400, **details)


# =============================================================================
# Ledger Handlers
# =============================================================================

class LedgerApiHandlers:
    """
    Ledger request handlers.

    Framework-agnostic: every handler returns an ApiResponse carrying its
    own HTTP status.
    """

    def __init__(self, ledger: LivenessLedger, config: Optional[ApiConfig] = None):
        self._ledger = ledger
        self._config = config or ApiConfig()

    @staticmethod
    def _check_key(expected: Optional[str], provided: Optional[str]) -> bool:
        if not expected:
            return True
        if not provided:
            return False
        return hmac.compare_digest(expected.encode(), provided.encode())

    def handle_health(self) -> ApiResponse:
        return success_response({"status": "ok"})

    def handle_params(self) -> ApiResponse:
        return success_response({
            "interval": self._ledger.interval,
            "grace": self._ledger.grace,
            "escalation_threshold": self._ledger.escalation_threshold,
            "chain_time": self._ledger.chain_time(),
        })

    def handle_operator(self, operator: str) -> ApiResponse:
        try:
            record = self._ledger.get_operator(operator)
        except ValueError as exc:
            return error_response(str(exc))
        return success_response(record.to_dict())

    def handle_register(self, operator: str, api_key: Optional[str] = None) -> ApiResponse:
        """Handle POST /api/v1/operators/{operator}/register"""
        if not self._check_key(self._config.admin_api_key, api_key):
            return error_response("Invalid or missing API key", 401)
        try:
            record = self._ledger.register(operator)
        except ValueError as exc:
            return error_response(str(exc))
        return success_response(record.to_dict())

    def handle_submit_proof(
        self,
        operator: str,
        body: Dict[str, Any],
        operator_key: Optional[str] = None,
    ) -> ApiResponse:
        """
        Handle POST /api/v1/operators/{operator}/proofs

        Only the operator itself may advance its proof time, so the request
        must carry that operator's key.

        Body:
        {
            "note": "All systems operational."
        }
        """
        try:
            op = normalize_operator(operator)
        except ValueError as exc:
            return error_response(str(exc))
        expected = self._config.operator_api_keys.get(op)
        if not expected or not self._check_key(expected, operator_key):
            logger.warning(f"Rejected proof for {op}: invalid or missing operator key")
            return error_response("Invalid or missing operator key", 401)

        note = body.get("note", "")
        if not isinstance(note, str):
            return error_response("note must be a string")
        if len(note) > MAX_NOTE_LENGTH:
            return error_response(f"note exceeds {MAX_NOTE_LENGTH} characters")
        try:
            timestamp = self._ledger.submit_proof(op, note)
        except LedgerError as exc:
            return ledger_error_response(exc)
        except ValueError as exc:
            return error_response(str(exc))
        return success_response({"timestamp": timestamp})

    def handle_apply_penalty(self, operator: str, api_key: Optional[str] = None) -> ApiResponse:
        """Handle POST /api/v1/operators/{operator}/penalties"""
        if not self._check_key(self._config.slasher_api_key, api_key):
            return error_response("Invalid or missing API key", 401)
        try:
            outcome = self._ledger.apply_penalty(operator)
        except LedgerError as exc:
            return ledger_error_response(exc)
        except ValueError as exc:
            return error_response(str(exc))
        return success_response(outcome.to_dict())


def create_ledger_app(handlers: LedgerApiHandlers) -> web.Application:
    """Create aiohttp application with the ledger routes."""
    app = web.Application()

    def json_response(resp: ApiResponse) -> web.Response:
        return web.json_response(resp.to_dict(), status=resp.status)

    async def read_body(request: web.Request) -> Optional[Dict[str, Any]]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    async def in_executor(handler, *args: Any) -> web.Response:
        loop = asyncio.get_running_loop()
        return json_response(await loop.run_in_executor(None, handler, *args))

    async def health(request: web.Request) -> web.Response:
        return json_response(handlers.handle_health())

    async def params(request: web.Request) -> web.Response:
        return json_response(handlers.handle_params())

    async def operator(request: web.Request) -> web.Response:
        return json_response(handlers.handle_operator(request.match_info["operator"]))

    async def register(request: web.Request) -> web.Response:
        return await in_executor(
            handlers.handle_register,
            request.match_info["operator"],
            request.headers.get("X-API-Key"),
        )

    async def proofs(request: web.Request) -> web.Response:
        body = await read_body(request)
        if body is None:
            return json_response(error_response("Request body must be a JSON object"))
        return await in_executor(
            handlers.handle_submit_proof,
            request.match_info["operator"],
            body,
            request.headers.get("X-Operator-Key"),
        )

    async def penalties(request: web.Request) -> web.Response:
        return await in_executor(
            handlers.handle_apply_penalty,
            request.match_info["operator"],
            request.headers.get("X-API-Key"),
        )

    app.router.add_get("/health", health)
    app.router.add_get("/api/v1/params", params)
    app.router.add_get("/api/v1/operators/{operator}", operator)
    app.router.add_post("/api/v1/operators/{operator}/register", register)
    app.router.add_post("/api/v1/operators/{operator}/proofs", proofs)
    app.router.add_post("/api/v1/operators/{operator}/penalties", penalties)
    return app


# =============================================================================
# Monitor Status
# =============================================================================

def create_monitor_app(monitor: "LivenessMonitor") -> web.Application:
    """Create aiohttp application exposing the monitor's status query."""
    app = web.Application()

    async def health(request: web.Request) -> web.Response:
        return web.json_response(success_response({"status": "ok"}).to_dict())

    async def status(request: web.Request) -> web.Response:
        try:
            report = await monitor.status_report()
        except RuntimeError as exc:
            return web.json_response(error_response(str(exc), 503).to_dict(), status=503)
        return web.json_response(success_response(report.to_dict()).to_dict())

    async def status_text(request: web.Request) -> web.Response:
        try:
            report = await monitor.status_report()
        except RuntimeError as exc:
            return web.Response(text=f"{exc}\n", status=503, content_type="text/plain")
        return web.Response(text=render_status_report(report), content_type="text/plain")

    async def metrics(request: web.Request) -> web.Response:
        return web.Response(text=monitor.metrics.to_prometheus(), content_type="text/plain")

    app.router.add_get("/health", health)
    app.router.add_get("/status", status)
    app.router.add_get("/status.txt", status_text)
    app.router.add_get("/metrics", metrics)
    return app


# =============================================================================
# Server
# =============================================================================

class ApiServer:
    """
    Runs an aiohttp application on host:port.

    Example:
        server = ApiServer(create_ledger_app(LedgerApiHandlers(ledger)), "127.0.0.1", 8545)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(self, app: web.Application, host: str, port: int, name: str = "API"):
        self._app = app
        self._host = host
        self._port = port
        self._name = name
        self._runner: Optional[web.AppRunner] = None

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Start the server."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info(f"{self._name} server started on http://{self._host}:{self._port}")

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info(f"{self._name} server stopped")


def create_ledger_server(ledger: LivenessLedger, config: ApiConfig) -> ApiServer:
    if not config.admin_api_key:
        logger.warning("No admin API key configured; registration is open")
    if not config.slasher_api_key:
        logger.warning("No slasher API key configured; penalty submission is open")
    if not config.operator_api_keys:
        logger.warning("No operator keys configured; every proof submission will be rejected")
    handlers = LedgerApiHandlers(ledger, config)
    return ApiServer(create_ledger_app(handlers), config.host, config.port, name="Ledger API")


def create_monitor_server(monitor: "LivenessMonitor", host: str, port: int) -> ApiServer:
    return ApiServer(create_monitor_app(monitor), host, port, name="Monitor status")

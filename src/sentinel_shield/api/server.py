"""
HTTP interface of a running shield.

    POST /emergency-pause   {target, vulnHash, source} with X-API-Key
    GET  /events            journal view (limit, level, contract filters)
    GET  /status            connection, registry and pipeline stats
"""

from __future__ import annotations

import hmac
from typing import Any, Callable

import structlog
from aiohttp import web
from web3 import Web3

from sentinel_shield.config import ApiConfig
from sentinel_shield.events import ThreatLevel
from sentinel_shield.inference.chain import is_vulnerability_reference
from sentinel_shield.inference.pipeline import ProtectionPipeline


logger = structlog.get_logger()


_FAILURE_STATUS = {
    "NotAuthorized": 403,
    "NotConfigured": 503,
}


class ShieldApi:
    def __init__(
        self,
        pipeline: ProtectionPipeline,
        config: ApiConfig | None = None,
        status_provider: Callable[[], dict[str, Any]] | None = None,
    ):
        self.pipeline = pipeline
        self.config = config or ApiConfig()
        self.status_provider = status_provider
        self.app = web.Application()
        self.app.add_routes([
            web.post("/emergency-pause", self.handle_emergency_pause),
            web.get("/events", self.handle_events),
            web.get("/status", self.handle_status),
        ])
        self._runner: web.AppRunner | None = None

    async def start(self) -> Callable[[], Any]:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info("api_started", host=self.config.host, port=self.config.port)
        return self.stop

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("api_stopped")

    def _authorized(self, request: web.Request) -> bool:
        expected = self.config.api_key
        provided = request.headers.get("X-API-Key", "")
        if not expected:
            return False
        return hmac.compare_digest(provided.encode(), expected.encode())

    async def handle_emergency_pause(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            logger.warning("api_unauthorized", remote=request.remote)
            return web.json_response({"success": False, "error": "Unauthorized"}, status=401)

        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"success": False, "error": "Invalid JSON"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"success": False, "error": "Invalid JSON"}, status=400)

        target = body.get("target")
        vuln_hash = body.get("vulnHash")
        source = str(body.get("source") or "api")
        if not isinstance(target, str) or not Web3.is_address(target):
            return web.json_response({"success": False, "error": "Invalid target address"}, status=400)
        if not is_vulnerability_reference(vuln_hash):
            return web.json_response({"success": False, "error": "vulnHash must be 32-byte hex"}, status=400)

        logger.info("emergency_pause_requested", target=target, vuln_hash=vuln_hash, source=source)
        result = await self.pipeline.request_pause(target, vuln_hash, source)

        status = 200
        if not result.success:
            status = 202 if result.pending else _FAILURE_STATUS.get(result.failure_class or "", 502)
        return web.json_response(result.to_dict(), status=status)

    async def handle_events(self, request: web.Request) -> web.Response:
        try:
            limit = int(request.query.get("limit", "50"))
        except ValueError:
            return web.json_response({"error": "limit must be an integer"}, status=400)
        limit = max(1, min(limit, self.pipeline.journal.config.max_persisted_events))

        level = None
        if "level" in request.query:
            try:
                level = ThreatLevel(request.query["level"].upper())
            except ValueError:
                return web.json_response({"error": "unknown level"}, status=400)

        events = self.pipeline.journal.view(
            limit=limit,
            level=level,
            contract_address=request.query.get("contract"),
        )
        return web.json_response({"events": [e.to_dict() for e in events], "count": len(events)})

    async def handle_status(self, request: web.Request) -> web.Response:
        status: dict[str, Any] = {
            "pipeline": self.pipeline.get_stats(),
            "summary": self.pipeline.threat_summary(),
            "contracts": [lc.to_dict() for lc in self.pipeline.registry.lifecycles],
            "journal": self.pipeline.journal.get_stats(),
        }
        if self.status_provider is not None:
            status.update(self.status_provider())
        return web.json_response(status)

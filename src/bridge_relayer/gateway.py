#!/usr/bin/env python3
"""HTTP control surface for the bridge relayer.

Exposes health, transaction-hash lookups, reconciliation listing and the manual
relay triggers. Request bodies are validated strictly; only RelayEngine decides
what a relay outcome means, this module only maps outcomes to status codes.
CORS headers let the browser dashboard call the API from its own origin.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from aiohttp import web

from .models import Direction, RelayOutcome, RelayResult, utc_now_iso
from .relay_engine import is_valid_tx_hash

if TYPE_CHECKING:
    from .config import ApiConfig
    from .relay_engine import RelayEngine
    from .utils.state_store import StateStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "bridge-relayer"

OUTCOME_STATUS: dict[RelayOutcome, int] = {
    RelayOutcome.COMPLETED: 200,
    RelayOutcome.ALREADY_PROCESSED: 200,
    RelayOutcome.INVALID_INPUT: 400,
    RelayOutcome.REJECTED: 400,
    RelayOutcome.RETRYABLE_FAILURE: 503,
    RelayOutcome.NEEDS_RECONCILIATION: 500,
}


class ControlGateway:
    """aiohttp application serving the relayer control API."""

    def __init__(
        self,
        engine: "RelayEngine",
        state_store: "StateStore",
        api: "ApiConfig",
        status_provider: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        """
        Initialize the gateway.

        Args:
            engine: Relay engine handling manual triggers
            state_store: Store answering tx-hash queries
            api: Bind host and port
            status_provider: Returns the relayer status for /api/status
        """
        self.engine = engine
        self.state_store = state_store
        self.api = api
        self.status_provider = status_provider
        self.started = time.monotonic()

        self._runner: web.AppRunner | None = None
        # Relays started over HTTP keep running when the client goes away
        self._relays: set[asyncio.Task] = set()

    def create_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.api.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                # Preflights are answered before routing, for every path
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    self._set_cors_headers(ex.headers, allow_origin)
                    raise
            self._set_cors_headers(response.headers, allow_origin)
            return response

        middlewares = [cors_middleware] if self.api.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/api/tx-hashes", self.tx_hashes_handler)
        app.router.add_get("/api/tx-hashes/{event_id}", self.tx_hash_detail_handler)
        app.router.add_get("/api/reconciliation", self.reconciliation_handler)
        app.router.add_get("/api/status", self.status_handler)
        app.router.add_post("/api/process-deposit", self.process_deposit_handler)
        app.router.add_post("/api/process-withdrawal", self.process_withdrawal_handler)
        return app

    @staticmethod
    def _set_cors_headers(headers, allow_origin: str | None) -> None:
        if not allow_origin:
            return
        headers["Access-Control-Allow-Origin"] = allow_origin
        if allow_origin != "*":
            headers["Vary"] = "Origin"
        headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        headers["Access-Control-Allow-Headers"] = "Content-Type"
        headers["Access-Control-Max-Age"] = "86400"

    async def start(self) -> None:
        """Bind the HTTP server."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host=self.api.host, port=self.api.port)
        await site.start()
        logger.info(f"Control API listening on http://{self.api.host}:{self.api.port}")

    async def stop(self) -> None:
        """Stop accepting requests and wait for HTTP-triggered relays."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self.drain()
        logger.info("Control API stopped")

    async def drain(self) -> None:
        if self._relays:
            logger.info(f"Waiting for {len(self._relays)} HTTP-triggered relays")
            await asyncio.gather(*list(self._relays), return_exceptions=True)

    # Handlers

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "service": SERVICE_NAME,
                "uptime": round(time.monotonic() - self.started, 3),
                "timestamp": utc_now_iso(),
            }
        )

    async def tx_hashes_handler(self, request: web.Request) -> web.Response:
        records = self.state_store.all_records()
        return web.json_response({event_id: record.to_dict() for event_id, record in records.items()})

    async def tx_hash_detail_handler(self, request: web.Request) -> web.Response:
        event_id = request.match_info["event_id"]
        record = self.state_store.get_tx_hashes(event_id)
        if record is None:
            return web.json_response({"error": f"no record for {event_id}"}, status=404)
        return web.json_response(record.to_dict())

    async def reconciliation_handler(self, request: web.Request) -> web.Response:
        items = [record.to_dict() for record in self.state_store.records_needing_attention()]
        # Events seen on chain that never reached the commit step
        unrelayed = [entry.to_dict() for entry in self.state_store.unrelayed_entries()]
        return web.json_response(
            {"count": len(items) + len(unrelayed), "items": items, "unrelayed": unrelayed}
        )

    async def status_handler(self, request: web.Request) -> web.Response:
        status = self.status_provider() if self.status_provider else {}
        status.setdefault("state", self.state_store.get_stats())
        status.setdefault("relays", self.engine.get_stats())
        return web.json_response(status)

    async def process_deposit_handler(self, request: web.Request) -> web.Response:
        return await self._trigger(request, Direction.DEPOSIT)

    async def process_withdrawal_handler(self, request: web.Request) -> web.Response:
        return await self._trigger(request, Direction.BURN)

    async def _trigger(self, request: web.Request, direction: Direction) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid json body"}, status=400)

        if not isinstance(payload, dict):
            return web.json_response({"error": "body must be a JSON object"}, status=400)
        tx_hash = payload.get("txHash")
        if not is_valid_tx_hash(tx_hash):
            return web.json_response(
                {"error": "txHash must be a 0x-prefixed 32-byte hex string"}, status=400
            )

        logger.info(f"Manual {direction.value} trigger for {tx_hash}")
        task = asyncio.create_task(self.engine.process(tx_hash, direction))
        self._relays.add(task)
        task.add_done_callback(self._relays.discard)

        try:
            result: RelayResult = await asyncio.shield(task)
        except Exception as e:
            logger.error(f"Unexpected error processing {direction.value} {tx_hash}: {e}", exc_info=True)
            return web.json_response({"error": "internal server error"}, status=500)

        return web.json_response(result.to_dict(), status=OUTCOME_STATUS[result.outcome])

"""Read-only HTTP view of recorded test runs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from aiohttp import web

from .store import SqliteResultStore, StoreError

LOGGER = logging.getLogger(__name__)


class ResultsServer:
    """Minimal HTTP server exposing stored runs for dashboards and scripts.

    Routes:
        ``GET /healthz``: liveness check.
        ``GET /runs``: every run as CSV.
        ``GET /runs/{test_id}``: one run as JSON.
    """

    def __init__(self, store: SqliteResultStore, host: str, port: int) -> None:
        self._store = store
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_get("/runs", self._handle_export)
        app.router.add_get("/runs/{test_id}", self._handle_run)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("Results view listening on http://%s:%s/runs", self._host, self._port)

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def _handle_export(self, request: web.Request) -> web.Response:
        try:
            text = await asyncio.to_thread(self._store.export_all)
        except StoreError as exc:
            LOGGER.error("Export failed: %s", exc)
            return web.json_response({"error": str(exc)}, status=503)
        return web.Response(text=text, content_type="text/csv")

    async def _handle_run(self, request: web.Request) -> web.Response:
        raw_id = request.match_info["test_id"]
        try:
            test_id = int(raw_id)
        except ValueError:
            return web.json_response(
                {"error": f"Invalid test id {raw_id!r}"}, status=400
            )

        try:
            record = await asyncio.to_thread(self._store.get_run, test_id)
        except StoreError as exc:
            LOGGER.error("Lookup of test %s failed: %s", test_id, exc)
            return web.json_response({"error": str(exc)}, status=503)

        if record is None:
            return web.json_response(
                {"error": "No test record found for this ID"}, status=404
            )
        return web.json_response(record.as_dict())

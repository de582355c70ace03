"""
Kleiner aiohttp-Webserver für OAuth-Redirects der Plattformen.

Routen werden zur Laufzeit registriert (die Plattformen werden nacheinander
onboarded, während der Server schon läuft), deshalb dispatcht eine einzige
Catch-All-Route über eine eigene Tabelle statt über den aiohttp-Router.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from aiohttp import web

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

log = logging.getLogger("StreamAlerts.CallbackServer")


class CallbackServer:
    def __init__(self, *, host: str = "0.0.0.0", port: int = 3000) -> None:
        self.host = host
        self.port = port
        self._routes: Dict[str, Handler] = {}
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._lock = asyncio.Lock()

    @staticmethod
    def _normalize(path: str) -> str:
        return "/" + path.strip().strip("/")

    def add_get(self, path: str, handler: Handler) -> None:
        key = self._normalize(path)
        if key in self._routes:
            log.warning("Callback route %s wird überschrieben", key)
        self._routes[key] = handler
        log.info("Callback route registriert: GET %s", key)

    def has_route(self, path: str) -> bool:
        return self._normalize(path) in self._routes

    async def _handle_index(self, request: web.Request) -> web.Response:
        return web.Response(text="ok")

    async def _dispatch(self, request: web.Request) -> web.StreamResponse:
        handler = self._routes.get(self._normalize(request.path))
        if handler is None:
            return web.Response(status=404)
        return await handler(request)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.get("/", self._handle_index),
                web.get("/{tail:.+}", self._dispatch),
            ]
        )
        return app

    async def start(self) -> None:
        async with self._lock:
            if self._runner is not None:
                return
            runner = web.AppRunner(self.build_app())
            await runner.setup()
            try:
                site = web.TCPSite(runner, self.host, self.port)
                await site.start()
            except OSError:
                await runner.cleanup()
                raise
            self._runner = runner
            self._site = site
            log.info("Callback server is listening on %s:%s", self.host, self.port)

    async def stop(self) -> None:
        async with self._lock:
            if self._site:
                await self._site.stop()
            if self._runner:
                await self._runner.cleanup()
            self._site = None
            self._runner = None

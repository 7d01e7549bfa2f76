from __future__ import annotations

from aiohttp import web

from kennel_v1.services.logger_service import LoggerService


class KeepaliveService:
    """Plain HTTP responder for uptime monitors, served on the bot's event loop."""

    def __init__(self, port: int, body: str, logger: LoggerService, host: str = "0.0.0.0") -> None:
        self.port = port
        self.body = body
        self.host = host
        self.logger = logger
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self._handle)
        return app

    async def _handle(self, request: web.Request) -> web.Response:
        return web.Response(text=self.body)

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as exc:
            await runner.cleanup()
            self.logger.log("keepalive.start_failed", port=self.port, error=str(exc)[:300])
            return
        self._runner = runner
        self.logger.log("keepalive.started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None

import logging

from aiohttp import web
from pydantic_settings import BaseSettings, SettingsConfigDict

from acmerotate.tls import TlsConfigCell

logger = logging.getLogger(__name__)


async def handle_health(request: web.Request) -> web.Response:
    return web.Response(text="ok")


class HttpsListener:
    """Serves an :class:`aiohttp.web.Application` over TLS with the certificate held by a
    :class:`~acmerotate.tls.TlsConfigCell`.

    Rotations take effect for new connections without rebinding the socket.
    """

    class Config(BaseSettings):
        model_config = SettingsConfigDict(extra="forbid", env_prefix="ACMEROTATE_LISTENER_")

        hostname: str = "0.0.0.0"
        """hostname of the server - e.g. 0.0.0.0 or localhost"""
        port: int = 443
        """port to bind to"""

    def __init__(self, cfg: Config, cell: TlsConfigCell, app: web.Application | None = None):
        self._cfg = cfg
        self._cell = cell

        if app is None:
            app = web.Application()
            app.add_routes([web.get("/health", handle_health)])
        self.app = app

        self._runner: web.AppRunner | None = None

    async def start(self):
        """Binds the listener, the cell must hold a configuration."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self._cfg.hostname, self._cfg.port, ssl_context=self._cell.server_context())
        await site.start()
        logger.info("HTTPS listener on %s:%d", self._cfg.hostname, self._cfg.port)

    async def stop(self):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path

from aiohttp import web
from pydantic_settings import BaseSettings, SettingsConfigDict

from acmerotate.exceptions import ChallengeDirectoryError, ListenerBindFailed

logger = logging.getLogger(__name__)

CHALLENGE_PATH = "/.well-known/acme-challenge"


class ChallengeResponder:
    """A short-lived HTTP listener that answers *http-01* challenges.

    Proofs are served from a scratch directory whose lifetime is bound to the listener:
    it is created right before the listener binds and removed after the listener has shut down.

    `8.3. HTTP Challenge <https://tools.ietf.org/html/rfc8555#section-8.3>`_
    """

    TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+$")
    """Tokens are base64url without padding, anything else is not served."""

    class Config(BaseSettings):
        model_config = SettingsConfigDict(extra="forbid", env_prefix="ACMEROTATE_RESPONDER_")

        hostname: str = "0.0.0.0"
        """address to bind the challenge listener to"""
        port: int = 80
        """port to bind to, the CA always connects to port 80"""
        root: str = ""
        """parent directory of the per-run challenge directory, the system temp dir if empty"""

    def __init__(self, cfg: Config):
        self._cfg = cfg
        self.directory: Path | None = None
        """The directory proofs are served from, *None* while the responder is stopped."""

        self.app = web.Application()
        self.app.add_routes([web.get(CHALLENGE_PATH + "/{token}", self.handle_acme_challenge)])

        self._runner: web.AppRunner | None = None

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def __aenter__(self) -> "ChallengeResponder":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self):
        """Creates the challenge directory and binds the listener.

        :raises:

            * :class:`~acmerotate.exceptions.ChallengeDirectoryError` If the directory could not be created.
            * :class:`~acmerotate.exceptions.ListenerBindFailed` If the listener could not bind, e.g. because
              the port is in use. The directory has been removed again in that case.
        """
        try:
            self.directory = Path(tempfile.mkdtemp(prefix="acme-challenge-", dir=self._cfg.root or None))
        except OSError as e:
            raise ChallengeDirectoryError(f"Could not create the challenge directory in {self._cfg.root}") from e

        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self._cfg.hostname, self._cfg.port)
        try:
            await site.start()
        except OSError as e:
            await self.stop()
            raise ListenerBindFailed(self._cfg.hostname, self._cfg.port) from e

        logger.info(
            "Challenge responder listening on %s:%d, serving %s", self._cfg.hostname, self._cfg.port, self.directory
        )

    async def stop(self):
        """Shuts the listener down, waiting for in-flight requests, then removes the challenge directory.

        Calling this method on a stopped responder does nothing.
        """
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Challenge responder on %s:%d stopped", self._cfg.hostname, self._cfg.port)

        if self.directory is not None:
            if self.directory.exists():
                shutil.rmtree(self.directory)
            logger.debug("Removed challenge directory %s", self.directory)
            self.directory = None

    def write_proof(self, token: str, proof: str | bytes) -> Path:
        """Writes the proof for the given token, so that it is served from now on.

        The file is written under a temporary name and renamed, so a request never sees a partial proof.

        :param token: The challenge's token.
        :param proof: The key authorization to serve.
        :raises: :class:`ValueError` If the token contains characters outside the base64url alphabet.
        :return: The path of the proof file.
        """
        if self.directory is None:
            raise RuntimeError("The challenge responder has not been started")

        path = self._proof_path(token)
        tmp = path.with_name(f".{token}.tmp")
        tmp.write_bytes(proof.encode() if isinstance(proof, str) else proof)
        os.replace(tmp, path)
        logger.debug("Wrote proof for token %s", token)
        return path

    def remove_proof(self, token: str):
        """Removes the proof for the given token, if there is one."""
        if self.directory is None:
            return
        self._proof_path(token).unlink(missing_ok=True)

    def _proof_path(self, token: str) -> Path:
        if not self.TOKEN_RE.match(token):
            raise ValueError(f"Invalid challenge token {token!r}")
        return self.directory / token

    async def handle_acme_challenge(self, request: web.Request) -> web.Response:
        token = request.match_info["token"]

        if self.directory is None or not self.TOKEN_RE.match(token):
            raise web.HTTPNotFound()

        try:
            data = (self.directory / token).read_bytes()
        except FileNotFoundError:
            logger.warning("Request for unknown token %s from %s", token, request.remote)
            raise web.HTTPNotFound()

        logger.info("Serving proof for token %s to %s", token, request.remote)
        return web.Response(body=data)

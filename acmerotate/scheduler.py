import asyncio
import contextlib
import datetime
import logging
import typing

from pydantic_settings import BaseSettings, SettingsConfigDict

from acmerotate.exceptions import ProvisioningError
from acmerotate.installer import CertificateInstaller, TlsConfig
from acmerotate.tls import TlsConfigCell
from acmerotate.workflow import ProvisioningWorkflow

logger = logging.getLogger(__name__)

RotateCallback = typing.Callable[[TlsConfig], typing.Awaitable[None]]


class RotationScheduler:
    """Provisions a certificate at startup and rotates it on a fixed interval.

    The interval must be well below the certificate's lifetime: a failed rotation keeps the previous
    certificate and is retried one interval later.
    """

    class Config(BaseSettings):
        model_config = SettingsConfigDict(extra="forbid", env_prefix="ACMEROTATE_SCHEDULER_")

        interval: datetime.timedelta = datetime.timedelta(days=28)
        """time between two rotations, Let's Encrypt certificates are valid for 90 days"""

    def __init__(
        self,
        cfg: Config,
        workflow: ProvisioningWorkflow,
        cell: TlsConfigCell,
        installer: CertificateInstaller | None = None,
    ):
        self._cfg = cfg
        self._workflow = workflow
        self._cell = cell
        self._installer = installer or CertificateInstaller()
        self._on_rotate: list[RotateCallback] = []
        self._task: asyncio.Task | None = None

        self.ready = asyncio.Event()
        """Set once the first certificate has been installed."""

    def register_rotate_callback(self, callback: RotateCallback):
        """Registers a coroutine function that is awaited with the new configuration after every rotation."""
        self._on_rotate.append(callback)

    async def start(self):
        """Provisions the initial certificate and starts the rotation timer.

        :raises: :class:`~acmerotate.exceptions.ProvisioningError` If the initial provisioning failed.
            There is no certificate to serve in that case, so the error is not contained.
        """
        self._cell.swap(await self._provision())
        self.ready.set()
        self._task = asyncio.create_task(self._run_timer())
        logger.info("Next rotation in %s", self._cfg.interval)

    async def stop(self):
        """Stops the rotation timer, cancelling a rotation that is in progress."""
        if self._task is None:
            return

        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def rotate(self) -> bool:
        """Provisions a new certificate and swaps it in.

        Failures are logged and the currently served certificate is kept.

        :return: *True* if the new certificate is being served.
        """
        try:
            config = await self._provision()
        except ProvisioningError:
            current = self._cell.current
            logger.exception(
                "Certificate rotation failed, keeping the certificate valid until %s",
                current.not_valid_after if current else None,
            )
            return False

        self._cell.swap(config)
        for callback in self._on_rotate:
            await callback(config)
        return True

    async def _provision(self) -> TlsConfig:
        certificate = await self._workflow.run()
        return self._installer.install(certificate)

    async def _run_timer(self):
        while True:
            await asyncio.sleep(self._cfg.interval.total_seconds())
            logger.info("Rotating certificate")
            try:
                await self.rotate()
            except Exception:
                logger.exception("Certificate rotation aborted unexpectedly, retrying in %s", self._cfg.interval)

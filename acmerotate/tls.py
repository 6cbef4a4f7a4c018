import logging
import ssl

from acmerotate.installer import TlsConfig, build_ssl_context

logger = logging.getLogger(__name__)


class TlsConfigCell:
    """Holds the TLS configuration that is currently served.

    There is a single writer, the :class:`~acmerotate.scheduler.RotationScheduler`, and any number of readers,
    the handshakes of new connections. :meth:`swap` replaces one reference, so a reader always sees a
    complete key/certificate pair, either the old or the new one.
    """

    def __init__(self, initial: TlsConfig | None = None):
        self._current: TlsConfig | None = initial

    @property
    def current(self) -> TlsConfig | None:
        return self._current

    def swap(self, new: TlsConfig) -> TlsConfig | None:
        """Makes the given configuration the served one.

        Established connections keep the configuration they were accepted with.

        :param new: The configuration to serve from now on.
        :return: The configuration that was served before.
        """
        old, self._current = self._current, new
        logger.info("Serving certificate valid until %s", new.not_valid_after)
        return old

    def server_context(self) -> ssl.SSLContext:
        """Builds the SSL context to bind the listener with.

        The context selects the cell's current configuration for every handshake, so the listener never has
        to be rebound after a :meth:`swap`.

        :raises: :class:`RuntimeError` If the cell holds no configuration yet.
        """
        if self._current is None:
            raise RuntimeError("No TLS configuration has been installed yet")

        context = build_ssl_context(self._current.key_pem, self._current.chain_pem)
        context.sni_callback = self._select_context
        return context

    def _select_context(self, ssl_object, server_name, base_context):
        ssl_object.context = self._current.context

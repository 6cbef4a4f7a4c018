import datetime
import logging
import ssl
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization

import acmerotate.util
from acmerotate.exceptions import KeyCertMismatch
from acmerotate.models import Certificate

logger = logging.getLogger(__name__)


def build_ssl_context(key_pem: bytes, chain_pem: bytes) -> ssl.SSLContext:
    """Builds a server-side SSL context from PEM-encoded key material.

    :mod:`ssl` only loads certificates from files, so the material passes through a private temporary
    directory that is removed before this function returns.

    :param key_pem: The private key (PEM).
    :param chain_pem: The leaf certificate followed by its intermediates (PEM).
    :raises: :class:`ssl.SSLError` If the key does not match the certificate or either cannot be loaded.
    :return: The SSL context.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    with tempfile.TemporaryDirectory(prefix="acmerotate-") as tmp:
        key_path = Path(tmp) / "privkey.pem"
        chain_path = Path(tmp) / "fullchain.pem"
        key_path.touch(acmerotate.util.KEY_FILE_MODE)
        key_path.write_bytes(key_pem)
        chain_path.write_bytes(chain_pem)
        context.load_cert_chain(chain_path, key_path)

    return context


@dataclass(frozen=True)
class TlsConfig:
    """The TLS configuration consumed by the HTTPS listener."""

    key_pem: bytes
    chain_pem: bytes
    """The leaf certificate followed by its intermediates."""
    not_valid_after: datetime.datetime
    context: ssl.SSLContext = field(compare=False, repr=False)

    def write(self, directory: Path) -> tuple[Path, Path]:
        """Writes *privkey.pem* and *fullchain.pem* to the given directory.

        :param directory: The directory to write to, created if missing.
        :return: The key path and the chain path.
        """
        directory.mkdir(parents=True, exist_ok=True)
        key_path = directory / "privkey.pem"
        chain_path = directory / "fullchain.pem"

        key_path.touch(acmerotate.util.KEY_FILE_MODE)
        key_path.chmod(acmerotate.util.KEY_FILE_MODE)
        key_path.write_bytes(self.key_pem)
        chain_path.write_bytes(self.chain_pem)
        return key_path, chain_path


class CertificateInstaller:
    """Converts an issued :class:`~acmerotate.models.Certificate` into a :class:`TlsConfig`."""

    def install(self, certificate: Certificate) -> TlsConfig:
        """Checks and converts the given certificate.

        :param certificate: The DER-encoded key, leaf and intermediates.
        :raises: :class:`~acmerotate.exceptions.KeyCertMismatch` If the private key does not belong to the leaf
            certificate, or the material cannot be loaded at all.
        :return: The TLS configuration.
        """
        try:
            private_key = serialization.load_der_private_key(certificate.private_key, password=None)
            leaf = x509.load_der_x509_certificate(certificate.leaf)
        except ValueError as e:
            raise KeyCertMismatch("The private key or the certificate could not be parsed") from e

        key_spki = acmerotate.util.public_key_bytes(private_key.public_key())
        if key_spki != acmerotate.util.public_key_bytes(leaf.public_key()):
            raise KeyCertMismatch(
                f"The private key does not belong to the certificate for {leaf.subject.rfc4514_string()}"
            )

        key_pem = acmerotate.util.der_to_pem(certificate.private_key, "PRIVATE KEY")
        chain_pem = b"".join(acmerotate.util.der_to_pem(der) for der in (certificate.leaf, *certificate.chain))

        try:
            context = build_ssl_context(key_pem, chain_pem)
        except ssl.SSLError as e:
            raise KeyCertMismatch("The key and certificate chain were rejected by the TLS library") from e

        logger.debug("Built TLS configuration for serial %x", leaf.serial_number)
        return TlsConfig(
            key_pem=key_pem,
            chain_pem=chain_pem,
            not_valid_after=leaf.not_valid_after_utc,
            context=context,
        )

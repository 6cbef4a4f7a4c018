from dataclasses import dataclass

from cryptography import x509


@dataclass(frozen=True)
class Certificate:
    """The issued certificate together with its private key, everything DER-encoded."""

    private_key: bytes
    """The certificate's private key (PKCS#8, DER)."""
    leaf: bytes
    """The leaf certificate (DER)."""
    chain: tuple[bytes, ...] = ()
    """The intermediate certificates (DER), issuer of the leaf first."""

    @property
    def leaf_certificate(self) -> x509.Certificate:
        return x509.load_der_x509_certificate(self.leaf)

    @property
    def not_valid_after(self):
        return self.leaf_certificate.not_valid_after_utc

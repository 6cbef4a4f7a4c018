from dataclasses import dataclass


@dataclass(frozen=True)
class Account:
    """An account registered with the CA.

    Owned by the :class:`~acmerotate.client.AcmeClient` that registered or loaded it.
    """

    contact: tuple[str, ...]
    """The account's contact URIs, e.g. *mailto:admin@example.org*."""
    key_pem: bytes
    """The PEM-encoded account private key."""
    url: str
    """The account URL assigned by the CA, sent as the JWS *kid*."""

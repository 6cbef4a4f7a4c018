import typing

import acme.messages
import josepy
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from acmerotate.util import is_ip_address


def encode_csr(csr):
    # Encode CSR as JOSE Base-64 DER.
    return josepy.encode_b64jose(csr.public_bytes(encoding=serialization.Encoding.DER))


def decode_csr(b64der):
    return x509.load_der_x509_csr(josepy.json_util.decode_b64jose(b64der))


class CertificateRequest(josepy.JSONObjectWithFields):
    """Message type for certificate requests, sent to the order's *finalize* URL."""

    csr: "cryptography.x509.CertificateSigningRequest" = josepy.Field("csr", decoder=decode_csr, encoder=encode_csr)
    """The certificate signing request."""


class NewOrder(josepy.JSONObjectWithFields):
    """Message type for new order requests."""

    identifiers: typing.List[typing.Dict[str, str]] = josepy.Field("identifiers", omitempty=True)
    """The requested identifiers."""

    @classmethod
    def from_data(cls, identifiers: typing.Union[typing.List[typing.Dict[str, str]], typing.List[str]]) -> "NewOrder":
        """Class factory that takes care of parsing the list of *identifiers*.

        :param identifiers: Either a :class:`list` of :class:`dict` where each dict consists of the keys *type* \
            and *value*, or a :class:`list` of :class:`str` that represent DNS names or IP addresses.
        :return: The new order object.
        """
        if type(identifiers[0]) is dict:
            return cls(identifiers=identifiers)
        elif type(identifiers[0]) is str:
            return cls(
                identifiers=[
                    dict(type="ip" if is_ip_address(identifier) else "dns", value=identifier)
                    for identifier in identifiers
                ]
            )
        else:
            raise ValueError(
                "Could not decode identifiers list. Must be either List(str) or List(dict) where "
                "the dict has two keys 'type' and 'value'"
            )


class Order(acme.messages.Order):
    """Patched :class:`acme.messages.Order` message type that adds a *URL* field.

    The *URL* field is populated by copying the *Location* header from responses in the
    :class:`~acmerotate.client.AcmeClient`, so that the order can be refreshed while polling.
    """

    url: str = josepy.Field("url", omitempty=True)
    """The order's URL at the CA."""

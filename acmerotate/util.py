import ipaddress
import re
import typing
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.x509 import NameOID

KEY_FILE_MODE = 0o600

PrivateKey = typing.Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


def _write_key(path: Path, private_key: PrivateKey) -> None:
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )

    path.touch(KEY_FILE_MODE) if not path.exists() else path.chmod(KEY_FILE_MODE)

    with open(path, "wb") as pem_out:
        pem_out.write(pem)


def is_ip_address(name: str) -> bool:
    try:
        ipaddress.ip_address(name)
    except ValueError:
        return False
    return True


def generate_csr(
    CN: str, private_key: PrivateKey, names: list[str], path: Path | None = None
) -> x509.CertificateSigningRequest:
    """Generates a certificate signing request.

    IP addresses in *names* are added as :class:`~cryptography.x509.IPAddress` entries,
    everything else as :class:`~cryptography.x509.DNSName`.

    :param CN: The requested common name.
    :param private_key: The private key to sign the CSR with.
    :param names: The requested names in the CSR.
    :param path: Optional path to write the PEM-serialized CSR to.
    :return: The generated CSR.
    """
    alt_names = [
        x509.IPAddress(ipaddress.ip_address(name)) if is_ip_address(name) else x509.DNSName(name)
        for name in names
    ]
    builder = x509.CertificateSigningRequestBuilder()
    # A common name is limited to 64 characters and IP identifiers only go into the SAN.
    if len(CN) <= 64 and not is_ip_address(CN):
        builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, CN)]))
    else:
        builder = builder.subject_name(x509.Name([]))

    csr = builder.add_extension(
        x509.SubjectAlternativeName(alt_names),
        critical=False,
    ).sign(private_key, hashes.SHA256())

    if path:
        with open(path, "wb") as pem_out:
            pem_out.write(csr.public_bytes(serialization.Encoding.PEM))

    return csr


def generate_rsa_key(path: Path | None = None, key_size=2048) -> rsa.RSAPrivateKey:
    """Generates an RSA private key and optionally saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The RSA key size.
    :return: The generated private key.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    if path:
        _write_key(path, private_key)

    return private_key


def generate_ec_key(path: Path | None = None, key_size=256) -> ec.EllipticCurvePrivateKey:
    """Generates an EC private key and optionally saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The EC key size, one of 256, 384 or 521.
    :return: The generated private key.
    """
    curve = getattr(ec, f"SECP{key_size}R1")
    private_key = ec.generate_private_key(curve())

    if path:
        _write_key(path, private_key)

    return private_key


def private_key_pem(private_key: PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def private_key_der(private_key: PrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_bytes(public_key) -> bytes:
    """Serializes a public key so that two keys can be compared byte by byte."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def der_to_pem(der: bytes, label: str = "CERTIFICATE") -> bytes:
    """Wraps DER bytes in a PEM block.

    :param der: The DER-encoded object.
    :param label: The PEM label, e.g. *CERTIFICATE* or *PRIVATE KEY*.
    :return: The PEM-encoded object.
    """
    if label == "CERTIFICATE":
        return x509.load_der_x509_certificate(der).public_bytes(serialization.Encoding.PEM)

    key = serialization.load_der_private_key(der, password=None)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def pem_split(
    pem: str,
) -> typing.List[typing.Union[x509.CertificateSigningRequest, x509.Certificate, PrivateKey]]:
    """Parses a PEM encoded string and returns all contained CSRs, certificates and keys.

    :param pem: The concatenated PEM encoded CSRs, certificates and private keys.
    :return: List of all objects found in the PEM string, in order of appearance.
    """
    _PEM_TO_CLASS = {
        b"CERTIFICATE": x509.load_pem_x509_certificate,
        b"CERTIFICATE REQUEST": x509.load_pem_x509_csr,
        b"EC PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
        b"RSA PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
        b"PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
    }

    _PEM_RE = re.compile(
        b"-----BEGIN (?P<cls>"
        + b"|".join(_PEM_TO_CLASS.keys())
        + b""")-----"""
        + b"""\r?
.+?\r?
-----END \\1-----\r?\n?""",
        re.DOTALL,
    )

    return [_PEM_TO_CLASS[match.groupdict()["cls"]](match.group(0)) for match in _PEM_RE.finditer(pem.encode())]

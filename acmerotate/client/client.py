import asyncio
import logging
import ssl
import typing

import acme.messages
import josepy
from acme import jws
from aiohttp import ClientError, ClientResponseError, ClientSession
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

import acmerotate.util
from acmerotate.client.exceptions import (
    AccountRegistrationFailed,
    AcmeClientException,
    AuthorizationTimeout,
    CertDownloadFailed,
    ChallengeRejected,
    DirectoryUnreachable,
    FinalizationFailed,
    FinalizationTimeout,
    NoHttpChallenge,
    OrderCreationFailed,
    PollingException,
)
from acmerotate.models import Account, AuthorizationResource, Certificate, ChallengeType
from acmerotate.models import messages
from acmerotate.version import __version__

logger = logging.getLogger(__name__)

LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

DIRECTORY_ALIASES = {
    "production": LETSENCRYPT_PRODUCTION,
    "staging": LETSENCRYPT_STAGING,
}

# 'expired' is not an acme constant, recognize it for authorizations
STATUS_EXPIRED = acme.messages.Status("expired")


def is_valid(obj):
    return obj.status == acme.messages.STATUS_VALID


def is_invalid(obj):
    return obj.status in [acme.messages.STATUS_INVALID, STATUS_EXPIRED]


def is_ready(obj):
    return obj.status in [acme.messages.STATUS_READY, acme.messages.STATUS_VALID]


class AcmeClient:
    """ACME compliant client that obtains a certificate for a single identifier via *http-01*.

    The issuance flow is exposed as a sequence of steps rather than a single call, so that the
    :class:`~acmerotate.workflow.ProvisioningWorkflow` can interleave them with serving the challenge proofs:
    :meth:`connect`, :meth:`register_account` or :meth:`load_account`, :meth:`new_order`,
    :meth:`authorizations`, :meth:`http_challenge`, :meth:`validate`, :meth:`confirm_validations`,
    :meth:`finalize` and :meth:`download_cert`.
    """

    INVALID_NONCE_RETRIES = 5
    """The number of times the client should retry when the server returns the error *badNonce*."""
    FINALIZE_DELAY = 3.0
    """The delay in seconds between finalization attempts while the server reports *orderNotReady*."""
    FINALIZE_NOT_READY_RETRIES = 5
    """The number of finalization attempts while the server reports *orderNotReady*."""

    class Config(BaseSettings):
        model_config = SettingsConfigDict(extra="forbid", env_prefix="ACMEROTATE_CLIENT_")

        directory: str = LETSENCRYPT_PRODUCTION
        """The ACME server's directory URL, or one of the Let's Encrypt aliases *production* and *staging*"""
        contact: list[str] = Field(default_factory=list)
        """contact email addresses supplied on registration"""
        server_cert: str | None = None
        """path of an additional CA certificate to trust, for testing against a private CA"""
        intermediate_url: str | None = None
        """if set, the intermediate certificate is fetched from this URL instead of taken from the download"""
        poll_interval: float = 5.0
        """seconds between two status polls"""
        challenge_max_tries: int = 50
        """polls of a challenge before giving up"""
        finalize_max_tries: int = 15
        """polls of an order after finalization before giving up"""

    def __init__(self, cfg: Config):
        """Creates an :class:`AcmeClient` instance.

        Must be called with a running event loop, the HTTP session is bound to it.

        :param cfg: The client configuration.
        """
        self._cfg = cfg
        self._ssl_context = ssl.create_default_context()

        if cfg.server_cert:
            # Add our self-signed server cert for testing purposes.
            self._ssl_context.load_verify_locations(cafile=cfg.server_cert)

        self._session = ClientSession(headers={"User-Agent": f"acmerotate Client {__version__}"})

        self._directory_url = DIRECTORY_ALIASES.get(cfg.directory, cfg.directory)
        self._directory: acme.messages.Directory | None = None
        self._nonces = set()

        self._private_key: josepy.jwk.JWK | None = None
        self._alg = None
        self._account: Account | None = None

    async def __aenter__(self) -> "AcmeClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def account(self) -> Account | None:
        """The account that is used to sign requests, *None* before registration."""
        return self._account

    async def close(self):
        """Closes the client's session.

        The client may not be used for requests anymore after it has been closed.
        """
        await self._session.close()

    async def connect(self) -> acme.messages.Directory:
        """Fetches the ACME directory, which resolves the server's endpoints.

        :raises: :class:`DirectoryUnreachable` If the directory could not be fetched or is malformed.
        :return: The directory.
        """
        try:
            async with self._session.get(self._directory_url, ssl=self._ssl_context) as resp:
                resp.raise_for_status()
                directory = acme.messages.Directory.from_json(await resp.json())
            for resource in ("newNonce", "newAccount", "newOrder"):
                directory[resource]  # raises KeyError for an incomplete directory
        except (ClientError, asyncio.TimeoutError, ValueError, KeyError, josepy.errors.DeserializationError) as e:
            raise DirectoryUnreachable(self._directory_url) from e

        logger.debug("Fetched directory from %s", self._directory_url)
        self._directory = directory
        return directory

    async def register_account(self, contact: typing.Iterable[str]) -> Account:
        """Generates a new account key and registers it with the CA.

        Also stores the account internally for subsequent requests.

        :param contact: The contact email addresses, with or without the *mailto:* prefix.
        :raises: :class:`AccountRegistrationFailed` If the server rejects the registration.
        :return: The account, including the PEM-encoded private key that can later be passed to
            :meth:`load_account`.
        """
        key_pem = acmerotate.util.private_key_pem(acmerotate.util.generate_ec_key(key_size=256))
        self._open_key(key_pem)

        reg = acme.messages.Registration(
            contact=self._contact_uris(contact),
            terms_of_service_agreed=True,
        )

        self._account = None  # Otherwise the kid is sent instead of the JWK.
        try:
            resp, _ = await self._signed_request(reg, self._directory["newAccount"])
            account_url = resp.headers["Location"]
        except (acme.messages.Error, ClientError, asyncio.TimeoutError, KeyError) as e:
            raise AccountRegistrationFailed(f"Could not register an account: {e!r}") from e

        self._account = Account(contact=self._contact_uris(contact), key_pem=key_pem, url=account_url)
        logger.info("Registered account %s", self._account.url)
        return self._account

    async def load_account(self, key_pem: bytes, contact: typing.Iterable[str]) -> Account:
        """Looks up an existing account using the given private key.

        Also stores the account internally for subsequent requests.

        :param key_pem: The PEM-encoded account key, RSA or EC.
        :param contact: The account's contact email addresses.
        :raises: :class:`AccountRegistrationFailed` If no account associated with the key exists
            or the key cannot be used.
        :return: The account.
        """
        try:
            self._open_key(key_pem)
        except ValueError as e:
            raise AccountRegistrationFailed("The account key could not be loaded") from e

        reg = acme.messages.Registration.from_data(terms_of_service_agreed=True, only_return_existing=True)

        self._account = None  # Otherwise the kid is sent instead of the JWK. Results in the request failing.
        try:
            resp, _ = await self._signed_request(reg, self._directory["newAccount"])
            account_url = resp.headers["Location"]
        except (acme.messages.Error, ClientError, asyncio.TimeoutError, KeyError) as e:
            raise AccountRegistrationFailed(f"Could not look up the account: {e!r}") from e

        self._account = Account(contact=self._contact_uris(contact), key_pem=key_pem, url=account_url)
        logger.info("Loaded account %s", self._account.url)
        return self._account

    async def new_order(self, domain: str) -> messages.Order:
        """Creates a new order for exactly one identifier.

        :param domain: The domain name or IP address the certificate is requested for.
        :raises: :class:`OrderCreationFailed` If the server is unwilling to create the order.
        :return: The new order.
        """
        order = messages.NewOrder.from_data(identifiers=[domain])

        try:
            resp, order_obj = await self._signed_request(order, self._directory["newOrder"])
            order_obj["url"] = resp.headers["Location"]
            created = messages.Order.from_json(order_obj)
        except (
            acme.messages.Error,
            ClientError,
            asyncio.TimeoutError,
            KeyError,
            josepy.errors.DeserializationError,
        ) as e:
            raise OrderCreationFailed(f"Could not create an order for {domain}: {e}") from e

        logger.info("Opened order %s for %s", created.url, domain)
        return created

    async def authorizations(self, order: messages.Order) -> list[AuthorizationResource]:
        """Fetches the authorizations of the given order.

        :param order: The order whose authorizations to fetch.
        :raises: :class:`AcmeClientException` If an authorization could not be fetched.
        :return: The authorizations, one per identifier.
        """
        return [
            AuthorizationResource(url=authorization_url, body=await self._authorization_get(authorization_url))
            for authorization_url in order.authorizations
        ]

    def http_challenge(self, authorization: AuthorizationResource) -> acme.messages.ChallengeBody:
        """Selects the *http-01* challenge of the given authorization.

        :param authorization: The authorization to pick the challenge from.
        :raises: :class:`NoHttpChallenge` If the server did not offer an *http-01* challenge.
        :return: The challenge.
        """
        for challenge in authorization.body.challenges:
            if challenge.chall.typ == ChallengeType.HTTP_01:
                return challenge

        raise NoHttpChallenge(authorization.body)

    def proof(self, challenge: acme.messages.ChallengeBody) -> str:
        """Computes the key authorization that has to be served for the given challenge.

        :param challenge: The *http-01* challenge.
        :return: The contents of the proof file.
        """
        return challenge.chall.key_authorization(self._private_key)

    async def validate(
        self, challenge: acme.messages.ChallengeBody, poll_interval: float | None = None
    ) -> acme.messages.ChallengeBody:
        """Tells the server to check the challenge's proof and polls until it has decided.

        The proof must already be served when this method is called.

        :param challenge: The challenge to validate.
        :param poll_interval: Seconds between two polls, defaults to the configured interval.
        :raises:

            * :class:`ChallengeRejected` If the challenge became *invalid*.
            * :class:`AuthorizationTimeout` If the challenge stayed *pending* or *processing* for too long.

        :return: The valid challenge.
        """
        try:
            await self._signed_request(None, challenge.uri, post_as_get=False)
        except (acme.messages.Error, ClientError, asyncio.TimeoutError) as e:
            raise ChallengeRejected(challenge, f"Could not initiate validation: {e}") from e

        try:
            return await self._poll_until(
                self._challenge_get,
                challenge.uri,
                predicate=is_valid,
                negative_predicate=is_invalid,
                delay=self._poll_interval(poll_interval),
                max_tries=self._cfg.challenge_max_tries,
            )
        except PollingException as e:
            if e.exhausted:
                raise AuthorizationTimeout(f"Challenge {challenge.uri} did not become valid in time") from e
            raise ChallengeRejected(e.obj) from e

    async def confirm_validations(self, order: messages.Order) -> messages.Order | None:
        """Checks whether every authorization of the given order is satisfied.

        Does not block: the order's current state is fetched once.

        :param order: The order to check.
        :raises: :class:`ChallengeRejected` If the order or one of its authorizations became invalid.
        :return: The refreshed order if it is ready for finalization, *None* otherwise.
        """
        refreshed = await self._order_get(order.url)

        if is_ready(refreshed):
            return refreshed

        if is_invalid(refreshed):
            raise ChallengeRejected(refreshed, f"Order {order.url} became invalid")

        for authorization in await self.authorizations(refreshed):
            if is_invalid(authorization.body):
                raise ChallengeRejected(authorization.body, f"Authorization {authorization.url} became invalid")

        logger.debug("Order %s is still %s", order.url, refreshed.status)
        return None

    async def finalize(
        self,
        ready_order: messages.Order,
        private_key: acmerotate.util.PrivateKey,
        poll_interval: float | None = None,
    ) -> messages.Order:
        """Finalizes the order with a CSR for the given key and polls until the certificate is issued.

        :param ready_order: The order, as returned by :meth:`confirm_validations`.
        :param private_key: The certificate's private key, the CSR is signed with it.
        :param poll_interval: Seconds between two polls, defaults to the configured interval.
        :raises:

            * :class:`FinalizationFailed` If the server refused the CSR or the order became *invalid*.
            * :class:`FinalizationTimeout` If the order did not become *valid* in time.

        :return: The valid order, holding the certificate URL.
        """
        domain = ready_order.identifiers[0].value
        csr = acmerotate.util.generate_csr(domain, private_key, [domain])
        cert_req = messages.CertificateRequest(csr=csr)

        tries = self.FINALIZE_NOT_READY_RETRIES
        while True:
            try:
                resp, _ = await self._signed_request(cert_req, ready_order.finalize)
                break
            except acme.messages.Error as e:
                # Make sure that the order is in state READY before moving on.
                if e.code == "orderNotReady" and tries > 0:
                    tries -= 1
                    await asyncio.sleep(self.FINALIZE_DELAY)
                else:
                    raise FinalizationFailed(f"Could not finalize order {ready_order.url}: {e}") from e
            except (ClientError, asyncio.TimeoutError) as e:
                raise FinalizationFailed(f"Could not finalize order {ready_order.url}: {e}") from e

        try:
            return await self._poll_until(
                self._order_get,
                resp.headers.get("Location", ready_order.url),
                predicate=is_valid,
                negative_predicate=is_invalid,
                delay=self._poll_interval(poll_interval),
                max_tries=self._cfg.finalize_max_tries,
            )
        except PollingException as e:
            if e.exhausted:
                raise FinalizationTimeout(f"Order {ready_order.url} was not issued in time") from e
            raise FinalizationFailed(f"Order {ready_order.url} became invalid: {e.obj.error}") from e

    async def download_cert(
        self, cert_order: messages.Order, private_key: acmerotate.util.PrivateKey
    ) -> Certificate:
        """Downloads the given order's certificate.

        :param cert_order: The finalized order.
        :param private_key: The private key the CSR was signed with.
        :raises: :class:`CertDownloadFailed` If the order has no certificate yet or the download failed.
        :return: The certificate, key and intermediate chain, DER-encoded.
        """
        if not cert_order.certificate:
            raise CertDownloadFailed(f"Order {cert_order.url} has not been finalized")

        try:
            _, pem = await self._signed_request(None, cert_order.certificate)
            certificates = [obj for obj in acmerotate.util.pem_split(pem) if isinstance(obj, x509.Certificate)]
            if not certificates:
                raise CertDownloadFailed(f"The download from {cert_order.certificate} contained no certificate")

            if self._cfg.intermediate_url:
                chain = [await self._intermediate_get(self._cfg.intermediate_url)]
            else:
                chain = [cert.public_bytes(serialization.Encoding.DER) for cert in certificates[1:]]
        except (acme.messages.Error, ClientError, asyncio.TimeoutError, ValueError) as e:
            raise CertDownloadFailed(f"Could not download the certificate of order {cert_order.url}: {e}") from e

        logger.info("Downloaded certificate %s", cert_order.certificate)
        return Certificate(
            private_key=acmerotate.util.private_key_der(private_key),
            leaf=certificates[0].public_bytes(serialization.Encoding.DER),
            chain=tuple(chain),
        )

    async def _intermediate_get(self, url: str) -> bytes:
        async with self._session.get(url, ssl=self._ssl_context) as resp:
            resp.raise_for_status()
            data = await resp.read()

        if data.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_certificate(data).public_bytes(serialization.Encoding.DER)

        # Parse to make sure a certificate was served.
        return x509.load_der_x509_certificate(data).public_bytes(serialization.Encoding.DER)

    async def _order_get(self, order_url: str) -> messages.Order:
        try:
            _, order = await self._signed_request(None, order_url)
            order["url"] = order_url
            return messages.Order.from_json(order)
        except (acme.messages.Error, ClientError, asyncio.TimeoutError, josepy.errors.DeserializationError) as e:
            raise AcmeClientException(f"Could not fetch order {order_url}: {e!r}") from e

    async def _authorization_get(self, authorization_url: str) -> acme.messages.Authorization:
        try:
            _, authorization = await self._signed_request(None, authorization_url)
            return acme.messages.Authorization.from_json(authorization)
        except (acme.messages.Error, ClientError, asyncio.TimeoutError, josepy.errors.DeserializationError) as e:
            raise AcmeClientException(f"Could not fetch authorization {authorization_url}: {e!r}") from e

    async def _challenge_get(self, challenge_url: str) -> acme.messages.ChallengeBody:
        try:
            _, challenge_obj = await self._signed_request(None, challenge_url)
            return acme.messages.ChallengeBody.from_json(challenge_obj)
        except (acme.messages.Error, ClientError, asyncio.TimeoutError, josepy.errors.DeserializationError) as e:
            raise AcmeClientException(f"Could not fetch challenge {challenge_url}: {e!r}") from e

    def _poll_interval(self, poll_interval: float | None) -> float:
        return self._cfg.poll_interval if poll_interval is None else poll_interval

    @staticmethod
    def _contact_uris(contact: typing.Iterable[str]) -> tuple[str, ...]:
        # Filter empty strings
        return tuple(
            address if address.startswith("mailto:") else f"mailto:{address}" for address in contact if address
        )

    def _open_key(self, data: bytes):
        keys = acmerotate.util.pem_split(data.decode())
        if len(keys) != 1:
            raise ValueError("Bad private key, expected exactly one PEM block")
        if isinstance(keys[0], rsa.RSAPrivateKey):
            self._private_key = josepy.jwk.JWKRSA(key=keys[0])
            self._alg = josepy.jwa.RS256
        elif isinstance(keys[0], ec.EllipticCurvePrivateKey):
            self._private_key = josepy.jwk.JWKEC(key=keys[0])
            self._alg = {
                521: josepy.jwa.ES512,
                256: josepy.jwa.ES256,
                384: josepy.jwa.ES384,
            }[keys[0].curve.key_size]
        else:
            raise ValueError("Bad private key, must be RSA or EC")

    async def _poll_until(
        self,
        coro,
        *args,
        predicate=None,
        negative_predicate=None,
        delay=3.0,
        max_tries=5,
        **kwargs,
    ):
        tries = max_tries
        while True:
            result = await coro(*args, **kwargs)
            if predicate(result):
                return result

            if negative_predicate and negative_predicate(result):
                raise PollingException(
                    result,
                    f"Polling unsuccessful: {coro.__name__}{args}, {negative_predicate.__name__} became True",
                )

            if tries <= 0:
                raise PollingException(result, f"Polling unsuccessful: {coro.__name__}{args}", exhausted=True)

            logger.debug("Polling %s%s, tries remaining: %d", coro.__name__, args, tries - 1)
            tries -= 1
            await asyncio.sleep(delay)

    async def _get_nonce(self):
        async def fetch_nonce():
            try:
                async with self._session.head(self._directory["newNonce"], ssl=self._ssl_context) as resp:
                    logger.debug("Storing new nonce %s", resp.headers["Replay-Nonce"])
                    return resp.headers["Replay-Nonce"]
            except (ClientError, asyncio.TimeoutError, KeyError) as e:
                logger.warning("Could not fetch a nonce: %s", e)

        try:
            return self._nonces.pop()
        except KeyError:
            pass

        try:
            return await self._poll_until(
                fetch_nonce, predicate=lambda x: x, delay=self._cfg.poll_interval, max_tries=self.INVALID_NONCE_RETRIES
            )
        except PollingException as e:
            raise AcmeClientException("Could not obtain a nonce") from e

    def _wrap_in_jws(self, obj: typing.Optional[josepy.JSONDeSerializable], nonce, url, post_as_get):
        if post_as_get:
            jobj = obj.json_dumps(indent=2).encode() if obj else b""
        else:
            jobj = b"{}"
        kwargs = {"nonce": josepy.b64.b64decode(nonce), "url": url}
        if self._account is not None:
            kwargs["kid"] = self._account.url
        return jws.JWS.sign(jobj, key=self._private_key, alg=self._alg, **kwargs).json_dumps(indent=2)

    async def _signed_request(self, obj: typing.Optional[josepy.JSONDeSerializable], url, post_as_get=True):
        tries = self.INVALID_NONCE_RETRIES
        while True:
            try:
                payload = self._wrap_in_jws(obj, await self._get_nonce(), url, post_as_get)
                return await self._make_request(payload, url)
            except acme.messages.Error as e:
                if e.code == "badNonce" and tries > 1:
                    tries -= 1
                    continue
                raise e

    async def _make_request(self, payload, url):
        async with self._session.post(
            url,
            data=payload,
            headers={"Content-Type": "application/jose+json"},
            ssl=self._ssl_context,
        ) as resp:
            if "Replay-Nonce" in resp.headers:
                self._nonces.add(resp.headers["Replay-Nonce"])

            if 200 <= resp.status < 300 and resp.content_type == "application/json":
                data = await resp.json()
            elif resp.content_type == "application/problem+json":
                raise acme.messages.Error.from_json(await resp.json())
            elif resp.status < 200 or resp.status >= 300:
                raise ClientResponseError(resp.request_info, resp.history, status=resp.status)
            else:
                data = await resp.text()

            logger.debug(data)
            return resp, data

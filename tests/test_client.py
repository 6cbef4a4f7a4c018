import logging

import acme.messages
import josepy
import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import serialization

import acmerotate.util
from acmerotate.client import (
    AccountRegistrationFailed,
    AcmeClient,
    AcmeClientException,
    AuthorizationTimeout,
    CertDownloadFailed,
    ChallengeRejected,
    DirectoryUnreachable,
    FinalizationFailed,
    FinalizationTimeout,
    NoHttpChallenge,
    WebrootSolver,
)
from acmerotate.client.client import LETSENCRYPT_STAGING
from acmerotate.models import AuthorizationResource
from acmerotate.responder import ChallengeResponder

from .conftest import DOMAIN

log = logging.getLogger("acmerotate.tests.test_client")


@pytest_asyncio.fixture
async def client(client_config):
    async with AcmeClient(client_config) as c:
        await c.connect()
        yield c


@pytest_asyncio.fixture
async def responder(responder_config):
    async with ChallengeResponder(responder_config) as r:
        yield r


async def solve(client: AcmeClient, responder: ChallengeResponder):
    order = await client.new_order(DOMAIN)
    (authorization,) = await client.authorizations(order)
    challenge = client.http_challenge(authorization)
    await WebrootSolver(responder).complete_challenge(authorization.identifier, challenge, client.proof(challenge))
    return order, challenge


async def ready_order(client: AcmeClient, responder: ChallengeResponder):
    await client.register_account([])
    order, challenge = await solve(client, responder)
    await client.validate(challenge)
    return await client.confirm_validations(order)


@pytest.mark.asyncio
async def test_directory_unreachable(client_config, unused_tcp_port):
    cfg = client_config.model_copy(update={"directory": f"http://127.0.0.1:{unused_tcp_port}/directory"})
    async with AcmeClient(cfg) as client:
        with pytest.raises(DirectoryUnreachable) as e:
            await client.connect()

    assert str(unused_tcp_port) in str(e.value)


@pytest.mark.asyncio
async def test_register_and_load_account(client, client_config, ca):
    account = await client.register_account(["admin@example.test", ""])
    assert account.url in ca.accounts
    assert account.contact == ("mailto:admin@example.test",)

    async with AcmeClient(client_config) as other:
        await other.connect()
        loaded = await other.load_account(account.key_pem, client_config.contact)

    assert loaded.url == account.url


@pytest.mark.asyncio
async def test_load_unknown_account(client):
    key_pem = acmerotate.util.private_key_pem(acmerotate.util.generate_ec_key())
    with pytest.raises(AccountRegistrationFailed):
        await client.load_account(key_pem, [])


@pytest.mark.asyncio
async def test_load_rsa_account(client, client_config):
    key_pem = acmerotate.util.private_key_pem(acmerotate.util.generate_rsa_key())

    # Register with the RSA key by loading the key and sending a regular registration.
    client._open_key(key_pem)
    reg = acme.messages.Registration(terms_of_service_agreed=True)
    resp, _ = await client._signed_request(reg, client._directory["newAccount"])

    async with AcmeClient(client_config) as other:
        await other.connect()
        account = await other.load_account(key_pem, [])

    assert account.url == resp.headers["Location"]


@pytest.mark.asyncio
async def test_bad_nonce_is_retried(client, ca):
    ca.bad_nonces = 2
    account = await client.register_account([])
    assert account.url in ca.accounts


@pytest.mark.asyncio
async def test_order_flow(client, responder, ca):
    await client.register_account([])
    order, challenge = await solve(client, responder)
    assert order.url.endswith("/order/1")
    assert await client.confirm_validations(order) is None

    ca.polls_until_decided = 2
    valid = await client.validate(challenge)
    assert valid.status == acme.messages.STATUS_VALID
    assert ca.challenge_polls[1] == 2
    assert ca.fetched_proofs == [(challenge.chall.encode("token"), client.proof(challenge))]

    ready_order = await client.confirm_validations(order)
    assert ready_order.status == acme.messages.STATUS_READY

    private_key = acmerotate.util.generate_ec_key(key_size=384)
    cert_order = await client.finalize(ready_order, private_key)
    assert cert_order.status == acme.messages.STATUS_VALID

    certificate = await client.download_cert(cert_order, private_key)
    leaf = certificate.leaf_certificate
    names = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert names.get_values_for_type(x509.DNSName) == [DOMAIN]
    assert len(certificate.chain) == 1
    assert x509.load_der_x509_certificate(certificate.chain[0]) == ca.root_cert


@pytest.mark.asyncio
async def test_intermediate_url(client_config, responder, ca):
    cfg = client_config.model_copy(update={"intermediate_url": ca.intermediate_url})
    async with AcmeClient(cfg) as client:
        await client.connect()
        await client.register_account([])
        order, challenge = await solve(client, responder)
        await client.validate(challenge)
        private_key = acmerotate.util.generate_ec_key()
        cert_order = await client.finalize(await client.confirm_validations(order), private_key)
        certificate = await client.download_cert(cert_order, private_key)

    assert certificate.chain == (ca.root_cert.public_bytes(serialization.Encoding.DER),)


@pytest.mark.asyncio
async def test_validate_stuck_processing(client, responder, ca):
    ca.challenge_mode = "processing"
    await client.register_account([])
    _, challenge = await solve(client, responder)

    with pytest.raises(AuthorizationTimeout):
        await client.validate(challenge)

    assert ca.challenge_polls[1] == client._cfg.challenge_max_tries + 1


@pytest.mark.asyncio
async def test_validate_invalid(client, responder, ca):
    ca.challenge_mode = "invalid"
    await client.register_account([])
    order, challenge = await solve(client, responder)

    with pytest.raises(ChallengeRejected) as e:
        await client.validate(challenge)
    assert "Invalid response" in str(e.value)

    with pytest.raises(ChallengeRejected):
        await client.confirm_validations(order)


@pytest.mark.asyncio
async def test_wrong_proof_is_rejected(client, responder, ca):
    await client.register_account([])
    order = await client.new_order(DOMAIN)
    (authorization,) = await client.authorizations(order)
    challenge = client.http_challenge(authorization)
    responder.write_proof(challenge.chall.encode("token"), "not the key authorization")

    with pytest.raises(ChallengeRejected):
        await client.validate(challenge)


@pytest.mark.asyncio
async def test_no_http_challenge(client):
    authorization = acme.messages.Authorization.from_json(
        {
            "identifier": {"type": "dns", "value": DOMAIN},
            "status": "pending",
            "challenges": [
                {
                    "type": "dns-01",
                    "url": "http://127.0.0.1/chall/1",
                    "status": "pending",
                    "token": "DGyRejmCefe7v4NfDGDKfA1ZvgCl7YAqSYbGx3pjtAk",
                }
            ],
        }
    )

    with pytest.raises(NoHttpChallenge) as e:
        client.http_challenge(AuthorizationResource(url="http://127.0.0.1/authz/1", body=authorization))

    assert "dns-01" in str(e.value)


@pytest.mark.asyncio
async def test_staging_alias(client_config):
    cfg = client_config.model_copy(update={"directory": "staging"})
    async with AcmeClient(cfg) as client:
        assert client._directory_url == LETSENCRYPT_STAGING


@pytest.mark.asyncio
async def test_account_without_location(client, ca):
    ca.omit_account_location = True

    with pytest.raises(AccountRegistrationFailed):
        await client.register_account([])
    assert client.account is None


@pytest.mark.asyncio
async def test_malformed_authorization(client, ca):
    await client.register_account([])
    order = await client.new_order(DOMAIN)
    ca.malformed_authorizations = True

    with pytest.raises(AcmeClientException) as e:
        await client.authorizations(order)

    assert "/authz/1" in str(e.value)
    assert isinstance(e.value.__cause__, josepy.errors.DeserializationError)


@pytest.mark.asyncio
async def test_finalize_polls_until_issued(client, responder, ca):
    ca.polls_until_issued = 1
    order = await ready_order(client, responder)

    cert_order = await client.finalize(order, acmerotate.util.generate_ec_key())

    assert cert_order.status == acme.messages.STATUS_VALID
    assert cert_order.certificate == ca._url("/cert/1")
    assert ca.order_polls[1] == 1


@pytest.mark.asyncio
async def test_finalize_stuck_processing(client, responder, ca):
    ca.finalize_mode = "processing"
    order = await ready_order(client, responder)

    with pytest.raises(FinalizationTimeout):
        await client.finalize(order, acmerotate.util.generate_ec_key())

    assert ca.order_polls[1] == client._cfg.finalize_max_tries + 1
    assert ca.certificates == {}


@pytest.mark.asyncio
async def test_finalize_invalid(client, responder, ca):
    ca.finalize_mode = "invalid"
    ca.polls_until_issued = 1
    order = await ready_order(client, responder)

    with pytest.raises(FinalizationFailed) as e:
        await client.finalize(order, acmerotate.util.generate_ec_key())

    assert "Refusing to issue" in str(e.value)


@pytest.mark.asyncio
async def test_finalize_not_ready_is_retried(client, responder, ca, monkeypatch):
    monkeypatch.setattr(AcmeClient, "FINALIZE_DELAY", 0)
    ca.not_ready_finalizes = 2
    order = await ready_order(client, responder)

    cert_order = await client.finalize(order, acmerotate.util.generate_ec_key())

    assert cert_order.status == acme.messages.STATUS_VALID
    assert ca.finalize_calls == 3


@pytest.mark.asyncio
async def test_finalize_not_ready_gives_up(client, responder, ca, monkeypatch):
    monkeypatch.setattr(AcmeClient, "FINALIZE_DELAY", 0)
    ca.not_ready_finalizes = AcmeClient.FINALIZE_NOT_READY_RETRIES + 1
    order = await ready_order(client, responder)

    with pytest.raises(FinalizationFailed) as e:
        await client.finalize(order, acmerotate.util.generate_ec_key())

    assert "orderNotReady" in str(e.value)
    assert ca.finalize_calls == AcmeClient.FINALIZE_NOT_READY_RETRIES + 1


@pytest.mark.asyncio
async def test_download_failure(client, responder, ca):
    private_key = acmerotate.util.generate_ec_key()
    cert_order = await client.finalize(await ready_order(client, responder), private_key)
    ca.fail_certificate_download = True

    with pytest.raises(CertDownloadFailed) as e:
        await client.download_cert(cert_order, private_key)

    assert isinstance(e.value.__cause__, acme.messages.Error)

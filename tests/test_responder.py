import socket
from pathlib import Path

import aiohttp
import pytest

from acmerotate.exceptions import ChallengeDirectoryError, ListenerBindFailed
from acmerotate.responder import ChallengeResponder


def challenge_url(cfg: ChallengeResponder.Config, token: str) -> str:
    return f"http://{cfg.hostname}:{cfg.port}/.well-known/acme-challenge/{token}"


@pytest.mark.asyncio
async def test_serves_written_proof(responder_config):
    async with ChallengeResponder(responder_config) as responder:
        responder.write_proof("abc123", "abc123.thumbprint")

        async with aiohttp.ClientSession() as session:
            async with session.get(challenge_url(responder_config, "abc123")) as resp:
                assert resp.status == 200
                assert await resp.read() == b"abc123.thumbprint"

            async with session.get(challenge_url(responder_config, "unknown")) as resp:
                assert resp.status == 404


@pytest.mark.asyncio
async def test_removed_proof_is_not_served(responder_config):
    async with ChallengeResponder(responder_config) as responder:
        responder.write_proof("abc123", "abc123.thumbprint")
        responder.remove_proof("abc123")
        # Removing twice is fine.
        responder.remove_proof("abc123")

        async with aiohttp.ClientSession() as session:
            async with session.get(challenge_url(responder_config, "abc123")) as resp:
                assert resp.status == 404


@pytest.mark.asyncio
async def test_rejects_bad_tokens(responder_config):
    async with ChallengeResponder(responder_config) as responder:
        with pytest.raises(ValueError):
            responder.write_proof("../escape", "x")

        async with aiohttp.ClientSession() as session:
            async with session.get(challenge_url(responder_config, "..%2Fescape")) as resp:
                assert resp.status == 404


@pytest.mark.asyncio
async def test_stop_removes_directory_and_frees_port(responder_config, tmp_path):
    responder = ChallengeResponder(responder_config)
    await responder.start()
    assert responder.running
    directory = responder.directory
    responder.write_proof("abc123", "abc123.thumbprint")
    assert directory.exists()

    await responder.stop()
    assert not responder.running
    assert responder.directory is None
    assert not directory.exists()
    # Idempotent
    await responder.stop()

    with socket.create_server((responder_config.hostname, responder_config.port)):
        pass


@pytest.mark.asyncio
async def test_bind_failure_cleans_up(responder_config):
    root = responder_config.root
    with socket.create_server((responder_config.hostname, responder_config.port)):
        responder = ChallengeResponder(responder_config)
        with pytest.raises(ListenerBindFailed) as e:
            await responder.start()

    assert e.value.port == responder_config.port
    assert not responder.running
    assert responder.directory is None
    assert list(Path(root).iterdir()) == []


@pytest.mark.asyncio
async def test_directory_error(responder_config, tmp_path):
    cfg = responder_config.model_copy(update={"root": str(tmp_path / "missing" / "parent")})
    responder = ChallengeResponder(cfg)

    with pytest.raises(ChallengeDirectoryError):
        await responder.start()

    assert not responder.running


@pytest.mark.asyncio
async def test_write_before_start(responder_config):
    with pytest.raises(RuntimeError):
        ChallengeResponder(responder_config).write_proof("abc123", "x")

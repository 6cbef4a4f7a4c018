import pytest
import pytest_asyncio

from acmerotate.client import AcmeClient
from acmerotate.responder import ChallengeResponder
from acmerotate.workflow import ProvisioningWorkflow
from .services import FakeCA

DOMAIN = "example.test"


@pytest.fixture
def responder_port(unused_tcp_port_factory):
    return unused_tcp_port_factory()


@pytest_asyncio.fixture
async def ca(unused_tcp_port_factory, responder_port):
    s = FakeCA(responder_port)
    await s.run(unused_tcp_port_factory())
    yield s
    await s.cleanup()


@pytest.fixture
def client_config(ca):
    return AcmeClient.Config(
        directory=ca.directory,
        contact=["admin@example.test"],
        poll_interval=0.01,
        challenge_max_tries=5,
        finalize_max_tries=5,
    )


@pytest.fixture
def responder_config(responder_port, tmp_path):
    root = tmp_path / "challenges"
    root.mkdir()
    return ChallengeResponder.Config(hostname="127.0.0.1", port=responder_port, root=str(root))


@pytest.fixture
def workflow_config():
    return ProvisioningWorkflow.Config(domain=DOMAIN, key_size=256, authorization_max_rounds=3)


@pytest.fixture
def workflow(workflow_config, client_config, responder_config):
    return ProvisioningWorkflow(workflow_config, client_config, responder_config)

import asyncio
import enum
import logging
import typing
from pathlib import Path

import acme.messages
from pydantic_settings import BaseSettings, SettingsConfigDict

import acmerotate.util
from acmerotate.client import AcmeClient, AuthorizationTimeout, ChallengeSolver, WebrootSolver
from acmerotate.models import Certificate
from acmerotate.models import messages
from acmerotate.models import Account
from acmerotate.responder import ChallengeResponder

logger = logging.getLogger(__name__)


class WorkflowState(str, enum.Enum):
    """The states of a provisioning run, in the order they are passed on success."""

    IDLE = "idle"
    CHALLENGE_SERVER_UP = "challenge_server_up"
    ACCOUNT_READY = "account_ready"
    ORDER_OPEN = "order_open"
    AUTHORIZATIONS_PENDING = "authorizations_pending"
    AUTHORIZATIONS_VALID = "authorizations_valid"
    FINALIZING = "finalizing"
    CERT_ISSUED = "cert_issued"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"
    """Absorbing state, reachable from every other state."""


class ProvisioningWorkflow:
    """Obtains one certificate by driving an :class:`~acmerotate.client.AcmeClient` through the
    issuance flow while a :class:`~acmerotate.responder.ChallengeResponder` serves the proofs.

    Each call to :meth:`run` is an independent run with its own responder, client and state history.
    The responder is stopped and its directory removed on every exit path.
    """

    class Config(BaseSettings):
        model_config = SettingsConfigDict(extra="forbid", env_prefix="ACMEROTATE_WORKFLOW_")

        domain: str
        """the domain name or IP address to obtain the certificate for"""
        key_size: typing.Literal[256, 384, 521] = 384
        """size of the EC certificate key generated for every run"""
        authorization_max_rounds: int = 10
        """rounds of validate/confirm before the authorizations are considered timed out"""
        account_key: str = ""
        """path of the account key to reuse across runs; a new account is registered every run if empty"""

    def __init__(
        self,
        cfg: Config,
        client_cfg: AcmeClient.Config,
        responder_cfg: ChallengeResponder.Config,
        solver_factory: typing.Callable[[ChallengeResponder], ChallengeSolver] = WebrootSolver,
    ):
        self._cfg = cfg
        self._client_cfg = client_cfg
        self._responder_cfg = responder_cfg
        self._solver_factory = solver_factory

        self.history: list[WorkflowState] = [WorkflowState.IDLE]
        """Every state the last run has been in, in order."""
        self.error: BaseException | None = None
        """The exception that made the last run fail."""

    @property
    def state(self) -> WorkflowState:
        return self.history[-1]

    def _transition(self, state: WorkflowState):
        logger.debug("%s: %s -> %s", self._cfg.domain, self.state.value, state.value)
        self.history.append(state)

    async def run(self) -> Certificate:
        """Performs a full provisioning run.

        :raises: :class:`~acmerotate.exceptions.ProvisioningError` If any step failed. The workflow is in state
            :attr:`WorkflowState.FAILED` afterwards and cleanup has been performed.
        :return: The issued certificate.
        """
        self.history = [WorkflowState.IDLE]
        self.error = None

        responder = ChallengeResponder(self._responder_cfg)
        try:
            await responder.start()
            self._transition(WorkflowState.CHALLENGE_SERVER_UP)

            async with AcmeClient(self._client_cfg) as client:
                certificate = await self._issue(client, responder)

            self._transition(WorkflowState.CERT_ISSUED)
        except Exception as e:
            self.error = e
            self._transition(WorkflowState.FAILED)
            logger.error("Provisioning %s failed: %s", self._cfg.domain, e)
            raise
        finally:
            if self.state is not WorkflowState.FAILED:
                self._transition(WorkflowState.CLEANUP)
            await responder.stop()

        self._transition(WorkflowState.DONE)
        logger.info("Provisioned certificate for %s, valid until %s", self._cfg.domain, certificate.not_valid_after)
        return certificate

    async def _issue(self, client: AcmeClient, responder: ChallengeResponder) -> Certificate:
        await client.connect()
        await self._account(client)
        self._transition(WorkflowState.ACCOUNT_READY)

        order = await client.new_order(self._cfg.domain)
        self._transition(WorkflowState.ORDER_OPEN)

        self._transition(WorkflowState.AUTHORIZATIONS_PENDING)
        ready_order = await self._authorize(client, self._solver_factory(responder), order)
        self._transition(WorkflowState.AUTHORIZATIONS_VALID)

        self._transition(WorkflowState.FINALIZING)
        private_key = acmerotate.util.generate_ec_key(key_size=self._cfg.key_size)
        cert_order = await client.finalize(ready_order, private_key)
        return await client.download_cert(cert_order, private_key)

    async def _account(self, client: AcmeClient) -> Account:
        contact = self._client_cfg.contact
        key_path = Path(self._cfg.account_key) if self._cfg.account_key else None

        if key_path and key_path.exists():
            return await client.load_account(key_path.read_bytes(), contact)

        account = await client.register_account(contact)

        if key_path:
            try:
                key_path.parent.mkdir(parents=True, exist_ok=True)
                key_path.touch(acmerotate.util.KEY_FILE_MODE)
                key_path.write_bytes(account.key_pem)
                logger.info("Stored the account key at %s", key_path)
            except OSError as e:
                logger.warning("Could not store the account key at %s, the next run registers again: %s", key_path, e)

        return account

    async def _authorize(
        self, client: AcmeClient, solver: ChallengeSolver, order: messages.Order
    ) -> messages.Order:
        provisioned: list[tuple[acme.messages.Identifier, acme.messages.ChallengeBody]] = []

        try:
            for round_ in range(1, self._cfg.authorization_max_rounds + 1):
                for authorization in await client.authorizations(order):
                    if authorization.status != acme.messages.STATUS_PENDING:
                        continue

                    challenge = client.http_challenge(authorization)
                    if challenge.status != acme.messages.STATUS_PENDING:
                        # Already submitted, the CA is still processing it.
                        continue

                    await solver.complete_challenge(authorization.identifier, challenge, client.proof(challenge))
                    provisioned.append((authorization.identifier, challenge))
                    await client.validate(challenge)

                if (ready_order := await client.confirm_validations(order)) is not None:
                    return ready_order

                logger.debug(
                    "Authorizations of %s not yet valid, round %d of %d",
                    order.url,
                    round_,
                    self._cfg.authorization_max_rounds,
                )
                await asyncio.sleep(self._client_cfg.poll_interval)

            raise AuthorizationTimeout(
                f"The authorizations of {order.url} were not valid after {self._cfg.authorization_max_rounds} rounds"
            )
        finally:
            # The authorizations are terminal or the run is aborted, the proofs are no longer needed.
            for identifier, challenge in provisioned:
                await solver.cleanup_challenge(identifier, challenge)

import abc
import logging
import typing

import acme.messages

from acmerotate.models import ChallengeType

if typing.TYPE_CHECKING:
    from acmerotate.responder import ChallengeResponder

logger = logging.getLogger(__name__)


class ChallengeSolver(abc.ABC):
    """An abstract base class for challenge solvers.

    All challenge solver implementations must implement the methods :meth:`complete_challenge` and
    :meth:`cleanup_challenge`.
    """

    SUPPORTED_CHALLENGES: typing.Iterable[ChallengeType]
    """The types of challenges that the challenge solver implementation supports."""

    @abc.abstractmethod
    async def complete_challenge(
        self,
        identifier: acme.messages.Identifier,
        challenge: acme.messages.ChallengeBody,
        proof: str,
    ):
        """Complete the given challenge.

        This method should provision the proof and then delay
        returning until the server is allowed to check for completion.

        :param identifier: The identifier that is associated with the challenge.
        :param challenge: The challenge to be completed.
        :param proof: The key authorization the server expects.
        """
        pass

    @abc.abstractmethod
    async def cleanup_challenge(
        self,
        identifier: acme.messages.Identifier,
        challenge: acme.messages.ChallengeBody,
    ):
        """Performs cleanup for the given challenge.

        It is called once the challenge is complete, i.e. its status has transitioned to
        *valid* or *invalid*.
        This method should not assume that the challenge was successfully completed,
        meaning it should silently return if there is nothing to clean up.

        :param identifier: The identifier that is associated with the challenge.
        :param challenge: The challenge to clean up after.
        """
        pass


class WebrootSolver(ChallengeSolver):
    """Solves *http-01* challenges by writing the proof into a :class:`~acmerotate.responder.ChallengeResponder`'s
    directory."""

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.HTTP_01])
    """The types of challenges that the solver supports."""

    def __init__(self, responder: "ChallengeResponder"):
        self._responder = responder

    async def complete_challenge(
        self,
        identifier: acme.messages.Identifier,
        challenge: acme.messages.ChallengeBody,
        proof: str,
    ) -> None:
        token = challenge.chall.encode("token")
        path = self._responder.write_proof(token, proof)
        logger.debug("Provisioned %s for identifier %s at %s", challenge.uri, identifier.value, path)

    async def cleanup_challenge(
        self,
        identifier: acme.messages.Identifier,
        challenge: acme.messages.ChallengeBody,
    ) -> None:
        self._responder.remove_proof(challenge.chall.encode("token"))

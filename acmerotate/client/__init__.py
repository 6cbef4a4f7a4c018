from .client import AcmeClient
from .challenge_solver import ChallengeSolver, WebrootSolver
from .exceptions import (
    AcmeClientException,
    AccountRegistrationFailed,
    AuthorizationTimeout,
    CertDownloadFailed,
    ChallengeRejected,
    DirectoryUnreachable,
    FinalizationFailed,
    FinalizationTimeout,
    NoHttpChallenge,
    OrderCreationFailed,
)

__all__ = [
    "AcmeClient",
    "ChallengeSolver",
    "WebrootSolver",
    "AcmeClientException",
    "AccountRegistrationFailed",
    "AuthorizationTimeout",
    "CertDownloadFailed",
    "ChallengeRejected",
    "DirectoryUnreachable",
    "FinalizationFailed",
    "FinalizationTimeout",
    "NoHttpChallenge",
    "OrderCreationFailed",
]

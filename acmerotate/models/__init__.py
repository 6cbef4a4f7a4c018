from .account import Account
from .authorization import AuthorizationResource
from .certificate import Certificate
from .challenge import ChallengeType

__all__ = [
    "Account",
    "AuthorizationResource",
    "Certificate",
    "ChallengeType",
]

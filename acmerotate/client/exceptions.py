import acme.messages

from acmerotate.exceptions import ProvisioningError


class AcmeClientException(ProvisioningError):
    """General ACME client exception."""

    pass


class DirectoryUnreachable(AcmeClientException):
    """Exception that is raised if the CA's directory could not be fetched or parsed."""

    def __init__(self, directory_url, *args):
        super().__init__(*args)
        self.directory_url: str = directory_url

    def __str__(self):
        return f"Could not fetch the ACME directory at {self.directory_url}"


class AccountRegistrationFailed(AcmeClientException):
    """Exception that is raised if the account could neither be registered nor looked up."""

    pass


class OrderCreationFailed(AcmeClientException):
    """Exception that is raised if the CA refused to open an order."""

    pass


class NoHttpChallenge(AcmeClientException):
    """Exception that is raised if an authorization does not offer an *http-01* challenge."""

    def __init__(self, authorization, *args):
        super().__init__(*args)
        self.authorization: acme.messages.Authorization = authorization

    def __str__(self):
        offered = ", ".join(
            str(challenge.to_partial_json().get("type")) for challenge in self.authorization.challenges
        )
        return f"The CA offered no http-01 challenge for {self.authorization.identifier.value}; offered: {offered}"


class ChallengeRejected(AcmeClientException):
    """Exception that is raised if the CA marked a challenge or authorization as invalid."""

    def __init__(self, challenge, *args):
        super().__init__(*args)
        self.challenge = challenge
        """The challenge (or authorization) that became invalid."""

    def __str__(self):
        error = getattr(self.challenge, "error", None)
        return f"The CA rejected the challenge: {error or self.challenge}"


class AuthorizationTimeout(AcmeClientException):
    """Exception that is raised if the authorizations did not become valid within the retry budget."""

    pass


class FinalizationTimeout(AcmeClientException):
    """Exception that is raised if the order did not become valid within the retry budget after finalization."""

    pass


class FinalizationFailed(AcmeClientException):
    """Exception that is raised if the CA refused the CSR or the order became invalid."""

    pass


class CertDownloadFailed(AcmeClientException):
    """Exception that is raised if the issued certificate could not be downloaded."""

    pass


class PollingException(AcmeClientException):
    """Exception that is used internally to communicate polling timeouts or errors."""

    def __init__(self, obj, *args, exhausted=False):
        super().__init__(*args)
        self.obj = obj
        self.exhausted: bool = exhausted
        """*True* if the retry budget ran out, *False* if the polled object became invalid."""

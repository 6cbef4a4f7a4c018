class ProvisioningError(Exception):
    """Base class for every error that aborts a provisioning run."""

    pass


class ListenerBindFailed(ProvisioningError):
    """Exception that is raised if the challenge responder could not bind its listening socket."""

    def __init__(self, hostname: str, port: int, *args):
        super().__init__(*args)
        self.hostname = hostname
        self.port = port

    def __str__(self):
        return f"Could not bind the challenge responder to {self.hostname}:{self.port}"


class ChallengeDirectoryError(ProvisioningError):
    """Exception that is raised if the challenge directory could not be created."""

    pass


class KeyCertMismatch(ProvisioningError):
    """Exception that is raised if a private key does not belong to the leaf certificate."""

    pass

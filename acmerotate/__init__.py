from .client import AcmeClient
from .installer import CertificateInstaller, TlsConfig
from .responder import ChallengeResponder
from .scheduler import RotationScheduler
from .server import HttpsListener
from .tls import TlsConfigCell
from .version import __version__
from .workflow import ProvisioningWorkflow, WorkflowState

__all__ = [
    "AcmeClient",
    "CertificateInstaller",
    "ChallengeResponder",
    "HttpsListener",
    "ProvisioningWorkflow",
    "RotationScheduler",
    "TlsConfig",
    "TlsConfigCell",
    "WorkflowState",
]
__version__ = __version__

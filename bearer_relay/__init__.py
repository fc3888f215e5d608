"""bearer-relay package."""

from .config import RelayConfig, SelectorConfig, load_config
from .coordinator import CaptureCoordinator, run_capture
from .extractor import BodyPolicy, CredentialExtractor, HeaderPolicy, bearer_token, build_policy
from .models import Credential, CredentialSource, DeliveryResult, Direction, NetworkEvent
from .results import CaptureOutcome, CaptureState, ErrorKind
from .webhook import WebhookClient

__all__ = [
    "BodyPolicy",
    "CaptureCoordinator",
    "CaptureOutcome",
    "CaptureState",
    "Credential",
    "CredentialExtractor",
    "CredentialSource",
    "DeliveryResult",
    "Direction",
    "ErrorKind",
    "HeaderPolicy",
    "NetworkEvent",
    "RelayConfig",
    "SelectorConfig",
    "WebhookClient",
    "bearer_token",
    "build_policy",
    "load_config",
    "run_capture",
]

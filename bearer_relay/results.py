from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import Credential, DeliveryResult


class CaptureState(str, Enum):
    IDLE = "idle"
    SESSION_STARTED = "session-started"
    LOGGING_IN = "logging-in"
    AWAITING_TARGET = "awaiting-target"
    AWAITING_CREDENTIAL = "awaiting-credential"
    DELIVERING = "delivering"
    SUCCEEDED = "done-success"
    FAILED = "done-failure"


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration-error"
    SESSION_SETUP = "session-setup-error"
    LOGIN_FLOW = "login-flow-error"
    EXTRACTION_TIMEOUT = "extraction-timeout"
    DELIVERY = "delivery-error"
    UNEXPECTED = "unexpected-error"


@dataclass
class CaptureOutcome:
    state: CaptureState
    credential: Credential | None = None
    delivery: DeliveryResult | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is CaptureState.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "credential_preview": self.credential.preview if self.credential else None,
            "source": self.credential.source.value if self.credential else None,
            "delivery_status": self.delivery.status_code if self.delivery else None,
        }

from __future__ import annotations


class RelayError(Exception):
    """Base exception type for library consumers."""


class ConfigurationError(RelayError):
    pass


class SessionSetupError(RelayError):
    pass


class LoginFlowError(RelayError):
    pass


class ExtractionTimeoutError(RelayError):
    def __init__(self, deadline_seconds: float) -> None:
        super().__init__(f"No credential observed within {deadline_seconds:g}s")
        self.deadline_seconds = deadline_seconds


class DeliveryError(RelayError):
    pass


class SinkRejectedError(DeliveryError):
    def __init__(self, status_code: int, reason: str, body: str) -> None:
        super().__init__(f"Webhook rejected token: {status_code} {reason} - {body}")
        self.status_code = status_code
        self.reason = reason
        self.body = body


class SinkUnreachableError(DeliveryError):
    pass


class CDPError(RelayError):
    pass

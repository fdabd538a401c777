from __future__ import annotations


class FlowError(Exception):
    pass


class ValidationError(FlowError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class TransitionError(FlowError):
    pass


class ExternalServiceError(FlowError):
    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.message = message


class SafetyGateError(FlowError):
    pass


class StaleStateError(FlowError):
    pass

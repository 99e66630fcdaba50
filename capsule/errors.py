"""Error taxonomy shared by the executor, sandbox and versioning layers."""

from __future__ import annotations


class CapsuleError(Exception):
    pass


class ValidationError(CapsuleError):
    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(CapsuleError):
    pass


class ConflictError(CapsuleError):
    pass


class TransientNetworkError(CapsuleError):
    pass


class ConfigurationError(CapsuleError):
    pass


class FatalAgentError(CapsuleError):
    pass


class HeartbeatTimeoutError(FatalAgentError):
    pass


class CommandError(CapsuleError):
    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


def status_for(exc: BaseException) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    return 500

"""
Error taxonomy for the execution core.

Every domain failure carries the pipeline stage it happened in, a stable
machine-readable code and a human-readable message, so front-ends can render
``{stage, code, message}`` without inspecting tracebacks.
"""


class ExecutionError(Exception):
    http_status = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, stage: str = "internal") -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.stage = stage

    def to_dict(self) -> dict[str, str]:
        return {"stage": self.stage, "code": self.code, "message": self.message}


class AuthError(ExecutionError):
    http_status = 401
    default_code = "INVALID_TOKEN"


class InvalidToken(AuthError):
    http_status = 404
    default_code = "INVALID_TOKEN"


class TokenExpired(AuthError):
    http_status = 403
    default_code = "TOKEN_EXPIRED"


class OrderViolation(ExecutionError):
    http_status = 403
    default_code = "ORDER_VIOLATION"


class NotFound(ExecutionError):
    http_status = 404
    default_code = "NOT_FOUND"


class InvalidRequest(ExecutionError):
    http_status = 400
    default_code = "INVALID_REQUEST"


class InvalidState(ExecutionError):
    http_status = 409
    default_code = "INVALID_TRANSITION"


class PersistenceFailed(ExecutionError):
    http_status = 500
    default_code = "SAVE_FAILED"


class GenerationFailed(ExecutionError):
    http_status = 502
    default_code = "GENERATION_FAILED"


class StageFailed(ExecutionError):
    """Unexpected exception raised inside a known pipeline stage."""

    @classmethod
    def wrap(cls, stage: str, exc: BaseException) -> "StageFailed":
        return cls(str(exc) or exc.__class__.__name__, code=f"{stage.upper()}_FAILED", stage=stage)


class ConversionFailed(ExecutionError):
    http_status = 502
    default_code = "CONVERSION_FAILED"

    def __init__(self, message: str, *, code: str | None = None, stage: str = "convert") -> None:
        super().__init__(message, code=code, stage=stage)


class ConversionTimeout(ConversionFailed):
    http_status = 504
    default_code = "CONVERSION_TIMEOUT"


def describe_failure(exc: BaseException) -> dict[str, str]:
    """Return the user-presentable shape of any exception."""
    if isinstance(exc, ExecutionError):
        return exc.to_dict()
    return {"stage": "internal", "code": "INTERNAL_ERROR", "message": str(exc) or exc.__class__.__name__}

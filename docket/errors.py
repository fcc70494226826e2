import enum

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class ErrorKind(enum.Enum):
    not_found = "not_found"
    conflict = "conflict"
    invalid_argument = "invalid_argument"
    invalid_transition = "invalid_transition"
    concurrency_conflict = "concurrency_conflict"
    fatal = "fatal"
    cancelled = "cancelled"


_STATUS_CODES = {
    ErrorKind.not_found: 404,
    ErrorKind.conflict: 409,
    ErrorKind.invalid_argument: 400,
    ErrorKind.invalid_transition: 409,
    ErrorKind.concurrency_conflict: 409,
    ErrorKind.fatal: 500,
    ErrorKind.cancelled: 499,
}


class LedgerError(Exception):
    """Base class for failures raised by the ledger services.

    Services raise these; the repository facade turns them into
    ``Result`` failures so nothing escapes the facade boundary.
    """

    kind: ErrorKind = ErrorKind.fatal

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.kind]


class NotFoundError(LedgerError):
    kind = ErrorKind.not_found


class ConflictError(LedgerError):
    kind = ErrorKind.conflict


class InvalidArgumentError(LedgerError):
    kind = ErrorKind.invalid_argument


class InvalidTransitionError(LedgerError):
    kind = ErrorKind.invalid_transition


class ConcurrencyConflictError(LedgerError):
    kind = ErrorKind.concurrency_conflict


class FatalLedgerError(LedgerError):
    kind = ErrorKind.fatal


class CancelledError(LedgerError):
    kind = ErrorKind.cancelled


_ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (
        NotFoundError,
        ConflictError,
        InvalidArgumentError,
        InvalidTransitionError,
        ConcurrencyConflictError,
        FatalLedgerError,
        CancelledError,
    )
}


def error_for_kind(kind: ErrorKind, message: str, details=None) -> LedgerError:
    return _ERRORS_BY_KIND[kind](message, details)


def _error_payload(code: str, message: str, details):
    return {"code": code, "message": message, "details": details}


def register_error_handlers(app) -> None:
    """Install the error payload handlers on an app built by ``create_app``.

    No routers ship with this package; the ``HTTPException``, request
    validation and catch-all handlers serve the routes an embedding HTTP
    layer mounts, so every failure uses the same ``{code, message,
    details}`` shape as unwrapped ledger results.
    """
    @app.exception_handler(LedgerError)
    async def ledger_exception_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.kind.value, exc.message, exc.details),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        errors = [
            {k: str(v) if k == "ctx" else v for k, v in err.items()}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content=_error_payload("validation_error", "Validation error", errors),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_error", "Internal server error", None),
        )

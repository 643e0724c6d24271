from __future__ import annotations

from typing import Any


class NoorahError(Exception):
    """Base error for domain operations.

    Rendered into RFC7807 problem-details responses by the handler in
    `main.py`; `status_code` and `title` pick the HTTP semantics.
    """

    status_code = 400
    title = "Bad Request"

    def __init__(self, message: str, *, code: str | None = None, extensions: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.extensions = extensions or {}

    def __str__(self) -> str:
        return self.message


class ValidationFailed(NoorahError):
    pass


class NotFound(NoorahError):
    status_code = 404
    title = "Not Found"


class Forbidden(NoorahError):
    status_code = 403
    title = "Forbidden"


class Conflict(NoorahError):
    status_code = 409
    title = "Conflict"


class SessionNotActive(Conflict):
    pass


class InvalidSecret(ValidationFailed):
    pass


class InvalidCode(NoorahError):
    status_code = 401
    title = "Invalid Code"


class MfaNotFound(NotFound):
    pass


class MfaConflict(Conflict):
    pass


class MfaNotEnabled(Conflict):
    pass


class MfaLocked(NoorahError):
    status_code = 429
    title = "Too Many Attempts"

    def __init__(self, message: str, *, retry_after_seconds: int):
        super().__init__(message, extensions={"retryAfterSeconds": int(retry_after_seconds)})
        self.retry_after_seconds = int(retry_after_seconds)

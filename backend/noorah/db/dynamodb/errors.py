from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar


@dataclass(slots=True)
class DdbError(Exception):
    """Storage failure from the single table.

    Carries the same HTTP fields as `NoorahError` (`status_code`, `title`,
    `code`), so `main.py` renders both through one problem-details path.
    """

    status_code: ClassVar[int] = 500
    title: ClassVar[str] = "Storage Error"

    message: str
    operation: str | None = None
    table_name: str | None = None
    key: dict[str, Any] | None = None
    aws_request_id: str | None = None
    retryable: bool = False
    cause: Exception | None = None

    def __str__(self) -> str:
        return self.message

    @property
    def code(self) -> str:
        return self.__class__.__name__

    def extensions(self) -> dict[str, Any]:
        out = {
            "code": self.code,
            "operation": self.operation,
            "awsRequestId": self.aws_request_id,
            "retryable": bool(self.retryable),
        }
        return {k: v for k, v in out.items() if v is not None}


@dataclass(slots=True)
class DdbConflict(DdbError):
    # An optimistic `version` check lost; the caller may reload and retry.
    status_code: ClassVar[int] = 409
    title: ClassVar[str] = "Conflict"


@dataclass(slots=True)
class DdbValidation(DdbError):
    status_code: ClassVar[int] = 400
    title: ClassVar[str] = "Bad Request"


@dataclass(slots=True)
class DdbThrottled(DdbError):
    status_code: ClassVar[int] = 503
    title: ClassVar[str] = "Service Unavailable"


@dataclass(slots=True)
class DdbUnavailable(DdbError):
    status_code: ClassVar[int] = 503
    title: ClassVar[str] = "Service Unavailable"


@dataclass(slots=True)
class DdbInternal(DdbError):
    pass

"""
RFC 7807 responses for every error the API returns.

Domain errors (`NoorahError`) and storage errors (`DdbError`) both expose
`status_code`, `title` and a `code`; `problem_for_error` turns either into a
response. Extension members live under `extensions` so they never shadow
the standard fields, and `requestId` always ties the body to the logs.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Protocol

from fastapi import Request
from fastapi.responses import ORJSONResponse

from .settings import get_settings

PROBLEM_JSON = "application/problem+json"


class ProblemError(Protocol):
    status_code: int
    title: str
    message: str


def _title_for(status_code: int) -> str:
    if status_code >= 500:
        return "Internal Server Error"
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def _request_id(request: Request) -> str | None:
    rid = getattr(request.state, "request_id", None) or request.headers.get("x-request-id")
    return str(rid) if rid else None


def problem_payload(
    *,
    request: Request,
    status_code: int,
    title: str | None = None,
    detail: str | None = None,
    errors: list[dict[str, Any]] | None = None,
    extensions: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "type": "about:blank",
        "title": title or _title_for(status_code),
        "status": status_code,
        "instance": request.url.path,
    }
    if detail:
        body["detail"] = str(detail)
    rid = _request_id(request)
    if rid:
        body["requestId"] = rid
    if errors:
        body["errors"] = errors
    if extensions:
        body["extensions"] = extensions
    return body


def problem_response(
    *,
    request: Request,
    status_code: int,
    title: str | None = None,
    detail: str | None = None,
    errors: list[dict[str, Any]] | None = None,
    extensions: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    retry_after_seconds: int | None = None,
) -> ORJSONResponse:
    status_code = int(status_code)
    # Server error detail stays in the logs in production.
    if status_code >= 500 and get_settings().is_production:
        detail = None

    if retry_after_seconds is not None:
        extensions = {**(extensions or {}), "retryAfterSeconds": int(retry_after_seconds)}
        headers = {**(headers or {}), "Retry-After": str(int(retry_after_seconds))}

    return ORJSONResponse(
        status_code=status_code,
        content=problem_payload(
            request=request,
            status_code=status_code,
            title=title,
            detail=detail,
            errors=errors,
            extensions=extensions,
        ),
        media_type=PROBLEM_JSON,
        headers=headers,
    )


def problem_for_error(
    request: Request,
    exc: ProblemError,
    *,
    extensions: dict[str, Any] | None = None,
    retry_after_seconds: int | None = None,
) -> ORJSONResponse:
    return problem_response(
        request=request,
        status_code=exc.status_code,
        title=exc.title,
        detail=exc.message,
        extensions=extensions,
        retry_after_seconds=retry_after_seconds,
    )

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from .db.dynamodb.errors import DdbError
from .errors import MfaLocked, NoorahError
from .middleware.access_log import AccessLogMiddleware
from .middleware.auth import AuthMiddleware
from .middleware.cors import build_allowed_origins
from .middleware.rate_limit import MfaRateLimitMiddleware
from .middleware.request_context import RequestContextMiddleware
from .observability.logging import configure_logging, get_logger
from .observability.otel import configure_otel, instrument_app
from .problem_details import problem_for_error, problem_response
from .routers.guardian import router as guardian_router
from .routers.health import router as health_router
from .routers.mfa import router as mfa_router
from .settings import settings


def create_app() -> FastAPI:
    # Logging must be configured before the app starts handling requests.
    configure_logging(level="INFO")
    log = get_logger("startup")

    # No-op unless OTEL_ENABLED=true
    configure_otel(settings)

    app = FastAPI(
        title="Noorah Safety API",
        version="1.0.0",
        default_response_class=ORJSONResponse,
        redirect_slashes=False,
    )

    log.info("app_starting", settings=settings.to_log_safe_dict())

    # Middlewares (order matters; last added is outermost)
    app.add_middleware(AuthMiddleware)
    app.add_middleware(MfaRateLimitMiddleware)
    app.add_middleware(AccessLogMiddleware, exclude_paths={"/"})
    app.add_middleware(
        CORSMiddleware,
        allow_origins=build_allowed_origins(
            frontend_urls=settings.frontend_urls,
            include_dev=not settings.is_production,
        ),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-Id"],
        expose_headers=["X-Request-Id", "Retry-After"],
        max_age=3000,
    )
    # Outermost: request id wraps everything, including CORS and auth failures.
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(NoorahError, _domain_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(DdbError, _ddb_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(mfa_router, prefix="/api/mfa")
    app.include_router(guardian_router, prefix="/api/guardian")

    # Instrument after routers/middleware are attached.
    instrument_app(app, settings)

    return app


def _domain_error_handler(request: Request, exc: NoorahError) -> Response:
    return problem_for_error(
        request,
        exc,
        extensions={"code": exc.code, **exc.extensions},
        retry_after_seconds=exc.retry_after_seconds if isinstance(exc, MfaLocked) else None,
    )


def _ddb_error_handler(request: Request, exc: DdbError) -> Response:
    if exc.status_code >= 500:
        get_logger("storage").error(
            "storage_error",
            code=exc.code,
            operation=exc.operation,
            table=exc.table_name,
            aws_request_id=exc.aws_request_id,
            retryable=bool(exc.retryable),
            error=exc.message,
        )
    return problem_for_error(request, exc, extensions=exc.extensions())


def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    status_code = int(exc.status_code or 500)
    detail = exc.detail

    title: str | None = None
    extensions: dict | None = None
    safe_detail: str | None = None

    if isinstance(detail, dict):
        extensions = detail
        msg = detail.get("message")
        if isinstance(msg, str) and msg.strip():
            safe_detail = msg.strip()
    elif detail is not None:
        safe_detail = str(detail)

    if status_code == 404:
        title = "Not Found"
        safe_detail = safe_detail if safe_detail and safe_detail != "Not Found" else "Route not found"

    return problem_response(
        request=request,
        status_code=status_code,
        title=title,
        detail=safe_detail,
        extensions=extensions,
        headers=getattr(exc, "headers", None),
    )


def _validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
    errors: list[dict[str, object]] = []
    for e in exc.errors():
        loc = e.get("loc") or ()
        errors.append(
            {
                "location": [str(x) for x in loc],
                "path": ".".join(str(x) for x in loc if x != "body"),
                "message": e.get("msg", "Invalid value"),
                "type": e.get("type"),
            }
        )
    return problem_response(
        request=request,
        status_code=422,
        title="Validation Failed",
        detail="Request validation failed",
        errors=errors,
    )


def _unhandled_exception_handler(request: Request, exc: Exception) -> Response:
    user = getattr(request.state, "user", None)
    get_logger("unhandled").exception(
        "unhandled_exception",
        http_method=request.method.upper(),
        path=request.url.path,
        user_sub=getattr(user, "sub", None),
        exc_info=exc,
    )
    return problem_response(
        request=request,
        status_code=500,
        title="Internal Server Error",
        detail=str(exc) or None,
    )


app = create_app()

"""FastAPI application exposing the guest self-service endpoints."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any, Callable
import tomllib

from fastapi import APIRouter, Body, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .config import Settings, settings as default_settings
from .database import SessionLocal
from .errors import AppError, InternalError, RateLimitError, ValidationError
from .lifecycle import RegistrationService
from .models import Registration
from .notifier import Notifier, get_email_backend
from .ratelimit import Limiters, build_limiters
from .repositories import SqlRegistrationStore, SqlTokenStore
from .scheduler import start_scheduler, stop_scheduler
from .storage import check_database, init_db
from .utils import (
    Clock,
    hash_identifier,
    install_access_log_redaction,
    redact_manage_paths,
    utcnow,
)
from .validation import ResendLinkInput

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")

RESEND_SUCCESS_MESSAGE = "If this email is registered, a manage link has been sent."


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("guestpass")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


def _no_cache(response: Response) -> Response:
    """Keep manage links and registration data out of shared caches and referrers."""
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _client_identifier(request: Request) -> str:
    # runserver enables proxy headers, so client.host is the forwarded address.
    host = request.client.host if request.client else "unknown"
    return hash_identifier(host or "unknown")


def _rate_limited(group: str) -> Callable[[Request], None]:
    def dependency(request: Request) -> None:
        limiter = getattr(request.app.state.limiters, group)
        identifier = _client_identifier(request)
        result = limiter.check(identifier)
        if result.allowed:
            return
        logger.warning(
            "Rate limit exceeded: group=%s client=%s", group, identifier[:12]
        )
        raise RateLimitError(result.retry_after_seconds(request.app.state.clock()))

    dependency.__name__ = f"rate_limit_{group}"
    return dependency


def get_service(request: Request, db: Session = Depends(get_db)) -> RegistrationService:
    state = request.app.state
    app_settings: Settings = state.settings
    return RegistrationService(
        SqlRegistrationStore(db, clock=state.clock),
        SqlTokenStore(db, clock=state.clock),
        state.notifier,
        db,
        base_url=app_settings.base_url,
        token_ttl=app_settings.token_ttl,
        resend_min_duration=app_settings.resend_min_duration,
        event_name=app_settings.event_name,
        event_date=app_settings.event_date,
        clock=state.clock,
        sleep=state.sleep,
    )


def _serialize_registration(registration: Registration) -> dict[str, Any]:
    return {
        "id": registration.id,
        "name": registration.name,
        "email": registration.email,
        "stay": registration.stay,
        "adults_count": registration.adults_count,
        "children_count": registration.children_count,
        "notes": registration.notes,
        "status": registration.status,
        "created_at": registration.created_at.isoformat(),
        "updated_at": registration.updated_at.isoformat(),
    }


router = APIRouter(prefix="/api")


@router.get("/health")
def health(request: Request):
    try:
        check_database()
    except Exception as exc:
        logger.error("Health check failed: database unreachable (%s)", type(exc).__name__)
        return JSONResponse(
            {"status": "error", "timestamp": utcnow().isoformat()}, status_code=503
        )
    return {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "version": request.app.version,
    }


@router.post(
    "/register",
    status_code=201,
    dependencies=[Depends(_rate_limited("registration"))],
)
def register(
    payload: dict[str, Any] = Body(...),
    service: RegistrationService = Depends(get_service),
):
    result = service.register_guest(payload)
    return {
        "data": {"registration_id": result.registration_id},
        "message": "Registration successful. Check your email.",
    }


@router.get("/manage/{token}", dependencies=[Depends(_rate_limited("manage"))])
def view_registration(
    token: str,
    service: RegistrationService = Depends(get_service),
):
    registration = service.get_registration_by_token(token)
    return {"data": _serialize_registration(registration)}


@router.put("/manage/{token}", dependencies=[Depends(_rate_limited("manage"))])
def update_registration(
    token: str,
    payload: dict[str, Any] = Body(...),
    service: RegistrationService = Depends(get_service),
):
    result = service.update_registration_by_token(token, payload)
    return {
        "data": {"new_manage_url": result.new_manage_url},
        "message": "Registration updated",
    }


@router.delete("/manage/{token}", dependencies=[Depends(_rate_limited("manage"))])
def cancel_registration(
    token: str,
    service: RegistrationService = Depends(get_service),
):
    service.cancel_registration_by_token(token)
    return {"data": None, "message": "Registration cancelled"}


@router.post("/resend-link", dependencies=[Depends(_rate_limited("resend"))])
def resend_link(
    payload: ResendLinkInput,
    service: RegistrationService = Depends(get_service),
):
    service.resend_manage_link(payload.email)
    return {"data": {"sent": True}, "message": RESEND_SUCCESS_MESSAGE}


def _error_response(exc: AppError) -> JSONResponse:
    response = JSONResponse(exc.to_dict(), status_code=exc.status_code)
    if isinstance(exc, RateLimitError):
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    return response


async def app_error_handler(request: Request, exc: AppError):
    return _error_response(exc)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields: dict[str, str] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        fields.setdefault(".".join(loc) or "body", error.get("msg", "Invalid value"))
    return _error_response(ValidationError("Invalid request", fields))


async def generic_exception_handler(request: Request, exc: Exception):
    """Log unexpected errors in full and answer with a generic body."""
    logger.exception(
        "Unhandled error while processing %s %s",
        request.method,
        redact_manage_paths(request.url.path),
    )
    return _error_response(InternalError())


def create_app(
    *,
    settings: Settings | None = None,
    limiters: Limiters | None = None,
    notifier: Notifier | None = None,
    clock: Clock = utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> FastAPI:
    app_settings = settings or default_settings
    app_limiters = limiters or build_limiters(app_settings, clock=clock)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        install_access_log_redaction()
        init_db()
        if app_settings.enable_scheduler:
            start_scheduler(app_limiters)
        try:
            yield
        finally:
            stop_scheduler()

    app = FastAPI(title="guestpass", version=APP_VERSION, lifespan=lifespan)
    app.state.settings = app_settings
    app.state.limiters = app_limiters
    app.state.notifier = notifier or Notifier(get_email_backend(app_settings))
    app.state.clock = clock
    app.state.sleep = sleep

    @app.middleware("http")
    async def private_responses(request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith("/api/"):
            _no_cache(response)
        return response

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    app.include_router(router)
    return app


app = create_app()

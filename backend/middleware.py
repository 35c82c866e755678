from fastapi import Request, HTTPException, status
from fastapi.responses import JSONResponse
from functools import wraps
from typing import Optional
import logging

from errors import EngineError, GatewayFailure, Unauthenticated, ValidationFailure
from models import Feature
from services.session_registry import SessionRegistry, TenantSession, session_registry
from services.subscription_store import RefreshMode

logger = logging.getLogger(__name__)


def get_bearer_token(request: Request) -> Optional[str]:
    """Extract the bearer token from the Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_registry(request: Request) -> SessionRegistry:
    return getattr(request.app.state, "session_registry", session_registry)


async def require_session(request: Request) -> TenantSession:
    """Require a bearer token and return (or open) its tenant session."""
    token = get_bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    registry = get_registry(request)
    session = registry.get_or_create(token)
    await registry.reap()
    request.state.session = session
    return session


async def require_subscription(request: Request) -> TenantSession:
    """Require a session whose subscription slot has been loaded at least once."""
    session = await require_session(request)
    if session.store.subscription is None:
        await session.store.refresh(RefreshMode.INITIAL)
    return session


def engine_error_to_http(error: EngineError) -> HTTPException:
    detail = {"error_code": type(error).__name__, "message": error.message}
    if isinstance(error, ValidationFailure):
        detail["missing_fields"] = error.missing_fields
    if isinstance(error, GatewayFailure):
        detail["retryable"] = error.retryable
    return HTTPException(status_code=error.status_code, detail=detail)


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Map engine errors to HTTP responses; only auth and hard gateway failures are loud."""
    if isinstance(exc, Unauthenticated):
        logger.error(f"Unauthenticated request to {request.url.path}")
        session = getattr(request.state, "session", None)
        if session is not None:
            # The backend rejected this token; its session is dead
            await get_registry(request).drop(session.session_id)
    elif isinstance(exc, GatewayFailure) and not exc.retryable:
        logger.error(f"Gateway failure on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    http_error = engine_error_to_http(exc)
    return JSONResponse(status_code=http_error.status_code, content={"detail": http_error.detail})


def require_feature(feature: Feature):
    """
    Decorator to enforce plan-based feature access on a route.

    The subscription is read from the tenant session (loaded on demand).
    A denial is a 403 with upgrade info, never an error log.

    Usage:
        @router.post("/endpoint")
        @require_feature(Feature.API_ACCESS)
        async def my_endpoint(request: Request):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(request: Request, *args, **kwargs):
            session = await require_subscription(request)

            if not session.entitlements.has_feature(feature):
                required = session.catalog.minimum_plan_for_feature(feature)
                feature_info = session.catalog.get_feature_metadata(feature) or {}
                logger.info(
                    "Feature gated: session=%s feature=%s endpoint=%s",
                    session.session_id, feature.value, request.url.path
                )
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail={
                        "error_code": "FEATURE_GATED",
                        "feature": feature.value,
                        "feature_name": feature_info.get("name", feature.value),
                        "upgrade_required": True,
                        "required_plan": required.value if required else None,
                    }
                )

            return await func(request, *args, **kwargs)

        return wrapper
    return decorator

"""Ratekeeper — FastAPI application entry point.

Exposes the named rate limiters to application front ends (check and
status), accepts client telemetry, and gives administrators a view of
blocked identifiers, limiter statistics and the audit trail.
"""

import json
import math
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from ratekeeper.config.settings import get_settings
from ratekeeper.limiter.ratelimit import RateLimiter
from ratekeeper.limiter.registry import LimiterRegistry
from ratekeeper.logging.audit import (
    RequestTimer,
    generate_request_id,
    get_audit_logger,
    limit_context,
    request_id_var,
    setup_logging,
)
from ratekeeper.logging.trail import AuditAction, AuditTrail
from ratekeeper.monitoring.service import MonitoringConfig, MonitoringService
from ratekeeper.security.auth import verify_admin_key
from ratekeeper.version import VERSION

RATE_LIMIT_ENTITY = "RATE_LIMIT"

router = APIRouter()
admin_router = APIRouter(prefix="/admin", dependencies=[Depends(verify_admin_key)])


def create_app(
    registry: LimiterRegistry | None = None,
    monitoring: MonitoringService | None = None,
    trail: AuditTrail | None = None,
) -> FastAPI:
    """Build the application around explicitly owned collaborators.

    Anything not passed in is built from settings. The limiter registry is
    built at startup or on first use, not here, because each limiter starts
    a sweep thread and this module builds an app at import time.
    """
    settings = get_settings()
    if monitoring is None:
        monitoring = MonitoringService(MonitoringConfig.from_settings(settings))
    if trail is None:
        trail = AuditTrail()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle hooks."""
        setup_logging()
        limiters = _ensure_registry(app)
        monitoring.start()
        get_audit_logger().info("Ratekeeper started", extra={"audit_data": {"limiters": limiters.names()}})
        yield
        if app.state.registry is not None:
            app.state.registry.close()
        await monitoring.aclose()
        get_audit_logger().info("Ratekeeper stopped")

    app = FastAPI(
        title="Ratekeeper",
        description="Request rate limiting, telemetry and audit service",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.monitoring = monitoring
    app.state.trail = trail

    app.add_exception_handler(Exception, _unhandled_error)
    app.include_router(router)
    app.include_router(admin_router)
    return app


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    get_audit_logger().error(
        "Unhandled error",
        exc_info=exc,
        extra={"audit_data": {"path": request.url.path}},
    )
    await request.app.state.monitoring.track_exception(
        exc,
        url=str(request.url),
        user_agent=request.headers.get("user-agent"),
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# --- Helpers ---


def _ensure_registry(app: FastAPI) -> LimiterRegistry:
    if app.state.registry is None:
        app.state.registry = LimiterRegistry.from_settings(get_settings())
    return app.state.registry


def _get_limiter(request: Request, name: str) -> RateLimiter:
    try:
        return _ensure_registry(request.app).get(name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown limiter '{name}'")


async def _read_json_object(request: Request) -> dict:
    """Parse the request body as a JSON object. An empty body is {}."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _string_tags(tags) -> dict[str, str] | None:
    if tags is None:
        return None
    if not isinstance(tags, dict):
        raise HTTPException(status_code=400, detail="'tags' must be an object")
    return {str(k): str(v) for k, v in tags.items()}


# --- Public routes ---


@router.get("/health")
async def health():
    return {"status": "healthy", "version": VERSION}


@router.post("/v1/limits/{name}/check")
async def check_limit(name: str, request: Request):
    """Record a request against a limiter and report whether it may proceed.

    The identifier defaults to the caller's IP address.
    """
    logger = get_audit_logger()
    rid = generate_request_id()
    request_id_var.set(rid)

    limiter = _get_limiter(request, name)
    body = await _read_json_object(request)
    client_ip = _client_ip(request)
    identifier = body.get("identifier") or client_ip
    endpoint = body.get("endpoint")
    if not isinstance(identifier, str) or (endpoint is not None and not isinstance(endpoint, str)):
        raise HTTPException(status_code=400, detail="'identifier' and 'endpoint' must be strings")

    with limit_context(name, identifier):
        with RequestTimer() as timer:
            allowed = limiter.is_allowed(identifier, endpoint)
            status = limiter.get_status(identifier)

        if not allowed:
            retry_after = max(1, math.ceil(status.blocked_remaining_ms / 1000))
            logger.warning(
                "Rate limit exceeded",
                extra={"audit_data": {
                    "endpoint": endpoint,
                    "client_ip": client_ip,
                    "retry_after": retry_after,
                }},
            )

    monitoring: MonitoringService = request.app.state.monitoring
    await monitoring.track_slow_operation("rate-limit-check", timer.elapsed_ms, {"limiter": name})

    max_requests = limiter.config.max_requests
    headers = {
        "X-RateLimit-Limit": str(max_requests),
        "X-RateLimit-Remaining": str(max(0, max_requests - status.requests_in_window)),
        "X-Request-Id": rid,
    }

    if not allowed:
        await monitoring.track_user_action("rate-limited", {"limiter": name})
        return JSONResponse(
            status_code=429,
            content={"error": "Rate limit exceeded", "allowed": False, **status.to_dict()},
            headers={
                **headers,
                "Retry-After": str(retry_after),
                "X-RateLimit-Remaining": "0",
            },
        )

    return JSONResponse(
        status_code=200,
        content={"allowed": True, "limiter": name, "identifier": identifier, **status.to_dict()},
        headers=headers,
    )


@router.get("/v1/limits/{name}/status/{identifier}")
async def limit_status(name: str, identifier: str, request: Request):
    limiter = _get_limiter(request, name)
    return {"limiter": name, "identifier": identifier, **limiter.get_status(identifier).to_dict()}


@router.post("/v1/monitoring/metrics", status_code=202)
async def record_metric(request: Request):
    body = await _read_json_object(request)
    metric_name = body.get("name")
    value = body.get("value")
    if not isinstance(metric_name, str) or not metric_name:
        raise HTTPException(status_code=400, detail="'name' is required")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise HTTPException(status_code=400, detail="'value' must be a number")

    await request.app.state.monitoring.track_performance(metric_name, value, _string_tags(body.get("tags")))
    return {"accepted": True}


@router.post("/v1/monitoring/errors", status_code=202)
async def record_error(request: Request):
    body = await _read_json_object(request)
    message = body.get("message")
    if not isinstance(message, str) or not message:
        raise HTTPException(status_code=400, detail="'message' is required")

    await request.app.state.monitoring.track_error(
        message,
        stack=body.get("stack"),
        user_id=body.get("user_id"),
        url=body.get("url"),
        user_agent=body.get("user_agent") or request.headers.get("user-agent"),
        component_stack=body.get("component_stack"),
    )
    return {"accepted": True}


# --- Admin routes ---


@admin_router.get("/limits")
async def all_limit_stats(request: Request):
    registry = _ensure_registry(request.app)
    return {name: registry.get(name).get_stats().to_dict() for name in registry.names()}


@admin_router.get("/limits/{name}/stats")
async def limit_stats(name: str, request: Request):
    return _get_limiter(request, name).get_stats().to_dict()


@admin_router.get("/limits/{name}/blocked")
async def blocked_identifiers(name: str, request: Request):
    limiter = _get_limiter(request, name)
    return {"limiter": name, "blocked": [b.to_dict() for b in limiter.get_blocked_identifiers()]}


@admin_router.delete("/limits/{name}/identifiers/{identifier}", status_code=204)
async def reset_identifier(
    name: str,
    identifier: str,
    request: Request,
    admin: str = Depends(verify_admin_key),
):
    """Administrative unblock: forget all state for identifier."""
    limiter = _get_limiter(request, name)
    with limit_context(name, identifier):
        limiter.reset(identifier)
        get_audit_logger().info("Identifier reset", extra={"audit_data": {"admin": admin}})

    trail: AuditTrail = request.app.state.trail
    trail.log(
        AuditAction.RESET,
        RATE_LIMIT_ENTITY,
        {"limiter": name},
        entity_id=identifier,
        user_id=admin,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Response(status_code=204)


@admin_router.get("/audit")
async def audit_entries(request: Request, entity: str | None = None):
    trail: AuditTrail = request.app.state.trail
    entries = trail.by_entity(entity) if entity else trail.entries()
    return {"entries": [e.to_dict() for e in entries]}


@admin_router.get("/monitoring/health")
async def monitoring_health(request: Request):
    return request.app.state.monitoring.health_metrics()


app = create_app()

"""
ReportMate Dashboard API - Main FastAPI Application
Bulk fleet data aggregated from the ReportMate backend behind an in-memory TTL cache
"""
import logging
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import requests
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from config.settings import Settings, settings as default_settings
from reportmate.auth import Authorizer, SessionVerifier, require_authorized
from reportmate.cache import CacheManager, TTLCache
from reportmate.db import DatabaseRowSource
from reportmate.endpoints import NO_STORE_HEADERS, bulk_response, build_endpoints, options_response
from reportmate.errors import DeviceNotFoundError, InvalidRequestError, ReportMateError
from reportmate.filter_options import application_filter_options, install_filter_options
from reportmate.filters import RecordFilter
from reportmate.schemas import (
    CacheInvalidateRequest,
    CacheInvalidateResponse,
    CacheStatusResponse,
    EndpointStatus,
)
from reportmate.upstream import UpstreamClient

# Version tracking
APP_VERSION = "v1.4.0"
APP_NAME = "ReportMate Dashboard API"

logger = logging.getLogger("main")

public = APIRouter()
protected = APIRouter(dependencies=[Depends(require_authorized)])


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _multi_params(request: Request) -> Dict[str, List[str]]:
    return {key: request.query_params.getlist(key) for key in request.query_params.keys()}


def _lookup(request: Request, name: str, refresh: bool = False):
    """Cached aggregate for one endpoint; refreshes stop when the app shuts down."""
    state = request.app.state
    return state.endpoints[name].serve(
        state.cache,
        force_refresh=refresh,
        cancel=state.cancel_refreshes,
    )


def _serve_bulk(request: Request, name: str, refresh: bool) -> JSONResponse:
    """Cache lookup (or refresh), then request filters, then the wrapped response."""
    result = _lookup(request, name, refresh)
    record_filter = RecordFilter.from_params(_multi_params(request))
    items = record_filter.apply(result.payload)
    logger.debug(
        f"[{name}] {result.source.value}: {len(items)}/{len(result.payload)} records"
    )
    return bulk_response(result, items, filter_applied=record_filter.active)


# ===== PUBLIC =====

@public.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "timestamp": _now_iso()}


@public.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


# ===== BULK DATA =====

@protected.get("/api/devices")
def devices(request: Request, refresh: bool = Query(False, description="Skip the freshness check")):
    """All devices with inventory and system summary."""
    return _serve_bulk(request, "devices", refresh)


@protected.get("/api/devices/applications")
def applications(request: Request, refresh: bool = Query(False)):
    """Installed applications flattened across every device."""
    return _serve_bulk(request, "applications", refresh)


@protected.get("/api/devices/inventory")
def inventory(request: Request, refresh: bool = Query(False)):
    """Inventory module, one record per device."""
    return _serve_bulk(request, "inventory", refresh)


@protected.get("/api/devices/hardware")
def hardware(request: Request, refresh: bool = Query(False)):
    """Hardware module, one record per device."""
    return _serve_bulk(request, "hardware", refresh)


@protected.get("/api/devices/installs")
def installs(request: Request, refresh: bool = Query(False)):
    """Managed software install records for all devices."""
    return _serve_bulk(request, "installs", refresh)


@protected.get("/api/events")
def events(request: Request, refresh: bool = Query(False)):
    """Recent events feed."""
    return _serve_bulk(request, "events", refresh)


# ===== FILTER OPTIONS =====

@protected.get("/api/devices/applications/filters")
def application_filters(request: Request):
    """Distinct values for the applications filter panel."""
    applications = _lookup(request, "applications")
    inventory = _lookup(request, "inventory")
    options = application_filter_options(applications.payload, inventory.payload)
    return options_response(applications, options)


@protected.get("/api/devices/installs/filters")
def install_filters(request: Request):
    """Distinct values for the installs filter panel."""
    installs = _lookup(request, "installs")
    inventory = _lookup(request, "inventory")
    options = install_filter_options(installs.payload, inventory.payload)
    return options_response(installs, {"success": True, **options})


@protected.get("/api/device/{device_id}")
def device_detail(device_id: str, request: Request):
    """Single device passthrough, uncached."""
    document = request.app.state.client.get_device(device_id)
    if document is None:
        raise DeviceNotFoundError(details=f"No device with identifier {device_id}")
    return JSONResponse(
        content=jsonable_encoder({"success": True, "device": document}),
        headers=NO_STORE_HEADERS,
    )


# ===== CACHE ADMIN =====

@protected.get("/api/cache/status", response_model=CacheStatusResponse)
def cache_status(request: Request):
    """Per-endpoint TTL, entry age and freshness, plus hit/miss counters."""
    state = request.app.state
    caches = {}
    for name, endpoint in state.endpoints.items():
        entry = state.cache.describe(name) or {}
        caches[name] = EndpointStatus(
            endpoint=name,
            description=endpoint.policy.description,
            ttl_seconds=endpoint.policy.ttl_seconds,
            cached=bool(entry),
            records=entry.get("records"),
            age_seconds=entry.get("ageSeconds"),
            fresh=entry.get("fresh"),
            refreshing=entry.get("refreshing", False),
        )
    return CacheStatusResponse(
        timestamp=_now_iso(),
        caches=caches,
        stats=state.cache.get_stats(),
    )


@protected.post("/api/cache/invalidate", response_model=CacheInvalidateResponse)
def cache_invalidate(body: CacheInvalidateRequest, request: Request):
    """
    Drop cache entries.

    ``invalidateAll`` clears everything, ``endpoint`` drops one aggregate,
    ``deviceId`` / ``serialNumber`` drops every aggregate holding records
    for that device (used when a device checks in).
    """
    state = request.app.state
    store: TTLCache = state.cache.store

    if body.invalidate_all:
        invalidated = store.keys()
        store.clear()
        message = "All caches invalidated"
    elif body.endpoint:
        if body.endpoint not in state.endpoints:
            raise InvalidRequestError(
                error="Unknown endpoint",
                details=f"Expected one of: {', '.join(sorted(state.endpoints))}",
            )
        invalidated = [body.endpoint] if store.invalidate(body.endpoint) else []
        message = f"Cache invalidated for endpoint: {body.endpoint}"
    elif body.device_id or body.serial_number:
        device = body.device_id or body.serial_number

        def holds_device(entry) -> bool:
            return any(
                record.get("deviceId") == device or record.get("serialNumber") == device
                for record in entry.payload or []
            )

        invalidated = store.invalidate_matching(holds_device)
        message = f"Cache invalidated for device: {device}"
    else:
        raise InvalidRequestError(
            details="Please provide deviceId, serialNumber, endpoint, or set invalidateAll=true"
        )

    return CacheInvalidateResponse(message=message, timestamp=_now_iso(), invalidated=invalidated)


# ===== APPLICATION FACTORY =====

@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.cancel_refreshes.clear()
    yield
    # In-flight fan-outs stop at their next batch boundary
    app.state.cancel_refreshes.set()


def create_app(
    settings: Optional[Settings] = None,
    *,
    clock: Optional[Callable[[], float]] = None,
    session: Optional[requests.Session] = None,
    row_source: Optional[DatabaseRowSource] = None,
    authorizer: Optional[Authorizer] = None,
    session_verifier: Optional[SessionVerifier] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> FastAPI:
    """
    Build the application with its cache, upstream client and endpoints.

    Everything stateful hangs off ``app.state`` so tests can build isolated
    apps with their own clock, HTTP session and authorizer.

    ``session_verifier`` receives the Bearer or next-auth cookie token of a
    request without the shared secret; without one only shared-secret and
    passphrase callers are authorized.
    """
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(
        title=APP_NAME,
        description="Bulk fleet data for the ReportMate dashboard",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    store = TTLCache(clock=clock) if clock is not None else TTLCache()
    client = UpstreamClient.from_settings(settings, session=session)
    if row_source is None and settings.database_url:
        row_source = DatabaseRowSource.from_url(settings.database_url)

    app.state.settings = settings
    app.state.cache = CacheManager(store, coalesce_timeout=settings.coalesce_timeout)
    app.state.client = client
    app.state.endpoints = build_endpoints(settings, client, row_source=row_source, sleep=sleep)
    app.state.authorizer = authorizer or Authorizer.from_settings(settings, session_verifier=session_verifier)
    app.state.cancel_refreshes = threading.Event()

    @app.exception_handler(ReportMateError)
    def handle_reportmate_error(request: Request, exc: ReportMateError):
        if exc.status_code >= 500:
            logger.error(f"{request.url.path}: {exc.error} - {exc.details}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=NO_STORE_HEADERS)

    @app.exception_handler(Exception)
    def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "details": str(exc)},
            headers=NO_STORE_HEADERS,
        )

    app.include_router(public)
    app.include_router(protected)
    return app


app = create_app()

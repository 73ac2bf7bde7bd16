# apps/api/app/main.py
#
# SUBFEED API
#
# LIFECYCLE OVERVIEW (DO NOT BREAK THIS CONTRACT):
#
#   scheduler  → every poll_interval_min enqueues ONE aggregation job
#
#   workers    → aggregate_feeds()
#                 - resolves temp ids (handle_x / custom_x) → canonical ids
#                 - records redirects, heals the stored subscription list
#                 - fetches recent uploads through the adapter chain
#                 - publishes the merged snapshot (feed:videos + feed:run)
#
#   api (THIS FILE)
#     /v1/sync               GET the sync document / POST a new one
#                             * client redirects are adopted (server wins)
#                             * subscriptions are rewritten + deduped before save
#                             * a POST queues an aggregation run
#     /v1/videos             reads the published snapshot ONLY
#     /v1/videos/refresh     queues a run, returns 202 immediately
#     /v1/resolve-channel    resolves one reference through the same resolver
#                             the worker uses (single writer of redirects)
#
#   The api NEVER writes feed:videos. The worker is the only publisher.

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from redis.exceptions import RedisError

from apps.api.app.config import settings
from apps.workers.engine import Engine
from apps.workers.enqueuer import enqueue_aggregation
from apps.workers.errors import (
    InvalidReference,
    NotFound,
    QuotaExhausted,
    StorageError,
    TransientUpstreamError,
)
from apps.workers.models import SyncDocument, utc_now
from apps.workers.references import make_reference, parse_channel_input
from apps.workers.subscriptions import apply_redirects

log = logging.getLogger("subfeed.api")

# -----------------------------------------------------------------------------
# Pydantic request / response models
# -----------------------------------------------------------------------------

class ErrorBody(BaseModel):
    ok: bool = False
    status: int
    error: str
    message: str


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResolveRequest(_Wire):
    kind: Optional[str] = None  # canonical_id | handle | custom_url; None = parse like user input
    value: str
    display_hint: Optional[str] = None


class ResolveResponse(_Wire):
    canonical_id: str
    title: str
    thumbnail: Optional[str] = None
    source_adapter: str
    outcome: str


# -----------------------------------------------------------------------------
# FastAPI app + CORS
# -----------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s %(message)s",
    )
    owned = getattr(app.state, "engine", None) is None
    if owned:
        app.state.engine = Engine(settings)
    try:
        yield
    finally:
        if owned:
            await app.state.engine.aclose()
            app.state.engine = None


app = FastAPI(
    title="SubFeed API",
    version=settings.version,
    description=(
        "Subscription sync + aggregated latest-videos feed.\n"
        "/v1/videos serves the snapshot published by the aggregation worker; "
        "it never fetches upstream on the request path."
    ),
    lifespan=lifespan,
)

# CORS:
_cors = settings.cors_origins.strip()
if _cors == "*":
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in _cors.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def get_engine(request: Request) -> Engine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="engine not started")
    return engine


# -----------------------------------------------------------------------------
# Error handlers
# -----------------------------------------------------------------------------

def _json_error(status_code: int, err: str, msg: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorBody(status=status_code, error=err, message=msg).model_dump(),
    )

@app.exception_handler(HTTPException)
async def http_exc_handler(_: Request, exc: HTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else json.dumps(exc.detail)
    return _json_error(exc.status_code, "http_error", detail)

@app.exception_handler(RequestValidationError)
async def validation_exc_handler(_: Request, exc: RequestValidationError):
    return _json_error(422, "validation_error", exc.errors().__repr__())

@app.exception_handler(InvalidReference)
async def invalid_reference_handler(_: Request, exc: InvalidReference):
    return _json_error(400, "invalid_reference", str(exc))

@app.exception_handler(NotFound)
async def not_found_handler(_: Request, exc: NotFound):
    return _json_error(404, "not_found", str(exc))

@app.exception_handler(StorageError)
async def storage_error_handler(_: Request, exc: StorageError):
    log.error("storage error: %s", exc)
    return _json_error(500, "storage_error", "Persisted state unavailable")

@app.exception_handler(TransientUpstreamError)
async def upstream_error_handler(_: Request, exc: TransientUpstreamError):
    return _json_error(503, "upstream_unavailable", str(exc))

@app.exception_handler(QuotaExhausted)
async def quota_error_handler(_: Request, exc: QuotaExhausted):
    return _json_error(503, "quota_exhausted", str(exc))

@app.exception_handler(Exception)
async def unhandled_exc_handler(_: Request, exc: Exception):
    log.exception("unhandled error")
    return _json_error(500, exc.__class__.__name__, "Internal server error")

# -----------------------------------------------------------------------------
# Rate limiting helpers
# -----------------------------------------------------------------------------

def _client_ip(req: Request) -> str:
    xff = req.headers.get("x-forwarded-for", "")
    if xff:
        return xff.split(",")[0].strip()
    return req.client.host if req.client else "unknown"

def limiter(route: str, limit_per_min: int) -> Callable:
    """Tiny per-IP per-route limiter using Redis INCR. Soft-allow on Redis hiccups."""
    async def _limit_dep(req: Request, engine: Engine = Depends(get_engine)):
        ip = _client_ip(req)
        now_bucket = int(time.time() // 60)
        key = f"rl:{route}:{ip}:{now_bucket}"
        try:
            n = engine.conn.incr(key)
            if n == 1:
                engine.conn.expire(key, 65)
        except RedisError:
            return
        if n > limit_per_min:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {route}; try again shortly",
            )
    return _limit_dep

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _trigger(reason: str) -> dict:
    """Queue an aggregation run; a redis hiccup here never fails the request."""
    try:
        return enqueue_aggregation(reason, settings=settings)
    except RedisError as e:
        log.warning("could not enqueue aggregation reason=%s: %r", reason, e)
        return {"queued": False, "jobId": None}

def _iso(dt) -> Optional[str]:
    return dt.isoformat().replace("+00:00", "Z") if dt else None

# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------

@app.get("/health")
def health(engine: Engine = Depends(get_engine)):
    """Redis status, circuit states, quota."""
    try:
        ok = bool(engine.conn.ping())
        err = None
    except RedisError as e:  # pragma: no cover
        ok = False
        err = f"{type(e).__name__}"

    return {
        "status": "ok" if ok else "degraded",
        "redis_ok": ok,
        "error": err,
        "circuits": engine.guards.snapshot(),
        "quota_remaining": engine.quota.remaining() if ok else None,
        "run_in_flight": engine.run_guard.is_held() if ok else None,
        "env": settings.env,
        "version": settings.version,
    }

@app.get("/v1/health", include_in_schema=False)
def v1_health(engine: Engine = Depends(get_engine)):
    """Compatibility shim so /v1/health responds the same as /health."""
    return health(engine)

@app.get("/v1/sync", summary="Full sync document")
def sync_pull(engine: Engine = Depends(get_engine)):
    doc = engine.sync_store.load()
    return doc.to_wire()

@app.post("/v1/sync", summary="Replace the sync document and queue an aggregation run")
async def sync_push(
    body: SyncDocument,
    engine: Engine = Depends(get_engine),
    _=Depends(limiter("sync", settings.rl_sync_per_min)),
):
    adopted = await engine.resolver.adopt_redirects(body.redirects)
    if adopted:
        log.info("sync adopted %d client redirects", len(adopted))

    redirects = engine.redirects.get_all()
    meta = engine.meta.get_many(sorted(set(redirects.values())))
    body.subscriptions, _changed = apply_redirects(body.subscriptions, redirects, meta)

    stamp = _iso(utc_now())
    body.last_synced_at = stamp
    engine.sync_store.save(body)

    _trigger("sync")
    return {"success": True, "timestamp": stamp}

@app.get("/v1/videos", summary="Published aggregate snapshot")
def videos(engine: Engine = Depends(get_engine)):
    items, run, attempt = engine.aggregate_store.snapshot()
    return {
        "items": [it.to_wire() for it in items],
        "lastUpdated": _iso(run.completed_at) if run else None,
        "status": run.status if run else None,
        "channelsRequested": run.channels_requested if run else 0,
        "channelsSucceeded": run.channels_succeeded if run else 0,
        "channelsFailed": run.channels_failed if run else 0,
        "itemsProduced": run.items_produced if run else 0,
        "quotaConsumed": run.quota_consumed if run else 0,
        "stale": run.stale if run else False,
        "unresolvedChannels": run.unresolved_channels if run else [],
        "lastAttempt": attempt.to_wire() if attempt else None,
    }

@app.post(
    "/v1/videos/refresh",
    status_code=202,
    summary="Queue an aggregation run (does not wait for it)",
)
async def videos_refresh(_=Depends(limiter("refresh", settings.rl_refresh_per_min))):
    res = _trigger("refresh")
    return {"accepted": True, "queued": res["queued"], "jobId": res["jobId"]}

@app.post(
    "/v1/resolve-channel",
    response_model=ResolveResponse,
    response_model_by_alias=True,
    summary="Resolve a handle / custom url / channel url to a canonical channel id",
)
async def resolve_channel(
    body: ResolveRequest,
    engine: Engine = Depends(get_engine),
    _=Depends(limiter("resolve", settings.rl_resolve_per_min)),
):
    if body.kind:
        ref = make_reference(body.kind, body.value, body.display_hint)
    else:
        ref = parse_channel_input(body.value, body.display_hint)

    res = await engine.resolver.resolve(ref)
    if res.outcome == "unresolved":
        raise NotFound(f"could not resolve {body.value!r}")

    ch = res.channel
    return ResolveResponse(
        canonical_id=ch.canonical_id,
        title=ch.title,
        thumbnail=ch.thumbnail_url,
        source_adapter=ch.source_adapter,
        outcome=res.outcome,
    )

@app.get("/")
def root():
    """Basic ping."""
    return {"ok": True, "service": "subfeed-api", "env": settings.env, "version": settings.version}

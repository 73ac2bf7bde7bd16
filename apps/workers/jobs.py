# apps/workers/jobs.py
#
# PIPELINE ROLE (this file runs in the "workers" container / rq queue "default")
#
#   api / scheduler  -> enqueue_aggregation(reason)         (apps/workers/enqueuer.py)
#   workers          -> THIS FILE, aggregate_feeds()
#                        - takes the run lock (one run in flight, ever)
#                        - builds an Engine, runs FeedAggregator once
#                        - publishes the aggregate snapshot (or records the failed attempt)
#   api              -> /v1/videos reads the snapshot
#
# IMPORTANT:
# - a second aggregate_feeds() while one holds the lock is a no-op.
# - nothing here swallows a storage failure: the run records it as
#   lastAttempt.status="failed" and the previous snapshot stays published.
# - each job builds its own Engine (rq forks a work horse per job), so breaker
#   and pacer state lives for one run only: a circuit opened in this run does
#   not short-circuit the next one, and pacer decay does not carry over. Quota
#   is the exception; its daily counter is in redis.

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Dict, Optional

import httpx
from redis import Redis

from apps.workers.config import EngineSettings, get_settings
from apps.workers.engine import Engine, redis_conn
from apps.workers.models import AggregateRun
from apps.workers.stores import RunGuard

__all__ = ["aggregate_feeds"]

log = logging.getLogger("subfeed.jobs")


async def _run(engine: Engine, trigger: str, handle_sigterm: bool) -> AggregateRun:
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    if handle_sigterm and task is not None:
        # SIGTERM abandons in-flight fetches; the run records itself as cancelled
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
    try:
        return await engine.aggregator().run(trigger)
    finally:
        if handle_sigterm:
            loop.remove_signal_handler(signal.SIGTERM)
        await engine.aclose()


def aggregate_feeds(
    trigger: str = "schedule",
    *,
    handle_sigterm: bool = False,
    settings: Optional[EngineSettings] = None,
    conn: Optional[Redis] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """
    One aggregation run. Returns a small summary dict (rq keeps it as the
    job result).
    """
    settings = settings or get_settings()
    conn = conn if conn is not None else redis_conn(settings)

    guard = RunGuard(conn, settings.run_lock_key, settings.run_lock_ttl)
    token = guard.acquire()
    if token is None:
        log.info("aggregate skipped trigger=%s: another run holds the lock", trigger)
        return {"ok": True, "skipped": True}

    try:
        engine = Engine(settings, conn=conn, transport=transport)
        run = asyncio.run(_run(engine, trigger, handle_sigterm))
    finally:
        guard.release(token)

    return {
        "ok": run.status == "published",
        "skipped": False,
        "runId": run.run_id,
        "status": run.status,
        "itemsProduced": run.items_produced,
        "channelsFailed": run.channels_failed,
    }

# apps/workers/engine.py
#
# Process-scoped container. Builds every explicit state object once
# (redis conn, stores, guard registry, quota meter, http client, adapters,
# resolver) and hands them out by reference. One per api process; one per job
# run in the worker.
# Guard (breaker + pacer) state is in memory and dies with the Engine.

from __future__ import annotations

import time
from typing import Dict, Optional

import httpx
from redis import Redis

from apps.workers.adapters import TransportAdapter, build_adapters
from apps.workers.aggregator import FeedAggregator, Sleep
from apps.workers.config import EngineSettings, get_settings
from apps.workers.limiter import Clock, GuardRegistry, QuotaMeter
from apps.workers.resolver import ChannelResolver
from apps.workers.stores import AggregateStore, ChannelMetaStore, RedirectStore, RunGuard, SyncStore

__all__ = ["Engine", "redis_conn"]


def redis_conn(settings: EngineSettings, decode_responses: bool = True) -> Redis:
    # rq pickles job payloads, so its connection must stay undecoded
    return Redis.from_url(settings.redis_url, decode_responses=decode_responses)


class Engine:
    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        conn: Optional[Redis] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleep] = None,
    ):
        self.settings = s = settings or get_settings()
        self.conn = conn if conn is not None else redis_conn(s)

        self.redirects = RedirectStore(self.conn, s.redirects_key, s.redirects_generation_key)
        self.meta = ChannelMetaStore(self.conn, s.channel_meta_key)
        self.sync_store = SyncStore(self.conn, s.sync_doc_key, self.redirects)
        self.aggregate_store = AggregateStore(
            self.conn, s.feed_items_key, s.feed_run_key, s.feed_attempt_key, s.max_items
        )
        self.run_guard = RunGuard(self.conn, s.run_lock_key, s.run_lock_ttl)

        self.guards = GuardRegistry(s, clock=clock, sleep=sleep)
        self.quota = QuotaMeter(self.conn, s.api_daily_quota, s.quota_key_prefix)

        self.client = httpx.AsyncClient(
            timeout=s.http_timeout,
            headers={"User-Agent": s.user_agent},
            follow_redirects=True,
            transport=transport,
        )
        self.adapters: Dict[str, TransportAdapter] = build_adapters(s, self.client, self.guards, self.quota)
        self.resolver = ChannelResolver(self.adapters, s.resolve_order, self.redirects, self.meta)

    def aggregator(self, sleep: Optional[Sleep] = None) -> FeedAggregator:
        return FeedAggregator(
            self.settings,
            self.sync_store,
            self.redirects,
            self.meta,
            self.aggregate_store,
            self.resolver,
            self.adapters,
            quota=self.quota,
            sleep=sleep,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

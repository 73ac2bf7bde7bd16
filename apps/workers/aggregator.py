# apps/workers/aggregator.py
#
# FEED AGGREGATION RUN
#
#   idle -> resolving -> fetching -> merging -> published -> idle
#
#   resolving  load sync doc, apply redirects, resolve temp ids, heal the doc
#   fetching   batches (api-sized while the metered api is usable + affordable,
#              rss-sized otherwise), fall through fetch_order per channel
#   merging    dedupe by video id (last write wins), rewrite channel ids,
#              sort newest first (ties: id asc), bound to max_items
#   published  one atomic swap of items + run metadata
#
# Per-channel / per-adapter failures never abort a run. StorageError fails it
# (previous snapshot stays), cancellation abandons it (nothing published).

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from apps.workers.adapters import TransportAdapter, YouTubeApiAdapter
from apps.workers.config import EngineSettings
from apps.workers.errors import InvalidReference, StorageError
from apps.workers.limiter import QuotaMeter
from apps.workers.models import AggregateRun, ChannelReference, SyncDocument, VideoItem, utc_now
from apps.workers.references import is_canonical_id, is_temp_id, normalize_temp_id, reference_from_temp_id
from apps.workers.resolver import ChannelResolver
from apps.workers.stores import AggregateStore, ChannelMetaStore, RedirectStore, SyncStore
from apps.workers.subscriptions import apply_redirects, unresolved_ids

__all__ = ["FeedAggregator", "merge_items"]

log = logging.getLogger("subfeed.aggregator")

Sleep = Callable[[float], Awaitable[None]]


def merge_items(
    per_channel: Iterable[Iterable[VideoItem]],
    redirects: Mapping[str, str],
    max_items: int,
) -> List[VideoItem]:
    by_id: Dict[str, VideoItem] = {}
    for items in per_channel:
        for it in items:
            by_id[it.id] = it

    merged: List[VideoItem] = []
    for it in by_id.values():
        target = redirects.get(it.channel_id)
        if target and target != it.channel_id:
            it = it.model_copy(update={"channel_id": target})
        merged.append(it)

    merged.sort(key=lambda it: (-it.published_at.timestamp(), it.id))
    return merged[: max(0, int(max_items))]


class FeedAggregator:
    def __init__(
        self,
        settings: EngineSettings,
        sync_store: SyncStore,
        redirects: RedirectStore,
        meta: ChannelMetaStore,
        aggregate_store: AggregateStore,
        resolver: ChannelResolver,
        adapters: Mapping[str, TransportAdapter],
        quota: Optional[QuotaMeter] = None,
        sleep: Optional[Sleep] = None,
    ):
        self.settings = settings
        self.sync_store = sync_store
        self.redirects = redirects
        self.meta = meta
        self.aggregate_store = aggregate_store
        self.resolver = resolver
        self.adapters = adapters
        self.quota = quota
        self._sleep = sleep or asyncio.sleep
        self.phase = "idle"
        self.batches_run = 0

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _api(self) -> Optional[YouTubeApiAdapter]:
        adapter = self.adapters.get(YouTubeApiAdapter.name)
        return adapter if isinstance(adapter, YouTubeApiAdapter) else None

    def _fetchers(self) -> List[TransportAdapter]:
        out = []
        for name in self.settings.fetch_order:
            adapter = self.adapters.get(name)
            if adapter is not None and adapter.supports_fetch:
                out.append(adapter)
        return out

    def _consumed(self) -> int:
        return self.quota.consumed if self.quota is not None else 0

    def _api_ready(self, n_channels: int) -> bool:
        api = self._api()
        if api is None or api.name not in self.settings.fetch_order:
            return False
        if not api.usable() or api.guard.breaker.is_open():
            return False
        return api.can_afford(api.batch_cost(n_channels))

    # ------------------------------------------------------------------
    # resolving
    # ------------------------------------------------------------------

    async def _resolve_phase(self, run: AggregateRun) -> Tuple[List[str], Dict[str, str]]:
        doc = self.sync_store.load()

        api = self._api()
        if api is not None:
            api.set_api_key((doc.settings or {}).get("apiKey"))

        redirects = dict(doc.redirects)
        meta = self.meta.get_many(sorted(set(redirects.values())))
        subs, _ = apply_redirects(doc.subscriptions, redirects, meta)

        known = [s.id for s in subs if is_canonical_id(s.id)]
        pending: Dict[str, ChannelReference] = {}
        for temp_id in unresolved_ids(subs):
            hint = next((s.title for s in subs if s.id == temp_id and s.title), None)
            try:
                pending[normalize_temp_id(temp_id)] = reference_from_temp_id(temp_id, hint)
            except InvalidReference as e:
                log.warning("unparseable temp id %s: %s", temp_id, e)

        if pending:
            resolutions = await self.resolver.resolve_many(
                pending, known, concurrency=self.settings.resolve_concurrency
            )
            learned = {
                tid: res.channel.canonical_id
                for tid, res in resolutions.items()
                if not res.channel.is_placeholder
            }
            if learned:
                redirects = self.redirects.get_all()
                meta = self.meta.get_many(sorted(set(redirects.values())))
                subs, _ = apply_redirects(subs, redirects, meta)
                log.info("resolved %d/%d temp ids", len(learned), len(pending))

        if redirects:
            self._heal(redirects, meta)

        channel_ids = list(dict.fromkeys(s.id for s in subs if is_canonical_id(s.id)))
        # temp ids still waiting on a resolver, plus ids that are neither (truncated UC..., junk)
        unresolved = sorted({s.id for s in subs if not is_canonical_id(s.id)})
        malformed = [sid for sid in unresolved if not is_temp_id(sid)]
        if malformed:
            log.warning("skipping %d malformed subscription ids: %s", len(malformed), ", ".join(malformed))
        run.unresolved_channels = unresolved
        return channel_ids, redirects

    def _heal(self, redirects: Mapping[str, str], meta: Mapping[str, dict]) -> None:
        """Write rewritten ids back, re-reading the latest doc under WATCH."""

        def _rewrite(fresh: SyncDocument) -> Optional[SyncDocument]:
            subs, changed = apply_redirects(fresh.subscriptions, redirects, meta)
            if not changed:
                return None
            fresh.subscriptions = subs
            return fresh

        if self.sync_store.update(_rewrite) is not None:
            log.info("sync document healed")

    # ------------------------------------------------------------------
    # fetching
    # ------------------------------------------------------------------

    async def _fetch_batch(self, batch: List[str], use_api: bool, run: AggregateRun) -> Dict[str, List[VideoItem]]:
        got: Dict[str, List[VideoItem]] = {}
        pending = list(batch)
        limit = self.settings.per_channel_limit

        for adapter in self._fetchers():
            if not pending:
                break
            if not adapter.usable() or adapter.guard.breaker.is_open():
                continue
            if adapter.metered:
                if not use_api or not self._api_ready(len(pending)):
                    continue
                concurrency = self.settings.api_concurrency
            else:
                concurrency = self.settings.rss_concurrency

            res = await adapter.fetch_batch(pending, limit, concurrency)
            if res.items:
                run.transports_used[adapter.name] = run.transports_used.get(adapter.name, 0) + len(res.items)
            for cid, err in res.failures.items():
                log.debug("fetch %s via %s failed: %s", cid, adapter.name, err)
            got.update(res.items)
            pending = [cid for cid in pending if cid not in res.items]

        for cid in pending:
            log.info("fetch %s failed on every transport", cid)
        return got

    async def _fetch_phase(self, channel_ids: List[str], run: AggregateRun) -> Dict[str, List[VideoItem]]:
        results: Dict[str, List[VideoItem]] = {}
        self.batches_run = 0
        i = 0
        while i < len(channel_ids):
            remaining = len(channel_ids) - i
            use_api = self._api_ready(min(self.settings.api_batch_size, remaining))
            size = self.settings.api_batch_size if use_api else self.settings.rss_batch_size
            batch = channel_ids[i : i + max(1, size)]
            i += len(batch)

            results.update(await self._fetch_batch(batch, use_api, run))
            self.batches_run += 1

            if i < len(channel_ids):
                await self._sleep(self.settings.api_batch_delay if use_api else self.settings.rss_batch_delay)
        return results

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def _publish(self, items: List[VideoItem], run: AggregateRun) -> None:
        run.items_produced = len(items)
        run.status = "published"
        run.completed_at = utc_now()
        if not items and self.settings.empty_run_policy == "preserve":
            run.stale = True
            self.aggregate_store.publish_run_only(run)
        else:
            self.aggregate_store.publish(items, run)

    async def run(self, trigger: str = "schedule") -> AggregateRun:
        run = AggregateRun(run_id=uuid.uuid4().hex, trigger=trigger)
        for adapter in self.adapters.values():
            adapter.reset_run()
        if self.quota is not None:
            self.quota.reset_run()

        log.info("run %s start trigger=%s", run.run_id, trigger)
        try:
            self.phase = "resolving"
            channel_ids, redirects = await self._resolve_phase(run)
            run.channels_requested = len(channel_ids)

            self.phase = "fetching"
            results = await self._fetch_phase(channel_ids, run)
            run.channels_succeeded = len(results)
            run.channels_failed = len(channel_ids) - len(results)

            self.phase = "merging"
            items = merge_items(
                (results[cid] for cid in channel_ids if cid in results),
                redirects,
                self.settings.max_items,
            )
            run.quota_consumed = self._consumed()

            self.phase = "published"
            self._publish(items, run)
        except StorageError as e:
            run.status = "failed"
            run.error = str(e)
            run.completed_at = utc_now()
            run.quota_consumed = self._consumed()
            log.error("run %s failed: %s", run.run_id, e)
            self.aggregate_store.record_attempt(run)
            return run
        except asyncio.CancelledError:
            run.status = "cancelled"
            run.completed_at = utc_now()
            run.quota_consumed = self._consumed()
            log.warning("run %s cancelled in phase=%s", run.run_id, self.phase)
            self.aggregate_store.record_attempt(run)
            raise
        finally:
            if self.quota is not None:
                self.quota.reset_run()
            self.phase = "idle"

        log.info(
            "run %s published items=%d channels=%d ok=%d failed=%d unresolved=%d quota=%d stale=%s",
            run.run_id, run.items_produced, run.channels_requested, run.channels_succeeded,
            run.channels_failed, len(run.unresolved_channels), run.quota_consumed, run.stale,
        )
        return run

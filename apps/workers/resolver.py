# apps/workers/resolver.py
#
# CHANNEL IDENTITY RESOLVER
#
#   canonical id             -> passthrough, no network
#   temp id already mapped   -> answered from the redirect store (idempotent)
#   otherwise                -> resolve_order adapters, first canonical answer wins,
#                               redirect temp_id -> canonical recorded once
#   nobody answers           -> placeholder (sourceAdapter="none"), no redirect
#
# This is the only writer of the redirect store.

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional

from apps.workers.adapters import TransportAdapter
from apps.workers.errors import (
    InvalidReference,
    NotFound,
    QuotaExhausted,
    RedirectConflict,
    TransientUpstreamError,
)
from apps.workers.models import (
    SOURCE_NONE,
    SOURCE_PASSTHROUGH,
    SOURCE_REDIRECT,
    ChannelReference,
    Resolution,
    ResolvedChannel,
)
from apps.workers.references import (
    display_title,
    is_canonical_id,
    make_reference,
    normalize_temp_id,
    synthetic_temp_id,
)
from apps.workers.stores import ChannelMetaStore, RedirectStore

__all__ = ["ChannelResolver"]

log = logging.getLogger("subfeed.resolver")


class ChannelResolver:
    def __init__(
        self,
        adapters: Mapping[str, TransportAdapter],
        resolve_order: Iterable[str],
        redirects: RedirectStore,
        meta: ChannelMetaStore,
    ):
        self.adapters = adapters
        self.resolve_order = list(resolve_order)
        self.redirects = redirects
        self.meta = meta
        self._write_lock = asyncio.Lock()

    def _candidates(self) -> List[TransportAdapter]:
        out = []
        for name in self.resolve_order:
            adapter = self.adapters.get(name)
            if adapter is None or not adapter.supports_resolve:
                continue
            if not adapter.usable():
                continue
            if adapter.guard.breaker.is_open():
                log.debug("skip adapter=%s (circuit open)", name)
                continue
            out.append(adapter)
        return out

    def _from_redirect(self, ref: ChannelReference, temp_id: str) -> Optional[ResolvedChannel]:
        target = self.redirects.get(temp_id)
        if not target:
            return None
        info = self.meta.get(target) or {}
        return ResolvedChannel(
            canonical_id=target,
            title=info.get("title") or display_title(ref),
            thumbnail_url=info.get("thumbnailUrl"),
            source_adapter=SOURCE_REDIRECT,
        )

    async def resolve(self, ref: ChannelReference, known_ids: Iterable[str] = ()) -> Resolution:
        # re-validate: references built by hand skip make_reference()
        ref = make_reference(ref.kind, ref.value, ref.display_hint)

        if ref.kind == "canonical_id":
            info = self.meta.get(ref.value) or {}
            channel = ResolvedChannel(
                canonical_id=ref.value,
                title=info.get("title") or ref.display_hint or ref.value,
                thumbnail_url=info.get("thumbnailUrl"),
                source_adapter=SOURCE_PASSTHROUGH,
            )
            return Resolution(channel=channel, outcome="passthrough")

        temp_id = synthetic_temp_id(ref)
        known = set(known_ids)

        cached = self._from_redirect(ref, temp_id)
        if cached is not None:
            outcome = "merged" if cached.canonical_id in known else "resolved"
            return Resolution(channel=cached, outcome=outcome, temp_id=temp_id)

        for adapter in self._candidates():
            try:
                found = await adapter.resolve(ref)
            except NotFound as e:
                log.info("resolve %s: adapter=%s not found (%s)", temp_id, adapter.name, e)
                continue
            except QuotaExhausted as e:
                log.info("resolve %s: adapter=%s quota exhausted (%s)", temp_id, adapter.name, e)
                continue
            except TransientUpstreamError as e:
                log.info("resolve %s: adapter=%s transient (%s)", temp_id, adapter.name, e)
                continue
            if not is_canonical_id(found.canonical_id):
                log.warning(
                    "resolve %s: adapter=%s returned non-canonical id %r; discarded",
                    temp_id, adapter.name, found.canonical_id,
                )
                continue

            final = await self._record(temp_id, found)
            if final != found.canonical_id:
                found = found.model_copy(update={"canonical_id": final})
            outcome = "merged" if found.canonical_id in known else "resolved"
            log.info("resolved %s -> %s via %s (%s)", temp_id, found.canonical_id, adapter.name, outcome)
            return Resolution(channel=found, outcome=outcome, temp_id=temp_id)

        placeholder = ResolvedChannel(
            canonical_id=temp_id,
            title=display_title(ref),
            source_adapter=SOURCE_NONE,
        )
        log.info("unresolved %s; placeholder kept", temp_id)
        return Resolution(channel=placeholder, outcome="unresolved", temp_id=temp_id)

    async def _record(self, temp_id: str, found: ResolvedChannel) -> str:
        async with self._write_lock:
            try:
                final = self.redirects.put(temp_id, found.canonical_id)
            except RedirectConflict as e:
                # someone (another worker) mapped it first; theirs stands
                log.warning("redirect conflict for %s: %s", temp_id, e)
                final = self.redirects.get(temp_id) or found.canonical_id
        self.meta.put(final, found.title, found.thumbnail_url)
        return final

    async def resolve_raw(self, kind: str, value: str, display_hint: Optional[str] = None) -> Resolution:
        return await self.resolve(make_reference(kind, value, display_hint))

    async def adopt_redirects(self, mapping: Mapping[str, str]) -> Dict[str, str]:
        """
        Merge client-supplied redirects into the store. Existing server entries
        win; entries that are not canonical or would conflict are skipped.
        Returns what was actually written (from -> final target).
        """
        adopted: Dict[str, str] = {}
        async with self._write_lock:
            current = self.redirects.get_all()
            for src, dst in mapping.items():
                if not src or not dst or src == dst:
                    continue
                src = normalize_temp_id(src)
                if src in current:
                    continue
                final = current.get(dst, dst)
                if not is_canonical_id(final):
                    log.info("skip client redirect %s -> %s (not canonical)", src, dst)
                    continue
                try:
                    adopted[src] = self.redirects.put(src, final)
                except (RedirectConflict, ValueError) as e:
                    log.info("skip client redirect %s -> %s (%s)", src, dst, e)
                    continue
                current[src] = adopted[src]
        return adopted

    async def resolve_many(
        self,
        refs: Mapping[str, ChannelReference],
        known_ids: Iterable[str] = (),
        concurrency: int = 5,
    ) -> Dict[str, Resolution]:
        """Resolve several references, bounded. Keys are the caller's ids."""
        known = set(known_ids)
        sem = asyncio.Semaphore(max(1, concurrency))
        out: Dict[str, Resolution] = {}

        async def _one(key: str, ref: ChannelReference) -> None:
            async with sem:
                try:
                    out[key] = await self.resolve(ref, known)
                except InvalidReference as e:
                    log.warning("skip invalid reference %s: %s", key, e)

        await asyncio.gather(*(_one(k, r) for k, r in refs.items()))
        return out

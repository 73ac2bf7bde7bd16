# apps/workers/stores.py
#
# Everything the engine persists lives in redis:
#
#   SYNC DOCUMENT  (subscriptions + settings + redirects, one logical doc)
#     sync:document              STRING  json {subscriptions, settings, ...}
#     sync:redirects             HASH    from_id -> to_id   (RedirectStore)
#     sync:redirects:generation  STRING  bumped by RedirectStore.clear()
#     channels:meta              HASH    canonical_id -> json {title, thumbnailUrl}
#
#   AGGREGATE DOCUMENT
#     feed:videos                LIST    json VideoItem, newest first, bounded
#     feed:run                   STRING  json AggregateRun of the published snapshot
#     feed:last_attempt          STRING  json AggregateRun of the latest attempt
#
# WRITE RULES:
#   - RedirectStore is written only through ChannelResolver.
#   - AggregateStore.publish() is called only by the aggregation run.
#   - every multi-key write is one MULTI/EXEC, so it lands whole or not at all.

from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError
from redis import Redis
from redis.client import Pipeline
from redis.exceptions import RedisError

from apps.workers.errors import RedirectConflict, StorageError
from apps.workers.models import AggregateRun, SyncDocument, VideoItem

__all__ = [
    "RedirectStore",
    "ChannelMetaStore",
    "SyncStore",
    "AggregateStore",
    "RunGuard",
]

log = logging.getLogger("subfeed.stores")


# =============================================================================
# Redirects
# =============================================================================

class RedirectStore:
    """
    from_id -> to_id, always one hop.

    put() collapses chains on write: the stored target is the final target,
    and entries that pointed at from_id are re-pointed, so get() never needs
    to follow more than one hop.
    """

    def __init__(self, conn: Redis, key: str = "sync:redirects", generation_key: Optional[str] = None):
        self._conn = conn
        self.key = key
        self.generation_key = generation_key or f"{key}:generation"

    def get(self, from_id: str) -> Optional[str]:
        try:
            return self._conn.hget(self.key, from_id)
        except RedisError as e:
            raise StorageError(f"redirect read failed: {e!r}") from e

    def get_all(self) -> Dict[str, str]:
        try:
            return dict(self._conn.hgetall(self.key) or {})
        except RedisError as e:
            raise StorageError(f"redirect read failed: {e!r}") from e

    def apply(self, channel_id: str) -> str:
        return self.get(channel_id) or channel_id

    def generation(self) -> int:
        try:
            return int(self._conn.get(self.generation_key) or 0)
        except RedisError as e:
            raise StorageError(f"redirect read failed: {e!r}") from e

    def put(self, from_id: str, to_id: str) -> str:
        """
        Record from_id -> to_id. Returns the final target actually stored.

        Raises RedirectConflict when from_id already points somewhere else
        (monotonic within a generation) or when the write would form a cycle.
        """
        if not from_id or not to_id:
            raise ValueError("redirect ids must be non-empty")
        if from_id == to_id:
            return to_id

        def _txn(pipe: Pipeline) -> str:
            current: Dict[str, str] = pipe.hgetall(self.key) or {}
            final = current.get(to_id, to_id)
            if final == from_id:
                raise RedirectConflict(f"redirect {from_id} -> {to_id} would form a cycle")

            existing = current.get(from_id)
            if existing is not None and existing != final:
                raise RedirectConflict(
                    f"{from_id} already redirects to {existing}, refusing {final}"
                )

            repoint = [src for src, dst in current.items() if dst == from_id]
            if existing == final and not repoint:
                return final

            pipe.multi()
            pipe.hset(self.key, from_id, final)
            for src in repoint:
                pipe.hset(self.key, src, final)
            return final

        try:
            final = self._conn.transaction(_txn, self.key, value_from_callable=True)
        except RedisError as e:
            raise StorageError(f"redirect write failed: {e!r}") from e
        log.info("redirect %s -> %s", from_id, final)
        return final

    def clear(self) -> int:
        """Drop every redirect and start a new generation."""
        try:
            pipe = self._conn.pipeline(True)
            pipe.delete(self.key)
            pipe.incr(self.generation_key)
            _, gen = pipe.execute()
        except RedisError as e:
            raise StorageError(f"redirect clear failed: {e!r}") from e
        return int(gen)


# =============================================================================
# Channel metadata (title / thumbnail learned at resolution time)
# =============================================================================

class ChannelMetaStore:
    def __init__(self, conn: Redis, key: str = "channels:meta"):
        self._conn = conn
        self.key = key

    def get(self, channel_id: str) -> Optional[dict]:
        try:
            raw = self._conn.hget(self.key, channel_id)
        except RedisError as e:
            log.warning("channel meta read failed: %r", e)
            return None
        return _loads_dict(raw)

    def get_many(self, channel_ids: List[str]) -> Dict[str, dict]:
        if not channel_ids:
            return {}
        try:
            raws = self._conn.hmget(self.key, channel_ids)
        except RedisError as e:
            log.warning("channel meta read failed: %r", e)
            return {}
        out: Dict[str, dict] = {}
        for cid, raw in zip(channel_ids, raws):
            meta = _loads_dict(raw)
            if meta:
                out[cid] = meta
        return out

    def put(self, channel_id: str, title: Optional[str], thumbnail_url: Optional[str]) -> None:
        blob = json.dumps({"title": title, "thumbnailUrl": thumbnail_url}, ensure_ascii=False)
        try:
            self._conn.hset(self.key, channel_id, blob)
        except RedisError as e:
            log.warning("channel meta write failed for %s: %r", channel_id, e)


def _loads_dict(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        val = json.loads(raw)
    except ValueError:
        return None
    return val if isinstance(val, dict) else None


# =============================================================================
# Sync document
# =============================================================================

class SyncStore:
    """
    The persisted subscription/settings document. Redirects are kept in the
    RedirectStore hash and merged in on read.
    """

    def __init__(self, conn: Redis, key: str, redirects: RedirectStore):
        self._conn = conn
        self.key = key
        self.redirects = redirects

    def _decode(self, raw: Optional[str]) -> SyncDocument:
        if not raw:
            return SyncDocument()
        try:
            return SyncDocument.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"stored sync document is corrupt: {e.error_count()} errors") from e

    @staticmethod
    def _encode(doc: SyncDocument) -> str:
        # redirects live in their own hash
        payload = doc.to_wire()
        payload.pop("redirects", None)
        return json.dumps(payload, ensure_ascii=False)

    def load(self) -> SyncDocument:
        try:
            raw = self._conn.get(self.key)
        except RedisError as e:
            raise StorageError(f"sync document read failed: {e!r}") from e
        doc = self._decode(raw)
        doc.redirects = self.redirects.get_all()
        return doc

    def save(self, doc: SyncDocument) -> None:
        try:
            self._conn.set(self.key, self._encode(doc))
        except RedisError as e:
            raise StorageError(f"sync document write failed: {e!r}") from e

    def update(self, fn: Callable[[SyncDocument], Optional[SyncDocument]]) -> Optional[SyncDocument]:
        """
        Read-modify-write under WATCH. fn returns the new document, or None to
        leave the stored one alone. Retries if a client write races us.
        """

        def _txn(pipe: Pipeline) -> Optional[SyncDocument]:
            doc = self._decode(pipe.get(self.key))
            new_doc = fn(doc)
            if new_doc is None:
                return None
            pipe.multi()
            pipe.set(self.key, self._encode(new_doc))
            return new_doc

        try:
            return self._conn.transaction(_txn, self.key, value_from_callable=True)
        except RedisError as e:
            raise StorageError(f"sync document update failed: {e!r}") from e


# =============================================================================
# Aggregate snapshot
# =============================================================================

class AggregateStore:
    def __init__(
        self,
        conn: Redis,
        items_key: str = "feed:videos",
        run_key: str = "feed:run",
        attempt_key: str = "feed:last_attempt",
        max_items: int = 1000,
    ):
        self._conn = conn
        self.items_key = items_key
        self.run_key = run_key
        self.attempt_key = attempt_key
        self.max_items = int(max_items)

    def publish(self, items: List[VideoItem], run: AggregateRun) -> None:
        """Replace items + run in one MULTI. Readers see old or new, never half."""
        run_blob = json.dumps(run.to_wire(), ensure_ascii=False)
        encoded = [json.dumps(it.to_wire(), ensure_ascii=False) for it in items[: self.max_items]]
        try:
            pipe = self._conn.pipeline(True)
            pipe.delete(self.items_key)
            if encoded:
                pipe.rpush(self.items_key, *encoded)
                if self.max_items > 0:
                    pipe.ltrim(self.items_key, 0, self.max_items - 1)
            pipe.set(self.run_key, run_blob)
            pipe.set(self.attempt_key, run_blob)
            pipe.execute()
        except RedisError as e:
            raise StorageError(f"aggregate publish failed: {e!r}") from e

    def publish_run_only(self, run: AggregateRun) -> None:
        """Keep the current items, swap in new run metadata (stale-preserving)."""
        run_blob = json.dumps(run.to_wire(), ensure_ascii=False)
        try:
            pipe = self._conn.pipeline(True)
            pipe.set(self.run_key, run_blob)
            pipe.set(self.attempt_key, run_blob)
            pipe.execute()
        except RedisError as e:
            raise StorageError(f"aggregate publish failed: {e!r}") from e

    def record_attempt(self, run: AggregateRun) -> None:
        try:
            self._conn.set(self.attempt_key, json.dumps(run.to_wire(), ensure_ascii=False))
        except RedisError as e:
            log.error("could not record attempt %s: %r", run.run_id, e)

    def snapshot(self) -> Tuple[List[VideoItem], Optional[AggregateRun], Optional[AggregateRun]]:
        """(items, published run, last attempt) read in one MULTI."""
        try:
            pipe = self._conn.pipeline(True)
            pipe.lrange(self.items_key, 0, -1)
            pipe.get(self.run_key)
            pipe.get(self.attempt_key)
            raw_items, raw_run, raw_attempt = pipe.execute()
        except RedisError as e:
            raise StorageError(f"aggregate read failed: {e!r}") from e

        items: List[VideoItem] = []
        for raw in raw_items or []:
            try:
                items.append(VideoItem.model_validate_json(raw))
            except ValidationError:
                continue
        return items, _load_run(raw_run), _load_run(raw_attempt)

    def item_ids(self) -> List[str]:
        items, _, _ = self.snapshot()
        return [it.id for it in items]


def _load_run(raw: Optional[str]) -> Optional[AggregateRun]:
    if not raw:
        return None
    try:
        return AggregateRun.model_validate_json(raw)
    except ValidationError:
        return None


# =============================================================================
# Single in-flight run
# =============================================================================

class RunGuard:
    """SET NX EX lock with a token, released only by its holder."""

    def __init__(self, conn: Redis, key: str = "aggregate:lock", ttl: int = 900):
        self._conn = conn
        self.key = key
        self.ttl = int(ttl)

    def acquire(self) -> Optional[str]:
        token = uuid.uuid4().hex
        try:
            ok = self._conn.set(self.key, token, nx=True, ex=self.ttl)
        except RedisError as e:
            raise StorageError(f"run lock failed: {e!r}") from e
        return token if ok else None

    def release(self, token: str) -> bool:
        def _txn(pipe: Pipeline) -> bool:
            if pipe.get(self.key) != token:
                return False
            pipe.multi()
            pipe.delete(self.key)
            return True

        try:
            return bool(self._conn.transaction(_txn, self.key, value_from_callable=True))
        except RedisError as e:
            log.error("run lock release failed: %r", e)
            return False

    def is_held(self) -> bool:
        try:
            return bool(self._conn.exists(self.key))
        except RedisError:
            return False

    @contextmanager
    def held(self) -> Iterator[bool]:
        token = self.acquire()
        try:
            yield token is not None
        finally:
            if token is not None:
                self.release(token)

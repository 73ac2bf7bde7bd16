# apps/workers/adapters.py
#
# TRANSPORT ADAPTERS
#
#   name         resolve  fetch  metered   upstream
#   youtube_api     x       x      x       Data API v3 (needs an api key)
#   rss                     x              /feeds/videos.xml?channel_id=...
#   scrape          x                      channel html page via rotating proxies
#   mirror          x       x              public Piped / Invidious instances
#
# Contract:
#   resolve(ref)                         -> ResolvedChannel | raise NotFound / TransientUpstreamError
#   fetch_recent_items(channel_id, n)    -> [VideoItem]     | raise TransientUpstreamError (NotFound)
#   fetch_batch(channel_ids, n)          -> BatchResult (per-channel items + per-channel errors)
#
# Every outbound call goes through _guarded(): breaker check, pacer wait,
# hard timeout, outcome reported back. Adapters hold no persisted state.

from __future__ import annotations

import asyncio
import calendar
import html
import logging
import re
import time as _time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar
from urllib.parse import quote

import feedparser
import httpx

from apps.workers.config import EngineSettings
from apps.workers.errors import (
    CircuitOpen,
    EngineError,
    NotFound,
    QuotaExhausted,
    TransientUpstreamError,
)
from apps.workers.limiter import Guard, GuardRegistry, QuotaMeter
from apps.workers.models import ChannelReference, ResolvedChannel, VideoItem
from apps.workers.references import CANONICAL_ID_RE, is_canonical_id, rss_feed_url

__all__ = [
    "BatchResult",
    "TransportAdapter",
    "YouTubeApiAdapter",
    "RssFeedAdapter",
    "ScrapeAdapter",
    "MirrorAdapter",
    "ADAPTER_TYPES",
    "build_adapters",
]

log = logging.getLogger("subfeed.adapters")

T = TypeVar("T")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =====================================================================
# Small helpers
# =====================================================================

def _parse_time(value: Any) -> Optional[datetime]:
    """ISO-8601 string / struct_time / epoch seconds -> aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, _time.struct_time):
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    if isinstance(value, (int, float)):
        secs = float(value)
        if secs > 1e11:  # milliseconds
            secs /= 1000.0
        return datetime.fromtimestamp(secs, tz=timezone.utc)
    s = str(value).strip()
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


_DURATION_RE = re.compile(
    r"^P(?:(?P<d>\d+)D)?(?:T(?:(?P<h>\d+)H)?(?:(?P<m>\d+)M)?(?:(?P<s>\d+)S)?)?$"
)


def parse_iso_duration(value: Optional[str]) -> Optional[int]:
    """'PT1H2M3S' -> 3723. None when absent/unparseable (live streams: 'P0D')."""
    if not value:
        return None
    m = _DURATION_RE.match(value.strip())
    if not m:
        return None
    parts = {k: int(v) for k, v in m.groupdict().items() if v}
    total = parts.get("d", 0) * 86400 + parts.get("h", 0) * 3600 + parts.get("m", 0) * 60 + parts.get("s", 0)
    return total or None


def video_thumb(video_id: str) -> str:
    return f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"


def _best_thumbnail(thumbs: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(thumbs, dict):
        return None
    for size in ("high", "medium", "default", "standard", "maxres"):
        url = (thumbs.get(size) or {}).get("url")
        if url:
            return url
    return None


def _absolute(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return f"https:{url}" if url.startswith("//") else url


def _norm_name(s: Optional[str]) -> str:
    return re.sub(r"[^0-9a-z]+", "", (s or "").lower())


def _chunks(seq: List[str], size: int) -> Iterable[List[str]]:
    for i in range(0, len(seq), max(1, size)):
        yield seq[i : i + size]


@dataclass
class BatchResult:
    items: Dict[str, List[VideoItem]] = field(default_factory=dict)
    failures: Dict[str, EngineError] = field(default_factory=dict)

    def merge(self, other: "BatchResult") -> None:
        self.items.update(other.items)
        self.failures.update(other.failures)


# =====================================================================
# Base adapter
# =====================================================================

class TransportAdapter:
    name = "base"
    metered = False
    supports_resolve = False
    supports_fetch = False

    def __init__(self, client: httpx.AsyncClient, guard: Guard, settings: EngineSettings):
        self.client = client
        self.guard = guard
        self.settings = settings

    # ---- availability ---------------------------------------------------

    def usable(self) -> bool:
        """Configuration-level check (credentials etc.)."""
        return True

    def is_available(self) -> bool:
        return self.usable() and not self.guard.breaker.is_open()

    def reset_run(self) -> None:
        """Hook called at the start of each aggregation run."""

    # ---- guarded call ---------------------------------------------------

    async def _guarded(self, call: Callable[[], Awaitable[T]], timeout: Optional[float] = None) -> T:
        breaker = self.guard.breaker
        if not breaker.allow():
            raise CircuitOpen(f"{self.name} circuit open", adapter=self.name)

        await self.guard.pacer.wait()
        limit = timeout if timeout is not None else self.settings.http_timeout + 1.0
        try:
            result = await asyncio.wait_for(call(), timeout=limit)
        except asyncio.CancelledError:
            breaker.release_probe()
            raise
        except NotFound:
            # upstream answered; it's healthy
            self.guard.record_success()
            raise
        except QuotaExhausted:
            breaker.release_probe()
            raise
        except TransientUpstreamError:
            self.guard.record_failure()
            raise
        except EngineError:
            breaker.release_probe()
            raise
        except asyncio.TimeoutError as e:
            self.guard.record_failure()
            raise TransientUpstreamError(f"{self.name} timed out after {limit:.0f}s", adapter=self.name) from e
        except httpx.HTTPError as e:
            self.guard.record_failure()
            raise TransientUpstreamError(f"{self.name} http error: {type(e).__name__}", adapter=self.name) from e
        except (ValueError, KeyError, TypeError) as e:
            # garbage payload (html error page instead of json etc.)
            self.guard.record_failure()
            raise TransientUpstreamError(f"{self.name} bad payload: {e!r}", adapter=self.name) from e
        self.guard.record_success()
        return result

    def _check_status(self, resp: httpx.Response) -> None:
        code = resp.status_code
        if code < 400:
            return
        if code in (404, 410):
            raise NotFound(f"{self.name}: {code} for {resp.request.url}", adapter=self.name)
        raise TransientUpstreamError(f"{self.name}: http {code}", adapter=self.name)

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        resp = await self.client.get(url, params=params, headers=headers)
        self._check_status(resp)
        return resp

    # ---- operations -----------------------------------------------------

    async def resolve(self, ref: ChannelReference) -> ResolvedChannel:
        raise NotImplementedError

    async def fetch_recent_items(self, channel_id: str, limit: int) -> List[VideoItem]:
        raise NotImplementedError

    async def fetch_batch(self, channel_ids: List[str], limit: int, concurrency: int = 5) -> BatchResult:
        """Default: per-channel fetch, concurrently inside a bounded window."""
        result = BatchResult()
        sem = asyncio.Semaphore(max(1, concurrency))

        async def _one(cid: str) -> None:
            async with sem:
                try:
                    result.items[cid] = await self.fetch_recent_items(cid, limit)
                except EngineError as e:
                    result.failures[cid] = e

        await asyncio.gather(*(_one(cid) for cid in channel_ids))
        return result


# =====================================================================
# YouTube Data API v3 (metered)
# =====================================================================

_QUOTA_REASONS = {"quotaExceeded", "dailyLimitExceeded"}
_KEY_REASONS = {"keyInvalid", "keyExpired", "accessNotConfigured", "forbidden"}


class YouTubeApiAdapter(TransportAdapter):
    """
    Unit costs charged to the QuotaMeter as each request goes out:
      channels.list 1 | playlistItems.list 1 | videos.list 1
    """

    name = "youtube_api"
    metered = True
    supports_resolve = True
    supports_fetch = True

    COST_CHANNELS = 1
    COST_PLAYLIST_ITEMS = 1
    COST_VIDEOS = 1

    def __init__(self, client: httpx.AsyncClient, guard: Guard, settings: EngineSettings, quota: QuotaMeter):
        super().__init__(client, guard, settings)
        self.quota = quota
        self.api_key: Optional[str] = settings.youtube_api_key
        self.exhausted = False
        self.key_rejected = False

    def set_api_key(self, key: Optional[str]) -> None:
        key = (key or "").strip() or self.settings.youtube_api_key
        if key != self.api_key:
            self.key_rejected = False
        self.api_key = key

    def usable(self) -> bool:
        return bool(self.api_key) and not self.exhausted and not self.key_rejected

    def reset_run(self) -> None:
        self.exhausted = False

    def can_afford(self, units: int) -> bool:
        return self.usable() and self.quota.can_afford(units)

    def batch_cost(self, n_channels: int) -> int:
        """Units a fetch_batch of n channels costs (durations included)."""
        if n_channels <= 0:
            return 0
        chunks = (n_channels + 49) // 50
        cost = chunks * self.COST_CHANNELS + n_channels * self.COST_PLAYLIST_ITEMS
        if self.settings.api_fetch_durations:
            cost += n_channels * self.COST_VIDEOS  # upper bound: one videos.list per 50 items
        return cost

    def _check_status(self, resp: httpx.Response) -> None:
        if resp.status_code in (400, 403):
            reason = ""
            try:
                errs = (resp.json().get("error") or {}).get("errors") or []
                reason = (errs[0] or {}).get("reason", "") if errs else ""
            except ValueError:
                pass
            if reason in _QUOTA_REASONS:
                self.exhausted = True
                raise QuotaExhausted(f"youtube api quota: {reason}", adapter=self.name)
            if reason in _KEY_REASONS or resp.status_code == 400 and "key" in reason.lower():
                self.key_rejected = True
                log.error("youtube api key rejected reason=%s", reason)
            raise TransientUpstreamError(f"youtube api {resp.status_code} {reason}".strip(), adapter=self.name)
        super()._check_status(resp)

    async def _api(self, endpoint: str, params: Dict[str, Any], cost: int) -> Dict[str, Any]:
        if not self.usable():
            raise TransientUpstreamError("youtube api not usable", adapter=self.name)

        url = f"{self.settings.youtube_api_base.rstrip('/')}/{endpoint}"
        query = dict(params, key=self.api_key)

        async def _call() -> Dict[str, Any]:
            # charged only once the breaker lets the request out
            try:
                self.quota.charge(cost)
            except QuotaExhausted:
                self.exhausted = True
                raise
            resp = await self._get(url, params=query)
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError("api payload is not an object")
            return data

        return await self._guarded(_call)

    # ---- resolve ----------------------------------------------------------

    async def resolve(self, ref: ChannelReference) -> ResolvedChannel:
        if ref.kind == "canonical_id":
            attempts = [{"id": ref.value}]
        elif ref.kind == "handle":
            attempts = [{"forHandle": f"@{ref.value}"}]
        else:
            # most vanity names are handles nowadays; legacy ones are usernames
            attempts = [{"forHandle": f"@{ref.value}"}, {"forUsername": ref.value}]

        for extra in attempts:
            data = await self._api("channels", dict(part="snippet", maxResults=1, **extra), self.COST_CHANNELS)
            items = data.get("items") or []
            if not items:
                continue
            ch = items[0]
            snippet = ch.get("snippet") or {}
            return ResolvedChannel(
                canonical_id=ch.get("id", ""),
                title=snippet.get("title") or ref.value,
                thumbnail_url=_best_thumbnail(snippet.get("thumbnails")),
                source_adapter=self.name,
            )
        raise NotFound(f"youtube api: no channel for {ref.kind}={ref.value}", adapter=self.name)

    # ---- fetch ------------------------------------------------------------

    async def fetch_recent_items(self, channel_id: str, limit: int) -> List[VideoItem]:
        res = await self.fetch_batch([channel_id], limit)
        if channel_id in res.failures:
            raise res.failures[channel_id]
        return res.items.get(channel_id, [])

    async def fetch_batch(self, channel_ids: List[str], limit: int, concurrency: int = 10) -> BatchResult:
        result = BatchResult()
        uploads: Dict[str, tuple] = {}

        # 1. uploads playlist ids, 50 channels per call
        for chunk in _chunks(channel_ids, 50):
            try:
                data = await self._api(
                    "channels",
                    {"part": "contentDetails,snippet", "id": ",".join(chunk), "maxResults": 50},
                    self.COST_CHANNELS,
                )
            except EngineError as e:
                for cid in chunk:
                    result.failures[cid] = e
                continue
            for ch in data.get("items") or []:
                pl = ((ch.get("contentDetails") or {}).get("relatedPlaylists") or {}).get("uploads")
                if pl:
                    uploads[ch.get("id")] = (pl, (ch.get("snippet") or {}).get("title") or "")
            for cid in chunk:
                if cid not in uploads and cid not in result.failures:
                    result.failures[cid] = NotFound(f"youtube api: unknown channel {cid}", adapter=self.name)

        # 2. recent uploads per channel
        sem = asyncio.Semaphore(max(1, concurrency))

        async def _uploads(cid: str, playlist_id: str, channel_title: str) -> None:
            async with sem:
                try:
                    data = await self._api(
                        "playlistItems",
                        {"part": "snippet,contentDetails", "playlistId": playlist_id, "maxResults": min(max(1, limit), 50)},
                        self.COST_PLAYLIST_ITEMS,
                    )
                except NotFound:
                    # channel without uploads
                    result.items[cid] = []
                    return
                except EngineError as e:
                    result.failures[cid] = e
                    return
                result.items[cid] = self._playlist_items(cid, channel_title, data.get("items") or [])

        await asyncio.gather(*(_uploads(cid, pl, title) for cid, (pl, title) in uploads.items()))

        # 3. durations (optional, 1 unit per 50 videos)
        if self.settings.api_fetch_durations:
            await self._attach_durations(result)
        return result

    def _playlist_items(self, channel_id: str, channel_title: str, rows: List[dict]) -> List[VideoItem]:
        out: List[VideoItem] = []
        for row in rows:
            snippet = row.get("snippet") or {}
            details = row.get("contentDetails") or {}
            vid = details.get("videoId") or (snippet.get("resourceId") or {}).get("videoId")
            published = _parse_time(details.get("videoPublishedAt"))
            # private / deleted entries carry no videoPublishedAt
            if not vid or published is None:
                continue
            out.append(
                VideoItem(
                    id=vid,
                    title=snippet.get("title") or "Untitled",
                    channel_id=channel_id,
                    channel_title=snippet.get("videoOwnerChannelTitle") or channel_title,
                    published_at=published,
                    thumbnail_url=_best_thumbnail(snippet.get("thumbnails")) or video_thumb(vid),
                    description=snippet.get("description") or "",
                )
            )
        return out

    async def _attach_durations(self, result: BatchResult) -> None:
        by_id: Dict[str, VideoItem] = {}
        for items in result.items.values():
            for it in items:
                by_id[it.id] = it
        for chunk in _chunks(sorted(by_id), 50):
            try:
                data = await self._api(
                    "videos", {"part": "contentDetails", "id": ",".join(chunk), "maxResults": 50}, self.COST_VIDEOS
                )
            except EngineError as e:
                log.info("durations skipped: %s", e)
                return
            for row in data.get("items") or []:
                it = by_id.get(row.get("id"))
                if it is not None:
                    it.duration = parse_iso_duration((row.get("contentDetails") or {}).get("duration"))


# =====================================================================
# Syndication feed (Atom, free)
# =====================================================================

def _entry_video_id(entry: dict) -> Optional[str]:
    vid = entry.get("yt_videoid") or entry.get("yt:videoid")
    if vid:
        return vid
    eid = entry.get("id") or ""
    if eid.startswith("yt:video:"):
        return eid[len("yt:video:"):]
    link = (entry.get("link") or "") + " "
    if "watch?v=" in link:
        return link.split("watch?v=", 1)[1].split("&", 1)[0].strip()
    return None


def parse_feed(text: str, channel_id: str, limit: int) -> List[VideoItem]:
    """Parse one channel's Atom feed into VideoItems (channel_id is trusted)."""
    parsed = feedparser.parse(text)
    feed_meta = parsed.get("feed") or {}
    if parsed.get("bozo") and not parsed.get("entries") and not feed_meta.get("title"):
        raise ValueError(f"unparseable feed: {parsed.get('bozo_exception')!r}")

    channel_title = feed_meta.get("title") or ""
    out: List[VideoItem] = []
    for entry in (parsed.get("entries") or [])[: max(0, limit)]:
        vid = _entry_video_id(entry)
        if not vid:
            continue
        published = _parse_time(
            entry.get("published_parsed") or entry.get("updated_parsed") or entry.get("published")
        ) or EPOCH
        thumbs = entry.get("media_thumbnail") or []
        thumb = thumbs[0].get("url") if thumbs and isinstance(thumbs[0], dict) else None
        out.append(
            VideoItem(
                id=vid,
                title=entry.get("title") or "Untitled",
                channel_id=channel_id,
                channel_title=channel_title or entry.get("author") or "Unknown",
                published_at=published,
                thumbnail_url=thumb or video_thumb(vid),
                description=entry.get("media_description") or entry.get("summary") or "",
            )
        )
    return out


class RssFeedAdapter(TransportAdapter):
    name = "rss"
    supports_fetch = True

    async def fetch_recent_items(self, channel_id: str, limit: int) -> List[VideoItem]:
        if not is_canonical_id(channel_id):
            raise NotFound(f"rss: not a channel id {channel_id!r}", adapter=self.name)

        async def _call() -> List[VideoItem]:
            resp = await self._get(rss_feed_url(channel_id))
            return parse_feed(resp.text, channel_id, limit)

        return await self._guarded(_call)


# =====================================================================
# HTML scrape through rotating proxies
# =====================================================================

_RSS_ID_RE = re.compile(r"channel_id=(UC[0-9A-Za-z_-]{22})")
_CANONICAL_LINK_RE = re.compile(r"/channel/(UC[0-9A-Za-z_-]{22})")
_BROWSE_ID_RE = re.compile(r'"browseId":"(UC[0-9A-Za-z_-]{22})"')
_OG_TITLE_RE = re.compile(r'<meta property="og:title" content="([^"]+)"')
_OG_IMAGE_RE = re.compile(r'<meta property="og:image" content="([^"]+)"')


def extract_channel_from_html(page: str) -> Optional[tuple]:
    """(channel_id, title|None, thumbnail|None) or None."""
    for rx in (_RSS_ID_RE, _CANONICAL_LINK_RE, _BROWSE_ID_RE):
        m = rx.search(page)
        if m:
            title_m = _OG_TITLE_RE.search(page)
            image_m = _OG_IMAGE_RE.search(page)
            return (
                m.group(1),
                html.unescape(title_m.group(1)) if title_m else None,
                html.unescape(image_m.group(1)) if image_m else None,
            )
    return None


class ScrapeAdapter(TransportAdapter):
    name = "scrape"
    supports_resolve = True

    def __init__(self, client: httpx.AsyncClient, guard: Guard, settings: EngineSettings):
        super().__init__(client, guard, settings)
        self.proxies: List[str] = list(settings.scrape_proxies) or [""]
        self._cursor = 0

    def usable(self) -> bool:
        return bool(self.proxies)

    def _rotation(self) -> List[str]:
        start = self._cursor % len(self.proxies)
        self._cursor += 1
        return self.proxies[start:] + self.proxies[:start]

    @staticmethod
    def page_urls(ref: ChannelReference) -> List[str]:
        if ref.kind == "handle":
            return [f"https://www.youtube.com/@{ref.value}"]
        if ref.kind == "custom_url":
            return [
                f"https://www.youtube.com/c/{ref.value}",
                f"https://www.youtube.com/user/{ref.value}",
                f"https://www.youtube.com/{ref.value}",
            ]
        return [f"https://www.youtube.com/channel/{ref.value}"]

    async def _fetch_page(self, url: str) -> str:
        """Try every proxy once. NotFound only if the page itself is missing."""
        last: Optional[EngineError] = None
        headers = {"Accept-Language": "en-US,en;q=0.8"}
        for proxy in self._rotation():
            target = f"{proxy}{quote(url, safe='')}" if proxy else url
            try:
                resp = await self.client.get(target, headers=headers, follow_redirects=True)
            except httpx.HTTPError as e:
                last = TransientUpstreamError(f"scrape via {proxy or 'direct'}: {type(e).__name__}", adapter=self.name)
                continue
            if resp.status_code in (404, 410):
                if not proxy:
                    raise NotFound(f"scrape: {url} is {resp.status_code}", adapter=self.name)
                last = NotFound(f"scrape: {url} is {resp.status_code} via proxy", adapter=self.name)
                continue
            if resp.status_code >= 400:
                last = TransientUpstreamError(f"scrape via {proxy or 'direct'}: http {resp.status_code}", adapter=self.name)
                continue
            return resp.text
        raise last or TransientUpstreamError("scrape: no proxies configured", adapter=self.name)

    async def _resolve(self, ref: ChannelReference) -> ResolvedChannel:
        missing = 0
        urls = self.page_urls(ref)
        for url in urls:
            try:
                page = await self._fetch_page(url)
            except NotFound:
                missing += 1
                continue
            found = extract_channel_from_html(page)
            if found:
                cid, title, thumb = found
                return ResolvedChannel(
                    canonical_id=cid,
                    title=title or ref.value,
                    thumbnail_url=thumb,
                    source_adapter=self.name,
                )
            if "consent.youtube.com" in page or "consent.google" in page:
                raise TransientUpstreamError("scrape: consent wall", adapter=self.name)
            missing += 1
        raise NotFound(f"scrape: no channel id on {len(urls)} page(s) for {ref.value}", adapter=self.name)

    async def resolve(self, ref: ChannelReference) -> ResolvedChannel:
        # one logical call: one pacer slot, one breaker verdict
        budget = self.settings.http_timeout * len(self.proxies) * len(self.page_urls(ref)) + 1.0
        return await self._guarded(lambda: self._resolve(ref), timeout=budget)


# =====================================================================
# Public mirrors (Piped, then Invidious)
# =====================================================================

class MirrorAdapter(TransportAdapter):
    name = "mirror"
    supports_resolve = True
    supports_fetch = True

    def __init__(self, client: httpx.AsyncClient, guard: Guard, settings: EngineSettings):
        super().__init__(client, guard, settings)
        self.piped = [u.rstrip("/") for u in settings.piped_instances]
        self.invidious = [u.rstrip("/") for u in settings.invidious_instances]

    def usable(self) -> bool:
        return bool(self.piped or self.invidious)

    def _budget(self) -> float:
        return self.settings.http_timeout * max(1, len(self.piped) + len(self.invidious)) + 1.0

    async def _json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self._get(url, params=params)
        text = resp.text.lstrip()
        if text.startswith("<"):
            raise ValueError("html instead of json (cloudflare / error page)")
        return resp.json()

    # ---- resolve ----------------------------------------------------------

    def _matches(self, query: str, *names: Optional[str]) -> bool:
        q = _norm_name(query)
        return bool(q) and any(_norm_name(n) == q for n in names if n)

    def _pick(self, query: str, candidates: List[dict], names: Callable[[dict], tuple]) -> Optional[dict]:
        for c in candidates:
            if self._matches(query, *names(c)):
                return c
        if candidates and self.settings.mirror_accept_first_result:
            return candidates[0]
        return None

    async def _resolve(self, ref: ChannelReference) -> ResolvedChannel:
        query = ref.value
        answered = False

        for inst in self.piped:
            try:
                data = await self._json(f"{inst}/search", {"q": query, "filter": "channels"})
            except NotFound:
                continue
            except (EngineError, httpx.HTTPError, ValueError) as e:
                log.info("piped %s failed: %r", inst, e)
                continue
            answered = True
            items = [i for i in (data.get("items") or []) if isinstance(i, dict)] if isinstance(data, dict) else []
            match = self._pick(query, items, lambda c: (c.get("name"), (c.get("url") or "").rsplit("/", 1)[-1]))
            if match:
                cid = (match.get("url") or "").rsplit("/", 1)[-1]
                if CANONICAL_ID_RE.match(cid):
                    return ResolvedChannel(
                        canonical_id=cid,
                        title=match.get("name") or query,
                        thumbnail_url=_absolute(match.get("thumbnail")),
                        source_adapter=self.name,
                    )

        for inst in self.invidious:
            try:
                data = await self._json(f"{inst}/api/v1/search", {"q": query, "type": "channel"})
            except NotFound:
                continue
            except (EngineError, httpx.HTTPError, ValueError) as e:
                log.info("invidious %s failed: %r", inst, e)
                continue
            answered = True
            rows = [r for r in data if isinstance(r, dict)] if isinstance(data, list) else []
            match = self._pick(
                query,
                rows,
                lambda c: (c.get("author"), (c.get("channelHandle") or "").lstrip("@"), (c.get("authorUrl") or "").rsplit("@", 1)[-1]),
            )
            if match and CANONICAL_ID_RE.match(match.get("authorId") or ""):
                thumbs = match.get("authorThumbnails") or []
                return ResolvedChannel(
                    canonical_id=match["authorId"],
                    title=match.get("author") or query,
                    thumbnail_url=_absolute(thumbs[-1].get("url")) if thumbs else None,
                    source_adapter=self.name,
                )

        if answered:
            raise NotFound(f"mirror: no channel matching {query!r}", adapter=self.name)
        raise TransientUpstreamError("mirror: every instance failed", adapter=self.name)

    async def resolve(self, ref: ChannelReference) -> ResolvedChannel:
        return await self._guarded(lambda: self._resolve(ref), timeout=self._budget())

    # ---- fetch ------------------------------------------------------------

    def _piped_items(self, channel_id: str, data: dict, limit: int) -> List[VideoItem]:
        out: List[VideoItem] = []
        title = data.get("name") or ""
        for s in (data.get("relatedStreams") or [])[:limit]:
            url = s.get("url") or ""
            vid = url.split("v=", 1)[1].split("&", 1)[0] if "v=" in url else ""
            published = _parse_time(s.get("uploaded"))
            if not vid or published is None or (s.get("uploaded") or 0) <= 0:
                continue
            out.append(
                VideoItem(
                    id=vid,
                    title=s.get("title") or "Untitled",
                    channel_id=channel_id,
                    channel_title=s.get("uploaderName") or title,
                    published_at=published,
                    thumbnail_url=video_thumb(vid),
                    description=s.get("shortDescription") or "",
                    duration=s.get("duration") if (s.get("duration") or 0) > 0 else None,
                )
            )
        return out

    def _invidious_items(self, channel_id: str, data: Any, limit: int) -> List[VideoItem]:
        rows = data.get("videos") if isinstance(data, dict) else data
        out: List[VideoItem] = []
        for v in (rows or [])[:limit]:
            vid = v.get("videoId")
            published = _parse_time(v.get("published"))
            if not vid or published is None:
                continue
            out.append(
                VideoItem(
                    id=vid,
                    title=v.get("title") or "Untitled",
                    channel_id=channel_id,
                    channel_title=v.get("author") or "",
                    published_at=published,
                    thumbnail_url=video_thumb(vid),
                    description=v.get("description") or "",
                    duration=v.get("lengthSeconds") or None,
                )
            )
        return out

    async def _fetch(self, channel_id: str, limit: int) -> List[VideoItem]:
        missing = False
        for inst in self.piped:
            try:
                data = await self._json(f"{inst}/channel/{channel_id}")
                if isinstance(data, dict):
                    return self._piped_items(channel_id, data, limit)
            except NotFound:
                missing = True
            except (EngineError, httpx.HTTPError, ValueError) as e:
                log.info("piped %s channel %s failed: %r", inst, channel_id, e)
        for inst in self.invidious:
            try:
                data = await self._json(f"{inst}/api/v1/channels/{channel_id}/videos")
                return self._invidious_items(channel_id, data, limit)
            except NotFound:
                missing = True
            except (EngineError, httpx.HTTPError, ValueError) as e:
                log.info("invidious %s channel %s failed: %r", inst, channel_id, e)
        if missing:
            raise NotFound(f"mirror: channel {channel_id} not found", adapter=self.name)
        raise TransientUpstreamError(f"mirror: every instance failed for {channel_id}", adapter=self.name)

    async def fetch_recent_items(self, channel_id: str, limit: int) -> List[VideoItem]:
        return await self._guarded(lambda: self._fetch(channel_id, limit), timeout=self._budget())


# =====================================================================
# Factory
# =====================================================================

ADAPTER_TYPES = {
    YouTubeApiAdapter.name: YouTubeApiAdapter,
    RssFeedAdapter.name: RssFeedAdapter,
    ScrapeAdapter.name: ScrapeAdapter,
    MirrorAdapter.name: MirrorAdapter,
}


def build_adapters(
    settings: EngineSettings,
    client: httpx.AsyncClient,
    guards: GuardRegistry,
    quota: QuotaMeter,
) -> Dict[str, TransportAdapter]:
    """Instantiate every adapter named in resolve_order / fetch_order."""
    wanted = list(dict.fromkeys(list(settings.resolve_order) + list(settings.fetch_order)))
    out: Dict[str, TransportAdapter] = {}
    for name in wanted:
        cls = ADAPTER_TYPES.get(name)
        if cls is None:
            log.warning("unknown adapter %r in config; ignored", name)
            continue
        if cls is YouTubeApiAdapter:
            out[name] = YouTubeApiAdapter(client, guards.get(name), settings, quota)
        else:
            out[name] = cls(client, guards.get(name), settings)
    return out

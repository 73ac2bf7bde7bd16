# apps/workers/references.py
#
# Channel reference parsing + synthetic temp ids.
#
#   "UCxxxxxxxxxxxxxxxxxxxxxx"                  -> canonical_id
#   "@SomeHandle", "youtube.com/@SomeHandle"    -> handle      (temp id handle_somehandle)
#   "youtube.com/c/Name", "/user/Name", "Name"  -> custom_url  (temp id custom_name)
#   "youtube.com/channel/UC..."                 -> canonical_id
#
# Temp ids are the only ids the engine invents. They are deterministic so that
# resolving the same reference twice lands on the same redirect key.

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlparse

from apps.workers.errors import InvalidReference
from apps.workers.models import ChannelReference

__all__ = [
    "CANONICAL_ID_RE",
    "HANDLE_PREFIX",
    "CUSTOM_PREFIX",
    "is_canonical_id",
    "is_temp_id",
    "normalize_temp_id",
    "parse_channel_input",
    "make_reference",
    "synthetic_temp_id",
    "reference_from_temp_id",
    "display_title",
    "rss_feed_url",
]

CANONICAL_ID_RE = re.compile(r"^UC[0-9A-Za-z_-]{22}$")
_HANDLE_RE = re.compile(r"^[0-9A-Za-z_.-]{1,100}$")
_CUSTOM_RE = re.compile(r"^[0-9A-Za-z_.-]{1,100}$")

HANDLE_PREFIX = "handle_"
CUSTOM_PREFIX = "custom_"

_YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com"}

# path segments that are never a vanity name
_RESERVED_PATHS = {"watch", "feed", "results", "playlist", "shorts", "embed", "live", "channel"}

RSS_FEED_URL = "https://www.youtube.com/feeds/videos.xml?channel_id={}"


def is_canonical_id(value: Optional[str]) -> bool:
    return bool(value) and bool(CANONICAL_ID_RE.match(value))


def is_temp_id(value: Optional[str]) -> bool:
    if not value:
        return False
    return value.startswith(HANDLE_PREFIX) or value.startswith(CUSTOM_PREFIX)


def normalize_temp_id(value: str) -> str:
    """
    Redirect key for a temp id: prefix kept, name lowercased. Clients store
    handle_SomeName as typed; handles and custom names are case-insensitive.
    """
    for prefix in (HANDLE_PREFIX, CUSTOM_PREFIX):
        if value.startswith(prefix):
            return prefix + value[len(prefix):].lower()
    return value


def rss_feed_url(canonical_id: str) -> str:
    return RSS_FEED_URL.format(canonical_id)


def make_reference(kind: str, value: str, display_hint: Optional[str] = None) -> ChannelReference:
    """Validate + normalize one reference. Raises InvalidReference."""
    v = (value or "").strip()
    if kind == "canonical_id":
        if not is_canonical_id(v):
            raise InvalidReference(f"not a channel id: {value!r}")
    elif kind == "handle":
        v = v[1:] if v.startswith("@") else v
        if not _HANDLE_RE.match(v):
            raise InvalidReference(f"not a handle: {value!r}")
    elif kind == "custom_url":
        if not _CUSTOM_RE.match(v):
            raise InvalidReference(f"not a custom url name: {value!r}")
    else:
        raise InvalidReference(f"unknown reference kind: {kind!r}")
    return ChannelReference(kind=kind, value=v, display_hint=display_hint)


def parse_channel_input(raw: str, display_hint: Optional[str] = None) -> ChannelReference:
    """
    Parse whatever the user typed / imported into a ChannelReference.

    Non-YouTube URLs and empty input raise InvalidReference. Temp ids
    (handle_x / custom_x) are accepted too so stored subscriptions can be fed
    back in.
    """
    s = (raw or "").strip()
    if not s:
        raise InvalidReference("empty channel reference")

    if is_canonical_id(s):
        return make_reference("canonical_id", s, display_hint)

    if is_temp_id(s):
        return reference_from_temp_id(s, display_hint)

    if s.startswith("@"):
        return make_reference("handle", s, display_hint)

    if "/" not in s and "." not in s:
        return make_reference("custom_url", s, display_hint)

    url = s if "://" in s else f"https://{s}"
    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise InvalidReference(f"unparseable url: {raw!r}") from e

    host = (parsed.hostname or "").lower()
    if host not in _YOUTUBE_HOSTS:
        raise InvalidReference(f"not a youtube url: {raw!r}")

    parts = [p for p in parsed.path.split("/") if p]
    if not parts:
        raise InvalidReference(f"no channel in url: {raw!r}")

    head = parts[0]
    if head == "channel" and len(parts) > 1:
        return make_reference("canonical_id", parts[1], display_hint)
    if head.startswith("@"):
        return make_reference("handle", head, display_hint)
    if head in ("c", "user") and len(parts) > 1:
        return make_reference("custom_url", parts[1], display_hint)
    if head.lower() in _RESERVED_PATHS:
        raise InvalidReference(f"url does not point at a channel: {raw!r}")
    return make_reference("custom_url", head, display_hint)


def synthetic_temp_id(ref: ChannelReference) -> Optional[str]:
    """handle_<h> / custom_<v>, lowercased. None for canonical ids."""
    if ref.kind == "handle":
        return normalize_temp_id(f"{HANDLE_PREFIX}{ref.value}")
    if ref.kind == "custom_url":
        return normalize_temp_id(f"{CUSTOM_PREFIX}{ref.value}")
    return None


def reference_from_temp_id(temp_id: str, display_hint: Optional[str] = None) -> ChannelReference:
    if temp_id.startswith(HANDLE_PREFIX):
        return make_reference("handle", temp_id[len(HANDLE_PREFIX):], display_hint)
    if temp_id.startswith(CUSTOM_PREFIX):
        return make_reference("custom_url", temp_id[len(CUSTOM_PREFIX):], display_hint)
    raise InvalidReference(f"not a temp id: {temp_id!r}")


def display_title(ref: ChannelReference) -> str:
    """Placeholder title for a channel we could not resolve."""
    if ref.display_hint:
        return ref.display_hint
    if ref.kind == "handle":
        return f"@{ref.value}"
    if ref.kind == "custom_url":
        return ref.value
    return f"Channel {ref.value[:8]}..."

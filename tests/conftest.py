from __future__ import annotations

from typing import Callable, Dict, List, Optional

import fakeredis
import httpx
import pytest

from apps.workers.config import EngineSettings
from apps.workers.engine import Engine

Handler = Callable[[httpx.Request], httpx.Response]


def cid(n: int) -> str:
    """A canonical-shaped channel id: UC + 22 chars."""
    return f"UC{n:022d}"


CID_A = cid(1)
CID_B = cid(2)
CID_C = cid(3)


def atom_feed(channel_id: str, title: str, entries: List[Dict[str, str]]) -> str:
    """Minimal channel feed in the shape youtube serves at /feeds/videos.xml."""
    body = []
    for e in entries:
        body.append(
            f"""
  <entry>
    <id>yt:video:{e['id']}</id>
    <yt:videoId>{e['id']}</yt:videoId>
    <yt:channelId>{channel_id}</yt:channelId>
    <title>{e.get('title', e['id'])}</title>
    <link rel="alternate" href="https://www.youtube.com/watch?v={e['id']}"/>
    <author><name>{title}</name></author>
    <published>{e['published']}</published>
    <updated>{e['published']}</updated>
    <media:group>
      <media:title>{e.get('title', e['id'])}</media:title>
      <media:thumbnail url="https://i1.ytimg.com/vi/{e['id']}/hqdefault.jpg" width="480" height="360"/>
      <media:description>about {e['id']}</media:description>
    </media:group>
  </entry>"""
        )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015" xmlns:media="http://search.yahoo.com/mrss/" xmlns="http://www.w3.org/2005/Atom">
  <id>yt:channel:{channel_id[2:]}</id>
  <yt:channelId>{channel_id}</yt:channelId>
  <title>{title}</title>
  <author><name>{title}</name></author>
  <published>2015-01-01T00:00:00+00:00</published>{''.join(body)}
</feed>
"""


def channel_page(channel_id: str, title: str) -> str:
    return (
        "<html><head>"
        f'<meta property="og:title" content="{title}">'
        '<meta property="og:image" content="https://yt3.ggpht.com/avatar.jpg">'
        f'<link rel="alternate" type="application/rss+xml" '
        f'href="https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}">'
        "</head><body></body></html>"
    )


class Recorder:
    """Routes requests to a handler and keeps every request it saw."""

    def __init__(self, handler: Handler):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def hosts(self) -> List[str]:
        return [r.url.host for r in self.requests]


def not_found(_: httpx.Request) -> httpx.Response:
    return httpx.Response(404, text="not found")


@pytest.fixture
def conn():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        redis_url="redis://unused:6379/0",
        youtube_api_key=None,
        youtube_api_base="https://yt.test/youtube/v3",
        resolve_order=["scrape", "mirror"],
        fetch_order=["rss"],
        scrape_proxies=[""],
        piped_instances=["https://piped.test"],
        invidious_instances=["https://inv.test"],
        pacing={},
        base_delay=0.0,
        rss_batch_delay=0.0,
        api_batch_delay=0.0,
        failure_threshold=3,
        reset_timeout=60.0,
        http_timeout=5.0,
    )


@pytest.fixture
def make_engine(conn, settings):
    def _make(handler: Optional[Handler] = None, **overrides) -> Engine:
        s = settings.model_copy(update=overrides) if overrides else settings
        transport = httpx.MockTransport(handler or not_found)
        return Engine(s, conn=conn, transport=transport)

    return _make

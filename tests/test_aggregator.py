from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import List

import httpx
import pytest

from apps.workers.aggregator import merge_items
from apps.workers.errors import StorageError
from apps.workers.models import AggregateRun, SyncDocument, VideoItem
from tests.conftest import CID_A, CID_B, CID_C, atom_feed, channel_page, cid

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class Sleeps:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _iso(minutes: int) -> str:
    return (T0 + timedelta(minutes=minutes)).isoformat()


def feeds(request: httpx.Request) -> httpx.Response:
    """Two uploads per channel, ids derived from the channel id."""
    if request.url.host == "www.youtube.com" and request.url.path == "/feeds/videos.xml":
        channel = request.url.params["channel_id"]
        n = int(channel[2:])
        return httpx.Response(
            200,
            text=atom_feed(
                channel,
                f"Channel {n}",
                [
                    {"id": f"v{n:03d}new", "published": _iso(n * 10)},
                    {"id": f"v{n:03d}old", "published": _iso(n * 10 - 1000)},
                ],
            ),
        )
    return httpx.Response(404)


def _seed(engine, subscriptions: list, **extra) -> None:
    engine.sync_store.save(SyncDocument.model_validate(dict(subscriptions=subscriptions, **extra)))


def _item(vid: str, minutes: int, channel: str = CID_A) -> VideoItem:
    return VideoItem(id=vid, title=vid, channel_id=channel, published_at=T0 + timedelta(minutes=minutes))


# ---------------------------------------------------------------------------
# merge
# ---------------------------------------------------------------------------

def test_merge_dedupes_sorts_and_bounds() -> None:
    batches = [
        [_item("b", 5), _item("a", 5), _item("dup", 1)],
        [_item("dup", 1, channel=CID_B), _item("c", 9)],
    ]
    out = merge_items(batches, {}, max_items=3)

    assert [it.id for it in out] == ["c", "a", "b"]
    assert len({it.id for it in merge_items(batches, {}, 100)}) == 4


def test_merge_last_write_wins_and_rewrites_channel_ids() -> None:
    out = merge_items(
        [[_item("dup", 1, channel=CID_A)], [_item("dup", 1, channel=CID_B)]],
        {CID_B: CID_C},
        max_items=10,
    )
    assert len(out) == 1
    assert out[0].channel_id == CID_C


def test_merge_is_deterministic() -> None:
    items = [_item(f"v{i}", i % 4) for i in range(20)]
    expected = [it.id for it in merge_items([items], {}, 50)]
    for seed in range(5):
        shuffled = items[:]
        random.Random(seed).shuffle(shuffled)
        assert [it.id for it in merge_items([shuffled], {}, 50)] == expected


# ---------------------------------------------------------------------------
# full runs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_seven_channels_batch_two_runs_four_batches(make_engine) -> None:
    engine = make_engine(feeds, rss_batch_size=2, rss_batch_delay=1.5)
    _seed(engine, [{"id": cid(n)} for n in range(1, 8)])
    sleeps = Sleeps()
    aggregator = engine.aggregator(sleep=sleeps)

    run = await aggregator.run("test")

    assert aggregator.batches_run == 4
    assert sleeps.calls == [1.5, 1.5, 1.5]
    assert run.status == "published"
    assert run.channels_requested == 7
    assert run.channels_succeeded == 7
    assert run.channels_failed == 0
    assert run.items_produced == 14
    assert run.transports_used == {"rss": 7}
    assert aggregator.phase == "idle"

    items, published, attempt = engine.aggregate_store.snapshot()
    assert published.run_id == run.run_id
    assert attempt.run_id == run.run_id
    assert items[0].id == "v007new"
    stamps = [(it.published_at, it.id) for it in items]
    assert stamps == sorted(stamps, key=lambda p: (-p[0].timestamp(), p[1]))


@pytest.mark.asyncio
async def test_output_is_bounded(make_engine) -> None:
    engine = make_engine(feeds, max_items=5)
    _seed(engine, [{"id": cid(n)} for n in range(1, 6)])
    run = await engine.aggregator(sleep=Sleeps()).run()

    items, _, _ = engine.aggregate_store.snapshot()
    assert run.items_produced == 5
    assert len(items) == 5
    assert len({it.id for it in items}) == 5


@pytest.mark.asyncio
async def test_temp_id_resolves_merges_and_heals_document(make_engine) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "www.youtube.com" and request.url.path == "/@foo":
            return httpx.Response(200, text=channel_page(CID_A, "Foo"))
        return feeds(request)

    engine = make_engine(handler)
    _seed(
        engine,
        [
            {"id": "handle_foo", "title": "@foo"},
            {"id": CID_A, "title": "Alpha", "isFavorite": True},
        ],
        watchedVideos=["x1"],
    )

    run = await engine.aggregator(sleep=Sleeps()).run()

    assert run.unresolved_channels == []
    assert run.channels_requested == 1
    assert engine.redirects.get_all() == {"handle_foo": CID_A}

    doc = engine.sync_store.load().to_wire()
    assert [s["id"] for s in doc["subscriptions"]] == [CID_A]
    assert doc["subscriptions"][0]["isFavorite"] is True
    assert doc["watchedVideos"] == ["x1"]

    items, _, _ = engine.aggregate_store.snapshot()
    assert {it.channel_id for it in items} == {CID_A}


@pytest.mark.asyncio
async def test_unresolved_channels_are_reported_not_dropped(make_engine) -> None:
    engine = make_engine(feeds)
    _seed(engine, [{"id": "handle_ghost", "title": "@ghost"}, {"id": CID_A}])

    run = await engine.aggregator(sleep=Sleeps()).run()

    assert run.unresolved_channels == ["handle_ghost"]
    assert run.channels_requested == 1
    assert engine.redirects.get_all() == {}
    ids = [s.id for s in engine.sync_store.load().subscriptions]
    assert ids == ["handle_ghost", CID_A]


@pytest.mark.asyncio
async def test_failing_transport_falls_through_to_next(make_engine) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("channel_id") == CID_B:
            return httpx.Response(503)
        if request.url.host == "piped.test" and request.url.path == f"/channel/{CID_B}":
            return httpx.Response(
                200,
                json={"name": "B", "relatedStreams": [{"url": "/watch?v=vPIPEDb0001", "title": "b", "uploaded": 1714550400000}]},
            )
        return feeds(request)

    engine = make_engine(handler, fetch_order=["rss", "mirror"])
    _seed(engine, [{"id": CID_A}, {"id": CID_B}])

    run = await engine.aggregator(sleep=Sleeps()).run()

    assert run.channels_succeeded == 2
    assert run.channels_failed == 0
    assert run.transports_used == {"rss": 1, "mirror": 1}
    assert "vPIPEDb0001" in engine.aggregate_store.item_ids()


@pytest.mark.asyncio
async def test_quota_exhaustion_switches_to_unmetered_batches(make_engine) -> None:
    quota_body = {"error": {"code": 403, "errors": [{"reason": "quotaExceeded"}]}}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "yt.test":
            return httpx.Response(403, json=quota_body)
        return feeds(request)

    engine = make_engine(
        handler,
        youtube_api_key="test-key",
        fetch_order=["youtube_api", "rss"],
        api_batch_size=2,
        api_batch_delay=0.25,
        rss_batch_size=1,
        rss_batch_delay=0.75,
    )
    _seed(engine, [{"id": CID_A}, {"id": CID_B}, {"id": CID_C}])
    sleeps = Sleeps()
    aggregator = engine.aggregator(sleep=sleeps)

    run = await aggregator.run()

    assert aggregator.batches_run == 2
    assert sleeps.calls == [0.25]
    assert run.channels_succeeded == 3
    assert run.transports_used == {"rss": 3}
    assert run.quota_consumed == 1


@pytest.mark.asyncio
async def test_empty_run_preserves_previous_items(make_engine) -> None:
    state = {"down": False}

    def handler(request: httpx.Request) -> httpx.Response:
        if state["down"]:
            return httpx.Response(503)
        return feeds(request)

    engine = make_engine(handler)
    _seed(engine, [{"id": CID_A}, {"id": CID_B}])
    first = await engine.aggregator(sleep=Sleeps()).run()
    before = engine.aggregate_store.item_ids()
    assert len(before) == 4

    state["down"] = True
    second = await engine.aggregator(sleep=Sleeps()).run()

    assert second.status == "published"
    assert second.stale is True
    assert second.items_produced == 0
    assert second.channels_failed == 2
    items, run, _ = engine.aggregate_store.snapshot()
    assert [it.id for it in items] == before
    assert run.run_id == second.run_id
    assert run.run_id != first.run_id


@pytest.mark.asyncio
async def test_empty_run_can_clear_items(make_engine) -> None:
    engine = make_engine(feeds, empty_run_policy="empty")
    engine.aggregate_store.publish([_item("old", 0)], AggregateRun(run_id="r0", status="published"))
    _seed(engine, [])

    run = await engine.aggregator(sleep=Sleeps()).run()

    assert run.stale is False
    assert engine.aggregate_store.item_ids() == []


@pytest.mark.asyncio
async def test_storage_failure_keeps_previous_snapshot(make_engine, monkeypatch) -> None:
    engine = make_engine(feeds)
    engine.aggregate_store.publish([_item("old", 0)], AggregateRun(run_id="r0", status="published"))
    _seed(engine, [{"id": CID_A}])

    def boom(items, run):
        raise StorageError("redis went away")

    monkeypatch.setattr(engine.aggregate_store, "publish", boom)
    run = await engine.aggregator(sleep=Sleeps()).run()

    assert run.status == "failed"
    assert "redis went away" in run.error
    items, published, attempt = engine.aggregate_store.snapshot()
    assert [it.id for it in items] == ["old"]
    assert published.run_id == "r0"
    assert attempt.run_id == run.run_id
    assert attempt.status == "failed"


@pytest.mark.asyncio
async def test_cancellation_publishes_nothing(make_engine) -> None:
    engine = make_engine(feeds, rss_batch_size=1)
    engine.aggregate_store.publish([_item("old", 0)], AggregateRun(run_id="r0", status="published"))
    _seed(engine, [{"id": CID_A}, {"id": CID_B}])

    async def cancel_between_batches(seconds: float) -> None:
        raise asyncio.CancelledError()

    aggregator = engine.aggregator(sleep=cancel_between_batches)
    with pytest.raises(asyncio.CancelledError):
        await aggregator.run()

    items, published, attempt = engine.aggregate_store.snapshot()
    assert [it.id for it in items] == ["old"]
    assert published.run_id == "r0"
    assert attempt.status == "cancelled"
    assert aggregator.phase == "idle"


@pytest.mark.asyncio
async def test_mixed_case_temp_ids_heal(make_engine) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "www.youtube.com" and request.url.path == "/@Foo":
            return httpx.Response(200, text=channel_page(CID_A, "Foo"))
        if request.url.host == "www.youtube.com" and request.url.path == "/c/MyChan":
            return httpx.Response(200, text=channel_page(CID_B, "My Chan"))
        return feeds(request)

    engine = make_engine(handler)
    _seed(engine, [{"id": "handle_Foo"}, {"id": "custom_MyChan"}])

    run = await engine.aggregator(sleep=Sleeps()).run()

    assert engine.redirects.get_all() == {"handle_foo": CID_A, "custom_mychan": CID_B}
    assert [s.id for s in engine.sync_store.load().subscriptions] == [CID_A, CID_B]
    assert run.unresolved_channels == []
    assert run.channels_requested == 2
    assert run.channels_succeeded == 2


@pytest.mark.asyncio
async def test_malformed_ids_are_reported_as_unresolved(make_engine) -> None:
    engine = make_engine(feeds)
    _seed(engine, [{"id": CID_A}, {"id": "UCtruncated"}])

    run = await engine.aggregator(sleep=Sleeps()).run()

    assert run.channels_requested == 1
    assert run.unresolved_channels == ["UCtruncated"]


@pytest.mark.asyncio
async def test_timed_out_channel_fails_alone(make_engine) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("channel_id") == CID_B:
            raise httpx.ReadTimeout("upstream stalled", request=request)
        return feeds(request)

    # one at a time so the stalled channel is the last call the breaker sees
    engine = make_engine(handler, rss_concurrency=1)
    _seed(engine, [{"id": CID_A}, {"id": CID_B}])

    run = await engine.aggregator(sleep=Sleeps()).run()

    assert run.status == "published"
    assert run.channels_succeeded == 1
    assert run.channels_failed == 1
    assert engine.adapters["rss"].guard.breaker.consecutive_failures == 1
    items, _, _ = engine.aggregate_store.snapshot()
    assert {it.channel_id for it in items} == {CID_A}

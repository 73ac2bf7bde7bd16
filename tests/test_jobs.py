from __future__ import annotations

import fakeredis
import httpx
from rq import Queue

from apps.scheduler import main as scheduler_main
from apps.workers.enqueuer import enqueue_aggregation
from apps.workers.jobs import aggregate_feeds
from apps.workers.models import SyncDocument
from apps.workers.stores import AggregateStore, RedirectStore, RunGuard, SyncStore
from tests.conftest import CID_A, Recorder, atom_feed


def _feed(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/feeds/videos.xml":
        return httpx.Response(
            200,
            text=atom_feed(CID_A, "Alpha", [{"id": "vALPHA00001", "published": "2024-05-01T10:00:00+00:00"}]),
        )
    return httpx.Response(404)


def test_second_run_is_skipped_while_lock_held(conn, settings) -> None:
    guard = RunGuard(conn, settings.run_lock_key, settings.run_lock_ttl)
    token = guard.acquire()
    assert token is not None

    assert aggregate_feeds("test", settings=settings, conn=conn) == {"ok": True, "skipped": True}
    guard.release(token)


def test_inline_run_publishes_and_releases_lock(conn, settings) -> None:
    redirects = RedirectStore(conn, settings.redirects_key, settings.redirects_generation_key)
    SyncStore(conn, settings.sync_doc_key, redirects).save(SyncDocument.model_validate({"subscriptions": [{"id": CID_A}]}))

    res = aggregate_feeds("test", settings=settings, conn=conn, transport=httpx.MockTransport(_feed))

    assert res["ok"] is True
    assert res["skipped"] is False
    assert res["status"] == "published"
    assert res["itemsProduced"] == 1
    assert AggregateStore(
        conn, settings.feed_items_key, settings.feed_run_key, settings.feed_attempt_key, settings.max_items
    ).item_ids() == ["vALPHA00001"]
    assert RunGuard(conn, settings.run_lock_key, settings.run_lock_ttl).acquire() is not None


def test_breaker_state_does_not_carry_across_runs(conn, settings) -> None:
    s = settings.model_copy(update={"failure_threshold": 1})
    redirects = RedirectStore(conn, s.redirects_key, s.redirects_generation_key)
    SyncStore(conn, s.sync_doc_key, redirects).save(SyncDocument.model_validate({"subscriptions": [{"id": CID_A}]}))
    rec = Recorder(lambda r: httpx.Response(503))

    first = aggregate_feeds("test", settings=s, conn=conn, transport=httpx.MockTransport(rec))
    second = aggregate_feeds("test", settings=s, conn=conn, transport=httpx.MockTransport(rec))

    assert first["channelsFailed"] == 1
    assert second["channelsFailed"] == 1
    # the circuit opened by the first run is gone: the second run asks upstream again
    assert len(rec.requests) == 2


def test_enqueue_keeps_single_pending_job(settings) -> None:
    raw = fakeredis.FakeRedis(server=fakeredis.FakeServer())

    first = enqueue_aggregation("sync", settings=settings, conn=raw)
    second = enqueue_aggregation("refresh", settings=settings, conn=raw)

    assert first == {"queued": True, "jobId": settings.pending_job_id}
    assert second == {"queued": False, "jobId": settings.pending_job_id}
    assert Queue(settings.queue_name, connection=raw).count == 1


def test_scheduler_one_shot_enqueues_once(settings, monkeypatch) -> None:
    calls = []

    def fake_enqueue(reason, **kwargs):
        calls.append(reason)
        return {"queued": True, "jobId": "aggregate-pending"}

    monkeypatch.setenv("ONE_SHOT", "1")
    monkeypatch.delenv("RUN_INLINE", raising=False)
    monkeypatch.setattr(scheduler_main, "get_settings", lambda: settings)
    monkeypatch.setattr(scheduler_main, "enqueue_aggregation", fake_enqueue)

    scheduler_main.main()

    assert calls == ["schedule"]


def test_scheduler_rejects_bad_interval(settings) -> None:
    bad = settings.model_copy(update={"poll_interval_min": 0})
    try:
        scheduler_main._read_config(bad)
    except RuntimeError as e:
        assert "POLL_INTERVAL_MIN" in str(e)
    else:
        raise AssertionError("expected RuntimeError")

from __future__ import annotations

from apps.workers.models import Subscription
from apps.workers.subscriptions import apply_redirects, unresolved_ids
from tests.conftest import CID_A, CID_B


def _subs(*rows: dict):
    return [Subscription.model_validate(r) for r in rows]


def test_rewrite_uses_meta_for_resolved_entries() -> None:
    subs = _subs({"id": "handle_foo", "title": "@foo"}, {"id": CID_B, "title": "Bravo"})
    meta = {CID_A: {"title": "Foo Channel", "thumbnailUrl": "https://img/foo.jpg"}}

    out, changed = apply_redirects(subs, {"handle_foo": CID_A}, meta)

    assert changed
    assert [s.id for s in out] == [CID_A, CID_B]
    assert out[0].title == "Foo Channel"
    assert out[0].thumbnail == "https://img/foo.jpg"
    # input untouched
    assert subs[0].id == "handle_foo"


def test_duplicates_after_redirect_are_merged_not_dropped() -> None:
    subs = _subs(
        {"id": CID_A, "title": "Alpha"},
        {"id": "handle_alpha", "title": "@alpha", "thumbnail": "https://img/a.jpg", "isFavorite": True},
    )

    out, changed = apply_redirects(subs, {"handle_alpha": CID_A})

    assert changed
    assert len(out) == 1
    only = out[0]
    assert only.id == CID_A
    assert only.title == "Alpha"
    assert only.thumbnail == "https://img/a.jpg"
    assert only.to_wire()["isFavorite"] is True


def test_no_redirects_no_change() -> None:
    subs = _subs({"id": CID_A}, {"id": "custom_x"})
    out, changed = apply_redirects(subs, {})
    assert not changed
    assert [s.id for s in out] == [CID_A, "custom_x"]
    assert unresolved_ids(out) == ["custom_x"]


def test_plain_duplicates_are_merged_too() -> None:
    out, changed = apply_redirects(_subs({"id": CID_A}, {"id": CID_A, "isMuted": True}), {})
    assert changed
    assert len(out) == 1
    assert out[0].is_muted is True


def test_mixed_case_temp_ids_match_their_redirects() -> None:
    subs = _subs({"id": "handle_Foo"}, {"id": "custom_MyChan"}, {"id": "handle_Ghost"})
    out, changed = apply_redirects(subs, {"handle_foo": CID_A, "custom_mychan": CID_B})

    assert changed
    assert [s.id for s in out] == [CID_A, CID_B, "handle_Ghost"]

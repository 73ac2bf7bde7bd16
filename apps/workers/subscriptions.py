# apps/workers/subscriptions.py
#
# Redirect application for subscription lists.
#
# Rewriting ids can make two entries collide (a temp handle_x that resolves to
# a channel the user already follows). Collisions are MERGED, never dropped:
# the first entry keeps its position and borrows whatever fields it lacks from
# the later ones. The output has exactly one entry per distinct final id.

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from apps.workers.models import Subscription
from apps.workers.references import is_temp_id, normalize_temp_id

__all__ = ["apply_redirects", "unresolved_ids"]


def _merge_into(keep: Subscription, other: Subscription) -> None:
    for field in ("title", "thumbnail", "description", "is_muted"):
        if getattr(keep, field) is None and getattr(other, field) is not None:
            setattr(keep, field, getattr(other, field))
    extras = other.model_extra or {}
    mine = keep.model_extra if keep.model_extra is not None else {}
    for k, v in extras.items():
        if k not in mine:
            setattr(keep, k, v)


def apply_redirects(
    subscriptions: Iterable[Subscription],
    redirects: Mapping[str, str],
    meta: Optional[Mapping[str, dict]] = None,
) -> Tuple[List[Subscription], bool]:
    """
    Rewrite ids through `redirects` and merge the duplicates that creates.

    `meta` (canonical id -> {title, thumbnailUrl}) replaces the placeholder
    title/thumbnail of entries that were rewritten. Returns (list, changed).
    """
    meta = meta or {}
    out: List[Subscription] = []
    by_id: Dict[str, Subscription] = {}
    changed = False

    for sub in subscriptions:
        entry = sub.model_copy(deep=True)
        target = redirects.get(entry.id) or redirects.get(normalize_temp_id(entry.id))
        if target and target != entry.id:
            entry.id = target
            info = meta.get(target) or {}
            if info.get("title"):
                entry.title = info["title"]
            if info.get("thumbnailUrl"):
                entry.thumbnail = info["thumbnailUrl"]
            changed = True

        seen = by_id.get(entry.id)
        if seen is not None:
            _merge_into(seen, entry)
            changed = True
            continue
        by_id[entry.id] = entry
        out.append(entry)

    return out, changed


def unresolved_ids(subscriptions: Iterable[Subscription]) -> List[str]:
    return [s.id for s in subscriptions if is_temp_id(s.id)]

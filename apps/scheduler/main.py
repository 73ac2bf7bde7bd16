# apps/scheduler/main.py
#
# ─────────────────────────────────────────────────────────────────────
# SCHEDULER ROLE (this process = "scheduler" container / cron brain)
# ─────────────────────────────────────────────────────────────────────
#
#   every poll_interval_min (+ jitter):
#       enqueue_aggregation("schedule")      -> rq "default" -> aggregate_feeds()
#
#   The scheduler never fetches, resolves or publishes anything itself.
#   Overlap is impossible by construction:
#     - enqueue_aggregation() keeps at most ONE pending job
#     - aggregate_feeds() holds a redis run lock while it works
#
# ─────────────────────────────────────────────────────────────────────
# CONFIG INPUTS (env or the ENGINE_CONFIG_FILE yaml, see workers/config.py)
# ─────────────────────────────────────────────────────────────────────
#
#   POLL_INTERVAL_MIN   minutes between ticks (default 15)
#   POLL_JITTER_SEC     random pad added to each sleep
#   ONE_SHOT=1          one tick then exit (tests / cron)
#   RUN_INLINE=1        run aggregate_feeds() in this process instead of
#                       enqueueing it; SIGTERM cancels the run cleanly
#

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from dataclasses import dataclass

from apps.workers.config import EngineSettings, get_settings
from apps.workers.enqueuer import enqueue_aggregation
from apps.workers.jobs import aggregate_feeds

log = logging.getLogger("subfeed.scheduler")


def _flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Config:
    poll_every_min: int     # run a full cycle this often
    jitter_seconds: float   # random pad between cycles
    one_shot: bool          # run one cycle then exit
    run_inline: bool        # aggregate in-process instead of via rq


def _read_config(settings: EngineSettings) -> Config:
    if settings.poll_interval_min <= 0:
        raise RuntimeError("POLL_INTERVAL_MIN must be a positive number of minutes")
    return Config(
        poll_every_min=int(settings.poll_interval_min),
        jitter_seconds=float(settings.poll_jitter_sec or 0.0),
        one_shot=_flag("ONE_SHOT"),
        run_inline=_flag("RUN_INLINE"),
    )


def _tick(cfg: Config, settings: EngineSettings) -> bool:
    """One trigger. Returns False when an inline run was cancelled (SIGTERM)."""
    if not cfg.run_inline:
        res = enqueue_aggregation("schedule", settings=settings)
        log.info("tick queued=%s job=%s", res["queued"], res["jobId"])
        return True

    try:
        res = aggregate_feeds("schedule", handle_sigterm=True, settings=settings)
    except asyncio.CancelledError:
        log.warning("inline run cancelled; exiting")
        return False
    log.info("tick inline %s", res)
    return True


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s %(message)s",
    )
    cfg = _read_config(settings)

    log.info(
        "boot: interval=%dm jitter<=%ss one_shot=%s inline=%s",
        cfg.poll_every_min, cfg.jitter_seconds, cfg.one_shot, cfg.run_inline,
    )

    while True:
        cycle_start = time.monotonic()

        try:
            keep_going = _tick(cfg, settings)
        except Exception as e:
            # redis blip etc.; next tick retries
            log.error("tick failed: %r", e)
            keep_going = True

        if cfg.one_shot or not keep_going:
            log.info("scheduler exiting after single pass")
            return

        elapsed = time.monotonic() - cycle_start

        # aim for poll_every_min (+ jitter); no catching up when slow
        base_period = float(cfg.poll_every_min) * 60.0
        jitter = random.uniform(0.0, cfg.jitter_seconds) if cfg.jitter_seconds else 0.0
        sleep_for = max(0.0, (base_period + jitter) - elapsed)

        log.info("cycle finished in %.1fs; sleeping %.1fs", elapsed, sleep_for)
        time.sleep(sleep_for)


if __name__ == "__main__":
    main()

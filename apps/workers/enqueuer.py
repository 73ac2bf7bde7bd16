# apps/workers/enqueuer.py
#
# Single pending re-run: every trigger (scheduler tick, sync POST, manual
# refresh) enqueues under ONE fixed job id. While that job is still waiting
# in the queue, further triggers are no-ops.

from __future__ import annotations

import logging
import sys
from typing import Any, Dict, Optional

from redis import Redis
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job

from apps.workers.config import EngineSettings, get_settings
from apps.workers.engine import redis_conn
from apps.workers.jobs import aggregate_feeds

__all__ = ["enqueue_aggregation"]

log = logging.getLogger("subfeed.enqueuer")


def _pending(conn: Redis, job_id: str) -> Optional[Job]:
    try:
        job = Job.fetch(job_id, connection=conn)
    except NoSuchJobError:
        return None
    if job.is_queued or job.is_scheduled or job.is_deferred:
        return job
    return None


def enqueue_aggregation(
    reason: str = "schedule",
    *,
    settings: Optional[EngineSettings] = None,
    conn: Optional[Redis] = None,
) -> Dict[str, Any]:
    settings = settings or get_settings()
    conn = conn if conn is not None else redis_conn(settings, decode_responses=False)
    job_id = settings.pending_job_id

    if _pending(conn, job_id) is not None:
        log.info("aggregation already pending job=%s reason=%s", job_id, reason)
        return {"queued": False, "jobId": job_id}

    q = Queue(settings.queue_name, connection=conn)
    job = q.enqueue_call(
        func=aggregate_feeds,
        kwargs={"trigger": reason},
        job_id=job_id,
        timeout=settings.job_timeout,
        result_ttl=3600,
        failure_ttl=3600,
    )
    log.info("enqueued aggregation job=%s reason=%s", job.id, reason)
    return {"queued": True, "jobId": job.id}


def main() -> None:
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s [%(levelname)s] %(name)s %(message)s",
    )
    reason = sys.argv[1] if len(sys.argv) > 1 else "manual"
    print(enqueue_aggregation(reason))


if __name__ == "__main__":
    main()

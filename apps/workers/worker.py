# apps/workers/worker.py
import logging

from rq import Queue, Worker

from apps.workers.config import get_settings
from apps.workers.engine import redis_conn


def main():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s %(message)s",
    )
    conn = redis_conn(settings, decode_responses=False)
    q_default = Queue(settings.queue_name, connection=conn)
    worker = Worker([q_default], connection=conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()

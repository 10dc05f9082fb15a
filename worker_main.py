from __future__ import annotations

import signal
import threading

from config import load_env_file
from db.db_conn import DbConn
from taskqueue.logs import get_logger
from taskqueue.manager import QueueManager


def main() -> None:
    load_env_file()
    db = DbConn()
    logger = get_logger(db)
    manager = QueueManager.from_env(db)
    manager.initialize()
    logger.info(
        "All workers started (queues=%s, workers=%s)",
        ", ".join(manager.queues),
        sum(w.concurrency for w in manager.workers),
    )

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    logger.info("Stopping workers...")
    manager.shutdown()


if __name__ == "__main__":
    main()

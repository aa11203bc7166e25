# Gunicorn configuration for Backhaul
# Exactly one worker owns the scheduler, the backup worker pool and the
# stale-run sweep; every other worker only serves HTTP.

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))
# Backups run on the scheduler's threads, not in request handlers
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 120))
graceful_timeout = int(os.environ.get('GUNICORN_GRACEFUL_TIMEOUT', 60))
wsgi_app = 'backhaul:create_app()'

# The arbiter numbers workers from 1 as it spawns them
SCHEDULER_WORKER_AGE = 1


def post_fork(server, worker):
    """
    Called in the worker right after fork, before the app is loaded.

    The first spawned worker owns the scheduler. A replacement worker gets a
    new age, so its scheduler stays off; the startup sweep of the next owner
    recovers whatever the old one left behind.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (uses 'age' attribute: 1, 2, 3, ...)
    """
    if worker.age == SCHEDULER_WORKER_AGE:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): scheduler and backup worker pool owner")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP only (scheduler disabled)")

import logging
import socket

from huey import crontab
from huey.contrib.djhuey import db_periodic_task, db_task

from ingest.operations import get_orchestrator, purge_finished_jobs

logger = logging.getLogger(__name__)


def _worker_id():
    return f'{socket.gethostname()}-huey'


@db_task()
def run_ingest_worker():
    """
    Drain the ingestion queue.

    Several of these may run at once; the queue's leases keep them from
    executing the same job twice.
    """
    processed = get_orchestrator().drain(worker_id=_worker_id())
    if processed:
        logger.info('Worker processed %s jobs', processed)
    return processed


def schedule_worker(delay=0):
    """Start a worker now, or after delay seconds (used after a retry backoff)."""
    if delay and delay > 0:
        run_ingest_worker.schedule(delay=int(delay) + 1)
    else:
        run_ingest_worker()


@db_periodic_task(crontab(minute='*'))
def recover_stalled_jobs():
    """
    Recover from crashed workers.

    Leases that expired with attempts left become deliverable again and are
    drained here; jobs that ran out of attempts are marked failed.
    """
    orchestrator = get_orchestrator()
    failed = orchestrator.reap()
    if failed:
        logger.warning('Failed %s jobs whose final lease expired', len(failed))
    orchestrator.drain(worker_id=_worker_id())


@db_periodic_task(crontab(minute='30', hour='3'))
def purge_old_jobs():
    """Daily retention cleanup of finished jobs"""
    result = purge_finished_jobs(logger=logger.info)
    return result

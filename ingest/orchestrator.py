"""
Ingestion worker: drives a job through its lifecycle.

A worker leases a queue entry, claims the job record with the lease token,
then runs the phases:

    downloading  fetch the source into a per-attempt work dir (0-50%)
    processing   segment/convert, publish the artifact, verify it (50-95%)
    completed    catalog updated, result_url set (100%)

Every store write carries the lease token. When a write fails with
ConflictError the worker has lost the job to someone else and stops
without touching the record again.
"""

import logging
import os
import shutil
import threading
import time
from datetime import datetime

from django.db import DatabaseError, connection

from ingest import lifecycle
from ingest.catalog import CatalogUpdateAdapter
from ingest.errors import (
    CatalogWriteError,
    ConflictError,
    FatalError,
    ForbiddenError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from ingest.models import IngestionJob
from ingest.queue import JobQueue
from ingest.service import config
from ingest.service.constants import FILE_TYPE_AVATAR, FILE_TYPE_VIDEO, QUEUE_ROUTING
from ingest.service.download import SourceFetcher
from ingest.service.process import MediaProcessor
from ingest.service.storage import ObjectStoreGateway
from ingest.store import JobRecordStore

logger = logging.getLogger(__name__)

Status = IngestionJob.Status


def write_log(log_path, message):
    """Append message to log file"""
    if log_path:
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        with open(log_path, 'a') as f:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
            f.write(f"[{timestamp}] {message}\n")


class JobCancelled(FatalError):
    def __init__(self):
        super().__init__(lifecycle.CANCELLED_REASON)


class _LeaseKeeper(threading.Thread):
    """
    Heartbeats a queue lease in the background while a job runs.

    Phases can run far longer than the visibility timeout (a long transcode
    reports no progress until ffmpeg exits), so the lease is extended on a
    timer rather than on progress. Stops on its own once the lease is gone
    and sets `lost` so the worker abandons at its next checkpoint.
    """

    def __init__(self, queue, token, interval, job_id):
        super().__init__(name=f'lease-{job_id}', daemon=True)
        self.queue = queue
        self.token = token
        self.interval = interval
        self.job_id = job_id
        self.lost = False
        self._stop_event = threading.Event()

    def run(self):
        try:
            while not self._stop_event.wait(self.interval):
                try:
                    self.queue.heartbeat(self.token)
                except ConflictError:
                    self.lost = True
                    logger.warning('Lease for job %s expired while running', self.job_id)
                    return
                except DatabaseError as e:
                    logger.warning('Heartbeat for job %s failed: %s', self.job_id, e)
        finally:
            # Each thread gets its own DB connection
            connection.close()

    def stop(self):
        self._stop_event.set()
        if self.is_alive():
            self.join()


class _Attempt:
    """Mutable state of one execution of one lease"""

    def __init__(self, job, lease, worker_id):
        self.job = job
        self.lease = lease
        self.worker_id = worker_id
        self.log_path = str(job.get_log_path())
        self.work_dir = job.get_work_dir() / f'attempt-{lease.attempt}'
        self.artifact_prefix = None
        self.last_progress = job.progress
        self.keeper = None

    @property
    def job_id(self):
        return self.job.job_id

    @property
    def token(self):
        return self.lease.token

    def log(self, message):
        write_log(self.log_path, message)
        logger.info('[%s] %s', self.job_id, message)


class JobOrchestrator:
    """
    Owns the job state machine. Collaborators are injected so the worker
    can run against fakes in tests.

    Args:
        store: JobRecordStore
        queue: JobQueue
        storage: ObjectStoreGateway
        catalog: CatalogUpdateAdapter
        fetcher: callable(job, work_dir, progress, timeout, logger) -> DownloadedFileInfo
        processor: callable(job, downloaded, work_dir, progress, timeout, logger) -> ProcessedFileInfo
        notify: optional callable(delay_seconds) that wakes a worker
        timeouts: optional {'download': s, 'process': s}
        heartbeat_interval: seconds between lease heartbeats, default a third
            of the queue's visibility timeout
    """

    def __init__(self, store=None, queue=None, storage=None, catalog=None,
                 fetcher=None, processor=None, notify=None, timeouts=None,
                 heartbeat_interval=None):
        self.store = store or JobRecordStore()
        self.queue = queue or JobQueue()
        self.storage = storage or ObjectStoreGateway()
        self.catalog = catalog or CatalogUpdateAdapter()
        self.fetcher = fetcher or SourceFetcher(self.storage)
        self.processor = processor or MediaProcessor()
        self.notify = notify
        self.timeouts = timeouts or config.get_phase_timeouts()
        self.heartbeat_interval = heartbeat_interval or self.queue.lease_seconds / 3

    # Submission

    def submit(self, job):
        """
        Enqueue a pending job on its file type's queue and wake a worker.

        Returns:
            int: Queue position
        """
        queue_name, priority = QUEUE_ROUTING[job.file_type]
        position = self.queue.enqueue(
            job.job_id,
            payload={'file_type': job.file_type, 'source_kind': job.source_kind},
            priority=priority,
            queue=queue_name,
            max_attempts=job.max_attempts,
        )
        self._wake(0)
        return position

    def cancel(self, job_id, requester):
        """
        Cancel a job on behalf of its owner or an admin.

        A pending job fails immediately with reason 'cancelled'. A job a
        worker already holds only gets the cancel flag; the worker stops at
        its next checkpoint.

        Returns:
            IngestionJob: The job after the request
        """
        job = self.store.get(job_id)
        if not job.can_view(requester):
            raise ForbiddenError('Not allowed to cancel this job')
        if job.is_terminal:
            raise ConflictError(f'Job {job_id} is already {job.status}')

        if job.status == Status.PENDING:
            try:
                self.store.update_status(
                    job_id, Status.PENDING, Status.FAILED,
                    error_message=lifecycle.CANCELLED_REASON, cancel_requested=True,
                )
            except ConflictError:
                # A worker claimed it in the meantime
                self.store.request_cancel(job_id)
            else:
                self.queue.kill(job_id, error=lifecycle.CANCELLED_REASON)
                logger.info('Cancelled pending job %s', job_id)
        else:
            self.store.request_cancel(job_id)
            logger.info('Cancel requested for %s job %s', job.status, job_id)
        return self.store.get(job_id)

    # Worker loop

    def run_once(self, worker_id=''):
        """
        Reap expired leases, then lease and execute one job.

        Returns:
            str | None: The executed job id, or None if the queue was empty
        """
        self.reap()
        lease = self.queue.dequeue(worker_id)
        if lease is None:
            return None
        self.execute(lease, worker_id)
        return lease.job_id

    def drain(self, worker_id='', limit=None):
        """
        Run jobs until the queue has nothing deliverable.

        Returns:
            int: Number of jobs executed
        """
        count = 0
        while limit is None or count < limit:
            if self.run_once(worker_id) is None:
                break
            count += 1
        return count

    def reap(self, now=None):
        """
        Fail jobs whose lease expired on their final attempt.

        Returns:
            list[str]: Job ids marked failed
        """
        failed = []
        for job_id in self.queue.reap_expired(now):
            try:
                job = self.store.get(job_id)
                if job.is_terminal:
                    continue
                message = 'retries exhausted: worker lease expired'
                self.store.update_status(job_id, job.status, Status.FAILED, error_message=message)
                write_log(str(job.get_log_path()), f'=== FAILED === {message}')
                failed.append(job_id)
            except (ConflictError, NotFoundError) as e:
                logger.info('Skipping reaped job %s: %s', job_id, e)
        return failed

    # Execution

    def execute(self, lease, worker_id=''):
        """
        Run one leased job to a terminal state or a scheduled retry.

        Never raises for job failures; outcomes are recorded on the job.

        Returns:
            IngestionJob | None: The job after execution, None if abandoned
        """
        job = self._claim(lease, worker_id)
        if job is None:
            return None

        attempt = _Attempt(job, lease, worker_id)
        if not job.log_path:
            try:
                self.store.update_fields(
                    job.job_id, job.status, expected_token=lease.token, log_path=attempt.log_path
                )
            except ConflictError as e:
                attempt.log(f'Lost ownership before start: {e}')
                return None

        attempt.log(f'=== ATTEMPT {lease.attempt}/{lease.max_attempts} ({worker_id or "worker"}) ===')
        if lease.is_last_attempt and lease.max_attempts > 1:
            attempt.log('Final attempt, a transient failure will fail the job')
        attempt.log(f'Job: {job.file_type} from {job.source_kind}')

        try:
            self._run_with_heartbeat(attempt)
        except ConflictError as e:
            attempt.log(f'Lost ownership, abandoning: {e}')
            self._cleanup(attempt)
            return None
        except CatalogWriteError as e:
            # Artifact stays published for manual reconciliation
            attempt.log(f'=== ERROR === {e.message}')
            self._fail(attempt, e.message)
        except TransientError as e:
            self._retry_or_fail(attempt, e.message)
        except (FatalError, ValidationError) as e:
            attempt.log(f'=== ERROR === {e.message}')
            self._cleanup(attempt)
            self._fail(attempt, e.message)
        except Exception as e:
            logger.exception('Unexpected failure in job %s', attempt.job_id)
            attempt.log(f'=== ERROR === {e}')
            self._cleanup(attempt)
            self._fail(attempt, str(e) or type(e).__name__)
        else:
            self._remove_work_dir(attempt)

        try:
            return self.store.get(attempt.job_id)
        except NotFoundError:
            return None

    def _claim(self, lease, worker_id):
        try:
            return self.store.claim(lease.job_id, lease.token, worker_id)
        except NotFoundError:
            logger.info('Job %s no longer exists, dropping its queue entry', lease.job_id)
            self._ack_quietly(lease.token)
            return None
        except ConflictError as e:
            try:
                job = self.store.get(lease.job_id)
            except NotFoundError:
                self._ack_quietly(lease.token)
                return None
            if job.is_terminal:
                self._ack_quietly(lease.token)
            logger.info('Claim of %s lost: %s', lease.job_id, e)
            return None
        except Exception:
            # Lease is left to expire, so the entry is redelivered or reaped
            logger.exception('Claim of %s failed', lease.job_id)
            return None

    def _run_with_heartbeat(self, attempt):
        attempt.keeper = _LeaseKeeper(
            self.queue, attempt.token, self.heartbeat_interval, attempt.job_id
        )
        attempt.keeper.start()
        try:
            self._run(attempt)
        finally:
            attempt.keeper.stop()

    def _run(self, attempt):
        job = attempt.job
        timeouts = self.timeouts

        self._checkpoint(attempt)
        attempt.log('=== DOWNLOADING ===')
        downloaded = self._timed(
            'download',
            timeouts.get('download'),
            lambda: self.fetcher(
                job,
                attempt.work_dir,
                progress=lambda f: self._progress(attempt, Status.DOWNLOADING, f),
                timeout=timeouts.get('download'),
                logger=attempt.log,
            ),
        )
        attempt.log(f'Fetched {downloaded.file_size} bytes')

        self._checkpoint(attempt)
        if job.status == Status.DOWNLOADING:
            self.store.update_status(
                job.job_id, Status.DOWNLOADING, Status.PROCESSING,
                expected_token=attempt.token, progress=50,
            )
            job.status = Status.PROCESSING
            attempt.last_progress = 50

        attempt.log('=== PROCESSING ===')
        processed = self._timed(
            'process',
            timeouts.get('process'),
            lambda: self.processor(
                job,
                downloaded,
                attempt.work_dir,
                progress=lambda f: self._progress(attempt, Status.PROCESSING, f * 0.6),
                timeout=timeouts.get('process'),
                logger=attempt.log,
            ),
        )

        self._checkpoint(attempt)
        attempt.log('=== PUBLISHING ===')
        result_url, result_key = self._publish_artifact(attempt, processed)
        self._progress(attempt, Status.PROCESSING, 0.9)
        if not self.storage.exists(result_key):
            raise TransientError(f'Artifact missing after upload: {result_key}')
        self._progress(attempt, Status.PROCESSING, 1.0)

        try:
            published = self.catalog.publish(job, result_url)
        except Exception as e:
            raise CatalogWriteError(
                f'catalog write failed after publish ({e}); artifact kept at {result_url}'
            ) from e
        # The catalog references the artifact now; never clean it up after this
        attempt.artifact_prefix = None

        self.store.update_status(
            job.job_id, Status.PROCESSING, Status.COMPLETED,
            expected_token=attempt.token, result_url=result_url,
        )
        if attempt.keeper is not None:
            attempt.keeper.stop()
        self._ack_quietly(attempt.token)
        attempt.log(f'=== COMPLETED === {result_url}')

        if published.replaced_url and job.file_type == FILE_TYPE_AVATAR:
            self._delete_replaced(attempt, published.replaced_url)

    def _timed(self, phase, timeout, fn):
        started = time.monotonic()
        result = fn()
        if timeout and time.monotonic() - started > timeout:
            raise TransientError(f'{phase} phase timed out after {timeout}s')
        return result

    def _checkpoint(self, attempt):
        if attempt.keeper is not None and attempt.keeper.lost:
            raise ConflictError(f'Lease for job {attempt.job_id} expired while running')
        if self.store.is_cancel_requested(attempt.job_id):
            attempt.log('Cancel requested, stopping')
            raise JobCancelled()

    def _progress(self, attempt, status, fraction):
        value = lifecycle.phase_progress(status, fraction)
        if value <= attempt.last_progress:
            return
        self.store.report_progress(attempt.job_id, value, attempt.token)
        attempt.last_progress = value

    def _publish_artifact(self, attempt, processed):
        job = attempt.job
        stamp = int(time.time() * 1000)
        if job.file_type == FILE_TYPE_VIDEO:
            prefix = f'media/hls/{job.job_id}/{stamp}/'
            attempt.artifact_prefix = prefix
            self.storage.upload_directory(processed.path, prefix, logger=attempt.log)
            key = prefix + processed.entry_name
        else:
            key = f'media/{job.file_type}s/{job.job_id}/{stamp}_{processed.entry_name}'
            attempt.artifact_prefix = key
            self.storage.upload_file(processed.path, key, content_type=processed.content_type)
        attempt.log(f'Published artifact: {key}')
        return self.storage.public_url(key), key

    # Failure handling

    def _retry_or_fail(self, attempt, message):
        attempt.log(f'Transient failure: {message}')
        self._cleanup(attempt)
        try:
            outcome = self.queue.nack(attempt.token, retry=True, error=message)
        except ConflictError as e:
            attempt.log(f'Lost lease while scheduling retry: {e}')
            return

        if outcome.is_dead:
            self._fail(attempt, f'retries exhausted: {message}', nack=False)
        else:
            attempt.log(f'Retry scheduled in {outcome.delay:.1f}s')
            self._remove_work_dir(attempt)
            self._wake(outcome.delay)

    def _fail(self, attempt, message, nack=True):
        try:
            current = self.store.get(attempt.job_id)
            self.store.update_status(
                attempt.job_id, current.status, Status.FAILED,
                expected_token=attempt.token, error_message=message,
            )
        except (ConflictError, NotFoundError) as e:
            attempt.log(f'Could not record failure: {e}')
            return
        attempt.log(f'=== FAILED === {message}')
        if nack:
            try:
                self.queue.nack(attempt.token, retry=False, error=message)
            except ConflictError:
                attempt.log('Queue lease already released')
        self._remove_work_dir(attempt)

    def _cleanup(self, attempt):
        """Best-effort removal of partially published artifacts"""
        if not attempt.artifact_prefix:
            return
        try:
            deleted = self.storage.delete_prefix(attempt.artifact_prefix)
            attempt.log(f'Cleaned up {deleted} partial artifacts under {attempt.artifact_prefix}')
        except Exception as e:
            attempt.log(f'Artifact cleanup failed: {e}')
            logger.warning('Artifact cleanup failed for %s: %s', attempt.job_id, e)

    def _delete_replaced(self, attempt, url):
        key = self.storage.key_from_url(url)
        if not key:
            return
        try:
            self.storage.delete(key)
            attempt.log(f'Deleted replaced file: {key}')
        except Exception as e:
            attempt.log(f'Could not delete replaced file {key}: {e}')

    def _remove_work_dir(self, attempt):
        if attempt.work_dir.exists():
            try:
                shutil.rmtree(attempt.work_dir)
            except OSError as e:
                attempt.log(f'Failed to clean up work dir: {e}')

    def _ack_quietly(self, token):
        try:
            self.queue.ack(token)
        except ConflictError:
            logger.info('Lease %s was already released', token)

    def _wake(self, delay):
        if self.notify:
            self.notify(delay)

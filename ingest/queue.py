"""
Durable, prioritized job queue backed by the database.

Each submitted job owns exactly one QueueEntry row (the job id is the dedup
key). Workers lease entries for a visibility timeout; an entry whose lease
expires without ack/nack becomes deliverable again until its attempts run out.

    ready --dequeue--> leased --ack--> done
      ^                  |
      +---nack(retry)----+--nack(no retry) / attempts exhausted--> dead
"""

import logging
import random
import uuid
from dataclasses import dataclass
from datetime import timedelta

from django.db import connection, transaction
from django.db.models import F, Q
from django.utils import timezone

from ingest.errors import ConflictError
from ingest.models import QueueEntry
from ingest.service import config

logger = logging.getLogger(__name__)


@dataclass
class Lease:
    """A worker's time-bounded claim on one queue entry"""

    job_id: str
    token: str
    payload: dict
    attempt: int
    max_attempts: int
    queue: str
    expires_at: object

    @property
    def is_last_attempt(self):
        return self.attempt >= self.max_attempts


@dataclass
class NackOutcome:
    RETRY_SCHEDULED = 'retry_scheduled'
    DEAD = 'dead'

    outcome: str
    delay: float = 0.0

    @property
    def is_dead(self):
        return self.outcome == self.DEAD


def backoff_delay(attempt, base, max_delay, jitter=0.2, rand=random.random):
    """
    Exponential backoff: base * 2**(attempt-1), capped at max_delay, jittered.

    Args:
        attempt: 1-based number of the attempt that just failed
        base: Base delay in seconds
        max_delay: Upper bound in seconds
        jitter: Fraction of the delay added at random

    Example:
        >>> backoff_delay(3, 5, 300, jitter=0)
        20
    """
    delay = min(base * 2 ** max(attempt - 1, 0), max_delay)
    if jitter:
        delay = min(delay + delay * jitter * rand(), max_delay)
    return delay


class JobQueue:
    def __init__(self, lease_seconds=None, max_attempts=None, backoff_max=None, jitter=0.2):
        self.lease_seconds = lease_seconds or config.get_lease_seconds()
        self.max_attempts = max_attempts or config.get_max_attempts()
        self.backoff_max = backoff_max or config.get_backoff_max()
        self.jitter = jitter

    def enqueue(self, job_id, payload=None, priority=0, queue=QueueEntry.QUEUE_VIDEO,
                max_attempts=None, now=None):
        """
        Add a job to the queue, deduplicated on job_id.

        Re-enqueuing an entry that is still ready or leased is a no-op.

        Returns:
            int: 1-based position among ready work, or 0 while leased

        Raises:
            ConflictError: The job already finished its run through the queue
        """
        now = now or timezone.now()
        entry, created = QueueEntry.objects.get_or_create(
            job_id=job_id,
            defaults={
                'queue': queue,
                'payload': payload or {},
                'priority': priority,
                'max_attempts': max_attempts or self.max_attempts,
                'available_at': now,
            },
        )
        if created:
            logger.info('Enqueued %s on %s queue (priority %s)', job_id, queue, priority)
        elif not entry.is_open:
            raise ConflictError(f'Job {job_id} was already processed ({entry.state})')
        else:
            logger.info('Duplicate enqueue ignored for %s', job_id)
        return self.position(job_id)

    def position(self, job_id):
        """
        Position of an open entry: 1-based among ready work, 0 while leased.

        Returns:
            int | None: None when the entry is unknown or closed
        """
        entry = QueueEntry.objects.filter(job_id=job_id).first()
        if entry is None or not entry.is_open:
            return None
        if entry.state == QueueEntry.STATE_LEASED:
            return 0
        ahead = QueueEntry.objects.filter(state=QueueEntry.STATE_READY).filter(
            Q(priority__gt=entry.priority) | Q(priority=entry.priority, id__lt=entry.id)
        ).count()
        return ahead + 1

    def get(self, job_id):
        return QueueEntry.objects.filter(job_id=job_id).first()

    def dequeue(self, worker_id='', now=None):
        """
        Lease the next deliverable entry: highest priority first, FIFO within a priority.

        Expired leases that still have attempts left are made deliverable first.

        Returns:
            Lease | None: None when nothing is ready
        """
        now = now or timezone.now()
        self._reclaim_expired(now)

        with transaction.atomic():
            candidates = QueueEntry.objects.filter(
                state=QueueEntry.STATE_READY, available_at__lte=now
            ).order_by('-priority', 'id')
            if connection.features.has_select_for_update:
                candidates = candidates.select_for_update(
                    skip_locked=connection.features.has_select_for_update_skip_locked
                )

            for candidate in candidates[:10]:
                token = uuid.uuid4().hex
                expires_at = now + timedelta(seconds=self.lease_seconds)
                leased = QueueEntry.objects.filter(
                    pk=candidate.pk, state=QueueEntry.STATE_READY
                ).update(
                    state=QueueEntry.STATE_LEASED,
                    lease_token=token,
                    lease_expires_at=expires_at,
                    attempts=F('attempts') + 1,
                    updated_at=now,
                )
                if not leased:
                    continue

                entry = QueueEntry.objects.get(pk=candidate.pk)
                logger.info(
                    'Leased %s to %s (attempt %s/%s)',
                    entry.job_id, worker_id or 'worker', entry.attempts, entry.max_attempts,
                )
                return Lease(
                    job_id=entry.job_id,
                    token=token,
                    payload=entry.payload,
                    attempt=entry.attempts,
                    max_attempts=entry.max_attempts,
                    queue=entry.queue,
                    expires_at=expires_at,
                )
        return None

    def _leased(self, token):
        return QueueEntry.objects.filter(lease_token=token, state=QueueEntry.STATE_LEASED)

    def ack(self, token, now=None):
        """Mark a leased entry done."""
        now = now or timezone.now()
        if not token or not self._leased(token).update(
            state=QueueEntry.STATE_DONE, lease_token='', lease_expires_at=None, updated_at=now
        ):
            raise ConflictError('Lease is no longer held')

    def nack(self, token, retry=True, error='', now=None):
        """
        Give a leased entry back.

        With retry and attempts left, the entry becomes ready again after an
        exponential backoff. Otherwise it goes dead.

        Returns:
            NackOutcome
        """
        now = now or timezone.now()
        entry = self._leased(token).first() if token else None
        if entry is None:
            raise ConflictError('Lease is no longer held')

        if retry and entry.attempts < entry.max_attempts:
            delay = backoff_delay(
                entry.attempts,
                config.get_backoff_base(entry.queue),
                self.backoff_max,
                jitter=self.jitter,
            )
            changes = {
                'state': QueueEntry.STATE_READY,
                'available_at': now + timedelta(seconds=delay),
            }
            outcome = NackOutcome(NackOutcome.RETRY_SCHEDULED, delay)
        else:
            changes = {'state': QueueEntry.STATE_DEAD}
            outcome = NackOutcome(NackOutcome.DEAD)

        if not self._leased(token).update(
            lease_token='', lease_expires_at=None, last_error=error, updated_at=now, **changes
        ):
            raise ConflictError('Lease is no longer held')

        if outcome.is_dead:
            logger.warning('Job %s is dead after %s attempts: %s', entry.job_id, entry.attempts, error)
        else:
            logger.info('Job %s retry in %.1fs: %s', entry.job_id, outcome.delay, error)
        return outcome

    def heartbeat(self, token, now=None):
        """Extend a live lease by the visibility timeout."""
        now = now or timezone.now()
        if not token or not self._leased(token).filter(lease_expires_at__gt=now).update(
            lease_expires_at=now + timedelta(seconds=self.lease_seconds), updated_at=now
        ):
            raise ConflictError('Lease is no longer held')

    def kill(self, job_id, error='', now=None):
        """
        Mark a ready entry dead so it is never delivered.

        Returns:
            bool: True if an entry was killed
        """
        now = now or timezone.now()
        return bool(
            QueueEntry.objects.filter(job_id=job_id, state=QueueEntry.STATE_READY).update(
                state=QueueEntry.STATE_DEAD, last_error=error, updated_at=now
            )
        )

    def _reclaim_expired(self, now):
        expired = QueueEntry.objects.filter(
            state=QueueEntry.STATE_LEASED,
            lease_expires_at__lte=now,
            attempts__lt=F('max_attempts'),
        )
        count = expired.update(
            state=QueueEntry.STATE_READY,
            lease_token='',
            lease_expires_at=None,
            available_at=now,
            last_error='lease expired',
            updated_at=now,
        )
        if count:
            logger.warning('Reclaimed %s expired leases', count)
        return count

    def reap_expired(self, now=None):
        """
        Kill entries whose lease expired on their last allowed attempt.

        Entries with attempts left are made ready again instead.

        Returns:
            list[str]: Job ids that went dead
        """
        now = now or timezone.now()
        self._reclaim_expired(now)

        dead = []
        exhausted = QueueEntry.objects.filter(
            state=QueueEntry.STATE_LEASED,
            lease_expires_at__lte=now,
            attempts__gte=F('max_attempts'),
        )
        for entry in exhausted:
            if QueueEntry.objects.filter(
                pk=entry.pk, state=QueueEntry.STATE_LEASED, lease_token=entry.lease_token
            ).update(
                state=QueueEntry.STATE_DEAD,
                lease_token='',
                lease_expires_at=None,
                last_error='lease expired',
                updated_at=now,
            ):
                logger.warning('Job %s is dead: lease expired on final attempt', entry.job_id)
                dead.append(entry.job_id)
        return dead

    def purge(self, older_than, now=None):
        """
        Delete done and dead entries last touched before now - older_than.

        Returns:
            int: Number of entries deleted
        """
        if not isinstance(older_than, timedelta):
            older_than = timedelta(days=older_than)
        cutoff = (now or timezone.now()) - older_than
        deleted, _ = QueueEntry.objects.filter(
            state__in=[QueueEntry.STATE_DONE, QueueEntry.STATE_DEAD], updated_at__lt=cutoff
        ).delete()
        return deleted

    def counts(self):
        """Number of entries per state"""
        return {
            state: QueueEntry.objects.filter(state=state).count()
            for state, _ in QueueEntry.STATE_CHOICES
        }

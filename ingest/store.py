"""
Persistence for ingestion job records.

All status writes are compare-and-swap updates: the UPDATE only matches when
the row is still in the expected status (and, for workers, still carries the
caller's lease token). A stale worker whose lease was taken over gets a
ConflictError and must stop writing.
"""

from datetime import timedelta

from django.utils import timezone

from ingest import lifecycle
from ingest.errors import ConflictError, NotFoundError
from ingest.models import IngestionJob, QueueEntry

Status = IngestionJob.Status


class JobRecordStore:
    def create(self, **fields):
        """Create a job in pending with zero progress."""
        fields.pop('status', None)
        fields.pop('progress', None)
        return IngestionJob.objects.create(status=Status.PENDING, progress=0, **fields)

    def get(self, job_id):
        try:
            return IngestionJob.objects.select_related('owner', 'content', 'episode').get(
                job_id=job_id
            )
        except IngestionJob.DoesNotExist:
            raise NotFoundError(f'Job not found: {job_id}')

    def _cas(self, job_id, expected_status, expected_token, changes):
        qs = IngestionJob.objects.filter(job_id=job_id, status=expected_status)
        if expected_token is not None:
            qs = qs.filter(lease_token=expected_token)
        changes['updated_at'] = timezone.now()
        return qs.update(**changes)

    def update_status(self, job_id, expected_status, new_status, expected_token=None, **fields):
        """
        Move a job from expected_status to new_status.

        Args:
            job_id: Job to update
            expected_status: Status the caller believes the job is in
            new_status: Target status, must be a legal transition
            expected_token: When given, the row must also carry this lease token
            **fields: Extra columns to write in the same UPDATE (may include
                lease_token, which is written, not matched)

        Raises:
            ConflictError: Illegal transition, or the row moved on / lease lost
            ValueError: Terminal write without its required field
        """
        lifecycle.check_transition(expected_status, new_status)

        if new_status == Status.COMPLETED:
            if not fields.get('result_url'):
                raise ValueError('completed requires result_url')
            fields['progress'] = 100
            fields['error_message'] = ''
        elif new_status == Status.FAILED:
            if not fields.get('error_message'):
                raise ValueError('failed requires error_message')
            fields['result_url'] = ''

        if new_status in lifecycle.TERMINAL_STATES:
            fields['finished_at'] = timezone.now()
            fields['lease_token'] = ''

        changes = dict(fields, status=new_status)
        if not self._cas(job_id, expected_status, expected_token, changes):
            self._raise_conflict(job_id, expected_status)

    def update_fields(self, job_id, expected_status, expected_token=None, **fields):
        """Write non-status columns under the same CAS guard."""
        if not self._cas(job_id, expected_status, expected_token, dict(fields)):
            self._raise_conflict(job_id, expected_status)

    def claim(self, job_id, lease_token, worker_id=''):
        """
        Take ownership of a job for the holder of lease_token.

        A pending job moves to downloading. A job redelivered after a lease
        expiry keeps its status and only the lease columns change. Taking over
        requires lease_token to be the live queue lease for the job, and the
        write is guarded by the previous holder's token so two claimants
        cannot both win.

        Returns:
            IngestionJob: The job as it is after the claim
        """
        job = self.get(job_id)
        if job.is_terminal:
            raise ConflictError(f'Job {job_id} is already {job.status}')
        if job.lease_token == lease_token:
            return job

        now = timezone.now()
        lease_fields = {'lease_token': lease_token, 'claimed_by': worker_id, 'claimed_at': now}
        if job.status == Status.PENDING:
            self.update_status(job_id, Status.PENDING, Status.DOWNLOADING, **lease_fields)
        else:
            live = QueueEntry.objects.filter(
                job_id=job_id, state=QueueEntry.STATE_LEASED, lease_token=lease_token
            ).exists()
            if not live:
                raise ConflictError(f'Job {job_id} is claimed by another worker')
            self.update_fields(job_id, job.status, expected_token=job.lease_token, **lease_fields)
        return self.get(job_id)

    def report_progress(self, job_id, progress, lease_token):
        """
        Record progress for an active job. Never moves progress backwards.

        Returns:
            bool: True if the stored progress changed
        """
        progress = min(max(int(progress), 0), 100)
        updated = (
            IngestionJob.objects.filter(
                job_id=job_id,
                lease_token=lease_token,
                status__in=lifecycle.ACTIVE_STATES,
                progress__lt=progress,
            ).update(progress=progress, updated_at=timezone.now())
        )
        if updated:
            return True
        if not IngestionJob.objects.filter(
            job_id=job_id, lease_token=lease_token, status__in=lifecycle.ACTIVE_STATES
        ).exists():
            raise ConflictError(f'Lease lost for job {job_id}')
        return False

    def request_cancel(self, job_id):
        """Set the advisory cancel flag on a non-terminal job."""
        updated = IngestionJob.objects.filter(
            job_id=job_id, status__in=[Status.PENDING, *lifecycle.ACTIVE_STATES]
        ).update(cancel_requested=True, updated_at=timezone.now())
        if not updated:
            self._raise_conflict(job_id, None)

    def is_cancel_requested(self, job_id):
        return IngestionJob.objects.filter(job_id=job_id, cancel_requested=True).exists()

    def delete(self, job_id):
        job = self.get(job_id)
        job.delete()

    def purge_terminal(self, older_than):
        """
        Delete terminal jobs that finished before now - older_than.

        Args:
            older_than: timedelta retention window

        Returns:
            int: Number of jobs deleted
        """
        if not isinstance(older_than, timedelta):
            older_than = timedelta(days=older_than)
        cutoff = timezone.now() - older_than
        qs = IngestionJob.objects.filter(
            status__in=lifecycle.TERMINAL_STATES, finished_at__lt=cutoff
        )
        count = qs.count()
        # Per-object delete so the pre_delete cleanup signal fires
        for job in qs.iterator():
            job.delete()
        return count

    def _raise_conflict(self, job_id, expected_status):
        try:
            current = IngestionJob.objects.only('status').get(job_id=job_id).status
        except IngestionJob.DoesNotExist:
            raise NotFoundError(f'Job not found: {job_id}')
        if expected_status is None:
            raise ConflictError(f'Job {job_id} is already {current}')
        raise ConflictError(
            f'Job {job_id} changed underneath the writer (expected {expected_status}, found {current})'
        )

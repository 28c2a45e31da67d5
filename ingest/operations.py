"""
High-level operations that can be used by views, tasks, and management commands.

This module provides testable functions that encapsulate the ingestion
workflow (creating jobs, issuing upload credentials, cancelling, purging)
without going through Django views or management commands.
"""

import logging
from datetime import timedelta

import requests
from django.db import transaction
from django.utils import timezone
from django.utils.text import slugify

from ingest import lifecycle
from ingest.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from ingest.models import Content, Episode, IngestionJob, QueueEntry, generate_nanoid
from ingest.orchestrator import JobOrchestrator
from ingest.queue import JobQueue
from ingest.service import config
from ingest.service.constants import (
    ALLOWED_CONTENT_TYPES,
    FILE_TYPE_AVATAR,
    FILE_TYPE_VIDEO,
    FILE_TYPES,
)
from ingest.service.storage import ObjectStoreGateway, validate_file_type
from ingest.service.strategy import extract_video_id, validate_remote_url
from ingest.store import JobRecordStore

logger = logging.getLogger(__name__)

Status = IngestionJob.Status
SourceKind = IngestionJob.SourceKind

SOURCE_KIND_ALIASES = {
    'upload': SourceKind.UPLOAD,
    'remote_url': SourceKind.REMOTE_URL,
    'remoteUrl': SourceKind.REMOTE_URL,
}

OEMBED_URL = 'https://www.youtube.com/oembed'


def wake_worker(delay=0):
    """Wake a background worker once the current transaction commits."""
    from ingest.tasks import schedule_worker

    transaction.on_commit(lambda: schedule_worker(delay))


def get_orchestrator(notify=wake_worker, storage=None):
    """Build an orchestrator wired to the database store and queue."""
    return JobOrchestrator(
        store=JobRecordStore(),
        queue=JobQueue(),
        storage=storage,
        notify=notify,
    )


def job_view(job):
    """
    Public projection of a job.

    Only the lifecycle status, progress and outcome are exposed; attempts
    and backoff timers stay internal.
    """
    view = {
        'jobId': job.job_id,
        'status': job.status,
        'progress': job.progress,
    }
    if job.status == Status.COMPLETED:
        view['result_url'] = job.result_url
    if job.status == Status.FAILED:
        view['error'] = job.error_message
    return view


def get_job_view(job_id, requester):
    """
    Read a job's status on behalf of requester.

    Raises:
        NotFoundError: Unknown job id
        ForbiddenError: requester is neither owner nor staff
    """
    job = JobRecordStore().get(job_id)
    if not job.can_view(requester):
        raise ForbiddenError('Not allowed to view this job')
    return job_view(job)


def _resolve_target(file_type, content_id=None, episode_id=None):
    content = episode = None
    if file_type == FILE_TYPE_AVATAR:
        return None, None

    if content_id:
        content = Content.objects.filter(pk=content_id).first()
        if content is None:
            raise NotFoundError(f'Content not found: {content_id}')
    if episode_id:
        episode = Episode.objects.select_related('content').filter(pk=episode_id).first()
        if episode is None:
            raise NotFoundError(f'Episode not found: {episode_id}')
        if content and episode.content_id != content.pk:
            raise ValidationError('Episode does not belong to content', field='episodeId')
    if content is None and episode is None:
        raise ValidationError(f'A {file_type} needs a content or episode target', field='contentId')
    return content, episode


def _check_file(file_type, filename, file_size, content_type=None):
    if file_type not in FILE_TYPES:
        raise ValidationError(f'Unsupported file type: {file_type}', field='fileType')

    allowed = ALLOWED_CONTENT_TYPES[file_type]
    if filename and not validate_file_type(filename, allowed):
        raise ValidationError(
            f'File extension is not allowed for {file_type}', field='filename'
        )
    if content_type and content_type not in allowed:
        raise ValidationError(
            f'Content type {content_type} is not allowed for {file_type}', field='contentType'
        )

    max_size = config.get_max_size(file_type)
    if file_size is not None:
        try:
            file_size = int(file_size)
        except (TypeError, ValueError):
            raise ValidationError('File size must be a number', field='fileSize')
        if file_size <= 0:
            raise ValidationError('File size must be positive', field='fileSize')
        if file_size > max_size:
            raise ValidationError(
                f'File is too large (max {max_size} bytes for {file_type})', field='fileSize'
            )
    return file_size, max_size


def create_ingestion_job(owner, source_kind, file_type, upload_key='', file_url='',
                         remote_url='', content_id=None, episode_id=None, filename='',
                         file_size=None, content_type='', wait=False, storage=None,
                         logger=None):
    """
    Validate a request, create the job in pending and enqueue it.

    This is the core operation used by:
    - POST /api/ingest/jobs/
    - Management command: ./manage.py ingest_url
    - The staff remote-download endpoint

    Args:
        owner: Requesting user
        source_kind: 'upload' or 'remote_url' (also 'remoteUrl')
        file_type: 'video', 'poster' or 'avatar'
        upload_key / file_url: Reference to an uploaded object (one is enough)
        remote_url: Source URL for remote jobs
        content_id, episode_id: Optional catalog target
        wait: If True, run the worker synchronously before returning
        logger: Optional callable(message) for logging

    Returns:
        IngestionJob: The created job (status pending unless wait=True)

    Raises:
        ValidationError: Bad input; nothing was created
        NotFoundError: Unknown catalog target
    """

    def log(message):
        if logger:
            logger(message)

    kind = SOURCE_KIND_ALIASES.get(source_kind)
    if kind is None:
        raise ValidationError(f'Unsupported source kind: {source_kind}', field='sourceKind')

    fields = {}
    if kind == SourceKind.UPLOAD:
        storage = storage or ObjectStoreGateway()
        if not upload_key and file_url:
            upload_key = storage.key_from_url(file_url)
            if not upload_key:
                raise ValidationError('File URL is not in the media bucket', field='fileUrl')
        if not upload_key:
            raise ValidationError('Upload key is required', field='uploadKey')
        filename = filename or upload_key.rsplit('/', 1)[-1]
        fields.update(upload_key=upload_key, upload_url=storage.public_url(upload_key))
    else:
        validate_remote_url(remote_url)
        if file_type == FILE_TYPE_VIDEO:
            filename = ''
        fields.update(remote_url=remote_url, remote_video_id=extract_video_id(remote_url) or '')

    file_size, max_size = _check_file(file_type, filename, file_size, content_type)
    content, episode = _resolve_target(file_type, content_id, episode_id)

    orchestrator = get_orchestrator(notify=None if wait else wake_worker, storage=storage)
    with transaction.atomic():
        job = orchestrator.store.create(
            owner=owner,
            content=content,
            episode=episode,
            source_kind=kind,
            file_type=file_type,
            original_filename=filename or '',
            file_size=file_size,
            content_type=content_type or '',
            max_size=max_size,
            max_attempts=config.get_max_attempts(),
            **fields,
        )
        position = orchestrator.submit(job)
    log(f'Created job {job.job_id} (queue position {position})')

    if wait:
        log('Processing synchronously...')
        orchestrator.drain(worker_id='cli')
        job.refresh_from_db()
    return job


def request_upload(owner, filename, file_size, file_type, content_type,
                   content_id=None, episode_id=None, storage=None):
    """
    Issue a presigned upload URL and create the pending job that will ingest it.

    The job is enqueued only once the client reports the upload complete.

    Returns:
        tuple: (UploadTicket, IngestionJob)
    """
    if not filename:
        raise ValidationError('Filename is required', field='filename')
    if file_size in (None, ''):
        raise ValidationError('File size is required', field='fileSize')
    file_size, max_size = _check_file(file_type, filename, file_size, content_type)
    content, episode = _resolve_target(file_type, content_id, episode_id)

    storage = storage or ObjectStoreGateway()
    target_name = content.title if content else (episode.content.title if episode else None)
    key = storage.resolve_key(owner.pk, file_type, filename, target_name=target_name)
    ticket = storage.request_upload(key, content_type, file_size, file_type=file_type)

    job = JobRecordStore().create(
        owner=owner,
        content=content,
        episode=episode,
        source_kind=SourceKind.UPLOAD,
        upload_key=key,
        upload_url=ticket.file_url,
        file_type=file_type,
        original_filename=filename,
        file_size=file_size,
        content_type=content_type,
        max_size=max_size,
        max_attempts=config.get_max_attempts(),
    )
    logger.info('Issued upload URL for %s (job %s)', key, job.job_id)
    return ticket, job


def complete_upload(job_id, requester, file_url, storage=None):
    """
    Enqueue an upload job once its file has landed in storage.

    Completing the same upload twice is a no-op.

    Returns:
        IngestionJob
    """
    store = JobRecordStore()
    job = store.get(job_id)
    if job.owner_id != requester.pk and not requester.is_staff:
        raise ForbiddenError('Not allowed to complete this upload')
    if job.source_kind != SourceKind.UPLOAD:
        raise ValidationError('Job is not an upload', field='jobId')
    if file_url != job.upload_url:
        raise ValidationError('File URL does not match the issued upload', field='fileUrl')
    if job.is_terminal:
        raise ConflictError(f'Job {job_id} is already {job.status}')

    storage = storage or ObjectStoreGateway()
    if not storage.exists(job.upload_key):
        raise ValidationError('Uploaded file not found', field='fileUrl')

    orchestrator = get_orchestrator(storage=storage)
    with transaction.atomic():
        orchestrator.submit(job)
    return store.get(job_id)


def cancel_job(job_id, requester):
    """Cancel a job (owner or staff). See JobOrchestrator.cancel."""
    return get_orchestrator(notify=None).cancel(job_id, requester)


def delete_job(job_id, requester):
    """
    Delete a job record. Active jobs must be cancelled first.

    A pending job is cancelled before deletion so no worker picks it up.
    """
    store = JobRecordStore()
    job = store.get(job_id)
    if not job.can_view(requester):
        raise ForbiddenError('Not allowed to delete this job')
    if job.is_active:
        raise ConflictError(f'Job {job_id} is {job.status}; cancel it first')

    with transaction.atomic():
        if job.status == Status.PENDING:
            JobQueue().kill(job_id, error='deleted')
        QueueEntry.objects.filter(job_id=job_id).exclude(state=QueueEntry.STATE_LEASED).delete()
        store.delete(job_id)
    logger.info('Deleted job %s', job_id)


def create_remote_job(requester, url, title, content_type=Content.TYPE_MOVIE,
                      description='', wait=False):
    """
    Create a draft catalog entry and a remote video download job for it.

    Staff only.

    Returns:
        IngestionJob
    """
    if not requester.is_staff:
        raise ForbiddenError('Admin access required')
    validate_remote_url(url)
    if not extract_video_id(url):
        raise ValidationError('Invalid YouTube URL', field='url')
    if not title:
        raise ValidationError('Title is required', field='title')
    if content_type not in (Content.TYPE_MOVIE, Content.TYPE_SERIES):
        raise ValidationError(f'Unsupported content type: {content_type}', field='type')

    with transaction.atomic():
        slug = slugify(title)[:180] or 'untitled'
        if Content.objects.filter(slug=slug).exists():
            slug = f'{slug}-{generate_nanoid()[:8].lower()}'
        content = Content.objects.create(
            title=title,
            slug=slug,
            description=description or '',
            type=content_type,
            status=Content.STATUS_DRAFT,
        )
        job = create_ingestion_job(
            requester,
            SourceKind.REMOTE_URL,
            FILE_TYPE_VIDEO,
            remote_url=url,
            content_id=content.pk,
            wait=False,
        )

    if wait:
        get_orchestrator(notify=None).drain(worker_id='cli')
        job.refresh_from_db()
    return job


def fetch_remote_info(url):
    """
    Look up a YouTube video's id and title via oEmbed.

    Returns:
        dict: videoId, title, author, thumbnailUrl
    """
    validate_remote_url(url)
    video_id = extract_video_id(url)
    if not video_id:
        raise ValidationError('Invalid YouTube URL', field='url')

    try:
        response = requests.get(OEMBED_URL, params={'url': url, 'format': 'json'}, timeout=10)
    except requests.RequestException as e:
        raise TransientError(f'Could not reach YouTube: {e}')
    if response.status_code in (401, 403, 404):
        raise NotFoundError('Video not found or not embeddable')
    if response.status_code != 200:
        raise TransientError(f'YouTube returned HTTP {response.status_code}')

    data = response.json()
    return {
        'videoId': video_id,
        'title': data.get('title', ''),
        'author': data.get('author_name', ''),
        'thumbnailUrl': data.get('thumbnail_url')
        or f'https://img.youtube.com/vi/{video_id}/hqdefault.jpg',
    }


def expire_stale_uploads(older_than=None, now=None):
    """
    Fail upload jobs whose client never reported the upload complete.

    Returns:
        int: Number of jobs failed
    """
    now = now or timezone.now()
    older_than = older_than or timedelta(seconds=config.get_upload_url_ttl() * 2)
    store = JobRecordStore()
    queued = QueueEntry.objects.values_list('job_id', flat=True)
    stale = IngestionJob.objects.filter(
        status=Status.PENDING,
        source_kind=SourceKind.UPLOAD,
        created_at__lt=now - older_than,
    ).exclude(job_id__in=queued)

    count = 0
    for job in stale:
        try:
            store.update_status(
                job.job_id, Status.PENDING, Status.FAILED,
                error_message='upload was never completed',
            )
            count += 1
        except ConflictError:
            continue
    return count


def purge_finished_jobs(days=None, dry_run=False, logger=None):
    """
    Retention cleanup: delete terminal jobs and closed queue entries.

    Args:
        days: Retention window (defaults to INGEST_RETENTION_DAYS)
        dry_run: Only report what would be deleted
        logger: Optional callable(message) for logging

    Returns:
        dict: {'jobs': n, 'queue_entries': n, 'expired_uploads': n}
    """

    def log(message):
        if logger:
            logger(message)

    days = config.get_retention_days() if days is None else days
    older_than = timedelta(days=days)
    cutoff = timezone.now() - older_than

    if dry_run:
        jobs = IngestionJob.objects.filter(
            status__in=lifecycle.TERMINAL_STATES, finished_at__lt=cutoff
        )
        for job in jobs:
            log(f'Would delete job {job.job_id} ({job.status}, finished {job.finished_at})')
        entries = QueueEntry.objects.filter(
            state__in=[QueueEntry.STATE_DONE, QueueEntry.STATE_DEAD], updated_at__lt=cutoff
        )
        return {'jobs': jobs.count(), 'queue_entries': entries.count(), 'expired_uploads': 0}

    expired = expire_stale_uploads()
    jobs = JobRecordStore().purge_terminal(older_than)
    entries = JobQueue().purge(older_than)
    log(f'Deleted {jobs} jobs and {entries} queue entries; expired {expired} uploads')
    return {'jobs': jobs, 'queue_entries': entries, 'expired_uploads': expired}

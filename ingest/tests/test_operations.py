"""
Tests for ingest/operations.py

Tests high-level operations that can be called from views, tasks, or commands.
"""

import tempfile
from datetime import timedelta
from unittest.mock import MagicMock, patch

import requests
from django.test import TestCase, override_settings
from django.utils import timezone

from ingest.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from ingest.models import Content, Episode, IngestionJob, Profile, QueueEntry
from ingest.operations import (
    cancel_job,
    complete_upload,
    create_ingestion_job,
    create_remote_job,
    delete_job,
    fetch_remote_info,
    get_job_view,
    job_view,
    purge_finished_jobs,
    request_upload,
)
from ingest.store import JobRecordStore
from ingest.tests.fakes import FakeFetcher, FakeStorage, create_user, fake_processor

Status = IngestionJob.Status


class OperationsTestCase(TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.settings_override = override_settings(
            INGEST_WORK_DIR=self.temp_dir.name,
            INGEST_PUBLIC_BASE_URL='https://cdn.example.com',
            INGEST_MAX_SIZE_POSTER='10MB',
        )
        self.settings_override.enable()
        self.owner = create_user()
        self.content = Content.objects.create(title='Big Movie', slug='big-movie')
        self.storage = FakeStorage()

    def tearDown(self):
        self.settings_override.disable()
        self.temp_dir.cleanup()


class CreateIngestionJobTest(OperationsTestCase):
    def test_remote_video_is_queued(self):
        with self.captureOnCommitCallbacks() as callbacks:
            job = create_ingestion_job(
                self.owner, 'remoteUrl', 'video',
                remote_url='https://www.youtube.com/watch?v=dQw4w9WgXcQ',
                content_id=self.content.pk,
            )

        self.assertEqual(job.status, Status.PENDING)
        self.assertEqual(job.remote_video_id, 'dQw4w9WgXcQ')
        self.assertEqual(job.content, self.content)
        self.assertEqual(job.max_size, 5 * 1024 ** 3)
        entry = QueueEntry.objects.get(job_id=job.job_id)
        self.assertEqual(entry.queue, 'video')
        self.assertEqual(entry.priority, 1)
        self.assertEqual(entry.payload, {'file_type': 'video', 'source_kind': 'remote_url'})
        self.assertEqual(len(callbacks), 1)

    def test_upload_from_file_url(self):
        job = create_ingestion_job(
            self.owner, 'upload', 'poster',
            file_url='https://cdn.example.com/uploads/posters/Big_Movie/1_p.png',
            content_id=self.content.pk,
            storage=self.storage,
        )
        self.assertEqual(job.upload_key, 'uploads/posters/Big_Movie/1_p.png')
        self.assertEqual(job.original_filename, '1_p.png')
        entry = QueueEntry.objects.get(job_id=job.job_id)
        self.assertEqual((entry.queue, entry.priority), ('image', 5))

    def test_foreign_file_url(self):
        with self.assertRaises(ValidationError) as ctx:
            create_ingestion_job(
                self.owner, 'upload', 'poster',
                file_url='https://elsewhere.example.com/p.png',
                content_id=self.content.pk,
                storage=self.storage,
            )
        self.assertEqual(ctx.exception.field, 'fileUrl')

    def test_invalid_url_creates_nothing(self):
        with self.assertRaises(ValidationError) as ctx:
            create_ingestion_job(
                self.owner, 'remote_url', 'video', remote_url='ftp://example.com/a.mp4',
                content_id=self.content.pk,
            )
        self.assertEqual(ctx.exception.field, 'remoteUrl')
        self.assertEqual(IngestionJob.objects.count(), 0)
        self.assertEqual(QueueEntry.objects.count(), 0)

    def test_unknown_source_kind(self):
        with self.assertRaises(ValidationError):
            create_ingestion_job(self.owner, 'torrent', 'video')

    def test_unsupported_file_type(self):
        with self.assertRaises(ValidationError) as ctx:
            create_ingestion_job(
                self.owner, 'remote_url', 'audio', remote_url='https://example.com/a.mp3'
            )
        self.assertEqual(ctx.exception.field, 'fileType')

    def test_poster_needs_target(self):
        with self.assertRaises(ValidationError) as ctx:
            create_ingestion_job(
                self.owner, 'remote_url', 'poster', remote_url='https://example.com/p.png'
            )
        self.assertEqual(ctx.exception.field, 'contentId')

    def test_unknown_target(self):
        with self.assertRaises(NotFoundError):
            create_ingestion_job(
                self.owner, 'remote_url', 'video', remote_url='https://example.com/a.mp4',
                content_id=99999,
            )

    def test_episode_from_other_content(self):
        other = Content.objects.create(title='Other', slug='other', type=Content.TYPE_SERIES)
        episode = Episode.objects.create(content=other, episode_number='1', title='Pilot')
        with self.assertRaises(ValidationError) as ctx:
            create_ingestion_job(
                self.owner, 'remote_url', 'video', remote_url='https://example.com/a.mp4',
                content_id=self.content.pk, episode_id=episode.pk,
            )
        self.assertEqual(ctx.exception.field, 'episodeId')

    def test_oversize_file(self):
        with self.assertRaises(ValidationError) as ctx:
            create_ingestion_job(
                self.owner, 'remote_url', 'poster', remote_url='https://example.com/p.png',
                content_id=self.content.pk, file_size=11 * 1024 * 1024,
            )
        self.assertEqual(ctx.exception.field, 'fileSize')

    def test_avatar_needs_no_target(self):
        job = create_ingestion_job(
            self.owner, 'remote_url', 'avatar', remote_url='https://example.com/me.png'
        )
        self.assertIsNone(job.content)
        self.assertEqual(QueueEntry.objects.get(job_id=job.job_id).priority, 10)

    @patch('ingest.orchestrator.MediaProcessor', return_value=fake_processor)
    @patch('ingest.orchestrator.SourceFetcher', return_value=FakeFetcher())
    def test_wait_runs_synchronously(self, _fetcher, _processor):
        job = create_ingestion_job(
            self.owner, 'remote_url', 'avatar', remote_url='https://example.com/me.png',
            wait=True, storage=self.storage,
        )

        self.assertEqual(job.status, Status.COMPLETED)
        self.assertEqual(Profile.objects.get(user=self.owner).avatar_url, job.result_url)


class UploadFlowTest(OperationsTestCase):
    def test_request_upload(self):
        ticket, job = request_upload(
            self.owner, 'poster.png', 2048, 'poster', 'image/png',
            content_id=self.content.pk, storage=self.storage,
        )

        self.assertTrue(ticket.key.startswith('uploads/posters/Big_Movie/'))
        self.assertTrue(ticket.key.endswith('_poster.png'))
        self.assertEqual(ticket.upload_url, 'https://signed.example.com/put?sig=abc')
        self.assertEqual(job.upload_key, ticket.key)
        self.assertEqual(job.upload_url, ticket.file_url)
        self.assertEqual(job.status, Status.PENDING)
        self.assertFalse(QueueEntry.objects.filter(job_id=job.job_id).exists())

    def test_request_upload_rejects_extension(self):
        with self.assertRaises(ValidationError) as ctx:
            request_upload(
                self.owner, 'poster.exe', 2048, 'poster', 'image/png',
                content_id=self.content.pk, storage=self.storage,
            )
        self.assertEqual(ctx.exception.field, 'filename')

    def test_request_upload_rejects_content_type(self):
        with self.assertRaises(ValidationError) as ctx:
            request_upload(
                self.owner, 'poster.png', 2048, 'poster', 'video/mp4',
                content_id=self.content.pk, storage=self.storage,
            )
        self.assertEqual(ctx.exception.field, 'contentType')

    def test_complete_upload(self):
        ticket, job = request_upload(
            self.owner, 'me.png', 2048, 'avatar', 'image/png', storage=self.storage
        )

        with self.assertRaises(ValidationError):
            complete_upload(job.job_id, self.owner, ticket.file_url, storage=self.storage)

        self.storage.objects[ticket.key] = b'png'
        complete_upload(job.job_id, self.owner, ticket.file_url, storage=self.storage)
        complete_upload(job.job_id, self.owner, ticket.file_url, storage=self.storage)

        self.assertEqual(QueueEntry.objects.filter(job_id=job.job_id).count(), 1)

    def test_complete_upload_checks_url_and_owner(self):
        ticket, job = request_upload(
            self.owner, 'me.png', 2048, 'avatar', 'image/png', storage=self.storage
        )
        self.storage.objects[ticket.key] = b'png'

        with self.assertRaises(ValidationError):
            complete_upload(job.job_id, self.owner, 'https://cdn.example.com/x.png',
                            storage=self.storage)
        with self.assertRaises(ForbiddenError):
            complete_upload(job.job_id, create_user('mallory'), ticket.file_url,
                            storage=self.storage)


class JobAccessTest(OperationsTestCase):
    def _job(self):
        return create_ingestion_job(
            self.owner, 'remote_url', 'video', remote_url='https://example.com/a.mp4',
            content_id=self.content.pk,
        )

    def test_job_view_pending(self):
        job = self._job()
        self.assertEqual(job_view(job), {'jobId': job.job_id, 'status': 'pending', 'progress': 0})

    def test_job_view_outcomes(self):
        job = self._job()
        job.status = Status.COMPLETED
        job.result_url = 'https://cdn.example.com/a/index.m3u8'
        self.assertEqual(job_view(job)['result_url'], 'https://cdn.example.com/a/index.m3u8')
        job.status = Status.FAILED
        job.error_message = 'Download failed: HTTP 404'
        view = job_view(job)
        self.assertEqual(view['error'], 'Download failed: HTTP 404')
        self.assertNotIn('result_url', view)

    def test_get_job_view_access(self):
        job = self._job()
        self.assertEqual(get_job_view(job.job_id, self.owner)['status'], 'pending')
        self.assertEqual(
            get_job_view(job.job_id, create_user('admin', staff=True))['jobId'], job.job_id
        )
        with self.assertRaises(ForbiddenError):
            get_job_view(job.job_id, create_user('mallory'))
        with self.assertRaises(NotFoundError):
            get_job_view('missing', self.owner)

    def test_cancel_job(self):
        job = cancel_job(self._job().job_id, self.owner)
        self.assertEqual(job.status, Status.FAILED)
        self.assertEqual(job.error_message, 'cancelled')

    def test_delete_pending_job(self):
        job = self._job()
        delete_job(job.job_id, self.owner)
        self.assertFalse(IngestionJob.objects.filter(job_id=job.job_id).exists())
        self.assertFalse(QueueEntry.objects.filter(job_id=job.job_id).exists())

    def test_delete_active_job_conflicts(self):
        job = self._job()
        JobRecordStore().claim(job.job_id, 'token-a')
        with self.assertRaises(ConflictError):
            delete_job(job.job_id, self.owner)


class RemoteImportTest(OperationsTestCase):
    def test_staff_only(self):
        with self.assertRaises(ForbiddenError):
            create_remote_job(self.owner, 'https://youtu.be/dQw4w9WgXcQ', 'Never')

    def test_creates_draft_content_and_job(self):
        admin = create_user('admin', staff=True)
        job = create_remote_job(
            admin, 'https://youtu.be/dQw4w9WgXcQ', 'Big Movie', description='Imported'
        )

        self.assertEqual(job.file_type, 'video')
        self.assertEqual(job.remote_video_id, 'dQw4w9WgXcQ')
        self.assertEqual(job.content.status, Content.STATUS_DRAFT)
        self.assertEqual(job.content.description, 'Imported')
        # Slug collides with the existing title
        self.assertNotEqual(job.content.slug, 'big-movie')
        self.assertTrue(job.content.slug.startswith('big-movie-'))

    def test_rejects_non_youtube(self):
        with self.assertRaises(ValidationError):
            create_remote_job(
                create_user('admin', staff=True), 'https://example.com/a.mp4', 'A'
            )

    @patch('ingest.operations.requests.get')
    def test_fetch_remote_info(self, mock_get):
        mock_get.return_value = MagicMock(
            status_code=200,
            json=MagicMock(return_value={'title': 'Trailer', 'author_name': 'Studio'}),
        )

        info = fetch_remote_info('https://www.youtube.com/watch?v=dQw4w9WgXcQ')

        self.assertEqual(info['videoId'], 'dQw4w9WgXcQ')
        self.assertEqual(info['title'], 'Trailer')
        self.assertEqual(info['author'], 'Studio')
        self.assertEqual(
            info['thumbnailUrl'], 'https://img.youtube.com/vi/dQw4w9WgXcQ/hqdefault.jpg'
        )

    @patch('ingest.operations.requests.get')
    def test_fetch_remote_info_errors(self, mock_get):
        mock_get.return_value = MagicMock(status_code=404)
        with self.assertRaises(NotFoundError):
            fetch_remote_info('https://youtu.be/dQw4w9WgXcQ')

        mock_get.side_effect = requests.ConnectionError('offline')
        with self.assertRaises(TransientError):
            fetch_remote_info('https://youtu.be/dQw4w9WgXcQ')


class PurgeTest(OperationsTestCase):
    def test_purge_finished_jobs(self):
        store = JobRecordStore()
        old = create_ingestion_job(
            self.owner, 'remote_url', 'video', remote_url='https://example.com/a.mp4',
            content_id=self.content.pk,
        )
        store.update_status(old.job_id, Status.PENDING, Status.FAILED, error_message='x')
        long_ago = timezone.now() - timedelta(days=30)
        IngestionJob.objects.filter(job_id=old.job_id).update(finished_at=long_ago)
        QueueEntry.objects.filter(job_id=old.job_id).update(state='dead', updated_at=long_ago)

        _, abandoned = request_upload(
            self.owner, 'me.png', 2048, 'avatar', 'image/png', storage=self.storage
        )
        IngestionJob.objects.filter(job_id=abandoned.job_id).update(created_at=long_ago)

        preview = purge_finished_jobs(days=7, dry_run=True)
        self.assertEqual(preview['jobs'], 1)
        self.assertEqual(preview['queue_entries'], 1)
        self.assertTrue(IngestionJob.objects.filter(job_id=old.job_id).exists())

        result = purge_finished_jobs(days=7)

        self.assertEqual(result, {'jobs': 1, 'queue_entries': 1, 'expired_uploads': 1})
        self.assertFalse(IngestionJob.objects.filter(job_id=old.job_id).exists())
        abandoned.refresh_from_db()
        self.assertEqual(abandoned.status, Status.FAILED)
        self.assertEqual(abandoned.error_message, 'upload was never completed')

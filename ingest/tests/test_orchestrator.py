"""
Tests for ingest/orchestrator.py

End-to-end worker runs against the real store and queue, with the object
store, fetch and processing steps replaced by in-memory fakes.
"""

import tempfile
import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

from django.test import TestCase, override_settings
from django.utils import timezone

from ingest.catalog import CatalogUpdateAdapter
from ingest.errors import (
    ConflictError,
    FatalError,
    ForbiddenError,
    NotFoundError,
    TransientError,
)
from ingest.models import Content, IngestionJob, Profile, QueueEntry
from ingest.orchestrator import JobOrchestrator
from ingest.queue import JobQueue, Lease
from ingest.store import JobRecordStore
from ingest.tests.fakes import FakeFetcher, FakeStorage, create_user, fake_processor

Status = IngestionJob.Status


@override_settings(INGEST_BACKOFF_BASE_VIDEO=0, INGEST_BACKOFF_BASE_IMAGE=0)
class OrchestratorTestCase(TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.settings_override = override_settings(INGEST_WORK_DIR=self.temp_dir.name)
        self.settings_override.enable()

        self.owner = create_user()
        self.content = Content.objects.create(title='Big Movie', slug='big-movie')
        self.store = JobRecordStore()
        self.queue = JobQueue(lease_seconds=60, max_attempts=3, jitter=0)
        self.storage = FakeStorage()
        self.fetcher = FakeFetcher()
        self.catalog = MagicMock(wraps=CatalogUpdateAdapter())
        self.wakeups = []

    def tearDown(self):
        self.settings_override.disable()
        self.temp_dir.cleanup()

    def orchestrator(self, **overrides):
        parts = {
            'store': self.store,
            'queue': self.queue,
            'storage': self.storage,
            'catalog': self.catalog,
            'fetcher': self.fetcher,
            'processor': fake_processor,
            'notify': self.wakeups.append,
            'timeouts': {'download': None, 'process': None},
        }
        parts.update(overrides)
        return JobOrchestrator(**parts)

    def submit(self, file_type='video', max_attempts=3, **fields):
        fields.setdefault('remote_url', 'https://example.com/movie.mp4')
        if file_type != 'avatar':
            fields.setdefault('content', self.content)
        job = self.store.create(
            owner=self.owner,
            source_kind=IngestionJob.SourceKind.REMOTE_URL,
            file_type=file_type,
            max_attempts=max_attempts,
            **fields,
        )
        self.orchestrator().submit(job)
        return job

    def reload(self, job):
        return IngestionJob.objects.get(job_id=job.job_id)


class SuccessfulRunTest(OrchestratorTestCase):
    def test_video_completes_and_updates_catalog_once(self):
        job = self.submit()

        self.assertEqual(self.orchestrator().drain(worker_id='w1'), 1)

        job = self.reload(job)
        self.assertEqual(job.status, Status.COMPLETED)
        self.assertEqual(job.progress, 100)
        self.assertEqual(job.error_message, '')
        self.assertEqual(job.claimed_by, 'w1')
        self.assertTrue(job.result_url.startswith(f'https://cdn.example.com/media/hls/{job.job_id}/'))
        self.assertTrue(job.result_url.endswith('/index.m3u8'))
        self.assertEqual(self.catalog.publish.call_count, 1)

        self.content.refresh_from_db()
        self.assertEqual(self.content.video_url, job.result_url)
        self.assertEqual(self.content.status, Content.STATUS_READY)

        key = self.storage.key_from_url(job.result_url)
        self.assertIn(key, self.storage.objects)
        self.assertIn(key.replace('index.m3u8', 'segment_00000.ts'), self.storage.objects)
        self.assertEqual(QueueEntry.objects.get(job_id=job.job_id).state, QueueEntry.STATE_DONE)

    def test_log_and_work_dir(self):
        job = self.submit()
        self.orchestrator().drain()

        job = self.reload(job)
        log = job.get_log_path().read_text()
        self.assertIn('=== DOWNLOADING ===', log)
        self.assertIn('=== COMPLETED ===', log)
        self.assertFalse((job.get_work_dir() / 'attempt-1').exists())

    def test_submit_wakes_worker(self):
        self.submit()
        self.assertEqual(self.wakeups, [0])

    def test_poster_publishes_webp(self):
        job = self.submit(file_type='poster', remote_url='https://example.com/poster.png')
        self.orchestrator().drain()

        job = self.reload(job)
        self.assertEqual(job.status, Status.COMPLETED)
        self.content.refresh_from_db()
        self.assertEqual(self.content.poster_url, job.result_url)
        self.assertTrue(job.result_url.endswith('_poster.webp'))

    def test_avatar_replaces_previous_file(self):
        old_key = 'media/avatars/old/1_avatar.webp'
        self.storage.objects[old_key] = b'old'
        Profile.objects.create(user=self.owner, avatar_url=self.storage.public_url(old_key))

        job = self.submit(file_type='avatar', remote_url='https://example.com/me.png')
        self.orchestrator().drain()

        job = self.reload(job)
        self.assertEqual(job.status, Status.COMPLETED)
        self.assertEqual(Profile.objects.get(user=self.owner).avatar_url, job.result_url)
        self.assertNotIn(old_key, self.storage.objects)

    def test_higher_priority_runs_first(self):
        video = self.submit()
        avatar = self.submit(file_type='avatar', remote_url='https://example.com/me.png')

        self.orchestrator().run_once()

        self.assertEqual(self.reload(avatar).status, Status.COMPLETED)
        self.assertEqual(self.reload(video).status, Status.PENDING)


class FailureTest(OrchestratorTestCase):
    def test_unreachable_host_retries_then_fails(self):
        self.fetcher.error = TransientError('Download failed: could not connect (Name or service not known)')
        job = self.submit(max_attempts=3)

        self.assertEqual(self.orchestrator().drain(), 3)

        job = self.reload(job)
        self.assertEqual(job.status, Status.FAILED)
        self.assertEqual(
            job.error_message,
            'retries exhausted: Download failed: could not connect (Name or service not known)',
        )
        self.assertEqual(job.result_url, '')
        self.assertEqual(self.fetcher.calls, 3)
        self.assertEqual(QueueEntry.objects.get(job_id=job.job_id).state, QueueEntry.STATE_DEAD)
        self.catalog.publish.assert_not_called()
        log = job.get_log_path().read_text()
        self.assertEqual(log.count('Final attempt'), 1)

    def test_transient_failure_recovers(self):
        attempts = []

        def flaky(job):
            attempts.append(job.job_id)
            self.fetcher.error = None if len(attempts) > 1 else self.fetcher.error

        self.fetcher.error = TransientError('Download failed: HTTP 503')
        self.fetcher.side_effect = flaky
        job = self.submit()

        self.orchestrator().drain()

        self.assertEqual(self.reload(job).status, Status.COMPLETED)
        self.assertEqual(self.fetcher.calls, 2)

    def test_fatal_error_fails_without_retry(self):
        self.fetcher.error = FatalError('Download failed: HTTP 404')
        job = self.submit()

        self.assertEqual(self.orchestrator().drain(), 1)

        job = self.reload(job)
        self.assertEqual(job.status, Status.FAILED)
        self.assertEqual(job.error_message, 'Download failed: HTTP 404')
        self.assertEqual(self.fetcher.calls, 1)

    def test_processing_failure_leaves_no_artifacts(self):
        def broken_processor(job, downloaded, work_dir, **kwargs):
            raise FatalError('ffmpeg failed with code 1')

        job = self.submit()
        self.orchestrator(processor=broken_processor).drain()

        job = self.reload(job)
        self.assertEqual(job.status, Status.FAILED)
        self.assertEqual(job.error_message, 'ffmpeg failed with code 1')
        self.assertEqual(self.storage.objects, {})

    def test_unexpected_exception_fails_job(self):
        def buggy_processor(job, downloaded, work_dir, **kwargs):
            raise KeyError('codec')

        job = self.submit()
        self.orchestrator(processor=buggy_processor).drain()

        self.assertEqual(self.reload(job).status, Status.FAILED)

    def test_missing_artifact_is_cleaned_up_and_retried(self):
        storage = FakeStorage()
        checks = []

        def flaky_exists(key):
            checks.append(key)
            return len(checks) > 1 and key in storage.objects

        storage.exists = flaky_exists
        job = self.submit()

        self.orchestrator(storage=storage).drain()

        job = self.reload(job)
        self.assertEqual(job.status, Status.COMPLETED)
        self.assertEqual(len(checks), 2)
        playlists = [key for key in storage.objects if key.endswith('index.m3u8')]
        self.assertEqual(playlists, [storage.key_from_url(job.result_url)])

    def test_download_phase_timeout_is_retried_then_fails(self):
        self.fetcher.side_effect = lambda job: time.sleep(0.05)
        self.queue.nack = MagicMock(wraps=self.queue.nack)
        job = self.submit(max_attempts=3)

        self.orchestrator(timeouts={'download': 0.01, 'process': None}).drain()

        job = self.reload(job)
        self.assertEqual(job.status, Status.FAILED)
        self.assertEqual(job.error_message, 'retries exhausted: download phase timed out after 0.01s')
        self.assertEqual(self.fetcher.calls, 3)
        self.assertEqual(self.queue.nack.call_count, 3)
        for call in self.queue.nack.call_args_list:
            self.assertTrue(call.kwargs['retry'])
        self.assertEqual(QueueEntry.objects.get(job_id=job.job_id).state, QueueEntry.STATE_DEAD)
        self.catalog.publish.assert_not_called()

    def test_catalog_failure_keeps_artifact(self):
        self.catalog = MagicMock()
        self.catalog.publish.side_effect = NotFoundError('Content not found: 42')
        job = self.submit()

        self.orchestrator().drain()

        job = self.reload(job)
        self.assertEqual(job.status, Status.FAILED)
        self.assertTrue(job.error_message.startswith('catalog write failed after publish'))
        self.assertIn('artifact kept at https://cdn.example.com/media/hls/', job.error_message)
        self.assertTrue(any(key.endswith('index.m3u8') for key in self.storage.objects))
        self.assertEqual(self.catalog.publish.call_count, 1)


class OwnershipTest(OrchestratorTestCase):
    def test_only_one_claimant_wins(self):
        job = self.submit()
        lease = self.queue.dequeue(worker_id='w1')
        self.assertIsNone(self.queue.dequeue(worker_id='w2'))

        self.store.claim(job.job_id, lease.token, worker_id='w1')
        rival = Lease(
            job_id=job.job_id, token='rival-token', payload={}, attempt=1,
            max_attempts=3, queue='video', expires_at=None,
        )
        self.assertIsNone(self.orchestrator().execute(rival, worker_id='w2'))
        self.assertEqual(self.reload(job).lease_token, lease.token)

        self.orchestrator().execute(lease, worker_id='w1')

        job = self.reload(job)
        self.assertEqual(job.status, Status.COMPLETED)
        self.assertEqual(job.claimed_by, 'w1')
        self.assertEqual(self.catalog.publish.call_count, 1)
        self.assertEqual(self.fetcher.calls, 1)

    def test_late_delivery_of_finished_job_is_dropped(self):
        job = self.submit()
        lease = self.queue.dequeue()
        self.orchestrator().execute(lease)
        stale = Lease(
            job_id=job.job_id, token='stale-token', payload={}, attempt=2,
            max_attempts=3, queue='video', expires_at=None,
        )

        self.assertIsNone(self.orchestrator().execute(stale))
        self.assertEqual(self.reload(job).status, Status.COMPLETED)
        self.assertEqual(self.catalog.publish.call_count, 1)

    def test_lost_lease_abandons_without_writing(self):
        def steal(job):
            IngestionJob.objects.filter(job_id=job.job_id).update(lease_token='someone-else')

        self.fetcher.side_effect = steal
        job = self.submit()

        self.assertIsNone(self.orchestrator().execute(self.queue.dequeue()))

        job = self.reload(job)
        self.assertEqual(job.status, Status.DOWNLOADING)
        self.assertEqual(job.lease_token, 'someone-else')
        self.assertEqual(job.error_message, '')
        self.catalog.publish.assert_not_called()

    def test_lease_lost_after_catalog_publish_keeps_artifact(self):
        adapter = CatalogUpdateAdapter()

        def publish_then_lose_lease(job, url):
            published = adapter.publish(job, url)
            IngestionJob.objects.filter(job_id=job.job_id).update(lease_token='someone-else')
            return published

        self.catalog.publish.side_effect = publish_then_lose_lease
        job = self.submit()

        self.assertIsNone(self.orchestrator().execute(self.queue.dequeue()))

        self.content.refresh_from_db()
        self.assertTrue(self.content.video_url.endswith('/index.m3u8'))
        self.assertIn(self.storage.key_from_url(self.content.video_url), self.storage.objects)
        self.assertEqual(self.reload(job).status, Status.PROCESSING)

    def test_claim_error_does_not_escape_worker(self):
        job = self.submit()

        with patch.object(self.store, 'claim', side_effect=RuntimeError('database gone away')):
            self.assertEqual(self.orchestrator().drain(), 1)

        self.assertEqual(self.reload(job).status, Status.PENDING)
        self.assertEqual(QueueEntry.objects.get(job_id=job.job_id).state, QueueEntry.STATE_LEASED)
        self.assertEqual(self.fetcher.calls, 0)

    def test_deleted_job_drops_queue_entry(self):
        job = self.submit()
        IngestionJob.objects.filter(job_id=job.job_id).delete()

        self.assertEqual(self.orchestrator().drain(), 1)
        self.assertEqual(QueueEntry.objects.get(job_id=job.job_id).state, QueueEntry.STATE_DONE)


class CrashRecoveryTest(OrchestratorTestCase):
    def crash_mid_processing(self, job):
        lease = self.queue.dequeue(worker_id='crashed')
        self.store.claim(job.job_id, lease.token, worker_id='crashed')
        self.store.update_status(
            job.job_id, Status.DOWNLOADING, Status.PROCESSING, expected_token=lease.token, progress=50
        )
        return lease

    def test_crash_mid_processing_is_redelivered(self):
        job = self.submit()
        crashed = self.crash_mid_processing(job)

        redelivered = self.queue.dequeue(
            worker_id='w2', now=timezone.now() + timedelta(seconds=61)
        )
        self.assertEqual(redelivered.job_id, job.job_id)
        self.assertEqual(redelivered.attempt, 2)

        self.orchestrator().execute(redelivered, worker_id='w2')

        job = self.reload(job)
        self.assertEqual(job.status, Status.COMPLETED)
        self.assertEqual(job.claimed_by, 'w2')
        with self.assertRaises(ConflictError):
            self.queue.ack(crashed.token)
        self.assertEqual(self.catalog.publish.call_count, 1)

    def test_crash_on_final_attempt_is_reaped(self):
        job = self.submit(max_attempts=1)
        self.crash_mid_processing(job)

        failed = self.orchestrator().reap(now=timezone.now() + timedelta(seconds=61))

        self.assertEqual(failed, [job.job_id])
        job = self.reload(job)
        self.assertEqual(job.status, Status.FAILED)
        self.assertEqual(job.error_message, 'retries exhausted: worker lease expired')


class CancelTest(OrchestratorTestCase):
    def test_cancel_pending(self):
        job = self.submit()

        self.orchestrator().cancel(job.job_id, self.owner)

        job = self.reload(job)
        self.assertEqual(job.status, Status.FAILED)
        self.assertEqual(job.error_message, 'cancelled')
        self.assertEqual(QueueEntry.objects.get(job_id=job.job_id).state, QueueEntry.STATE_DEAD)
        self.assertEqual(self.orchestrator().drain(), 0)
        self.assertEqual(self.fetcher.calls, 0)

    def test_cancel_while_downloading(self):
        orchestrator = self.orchestrator()
        self.fetcher.side_effect = lambda job: orchestrator.cancel(job.job_id, self.owner)
        job = self.submit()

        orchestrator.drain()

        job = self.reload(job)
        self.assertEqual(job.status, Status.FAILED)
        self.assertEqual(job.error_message, 'cancelled')
        self.assertEqual(self.storage.objects, {})
        self.catalog.publish.assert_not_called()

    def test_cancel_requires_owner_or_staff(self):
        job = self.submit()
        with self.assertRaises(ForbiddenError):
            self.orchestrator().cancel(job.job_id, create_user('mallory'))
        self.orchestrator().cancel(job.job_id, create_user('admin', staff=True))
        self.assertEqual(self.reload(job).status, Status.FAILED)

    def test_cancel_terminal(self):
        job = self.submit()
        self.orchestrator().drain()
        with self.assertRaises(ConflictError):
            self.orchestrator().cancel(job.job_id, self.owner)


class LeaseHeartbeatTest(OrchestratorTestCase):
    def slow_processor(self, beat):
        def processor(job, downloaded, work_dir, **kwargs):
            # Longer than any progress report: only the timer keeps the lease
            self.assertTrue(beat.wait(timeout=5))
            return fake_processor(job, downloaded, work_dir, **kwargs)
        return processor

    def test_lease_is_extended_during_a_silent_phase(self):
        beat = threading.Event()
        self.queue.heartbeat = MagicMock(side_effect=lambda token: beat.set())
        job = self.submit()
        lease = self.queue.dequeue()

        orchestrator = self.orchestrator(
            processor=self.slow_processor(beat), heartbeat_interval=0.01
        )
        orchestrator.execute(lease)

        self.assertEqual(self.reload(job).status, Status.COMPLETED)
        self.queue.heartbeat.assert_any_call(lease.token)

    def test_lease_lost_during_phase_abandons(self):
        def wait_for_keeper(job, downloaded, work_dir, **kwargs):
            # The keeper thread exits once it sees the lease is gone
            keeper = next(t for t in threading.enumerate() if t.name == f'lease-{job.job_id}')
            keeper.join(timeout=5)
            self.assertFalse(keeper.is_alive())
            return fake_processor(job, downloaded, work_dir, **kwargs)

        self.queue.heartbeat = MagicMock(side_effect=ConflictError('Lease is no longer held'))
        job = self.submit()

        orchestrator = self.orchestrator(processor=wait_for_keeper, heartbeat_interval=0.01)
        self.assertIsNone(orchestrator.execute(self.queue.dequeue()))

        job = self.reload(job)
        self.assertEqual(job.status, Status.PROCESSING)
        self.assertEqual(job.error_message, '')
        self.assertEqual(self.storage.objects, {})
        self.catalog.publish.assert_not_called()

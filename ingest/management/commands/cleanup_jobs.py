"""
Management command for ingestion retention cleanup.

Deletes finished jobs past the retention window, closed queue entries, and
work directories left behind by crashed workers.
"""
import shutil
from datetime import timedelta
from pathlib import Path

from django.core.management.base import BaseCommand
from django.utils import timezone

from ingest.models import IngestionJob
from ingest.operations import purge_finished_jobs
from ingest.service import config


class Command(BaseCommand):
    help = 'Delete finished ingestion jobs and abandoned job-{id} work directories'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would be deleted without actually deleting'
        )
        parser.add_argument(
            '--force',
            action='store_true',
            help='Delete without confirmation'
        )
        parser.add_argument(
            '--max-age',
            type=int,
            default=None,
            help='Retention in days for finished jobs (default: INGEST_RETENTION_DAYS)'
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        force = options['force']
        max_age = options['max_age']

        result = purge_finished_jobs(days=max_age, dry_run=True, logger=self.stdout.write)
        orphans = self._find_orphan_dirs()

        if not result['jobs'] and not result['queue_entries'] and not orphans:
            self.stdout.write(self.style.SUCCESS('Nothing to clean up'))
            return

        self.stdout.write(
            f"\nFinished jobs: {result['jobs']} | Queue entries: {result['queue_entries']} "
            f"| Orphan work dirs: {len(orphans)}"
        )
        for path in orphans:
            self.stdout.write(f'  {path}')

        if dry_run:
            self.stdout.write(self.style.WARNING('\nDRY RUN: nothing deleted'))
            self.stdout.write('Run without --dry-run to actually delete')
            return

        if not force:
            response = input('\nDelete these? [y/N]: ')
            if response.lower() != 'y':
                self.stdout.write('Cancelled')
                return

        result = purge_finished_jobs(days=max_age)
        removed = 0
        for path in orphans:
            try:
                shutil.rmtree(path)
                removed += 1
            except OSError as e:
                self.stderr.write(self.style.ERROR(f'Failed to delete {path}: {e}'))

        self.stdout.write(self.style.SUCCESS(
            f"Deleted {result['jobs']} jobs, {result['queue_entries']} queue entries "
            f"and {removed} work directories"
        ))

    def _find_orphan_dirs(self, min_age=timedelta(hours=1)):
        """job-{id} directories with no active job behind them"""
        work_dir = Path(config.get_work_dir())
        if not work_dir.exists():
            return []

        now = timezone.now()
        orphans = []
        for path in work_dir.glob('job-*'):
            if not path.is_dir():
                continue
            mtime = timezone.datetime.fromtimestamp(
                path.stat().st_mtime, tz=timezone.get_current_timezone()
            )
            if now - mtime < min_age:
                continue
            job_id = path.name[4:]  # Remove 'job-' prefix
            active = IngestionJob.objects.filter(
                job_id=job_id,
                status__in=[IngestionJob.Status.DOWNLOADING, IngestionJob.Status.PROCESSING],
            ).exists()
            if not active:
                orphans.append(path)
        return orphans

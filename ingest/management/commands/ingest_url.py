"""
Management command to ingest a remote URL into the catalog.

Creates the job exactly like the web API does. With --wait the worker runs
in the foreground until the queue is drained, which is useful for CLI
workflows and debugging.
"""

import json

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from ingest.errors import IngestError
from ingest.models import IngestionJob
from ingest.operations import create_ingestion_job, job_view
from ingest.service.constants import FILE_TYPES


class Command(BaseCommand):
    help = 'Create an ingestion job for a remote URL'

    def add_arguments(self, parser):
        parser.add_argument('url', type=str, help='URL to ingest')
        parser.add_argument('--owner', type=str, required=True, help='Username of the job owner')
        parser.add_argument(
            '--file-type',
            type=str,
            choices=FILE_TYPES,
            default='video',
            help='What the URL points at (default: video)',
        )
        parser.add_argument('--content', type=int, help='Content id to publish to')
        parser.add_argument('--episode', type=int, help='Episode id to publish to')
        parser.add_argument(
            '--wait', action='store_true', help='Run the worker in the foreground'
        )
        parser.add_argument('--verbose', action='store_true', help='Verbose output')
        parser.add_argument('--json', action='store_true', help='JSON output')

    def handle(self, *args, **options):
        verbose = options['verbose']
        json_output = options['json']

        User = get_user_model()
        try:
            owner = User.objects.get(username=options['owner'])
        except User.DoesNotExist:
            raise CommandError(f"Unknown user: {options['owner']}")

        def log(message):
            if verbose:
                self.stdout.write(message)

        try:
            job = create_ingestion_job(
                owner,
                IngestionJob.SourceKind.REMOTE_URL,
                options['file_type'],
                remote_url=options['url'],
                content_id=options['content'],
                episode_id=options['episode'],
                wait=options['wait'],
                logger=log,
            )
        except IngestError as e:
            if json_output:
                self.stdout.write(json.dumps({'status': 'error', **e.as_dict()}))
                return
            raise CommandError(e.message)

        view = job_view(job)
        if json_output:
            self.stdout.write(json.dumps(view, indent=2))
            return

        if job.status == IngestionJob.Status.FAILED:
            self.stderr.write(self.style.ERROR(f'✗ Error: {job.error_message}'))
            self.stderr.write(f'  Job: {job.job_id}')
            self.stderr.write(f'  Log: {job.get_log_path()}')
            return

        self.stdout.write(self.style.SUCCESS(f'✓ Job {job.job_id} {job.status}'))
        self.stdout.write(f'  URL: {options["url"]}')
        if job.result_url:
            self.stdout.write(f'  Result: {job.result_url}')

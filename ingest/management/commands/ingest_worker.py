"""
Management command to run the ingestion worker in the foreground.

Same loop as the huey task, without huey. Useful on hosts that do not run
a huey consumer, and for debugging a stuck queue.
"""

import socket
import time

from django.core.management.base import BaseCommand

from ingest.operations import get_orchestrator


class Command(BaseCommand):
    help = 'Run the ingestion worker loop (foreground, no Huey)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once', action='store_true', help='Drain the queue once and exit'
        )
        parser.add_argument(
            '--poll',
            type=float,
            default=5.0,
            help='Seconds to sleep when the queue is empty (default: 5)',
        )
        parser.add_argument('--worker-id', type=str, default='', help='Worker name for lease audit')
        parser.add_argument(
            '--status', action='store_true', help='Print queue entry counts per state and exit'
        )

    def handle(self, *args, **options):
        worker_id = options['worker_id'] or f'{socket.gethostname()}-cli'
        orchestrator = get_orchestrator(notify=None)

        if options['status']:
            counts = orchestrator.queue.counts()
            for state, count in counts.items():
                self.stdout.write(f'{state:>8}: {count}')
            if counts.get('dead'):
                self.stdout.write(self.style.WARNING(f"{counts['dead']} dead entries need attention"))
            return

        if options['once']:
            processed = orchestrator.drain(worker_id=worker_id)
            self.stdout.write(self.style.SUCCESS(f'Processed {processed} jobs'))
            return

        self.stdout.write(f'Worker {worker_id} started, polling every {options["poll"]}s')
        try:
            while True:
                job_id = orchestrator.run_once(worker_id)
                if job_id is None:
                    time.sleep(options['poll'])
                else:
                    self.stdout.write(f'Processed {job_id}')
        except KeyboardInterrupt:
            self.stdout.write('Stopped')

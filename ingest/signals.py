import logging
import shutil

from django.db.models.signals import pre_delete
from django.dispatch import receiver

from ingest.models import IngestionJob

logger = logging.getLogger(__name__)


@receiver(pre_delete, sender=IngestionJob)
def cleanup_job_files(sender, instance, **kwargs):
    """
    Delete a job's scratch directory and log file when the job is deleted.
    This handles both single and bulk deletions.
    """
    work_dir = instance.get_work_dir()
    if work_dir.exists():
        try:
            shutil.rmtree(work_dir)
        except OSError as e:
            # Log error but continue with deletion
            logger.warning('Error deleting directory %s: %s', work_dir, e)

    log_path = instance.get_log_path()
    if log_path.exists():
        try:
            log_path.unlink()
        except OSError as e:
            logger.warning('Error deleting log %s: %s', log_path, e)

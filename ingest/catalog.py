"""
Applies a finished artifact URL to its catalog target.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction

from ingest.errors import NotFoundError, ValidationError
from ingest.models import Content, Episode, Profile
from ingest.service.constants import FILE_TYPE_AVATAR, FILE_TYPE_POSTER, FILE_TYPE_VIDEO

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    changed: bool
    replaced_url: Optional[str] = None

    def __bool__(self):
        return self.changed


class CatalogUpdateAdapter:
    """
    Writes result URLs onto Content, Episode and Profile rows.

    publish() is idempotent: calling it again with the URL already in place
    changes nothing and still succeeds.
    """

    def publish(self, job, result_url):
        """
        Set the target's media URL for a completed job.

        Returns:
            PublishResult: truthy when a row changed; replaced_url is the
            previous URL that the new one displaced, if any

        Raises:
            NotFoundError: The target row no longer exists
            ValidationError: The job has no target for its file type
        """
        with transaction.atomic():
            if job.file_type == FILE_TYPE_AVATAR:
                return self._publish_avatar(job, result_url)
            if job.file_type == FILE_TYPE_VIDEO:
                if job.episode_id:
                    return self._set(self._episode(job), 'video_url', result_url)
                if job.content_id:
                    return self._publish_content_video(job, result_url)
            if job.file_type == FILE_TYPE_POSTER:
                if job.content_id:
                    return self._set(self._content(job), 'poster_url', result_url)
                if job.episode_id:
                    return self._set(self._episode(job), 'thumbnail_url', result_url)
        raise ValidationError(f'Job {job.job_id} has no catalog target', field='target')

    def _content(self, job):
        try:
            return Content.objects.select_for_update().get(pk=job.content_id)
        except Content.DoesNotExist:
            raise NotFoundError(f'Content not found: {job.content_id}')

    def _episode(self, job):
        try:
            return Episode.objects.select_for_update().get(pk=job.episode_id)
        except Episode.DoesNotExist:
            raise NotFoundError(f'Episode not found: {job.episode_id}')

    def _set(self, obj, field, url):
        previous = getattr(obj, field)
        if previous == url:
            return PublishResult(changed=False)
        setattr(obj, field, url)
        obj.save(update_fields=[field, 'updated_at'])
        logger.info('Set %s.%s for %s', type(obj).__name__, field, obj.pk)
        return PublishResult(changed=True, replaced_url=previous or None)

    def _publish_content_video(self, job, result_url):
        content = self._content(job)
        update_fields = []
        previous = content.video_url
        if content.video_url != result_url:
            content.video_url = result_url
            update_fields.append('video_url')
        if content.status == Content.STATUS_DRAFT:
            content.status = Content.STATUS_READY
            update_fields.append('status')
        if not update_fields:
            return PublishResult(changed=False)
        content.save(update_fields=update_fields + ['updated_at'])
        logger.info('Published video for content %s (%s)', content.pk, content.status)
        replaced = previous if 'video_url' in update_fields and previous else None
        return PublishResult(changed=True, replaced_url=replaced)

    def _publish_avatar(self, job, result_url):
        profile, _ = Profile.objects.select_for_update().get_or_create(user_id=job.owner_id)
        previous = profile.avatar_url
        if previous == result_url:
            return PublishResult(changed=False)
        profile.avatar_url = result_url
        profile.save(update_fields=['avatar_url'])
        logger.info('Updated avatar for user %s', job.owner_id)
        return PublishResult(changed=True, replaced_url=previous or None)

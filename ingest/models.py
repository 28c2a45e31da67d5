from pathlib import Path

from django.conf import settings
from django.db import models
from nanoid import generate

from ingest.service import config


def generate_nanoid():
    """Generate NanoID with A-Z a-z 0-9 alphabet"""
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
    return generate(alphabet, size=21)


class Content(models.Model):
    """Catalog entry for a movie or series. Only the media fields are modelled here."""

    TYPE_MOVIE = "movie"
    TYPE_SERIES = "series"

    TYPE_CHOICES = [
        (TYPE_MOVIE, "Movie"),
        (TYPE_SERIES, "Series"),
    ]

    STATUS_DRAFT = "draft"
    STATUS_READY = "ready"
    STATUS_PUBLISHED = "published"
    STATUS_ARCHIVED = "archived"

    STATUS_CHOICES = [
        (STATUS_DRAFT, "Draft"),
        (STATUS_READY, "Ready"),
        (STATUS_PUBLISHED, "Published"),
        (STATUS_ARCHIVED, "Archived"),
    ]

    title = models.CharField(max_length=500)
    slug = models.SlugField(max_length=200, unique=True)
    description = models.TextField(blank=True)
    type = models.CharField(max_length=10, choices=TYPE_CHOICES, default=TYPE_MOVIE)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_DRAFT)
    video_url = models.URLField(max_length=2048, blank=True)
    poster_url = models.URLField(max_length=2048, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.title


class Episode(models.Model):
    content = models.ForeignKey(Content, on_delete=models.CASCADE, related_name="episodes")
    # Supports formats like "1.01", "1.2", "0"
    episode_number = models.CharField(max_length=20)
    title = models.CharField(max_length=500)
    video_url = models.URLField(max_length=2048, blank=True)
    thumbnail_url = models.URLField(max_length=2048, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["content", "episode_number"], name="episode_unique_number"
            ),
        ]

    def __str__(self):
        return f"{self.content.title} #{self.episode_number}"


class Profile(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="profile"
    )
    avatar_url = models.URLField(max_length=2048, blank=True)

    def __str__(self):
        return f"Profile({self.user_id})"


class IngestionJob(models.Model):
    """A single media ingestion: fetch a source, process it, publish the artifact"""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        DOWNLOADING = "downloading", "Downloading"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    class SourceKind(models.TextChoices):
        UPLOAD = "upload", "Upload"
        REMOTE_URL = "remote_url", "Remote URL"

    class FileType(models.TextChoices):
        VIDEO = "video", "Video"
        POSTER = "poster", "Poster"
        AVATAR = "avatar", "Avatar"

    # Primary key
    job_id = models.CharField(
        max_length=21, primary_key=True, default=generate_nanoid, editable=False
    )

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="ingestion_jobs"
    )

    # Target
    content = models.ForeignKey(
        Content, null=True, blank=True, on_delete=models.CASCADE, related_name="ingestion_jobs"
    )
    episode = models.ForeignKey(
        Episode, null=True, blank=True, on_delete=models.CASCADE, related_name="ingestion_jobs"
    )

    # Source
    source_kind = models.CharField(max_length=20, choices=SourceKind.choices)
    upload_key = models.CharField(max_length=1024, blank=True)
    upload_url = models.URLField(max_length=2048, blank=True)
    remote_url = models.URLField(max_length=2048, blank=True)
    remote_video_id = models.CharField(max_length=200, blank=True)

    file_type = models.CharField(max_length=10, choices=FileType.choices)
    original_filename = models.CharField(max_length=500, blank=True)
    file_size = models.BigIntegerField(null=True, blank=True)
    content_type = models.CharField(max_length=100, blank=True)

    # Policy snapshot, fixed at creation
    max_size = models.BigIntegerField(null=True, blank=True)
    max_attempts = models.PositiveSmallIntegerField(default=3)

    # State
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.PENDING, db_index=True
    )
    progress = models.PositiveSmallIntegerField(default=0)
    result_url = models.URLField(max_length=2048, blank=True)
    error_message = models.TextField(blank=True)
    cancel_requested = models.BooleanField(default=False)

    # Lease audit
    lease_token = models.CharField(max_length=64, blank=True)
    claimed_by = models.CharField(max_length=200, blank=True)
    claimed_at = models.DateTimeField(null=True, blank=True)

    # Logging
    log_path = models.CharField(max_length=1024, blank=True)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["owner", "status"], name="ingest_job_owner_status_idx"),
            models.Index(fields=["finished_at"], name="ingest_job_finished_idx"),
        ]

    def __str__(self):
        return f"{self.file_type} job {self.job_id} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in (self.Status.COMPLETED, self.Status.FAILED)

    @property
    def is_active(self):
        return self.status in (self.Status.DOWNLOADING, self.Status.PROCESSING)

    @property
    def target_name(self):
        """Name used to group this job's storage keys"""
        if self.content_id:
            return self.content.title
        return None

    def get_work_dir(self):
        """Absolute scratch directory for this job's files"""
        return Path(config.get_work_dir()) / f"job-{self.job_id}"

    def get_log_path(self):
        """Absolute path of this job's processing log"""
        if self.log_path:
            return Path(self.log_path)
        return Path(config.get_work_dir()) / "logs" / f"{self.job_id}.log"

    def can_view(self, user):
        return user.is_staff or user.pk == self.owner_id


class QueueEntry(models.Model):
    """Durable queue row for one job. The job id doubles as the dedup key."""

    STATE_READY = "ready"
    STATE_LEASED = "leased"
    STATE_DONE = "done"
    STATE_DEAD = "dead"

    STATE_CHOICES = [
        (STATE_READY, "Ready"),
        (STATE_LEASED, "Leased"),
        (STATE_DONE, "Done"),
        (STATE_DEAD, "Dead"),
    ]

    QUEUE_VIDEO = "video"
    QUEUE_IMAGE = "image"

    QUEUE_CHOICES = [
        (QUEUE_VIDEO, "Video"),
        (QUEUE_IMAGE, "Image"),
    ]

    job_id = models.CharField(max_length=64, unique=True)
    queue = models.CharField(max_length=10, choices=QUEUE_CHOICES, default=QUEUE_VIDEO)
    payload = models.JSONField(default=dict, blank=True)
    priority = models.IntegerField(default=0)
    state = models.CharField(
        max_length=10, choices=STATE_CHOICES, default=STATE_READY, db_index=True
    )
    attempts = models.PositiveSmallIntegerField(default=0)
    max_attempts = models.PositiveSmallIntegerField(default=3)
    available_at = models.DateTimeField(db_index=True)
    lease_token = models.CharField(max_length=64, blank=True, db_index=True)
    lease_expires_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "queue entries"
        indexes = [
            models.Index(fields=["state", "priority", "id"], name="ingest_queue_state_prio_idx"),
        ]

    def __str__(self):
        return f"{self.job_id} [{self.state}]"

    @property
    def is_open(self):
        return self.state in (self.STATE_READY, self.STATE_LEASED)

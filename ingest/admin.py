from django.contrib import admin
from django.utils.html import format_html

from ingest.errors import IngestError
from ingest.models import Content, Episode, IngestionJob, Profile, QueueEntry
from ingest.operations import cancel_job


@admin.register(IngestionJob)
class IngestionJobAdmin(admin.ModelAdmin):
    list_display = [
        'job_id',
        'file_type',
        'source_kind',
        'status',
        'progress_display',
        'owner',
        'error_message',
        'updated_at',
    ]

    list_filter = [
        'status',
        'file_type',
        'source_kind',
        'created_at',
    ]

    search_fields = [
        'job_id',
        'remote_url',
        'upload_key',
        'original_filename',
        'owner__username',
    ]

    readonly_fields = [
        'job_id',
        'status',
        'progress',
        'result_url',
        'error_message',
        'lease_token',
        'claimed_by',
        'claimed_at',
        'created_at',
        'updated_at',
        'finished_at',
        'log_display',
    ]

    fieldsets = [
        ('Identification', {'fields': ['job_id', 'owner', 'file_type']}),
        ('Target', {'fields': ['content', 'episode']}),
        (
            'Source',
            {
                'fields': [
                    'source_kind',
                    'upload_key',
                    'upload_url',
                    'remote_url',
                    'remote_video_id',
                    'original_filename',
                    'file_size',
                    'content_type',
                ]
            },
        ),
        ('Status', {'fields': ['status', 'progress', 'result_url', 'error_message', 'cancel_requested']}),
        ('Lease', {'fields': ['lease_token', 'claimed_by', 'claimed_at']}),
        ('Logs', {'fields': ['log_display']}),
        ('Timestamps', {'fields': ['created_at', 'updated_at', 'finished_at']}),
    ]

    actions = ['cancel_jobs']

    def progress_display(self, obj):
        return f'{obj.progress}%'

    progress_display.short_description = 'Progress'

    def log_display(self, obj):
        log_path = obj.get_log_path()
        if not log_path.exists():
            return 'No log file'

        try:
            log_content = log_path.read_text()
        except OSError as e:
            return f'Error reading log: {e}'
        return format_html(
            '<pre style="background: #f5f5f5; padding: 10px; '
            'border-radius: 4px; max-height: 400px; overflow: auto;">{}</pre>',
            log_content,
        )

    log_display.short_description = 'Logs'

    def cancel_jobs(self, request, queryset):
        count = 0
        for job in queryset:
            if job.is_terminal:
                continue
            try:
                cancel_job(job.job_id, request.user)
                count += 1
            except IngestError as e:
                self.message_user(request, f'{job.job_id}: {e.message}', level='warning')
        self.message_user(request, f'Cancelled {count} jobs.')

    cancel_jobs.short_description = 'Cancel selected jobs'


@admin.register(QueueEntry)
class QueueEntryAdmin(admin.ModelAdmin):
    list_display = ['job_id', 'queue', 'priority', 'state', 'attempts', 'available_at', 'last_error']
    list_filter = ['state', 'queue']
    search_fields = ['job_id']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


class EpisodeInline(admin.TabularInline):
    model = Episode
    extra = 0
    fields = ['episode_number', 'title', 'video_url', 'thumbnail_url']


@admin.register(Content)
class ContentAdmin(admin.ModelAdmin):
    list_display = ['title', 'type', 'status', 'updated_at']
    list_filter = ['type', 'status']
    search_fields = ['title', 'slug']
    prepopulated_fields = {'slug': ['title']}
    inlines = [EpisodeInline]


@admin.register(Profile)
class ProfileAdmin(admin.ModelAdmin):
    list_display = ['user', 'avatar_url']
    search_fields = ['user__username']

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

import ingest.models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Content',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('title', models.CharField(max_length=500)),
                ('slug', models.SlugField(max_length=200, unique=True)),
                ('description', models.TextField(blank=True)),
                ('type', models.CharField(choices=[('movie', 'Movie'), ('series', 'Series')], default='movie', max_length=10)),
                ('status', models.CharField(choices=[('draft', 'Draft'), ('ready', 'Ready'), ('published', 'Published'), ('archived', 'Archived')], default='draft', max_length=20)),
                ('video_url', models.URLField(blank=True, max_length=2048)),
                ('poster_url', models.URLField(blank=True, max_length=2048)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name='Episode',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('episode_number', models.CharField(max_length=20)),
                ('title', models.CharField(max_length=500)),
                ('video_url', models.URLField(blank=True, max_length=2048)),
                ('thumbnail_url', models.URLField(blank=True, max_length=2048)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('content', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='episodes', to='ingest.content')),
            ],
            options={
                'constraints': [models.UniqueConstraint(fields=('content', 'episode_number'), name='episode_unique_number')],
            },
        ),
        migrations.CreateModel(
            name='Profile',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('avatar_url', models.URLField(blank=True, max_length=2048)),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='profile', to=settings.AUTH_USER_MODEL)),
            ],
        ),
        migrations.CreateModel(
            name='QueueEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('job_id', models.CharField(max_length=64, unique=True)),
                ('queue', models.CharField(choices=[('video', 'Video'), ('image', 'Image')], default='video', max_length=10)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('priority', models.IntegerField(default=0)),
                ('state', models.CharField(choices=[('ready', 'Ready'), ('leased', 'Leased'), ('done', 'Done'), ('dead', 'Dead')], db_index=True, default='ready', max_length=10)),
                ('attempts', models.PositiveSmallIntegerField(default=0)),
                ('max_attempts', models.PositiveSmallIntegerField(default=3)),
                ('available_at', models.DateTimeField(db_index=True)),
                ('lease_token', models.CharField(blank=True, db_index=True, max_length=64)),
                ('lease_expires_at', models.DateTimeField(blank=True, null=True)),
                ('last_error', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name_plural': 'queue entries',
                'indexes': [models.Index(fields=['state', 'priority', 'id'], name='ingest_queue_state_prio_idx')],
            },
        ),
        migrations.CreateModel(
            name='IngestionJob',
            fields=[
                ('job_id', models.CharField(default=ingest.models.generate_nanoid, editable=False, max_length=21, primary_key=True, serialize=False)),
                ('source_kind', models.CharField(choices=[('upload', 'Upload'), ('remote_url', 'Remote URL')], max_length=20)),
                ('upload_key', models.CharField(blank=True, max_length=1024)),
                ('upload_url', models.URLField(blank=True, max_length=2048)),
                ('remote_url', models.URLField(blank=True, max_length=2048)),
                ('remote_video_id', models.CharField(blank=True, max_length=200)),
                ('file_type', models.CharField(choices=[('video', 'Video'), ('poster', 'Poster'), ('avatar', 'Avatar')], max_length=10)),
                ('original_filename', models.CharField(blank=True, max_length=500)),
                ('file_size', models.BigIntegerField(blank=True, null=True)),
                ('content_type', models.CharField(blank=True, max_length=100)),
                ('max_size', models.BigIntegerField(blank=True, null=True)),
                ('max_attempts', models.PositiveSmallIntegerField(default=3)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('downloading', 'Downloading'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed')], db_index=True, default='pending', max_length=20)),
                ('progress', models.PositiveSmallIntegerField(default=0)),
                ('result_url', models.URLField(blank=True, max_length=2048)),
                ('error_message', models.TextField(blank=True)),
                ('cancel_requested', models.BooleanField(default=False)),
                ('lease_token', models.CharField(blank=True, max_length=64)),
                ('claimed_by', models.CharField(blank=True, max_length=200)),
                ('claimed_at', models.DateTimeField(blank=True, null=True)),
                ('log_path', models.CharField(blank=True, max_length=1024)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                ('content', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='ingestion_jobs', to='ingest.content')),
                ('episode', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='ingestion_jobs', to='ingest.episode')),
                ('owner', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='ingestion_jobs', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['owner', 'status'], name='ingest_job_owner_status_idx'),
                    models.Index(fields=['finished_at'], name='ingest_job_finished_idx'),
                ],
            },
        ),
    ]

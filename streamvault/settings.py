"""
Django settings for streamvault project.

Every setting that differs between deployments is read from the environment.
"""

import os
import sys
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

TESTING = (len(sys.argv) > 1 and sys.argv[1] == 'test') or 'pytest' in sys.modules


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


def env_int(name, default):
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    return int(value)


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-insecure-change-me')
DEBUG = env_bool('DJANGO_DEBUG', True)
ALLOWED_HOSTS = [h.strip() for h in os.environ.get('DJANGO_ALLOWED_HOSTS', '*').split(',') if h.strip()]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'huey.contrib.djhuey',
    'ingest',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'streamvault.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'streamvault.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('STREAMVAULT_DB_PATH', str(BASE_DIR / 'db.sqlite3')),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

# Huey: sqlite-backed by default, immediate (in-process) under tests
HUEY = {
    'huey_class': 'huey.SqliteHuey',
    'name': 'streamvault',
    'filename': os.environ.get('HUEY_DB_PATH', str(BASE_DIR / 'huey.sqlite3')),
    'immediate': env_bool('HUEY_IMMEDIATE', TESTING),
    'consumer': {
        'workers': env_int('HUEY_WORKERS', 2),
        'worker_type': 'thread',
    },
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {'format': '[%(asctime)s] %(levelname)s %(name)s: %(message)s'},
    },
    'handlers': {
        'console': {'class': 'logging.StreamHandler', 'formatter': 'simple'},
    },
    'loggers': {
        'ingest': {
            'handlers': ['console'],
            'level': os.environ.get('INGEST_LOG_LEVEL', 'WARNING' if TESTING else 'INFO'),
            'propagate': False,
        },
    },
}

# Object store (S3 compatible: Cloudflare R2, MinIO, AWS)
INGEST_S3_ENDPOINT_URL = os.environ.get('INGEST_S3_ENDPOINT_URL', '')
INGEST_S3_ACCESS_KEY_ID = os.environ.get('INGEST_S3_ACCESS_KEY_ID', '')
INGEST_S3_SECRET_ACCESS_KEY = os.environ.get('INGEST_S3_SECRET_ACCESS_KEY', '')
INGEST_S3_REGION = os.environ.get('INGEST_S3_REGION', 'auto')
INGEST_S3_BUCKET = os.environ.get('INGEST_S3_BUCKET', 'streamvault')
INGEST_PUBLIC_BASE_URL = os.environ.get('INGEST_PUBLIC_BASE_URL', 'https://cdn.example.com')
INGEST_UPLOAD_URL_TTL = env_int('INGEST_UPLOAD_URL_TTL', 3600)

# Per file type size ceilings (accepts '5GB', '10MB', or plain bytes)
INGEST_MAX_SIZE_VIDEO = os.environ.get('INGEST_MAX_SIZE_VIDEO', '5GB')
INGEST_MAX_SIZE_POSTER = os.environ.get('INGEST_MAX_SIZE_POSTER', '10MB')
INGEST_MAX_SIZE_AVATAR = os.environ.get('INGEST_MAX_SIZE_AVATAR', '5MB')

# Retry policy
INGEST_MAX_ATTEMPTS = env_int('INGEST_MAX_ATTEMPTS', 3)
INGEST_BACKOFF_BASE_VIDEO = env_int('INGEST_BACKOFF_BASE_VIDEO', 5)
INGEST_BACKOFF_BASE_IMAGE = env_int('INGEST_BACKOFF_BASE_IMAGE', 2)
INGEST_BACKOFF_MAX = env_int('INGEST_BACKOFF_MAX', 300)
INGEST_LEASE_SECONDS = env_int('INGEST_LEASE_SECONDS', 900)

# Phase timeouts (seconds)
INGEST_DOWNLOAD_TIMEOUT = env_int('INGEST_DOWNLOAD_TIMEOUT', 1800)
INGEST_PROCESS_TIMEOUT = env_int('INGEST_PROCESS_TIMEOUT', 3600)

# Local scratch space and retention
INGEST_WORK_DIR = os.environ.get('INGEST_WORK_DIR', str(BASE_DIR / 'work'))
INGEST_RETENTION_DAYS = env_int('INGEST_RETENTION_DAYS', 7)

# Processing
INGEST_HLS_SEGMENT_SECONDS = env_int('INGEST_HLS_SEGMENT_SECONDS', 6)
INGEST_FFMPEG_HLS_ARGS = os.environ.get(
    'INGEST_FFMPEG_HLS_ARGS',
    '-c:v libx264 -preset veryfast -crf 23 -c:a aac -b:a 128k',
)
INGEST_YTDLP_PROXY = os.environ.get('INGEST_YTDLP_PROXY', '')

"""
Configuration adapter for ingestion settings.

Centralizes access to Django settings and environment variables,
ensuring consistent configuration across workers, views and CLI.
"""

import re
import shlex

from django.conf import settings

from ingest.service.constants import FILE_TYPE_AVATAR, FILE_TYPE_POSTER, FILE_TYPE_VIDEO

SIZE_UNITS = {
    'B': 1,
    'KB': 1024,
    'MB': 1024 * 1024,
    'GB': 1024 * 1024 * 1024,
}


def parse_file_size(size_string):
    """
    Parse a human file size into bytes.

    Args:
        size_string: e.g. '5GB', '10 MB', '512B', or an int/plain digit string

    Returns:
        int: Size in bytes

    Example:
        >>> parse_file_size('10MB')
        10485760
    """
    if isinstance(size_string, int):
        return size_string
    size_string = str(size_string).strip()
    if size_string.isdigit():
        return int(size_string)

    match = re.match(r'^(\d+(?:\.\d+)?)\s*(B|KB|MB|GB)$', size_string, re.IGNORECASE)
    if not match:
        raise ValueError(f'Invalid file size format: {size_string!r}')
    size, unit = match.groups()
    return int(float(size) * SIZE_UNITS[unit.upper()])


def get_max_size(file_type):
    """Get the upload size ceiling in bytes for a file type"""
    if file_type == FILE_TYPE_VIDEO:
        return parse_file_size(settings.INGEST_MAX_SIZE_VIDEO)
    elif file_type == FILE_TYPE_POSTER:
        return parse_file_size(settings.INGEST_MAX_SIZE_POSTER)
    elif file_type == FILE_TYPE_AVATAR:
        return parse_file_size(settings.INGEST_MAX_SIZE_AVATAR)
    raise ValueError(f'Unknown file type: {file_type}')


def get_max_attempts():
    return settings.INGEST_MAX_ATTEMPTS


def get_backoff_base(queue_name):
    """Backoff base delay in seconds for a queue ('video' or 'image')"""
    if queue_name == 'video':
        return settings.INGEST_BACKOFF_BASE_VIDEO
    return settings.INGEST_BACKOFF_BASE_IMAGE


def get_backoff_max():
    return settings.INGEST_BACKOFF_MAX


def get_lease_seconds():
    return settings.INGEST_LEASE_SECONDS


def get_upload_url_ttl():
    return settings.INGEST_UPLOAD_URL_TTL


def get_phase_timeouts():
    """
    Maximum duration of each worker phase.

    Returns:
        dict: {'download': seconds, 'process': seconds}
    """
    return {
        'download': settings.INGEST_DOWNLOAD_TIMEOUT,
        'process': settings.INGEST_PROCESS_TIMEOUT,
    }


def get_work_dir():
    """Get the local scratch directory path"""
    return settings.INGEST_WORK_DIR


def get_retention_days():
    return settings.INGEST_RETENTION_DAYS


def get_s3_config():
    """
    Object store connection settings.

    Returns:
        dict: endpoint_url, access_key_id, secret_access_key, region, bucket, public_base_url
    """
    return {
        'endpoint_url': settings.INGEST_S3_ENDPOINT_URL or None,
        'access_key_id': settings.INGEST_S3_ACCESS_KEY_ID or None,
        'secret_access_key': settings.INGEST_S3_SECRET_ACCESS_KEY or None,
        'region': settings.INGEST_S3_REGION,
        'bucket': settings.INGEST_S3_BUCKET,
        'public_base_url': settings.INGEST_PUBLIC_BASE_URL,
    }


def get_hls_segment_seconds():
    return settings.INGEST_HLS_SEGMENT_SECONDS


def get_ffmpeg_hls_args():
    """Get ffmpeg encoder arguments for HLS output as a list"""
    return shlex.split(settings.INGEST_FFMPEG_HLS_ARGS or '')


def get_ytdlp_proxy():
    return settings.INGEST_YTDLP_PROXY

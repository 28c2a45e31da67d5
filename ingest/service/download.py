"""
Download service for ingestion sources.

Handles uploaded objects, direct HTTP downloads and yt-dlp downloads, and
classifies failures as transient (retry with backoff) or fatal.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests
import yt_dlp
from botocore.exceptions import BotoCoreError, ClientError

from ingest.errors import FatalError, TransientError
from ingest.service.config import get_ytdlp_proxy
from ingest.service.storage import NOT_FOUND_CODES
from ingest.service.strategy import choose_download_strategy

# Substrings that mark a yt-dlp failure as permanent
FATAL_YTDLP_TOKENS = (
    '404',
    'not found',
    'private video',
    'copyright',
    'unsupported url',
    'video unavailable',
    'sign in to confirm your age',
)

RETRYABLE_HTTP_STATUSES = (408, 429)

CHUNK_SIZE = 1024 * 256


@dataclass
class DownloadedFileInfo:
    """Information about a downloaded file"""

    path: Path
    file_size: int
    extension: str
    mime_type: Optional[str] = None
    title: Optional[str] = None


def _deadline(timeout):
    return time.monotonic() + timeout if timeout else None


def _check_deadline(deadline, what='Download'):
    if deadline is not None and time.monotonic() > deadline:
        raise TransientError(f'{what} timed out')


def is_retryable_message(message):
    """
    Decide from an error message whether a failure is worth retrying.

    Unknown failures are treated as retryable; the attempt ceiling bounds them.
    """
    if not message:
        return True
    lowered = message.lower()
    return not any(token in lowered for token in FATAL_YTDLP_TOKENS)


def classify_download_error(exc):
    """
    Map a library exception to TransientError or FatalError.

    Args:
        exc: Exception raised while fetching a source

    Returns:
        IngestError | None: Classified error, or None if exc is not a fetch failure
    """
    if isinstance(exc, (TransientError, FatalError)):
        return exc

    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        message = f'Download failed: HTTP {status}'
        if status is None or status in RETRYABLE_HTTP_STATUSES or status >= 500:
            return TransientError(message)
        return FatalError(message)

    if isinstance(exc, requests.Timeout):
        return TransientError(f'Download failed: timed out ({exc})')

    if isinstance(exc, requests.ConnectionError):
        return TransientError(f'Download failed: could not connect ({exc})')

    if isinstance(exc, requests.RequestException):
        return FatalError(f'Download failed: {exc}')

    if isinstance(exc, yt_dlp.utils.DownloadError):
        message = f'Download failed: {exc}'
        if is_retryable_message(str(exc)):
            return TransientError(message)
        return FatalError(message)

    if isinstance(exc, ClientError):
        code = exc.response.get('Error', {}).get('Code')
        if code in NOT_FOUND_CODES:
            return FatalError('Uploaded file not found in storage')
        return TransientError(f'Storage download failed: {code}')

    if isinstance(exc, BotoCoreError):
        return TransientError(f'Storage download failed: {exc}')

    return None


def download_direct(url, out_path, progress=None, max_size=None, timeout=None, logger=None):
    """
    Download a media file directly via HTTP.

    Args:
        url: Direct media URL
        out_path: Output file path (Path object or str)
        progress: Optional callable(float) receiving the fraction done (0.0-1.0)
        max_size: Optional size ceiling in bytes
        timeout: Optional phase timeout in seconds
        logger: Optional callable(str) for logging

    Returns:
        DownloadedFileInfo
    """

    def log(message):
        if logger:
            logger(message)

    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = _deadline(timeout)

    log(f'Downloading from: {url}')
    log(f'Saving to: {out_path}')

    with requests.get(url, stream=True, timeout=30) as response:
        response.raise_for_status()

        total = int(response.headers.get('content-length') or 0)
        if max_size and total > max_size:
            raise FatalError(f'Source is too large ({total} bytes, max {max_size})')

        downloaded = 0
        with open(out_path, 'wb') as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                _check_deadline(deadline)
                f.write(chunk)
                downloaded += len(chunk)
                if max_size and downloaded > max_size:
                    raise FatalError(f'Source is too large (over {max_size} bytes)')
                if progress and total:
                    progress(downloaded / total)

        mime_type = response.headers.get('content-type', 'application/octet-stream')

    file_size = out_path.stat().st_size
    log(f'Downloaded {file_size} bytes')

    return DownloadedFileInfo(
        path=out_path, file_size=file_size, extension=out_path.suffix, mime_type=mime_type
    )


def download_ytdlp(url, temp_dir, progress=None, timeout=None, logger=None):
    """
    Download a hosted video using yt-dlp.

    Args:
        url: Source URL (e.g. a YouTube watch page)
        temp_dir: Directory for the download (Path object or str)
        progress: Optional callable(float) receiving the fraction done
        timeout: Optional phase timeout in seconds
        logger: Optional callable(str) for logging

    Returns:
        DownloadedFileInfo
    """

    def log(message):
        if logger:
            logger(message)

    temp_dir = Path(temp_dir)
    temp_dir.mkdir(parents=True, exist_ok=True)
    deadline = _deadline(timeout)

    def progress_hook(d):
        _check_deadline(deadline)
        if d.get('status') == 'downloading' and progress:
            total = d.get('total_bytes') or d.get('total_bytes_estimate')
            if total:
                progress(d.get('downloaded_bytes', 0) / total)
        elif d.get('status') == 'finished' and progress:
            progress(1.0)

    ydl_opts = {
        'format': 'bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best',
        'outtmpl': str(temp_dir / 'source.%(ext)s'),
        'noplaylist': True,
        'quiet': not logger,
        'progress_hooks': [progress_hook],
    }

    # Add proxy if configured (needed for cloud VMs where YouTube blocks requests)
    proxy = get_ytdlp_proxy()
    if proxy:
        ydl_opts['proxy'] = proxy

    log(f'Downloading with yt-dlp: {url}')

    try:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            info = ydl.extract_info(url, download=True)
    except yt_dlp.utils.DownloadError:
        _check_deadline(deadline)
        raise

    content_files = [
        f for f in temp_dir.iterdir() if f.suffix in ['.mp4', '.mkv', '.webm', '.mov']
    ]
    if not content_files:
        raise FatalError('No media file found after yt-dlp download')

    # Use the largest file as the main content
    content_file = max(content_files, key=lambda f: f.stat().st_size)
    log(f'Main content file: {content_file.name} ({content_file.stat().st_size} bytes)')

    return DownloadedFileInfo(
        path=content_file,
        file_size=content_file.stat().st_size,
        extension=content_file.suffix,
        title=(info or {}).get('title'),
    )


def download_upload(storage, key, out_path, progress=None, max_size=None, logger=None):
    """
    Fetch a directly-uploaded file back from the object store.

    Args:
        storage: ObjectStoreGateway
        key: Object key of the upload
        out_path: Local destination
        progress: Optional callable(float)
        max_size: Optional size ceiling in bytes
        logger: Optional callable(str) for logging

    Returns:
        DownloadedFileInfo
    """

    def log(message):
        if logger:
            logger(message)

    log(f'Fetching upload: {key}')
    out_path = storage.download_file(key, out_path)
    file_size = out_path.stat().st_size
    if max_size and file_size > max_size:
        raise FatalError(f'Uploaded file is too large ({file_size} bytes, max {max_size})')
    if progress:
        progress(1.0)
    log(f'Fetched {file_size} bytes')

    return DownloadedFileInfo(path=out_path, file_size=file_size, extension=out_path.suffix)


class SourceFetcher:
    """
    Fetch a job's source into its work directory.

    Works on any object exposing source_kind, upload_key, remote_url and
    max_size. Library failures are re-raised as TransientError or FatalError.
    """

    def __init__(self, storage):
        self.storage = storage

    def __call__(self, job, work_dir, progress=None, timeout=None, logger=None):
        work_dir = Path(work_dir)
        try:
            if job.source_kind == 'upload':
                suffix = Path(job.upload_key).suffix
                return download_upload(
                    self.storage,
                    job.upload_key,
                    work_dir / f'source{suffix}',
                    progress=progress,
                    max_size=job.max_size,
                    logger=logger,
                )

            if choose_download_strategy(job.remote_url) == 'direct':
                suffix = Path(job.remote_url.split('?')[0]).suffix
                return download_direct(
                    job.remote_url,
                    work_dir / f'source{suffix}',
                    progress=progress,
                    max_size=job.max_size,
                    timeout=timeout,
                    logger=logger,
                )
            return download_ytdlp(
                job.remote_url, work_dir, progress=progress, timeout=timeout, logger=logger
            )
        except Exception as e:
            classified = classify_download_error(e)
            if classified is None or classified is e:
                raise
            raise classified from e

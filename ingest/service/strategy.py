"""
Download strategy detection.

Determines whether to use direct HTTP download or yt-dlp for a remote URL.
"""

import re
from urllib.parse import parse_qs, urlparse

from ingest.errors import ValidationError
from ingest.service.constants import IMAGE_EXTENSIONS, VIDEO_EXTENSIONS

YOUTUBE_HOSTS = ('youtube.com', 'www.youtube.com', 'm.youtube.com', 'music.youtube.com')
YOUTUBE_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{11}$')


def validate_remote_url(url):
    """
    Reject anything that is not an absolute http(s) URL.

    Raises:
        ValidationError: With field='remoteUrl'
    """
    parsed = urlparse(url or '')
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValidationError(f'Invalid URL: {url!r}', field='remoteUrl')
    return url


def extract_video_id(url):
    """
    Extract a YouTube video id.

    Handles watch?v=, youtu.be/, /embed/, /shorts/ and /live/ forms.

    Returns:
        str | None: The 11-character id, or None for non-YouTube URLs
    """
    parsed = urlparse(url or '')
    host = parsed.netloc.lower().split(':')[0]

    candidate = None
    if host == 'youtu.be':
        candidate = parsed.path.lstrip('/').split('/')[0]
    elif host in YOUTUBE_HOSTS:
        if parsed.path == '/watch':
            candidate = parse_qs(parsed.query).get('v', [None])[0]
        else:
            parts = parsed.path.strip('/').split('/')
            if len(parts) >= 2 and parts[0] in ('embed', 'shorts', 'live', 'v'):
                candidate = parts[1]

    if candidate and YOUTUBE_ID_PATTERN.match(candidate):
        return candidate
    return None


def choose_download_strategy(url):
    """
    Determine the download strategy for a remote URL.

    Args:
        url: The source URL

    Returns:
        str: 'direct' for direct media URLs, 'ytdlp' for hosted content
    """
    path = urlparse(url).path.lower()

    # Check if URL path ends with a media extension
    if any(path.endswith(ext) for ext in VIDEO_EXTENSIONS + IMAGE_EXTENSIONS):
        return 'direct'

    return 'ytdlp'

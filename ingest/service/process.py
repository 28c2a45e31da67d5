"""
Media processing service.

Segments videos into HLS with ffmpeg and normalizes posters/avatars to WebP
with Pillow. Produces local files only; publishing is the caller's job.
"""
import subprocess
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from ingest.errors import FatalError, TransientError
from ingest.service.config import get_ffmpeg_hls_args, get_hls_segment_seconds
from ingest.service.constants import FILE_TYPE_AVATAR, FILE_TYPE_VIDEO, HLS_PLAYLIST_NAME

# Longest edge for converted images
IMAGE_MAX_EDGE = {
    'poster': 2000,
    'avatar': 512,
}


@dataclass
class ProcessedFileInfo:
    """Information about a processed artifact"""
    path: Path
    is_directory: bool
    entry_name: str
    content_type: str = None


def segment_to_hls(input_path, output_dir, segment_seconds=None, timeout=None, logger=None):
    """
    Segment a video into an HLS playlist plus MPEG-TS segments.

    Args:
        input_path: Path to the source video
        output_dir: Directory receiving index.m3u8 and the segments
        segment_seconds: Target segment duration (defaults to settings)
        timeout: Optional maximum runtime in seconds
        logger: Optional callable(str) for logging

    Returns:
        ProcessedFileInfo pointing at output_dir

    Raises:
        TransientError: ffmpeg exceeded the timeout
        FatalError: ffmpeg rejected the input
    """
    def log(message):
        if logger:
            logger(message)

    input_path = Path(input_path)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    segment_seconds = segment_seconds or get_hls_segment_seconds()

    cmd = [
        'ffmpeg',
        '-i', str(input_path),
        '-y',
    ] + get_ffmpeg_hls_args() + [
        '-f', 'hls',
        '-hls_time', str(segment_seconds),
        '-hls_playlist_type', 'vod',
        '-hls_segment_filename', str(output_dir / 'segment_%05d.ts'),
        str(output_dir / HLS_PLAYLIST_NAME),
    ]

    log(f"Running: {' '.join(cmd)}")

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise TransientError(f'Processing timed out after {timeout}s')

    if result.returncode != 0:
        log(f"ffmpeg stderr: {result.stderr}")
        raise FatalError(f"ffmpeg failed with code {result.returncode}")

    segments = list(output_dir.glob('*.ts'))
    log(f"HLS complete: {len(segments)} segments")

    return ProcessedFileInfo(
        path=output_dir,
        is_directory=True,
        entry_name=HLS_PLAYLIST_NAME,
        content_type='application/vnd.apple.mpegurl',
    )


def process_image(input_path, output_path, file_type, logger=None):
    """
    Convert a poster or avatar to WebP, bounded to a maximum edge length.

    Args:
        input_path: Path to input image
        output_path: Path for output WebP file
        file_type: 'poster' or 'avatar'
        logger: Optional callable(str) for logging

    Returns:
        ProcessedFileInfo
    """
    def log(message):
        if logger:
            logger(message)

    input_path = Path(input_path)
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    log(f"Converting {file_type} to WebP: {input_path}")

    try:
        with Image.open(input_path) as img:
            img.load()
            if img.mode not in ('RGB', 'RGBA'):
                img = img.convert('RGBA' if 'A' in img.getbands() or img.mode == 'P' else 'RGB')
            max_edge = IMAGE_MAX_EDGE.get(file_type, 2000)
            img.thumbnail((max_edge, max_edge))
            img.save(output_path, 'WEBP', quality=85)
    except (UnidentifiedImageError, OSError) as e:
        raise FatalError(f'Invalid image: {e}')

    log(f"Image saved: {output_path} ({output_path.stat().st_size} bytes)")

    return ProcessedFileInfo(
        path=output_path,
        is_directory=False,
        entry_name=output_path.name,
        content_type='image/webp',
    )


class MediaProcessor:
    """Turn a fetched source into the deliverable for the job's file type."""

    def __call__(self, job, downloaded, work_dir, progress=None, timeout=None, logger=None):
        work_dir = Path(work_dir)
        if job.file_type == FILE_TYPE_VIDEO:
            info = segment_to_hls(
                downloaded.path, work_dir / 'hls', timeout=timeout, logger=logger
            )
        else:
            name = 'avatar.webp' if job.file_type == FILE_TYPE_AVATAR else 'poster.webp'
            info = process_image(downloaded.path, work_dir / name, job.file_type, logger=logger)
        if progress:
            progress(1.0)
        return info

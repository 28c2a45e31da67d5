"""
File type policy constants.

Centralized definitions of accepted MIME types and file extensions per file type.
"""

FILE_TYPE_VIDEO = 'video'
FILE_TYPE_POSTER = 'poster'
FILE_TYPE_AVATAR = 'avatar'

FILE_TYPES = [FILE_TYPE_VIDEO, FILE_TYPE_POSTER, FILE_TYPE_AVATAR]

# Allowed upload content types per file type
VIDEO_CONTENT_TYPES = [
    'video/mp4',
    'video/webm',
    'video/mkv',
    'video/x-matroska',
    'application/x-matroska',
]

IMAGE_CONTENT_TYPES = ['image/jpeg', 'image/jpg', 'image/png', 'image/webp']

ALLOWED_CONTENT_TYPES = {
    FILE_TYPE_VIDEO: VIDEO_CONTENT_TYPES,
    FILE_TYPE_POSTER: IMAGE_CONTENT_TYPES,
    FILE_TYPE_AVATAR: IMAGE_CONTENT_TYPES,
}

# MIME type -> accepted filename extensions
MIME_EXTENSIONS = {
    'video/mp4': ['mp4'],
    'video/webm': ['webm'],
    'video/mkv': ['mkv'],
    'video/x-matroska': ['mkv'],
    'application/x-matroska': ['mkv'],
    'image/jpeg': ['jpg', 'jpeg'],
    'image/jpg': ['jpg', 'jpeg'],
    'image/png': ['png'],
    'image/webp': ['webp'],
}

# Direct-download media extensions (anything else goes through yt-dlp)
VIDEO_EXTENSIONS = ['.mp4', '.webm', '.mkv', '.mov', '.avi', '.m4v']
IMAGE_EXTENSIONS = ['.jpg', '.jpeg', '.png', '.webp']

# Storage key prefix per file type
KEY_PREFIXES = {
    FILE_TYPE_VIDEO: 'uploads/videos',
    FILE_TYPE_POSTER: 'uploads/posters',
    FILE_TYPE_AVATAR: 'uploads/avatars',
}

# Queue routing: (queue name, priority). Higher priority is served first.
QUEUE_ROUTING = {
    FILE_TYPE_VIDEO: ('video', 1),
    FILE_TYPE_POSTER: ('image', 5),
    FILE_TYPE_AVATAR: ('image', 10),
}

HLS_PLAYLIST_NAME = 'index.m3u8'

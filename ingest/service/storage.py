"""
Object store gateway.

Wraps an S3-compatible bucket (Cloudflare R2, MinIO, AWS S3): presigned upload
credentials, artifact upload, source download and best-effort deletion.
Failures other than "object not found" propagate as botocore errors; the
caller decides whether to retry.
"""

import mimetypes
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from ingest.errors import InvalidInputError
from ingest.service.config import get_max_size, get_s3_config, get_upload_url_ttl
from ingest.service.constants import (
    ALLOWED_CONTENT_TYPES,
    FILE_TYPE_AVATAR,
    KEY_PREFIXES,
    MIME_EXTENSIONS,
)

NOT_FOUND_CODES = ('404', 'NoSuchKey', 'NotFound')


@dataclass
class UploadTicket:
    """Time-boxed credential for a direct-to-storage upload"""

    upload_url: str
    file_url: str
    key: str
    expires_in: int


def build_s3_client(config=None):
    """Create a boto3 S3 client from settings"""
    config = config or get_s3_config()
    return boto3.client(
        's3',
        endpoint_url=config['endpoint_url'],
        aws_access_key_id=config['access_key_id'],
        aws_secret_access_key=config['secret_access_key'],
        region_name=config['region'],
        config=Config(signature_version='s3v4', s3={'addressing_style': 'path'}),
    )


def sanitize_filename(filename):
    return re.sub(r'[^a-zA-Z0-9.-]', '_', filename)


def sanitize_target_name(name):
    # Thai letters are kept in target names
    return re.sub(r'[^a-zA-Z0-9฀-๿.-]', '_', name)


def validate_file_type(filename, allowed_types):
    """
    Check a filename's extension against allowed extensions or MIME types.

    Args:
        filename: Name of the file being uploaded
        allowed_types: List of '.ext' entries and/or MIME types

    Returns:
        bool: True if the extension is accepted
    """
    if '.' not in filename:
        return False
    extension = filename.rsplit('.', 1)[1].lower()
    if not extension:
        return False

    for allowed in allowed_types:
        if allowed.startswith('.'):
            if allowed.lower() == f'.{extension}':
                return True
        elif extension in MIME_EXTENSIONS.get(allowed, []):
            return True
    return False


class ObjectStoreGateway:
    def __init__(self, client=None, bucket=None, public_base_url=None):
        config = get_s3_config()
        self._client = client
        self._config = config
        self.bucket = bucket or config['bucket']
        self.public_base_url = (public_base_url or config['public_base_url']).rstrip('/')

    @property
    def client(self):
        if self._client is None:
            self._client = build_s3_client(self._config)
        return self._client

    def public_url(self, key):
        return f'{self.public_base_url}/{key}'

    def key_from_url(self, file_url):
        """
        Extract the object key from a public file URL.

        Returns:
            str | None: The key, or None if the URL is not under the public base
        """
        prefix = self.public_base_url + '/'
        if not file_url or not file_url.startswith(prefix):
            return None
        return file_url[len(prefix):] or None

    def resolve_key(self, owner_id, file_type, filename, target_name=None, now=None):
        """
        Derive a storage key for an upload.

        The millisecond timestamp keeps retries from colliding with earlier
        attempts. Avatars are always grouped by owner.

        Args:
            owner_id: Requesting user's id
            file_type: 'video', 'poster' or 'avatar'
            filename: Original filename
            target_name: Optional content title to group by
            now: Optional epoch seconds (defaults to current time)

        Returns:
            str: e.g. 'uploads/videos/My_Movie/1718000000000_clip.mp4'
        """
        timestamp = int((now if now is not None else time.time()) * 1000)
        prefix = KEY_PREFIXES.get(file_type, 'uploads/misc')
        if target_name and file_type != FILE_TYPE_AVATAR:
            group = sanitize_target_name(target_name)
        else:
            group = str(owner_id)
        return f'{prefix}/{group}/{timestamp}_{sanitize_filename(filename)}'

    def request_upload(self, key, content_type, max_size, ttl=None, file_type='video'):
        """
        Issue a presigned PUT URL for a direct upload.

        Raises:
            InvalidInputError: content type not allowed for file_type, or size out of range

        Returns:
            UploadTicket
        """
        allowed = ALLOWED_CONTENT_TYPES.get(file_type)
        if allowed is None:
            raise InvalidInputError(f'Unsupported file type: {file_type}', field='fileType')
        if content_type not in allowed:
            raise InvalidInputError(
                f'Content type {content_type} is not allowed for {file_type}: {", ".join(allowed)}',
                field='contentType',
            )
        ceiling = get_max_size(file_type)
        if not max_size or max_size <= 0:
            raise InvalidInputError('File size must be positive', field='fileSize')
        if max_size > ceiling:
            raise InvalidInputError(
                f'File is too large (max {ceiling} bytes for {file_type})', field='fileSize'
            )

        expires_in = ttl or get_upload_url_ttl()
        upload_url = self.client.generate_presigned_url(
            'put_object',
            Params={
                'Bucket': self.bucket,
                'Key': key,
                'ContentType': content_type,
                'ContentLength': max_size,
            },
            ExpiresIn=expires_in,
        )
        return UploadTicket(
            upload_url=upload_url,
            file_url=self.public_url(key),
            key=key,
            expires_in=expires_in,
        )

    def delete(self, key):
        """
        Delete an object. Deleting a missing key is not an error.

        Returns:
            bool: True if deleted, False if there was nothing to delete
        """
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in NOT_FOUND_CODES:
                return False
            raise
        self.client.delete_object(Bucket=self.bucket, Key=key)
        return True

    def delete_prefix(self, prefix):
        """
        Delete every object under a key prefix.

        Returns:
            int: Number of objects deleted
        """
        deleted = 0
        paginator = self.client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get('Contents', []):
                self.client.delete_object(Bucket=self.bucket, Key=obj['Key'])
                deleted += 1
        return deleted

    def exists(self, key):
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in NOT_FOUND_CODES:
                return False
            raise
        return True

    def upload_file(self, local_path, key, content_type: Optional[str] = None):
        """
        Upload a local file.

        Returns:
            str: Public URL of the uploaded object
        """
        content_type = content_type or mimetypes.guess_type(str(local_path))[0]
        extra_args = {'ContentType': content_type} if content_type else None
        self.client.upload_file(str(local_path), self.bucket, key, ExtraArgs=extra_args)
        return self.public_url(key)

    def upload_directory(self, local_dir, prefix, logger=None):
        """
        Upload every file in local_dir under prefix (HLS playlists and segments).

        Returns:
            list[str]: Keys uploaded
        """

        def log(message):
            if logger:
                logger(message)

        local_dir = Path(local_dir)
        keys = []
        for path in sorted(p for p in local_dir.rglob('*') if p.is_file()):
            key = f'{prefix.rstrip("/")}/{path.relative_to(local_dir).as_posix()}'
            content_type = None
            if path.suffix == '.m3u8':
                content_type = 'application/vnd.apple.mpegurl'
            elif path.suffix == '.ts':
                content_type = 'video/mp2t'
            self.upload_file(path, key, content_type=content_type)
            keys.append(key)
        log(f'Uploaded {len(keys)} files under {prefix}')
        return keys

    def download_file(self, key, local_path):
        """Download an object to a local path"""
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        self.client.download_file(self.bucket, key, str(local_path))
        return local_path

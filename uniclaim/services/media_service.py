"""
Media Service for verification photos.
Validates images with Pillow and stores them in Firebase Storage.
"""

import io
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import unquote

from PIL import Image, UnidentifiedImageError

from .. import config
from ..errors import UploadError, ValidationError

logger = logging.getLogger(__name__)

PENDING = 'pending'
UPLOADING = 'uploading'
COMPLETED = 'completed'
FAILED = 'failed'


class ImageValidator:
    """Format and size checks applied before anything is uploaded"""

    ALLOWED_FORMATS = ['JPEG', 'PNG', 'WEBP']
    ALLOWED_MIME_TYPES = ['image/jpeg', 'image/jpg', 'image/png', 'image/webp']
    MAX_RESOLUTION = (8000, 8000)

    @classmethod
    def validate(cls, media_file, max_size=None):
        """
        Validate an in-memory image.

        Args:
            media_file: MediaFile to check
            max_size: maximum size in bytes (defaults to MAX_IMAGE_SIZE)

        Returns:
            str: detected Pillow format

        Raises:
            ValidationError: when the file is empty, too large, or not an allowed image
        """
        max_size = max_size or config.MAX_IMAGE_SIZE
        name = media_file.filename or 'image'
        if not media_file.content:
            raise ValidationError(f"{name} is empty", code='EMPTY_FILE')
        if media_file.size > max_size:
            raise ValidationError(
                f"{name} ({media_file.size / (1024 * 1024):.1f}MB) exceeds maximum allowed size "
                f"({max_size / (1024 * 1024):.0f}MB)",
                code='FILE_TOO_LARGE',
            )
        if media_file.content_type and media_file.content_type.lower() not in cls.ALLOWED_MIME_TYPES:
            raise ValidationError(
                f"Invalid file type ({media_file.content_type}). Allowed types: {', '.join(cls.ALLOWED_MIME_TYPES)}",
                code='INVALID_FILE_TYPE',
            )
        try:
            with Image.open(io.BytesIO(media_file.content)) as img:
                format_type = img.format
                width, height = img.size
                img.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ValidationError(f"{name} is not a valid image: {str(e)}", code='INVALID_IMAGE') from e
        if format_type not in cls.ALLOWED_FORMATS:
            raise ValidationError(
                f"Invalid image format ({format_type}). Allowed formats: {', '.join(cls.ALLOWED_FORMATS)}",
                code='INVALID_IMAGE_FORMAT',
            )
        if width > cls.MAX_RESOLUTION[0] or height > cls.MAX_RESOLUTION[1]:
            raise ValidationError(
                f"Image resolution ({width}x{height}) is too large",
                code='RESOLUTION_TOO_LARGE',
            )
        return format_type


@dataclass
class UploadProgress:
    file_name: str
    status: str = PENDING
    percentage: int = 0
    url: Optional[str] = None
    error: Optional[str] = None


class MediaStore:
    """
    Uploads verification photos to a Firebase Storage bucket.

    The bucket is resolved lazily so the store can be constructed before
    Firebase is initialized.
    """

    def __init__(self, bucket=None, bucket_factory=None, max_concurrent=None, trusted_domain=None):
        self._bucket = bucket
        self._bucket_factory = bucket_factory
        self.max_concurrent = max(1, max_concurrent or config.UPLOAD_MAX_CONCURRENT)
        self.trusted_domain = trusted_domain or config.TRUSTED_MEDIA_DOMAIN

    @property
    def bucket(self):
        if self._bucket is None:
            if self._bucket_factory is None:
                from ..database import get_storage_bucket
                self._bucket_factory = get_storage_bucket
            self._bucket = self._bucket_factory()
        return self._bucket

    def is_trusted_url(self, url):
        return isinstance(url, str) and url.startswith('https://') and self.trusted_domain in url

    def validate_images(self, files):
        for media_file in files:
            ImageValidator.validate(media_file)

    def upload_image(self, media_file, folder):
        """
        Upload one image and return its public URL.

        Args:
            media_file: MediaFile to upload
            folder: storage folder, e.g. 'claim_requests/<post_id>'

        Returns:
            str: public URL on the trusted media domain

        Raises:
            UploadError: when the bucket rejects the upload or returns an untrusted URL
        """
        filename = media_file.filename or 'image.jpg'
        file_extension = filename.rsplit('.', 1)[-1].lower() if '.' in filename else 'jpg'
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        blob_name = f"{folder.strip('/')}/{timestamp}_{uuid.uuid4().hex[:8]}.{file_extension}"
        try:
            blob = self.bucket.blob(blob_name)
            blob.upload_from_string(media_file.content, content_type=media_file.content_type or 'image/jpeg')
            blob.make_public()
            url = blob.public_url
        except Exception as e:
            logger.error(f"Failed to upload {filename} to {folder}: {str(e)}")
            raise UploadError(f"Failed to upload {filename}: {str(e)}", failed_files=[filename]) from e
        if not self.is_trusted_url(url):
            logger.error(f"Upload of {filename} returned an untrusted URL: {url}")
            raise UploadError(f"Upload of {filename} returned an untrusted URL", failed_files=[filename])
        return url

    def upload_images(self, files: List, folder: str, on_progress: Callable = None) -> List[str]:
        """
        Upload several images with bounded concurrency.

        Every upload must succeed. On any failure the uploads that did
        succeed are removed again and UploadError lists the failed files.

        Args:
            files: list of MediaFile
            folder: storage folder
            on_progress: optional callable receiving the list of UploadProgress after each change

        Returns:
            list: URLs in the same order as files
        """
        if not files:
            return []
        progress = [UploadProgress(file_name=f.filename or f"file_{i + 1}") for i, f in enumerate(files)]
        lock = threading.Lock()

        def report(index, **changes):
            with lock:
                for key, value in changes.items():
                    setattr(progress[index], key, value)
                snapshot = [UploadProgress(**vars(p)) for p in progress]
            if on_progress:
                try:
                    on_progress(snapshot)
                except Exception as e:
                    logger.warning(f"Upload progress callback failed: {str(e)}")

        def upload_one(index, media_file):
            report(index, status=UPLOADING, percentage=0)
            try:
                url = self.upload_image(media_file, folder)
            except UploadError as e:
                report(index, status=FAILED, error=e.message)
                return index, None, e
            report(index, status=COMPLETED, percentage=100, url=url)
            return index, url, None

        with ThreadPoolExecutor(max_workers=min(self.max_concurrent, len(files))) as executor:
            results = list(executor.map(lambda pair: upload_one(*pair), enumerate(files)))

        urls = [None] * len(files)
        failed = []
        errors = []
        for index, url, error in results:
            if error is not None:
                failed.append(progress[index].file_name)
                errors.append(error.message)
            else:
                urls[index] = url

        if failed:
            uploaded = [u for u in urls if u]
            if uploaded:
                self.delete_images(uploaded)
            logger.warning(f"{len(failed)} of {len(files)} uploads to {folder} failed")
            raise UploadError(
                f"Failed to upload {len(failed)} of {len(files)} images: {'; '.join(errors)}",
                failed_files=failed,
            )
        logger.info(f"Uploaded {len(urls)} images to {folder}")
        return urls

    def delete_images(self, urls):
        """
        Best-effort removal of previously uploaded images.

        Returns:
            tuple: (deleted_urls, failed_urls)
        """
        deleted, failed = [], []
        for url in urls or []:
            if not url:
                continue
            if not self.is_trusted_url(url):
                failed.append(url)
                continue
            try:
                # https://storage.googleapis.com/<bucket>/<path/to/file>
                blob_path = unquote('/'.join(url.split('/')[4:]))
                self.bucket.blob(blob_path).delete()
                deleted.append(url)
            except Exception as e:
                logger.warning(f"Failed to delete image {url}: {str(e)}")
                failed.append(url)
        return deleted, failed

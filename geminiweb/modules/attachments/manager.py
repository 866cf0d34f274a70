"""Uploads local files and images and hands back single-use handles."""

import logging
from pathlib import Path
from typing import Optional, Union

from geminiweb.core.log_sanitizer import sanitize_for_logging
from geminiweb.domain.attachments import UploadedFile, UploadedImage
from geminiweb.domain.errors import NotFoundError, TooLargeError, UnsupportedError
from geminiweb.interfaces.backend import ChatBackend

logger = logging.getLogger(__name__)

MAX_IMAGE_SIZE = 20 * 1024 * 1024
MAX_FILE_SIZE = 50 * 1024 * 1024

SUPPORTED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

CONTENT_TYPES = {
    'txt': 'text/plain',
    'md': 'text/markdown',
    'json': 'application/json',
    'csv': 'text/csv',
    'xml': 'application/xml',
    'yaml': 'application/x-yaml',
    'yml': 'application/x-yaml',
    'pdf': 'application/pdf',
    'docx': 'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    'png': 'image/png',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'gif': 'image/gif',
    'webp': 'image/webp',
    'py': 'text/x-python',
    'js': 'application/javascript',
    'ts': 'text/plain',
    'go': 'text/plain',
    'rs': 'text/plain',
    'java': 'text/plain',
    'c': 'text/plain',
    'cpp': 'text/plain',
    'h': 'text/plain',
    'sh': 'text/plain',
    'html': 'text/html',
    'css': 'text/css',
    'log': 'text/plain',
}


def get_content_type(filename: str) -> str:
    """Determine content type based on filename."""
    extension = filename.lower().rsplit('.', 1)[-1] if '.' in filename else ''
    return CONTENT_TYPES.get(extension, 'application/octet-stream')


class AttachmentManager:
    """Validates and uploads attachments.

    Handles are returned to the caller and not retained here; the caller
    passes them to the next send and then drops them.
    """

    def __init__(self, backend: ChatBackend):
        self.backend = backend

    def upload(self, path: Union[str, Path], as_image: Optional[bool] = None) -> UploadedFile:
        """Upload a file from disk.

        Args:
            path: Local file path (``~`` is expanded)
            as_image: Force the image (True) or document (False) path; by
                default the MIME type decides

        Raises:
            NotFoundError: path does not exist (checked before any network call)
            UnsupportedError: path is a directory or the type is not accepted
            TooLargeError: file exceeds the size limit for its kind
        """
        file_path = Path(path).expanduser()
        if not file_path.exists():
            raise NotFoundError(f"File not found: {file_path}")
        if not file_path.is_file():
            raise UnsupportedError(f"Not a regular file: {file_path}")

        mime_type = get_content_type(file_path.name)
        size = file_path.stat().st_size
        is_image = mime_type.startswith("image/") if as_image is None else as_image
        self._validate(file_path.name, mime_type, size, is_image)
        return self._send(file_path.read_bytes(), file_path.name, mime_type, is_image)

    def upload_bytes(
        self,
        data: bytes,
        filename: str,
        mime_type: Optional[str] = None,
    ) -> UploadedFile:
        """Upload an in-memory buffer (piped standard input, generated text)."""
        mime_type = mime_type or get_content_type(filename)
        is_image = mime_type.startswith("image/")
        self._validate(filename, mime_type, len(data), is_image)
        return self._send(data, filename, mime_type, is_image)

    @staticmethod
    def _validate(name: str, mime_type: str, size: int, is_image: bool) -> None:
        if is_image:
            if mime_type not in SUPPORTED_IMAGE_TYPES:
                raise UnsupportedError(f"Unsupported image type: {mime_type} ({name})")
            if size > MAX_IMAGE_SIZE:
                raise TooLargeError(
                    f"Image is {size} bytes; maximum is {MAX_IMAGE_SIZE} bytes"
                )
            return
        if mime_type == 'application/octet-stream':
            raise UnsupportedError(f"Unsupported file type: {name}")
        if size > MAX_FILE_SIZE:
            raise TooLargeError(f"File is {size} bytes; maximum is {MAX_FILE_SIZE} bytes")

    def _send(self, data: bytes, name: str, mime_type: str, is_image: bool) -> UploadedFile:
        logger.info(
            "Uploading %s %s (%d bytes)",
            "image" if is_image else "file", sanitize_for_logging(name), len(data),
        )
        if is_image:
            resource_id = self.backend.upload_image(data, name, mime_type)
            return UploadedImage(resource_id=resource_id, name=name, mime_type=mime_type, size=len(data))
        resource_id = self.backend.upload_file(data, name, mime_type)
        return UploadedFile(resource_id=resource_id, name=name, mime_type=mime_type, size=len(data))

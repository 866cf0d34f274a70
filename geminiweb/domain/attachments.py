"""Attachment handles returned by the upload endpoint."""

from dataclasses import dataclass


@dataclass(frozen=True)
class UploadedFile:
    """Server-side reference to an uploaded document.

    Consumed by at most one subsequent turn; only ``name`` is persisted.
    """
    resource_id: str
    name: str
    mime_type: str
    size: int = 0

    is_image = False


@dataclass(frozen=True)
class UploadedImage(UploadedFile):
    """Server-side reference to an uploaded image."""

    is_image = True

"""Attachment uploads."""

from .manager import AttachmentManager, get_content_type

__all__ = ["AttachmentManager", "get_content_type"]

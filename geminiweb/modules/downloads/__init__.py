"""Saving images referenced by model responses."""

from .images import ImageDownloader, image_filename

__all__ = ["ImageDownloader", "image_filename"]

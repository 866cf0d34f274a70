"""Downloads web and generated images from a ``ModelOutput`` to disk.

Generated images are served at preview size unless the URL asks for more;
``full_size`` appends the ``=s2048`` size hint the service understands.
"""

import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Union
from urllib.parse import urlsplit

from geminiweb.core.filenames import sanitize_filename
from geminiweb.core.log_sanitizer import sanitize_for_logging
from geminiweb.domain.errors import DomainError, StorageError, ValidationError
from geminiweb.domain.responses.models import GeneratedImage, ModelOutput, WebImage
from geminiweb.interfaces.backend import ChatBackend

logger = logging.getLogger(__name__)

FULL_SIZE_SUFFIX = "=s2048"
MAX_TITLE_LENGTH = 50

_EXTENSION_RE = re.compile(r"\.\w+$")

Image = Union[WebImage, GeneratedImage]


def _extension_for(content_type: str) -> str:
    for marker, extension in (("png", ".png"), ("gif", ".gif"), ("webp", ".webp")):
        if marker in content_type:
            return extension
    return ".jpg"


def image_filename(url: str, title: str, content_type: str) -> str:
    """Name for a downloaded image: the URL's file name, else the title, else a timestamp."""
    last_part = urlsplit(url).path.rsplit("/", 1)[-1]
    if _EXTENSION_RE.search(last_part):
        return sanitize_filename(last_part, fallback="image")
    extension = _extension_for(content_type)
    if title.strip():
        return sanitize_filename(title, fallback="image", max_length=MAX_TITLE_LENGTH) + extension
    return f"image_{datetime.now():%Y%m%d_%H%M%S}{extension}"


class ImageDownloader:
    """Fetches response images through the backend and writes them under ``directory``."""

    def __init__(
        self,
        backend: ChatBackend,
        directory: Union[str, Path],
        delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.directory = Path(directory).expanduser()
        self.delay = delay
        self._sleep = sleep

    def download(
        self,
        image: Image,
        directory: Optional[Union[str, Path]] = None,
        full_size: bool = True,
    ) -> Path:
        """Save one image and return its absolute path.

        Raises:
            ValidationError: image has no URL
            StorageError: destination cannot be written
            ProtocolError, TransientError, AuthRequiredError: propagated from the backend
        """
        if not image.url:
            raise ValidationError("Image has no URL")
        url = image.url
        if full_size and isinstance(image, GeneratedImage) and "=s" not in url:
            url += FULL_SIZE_SUFFIX

        data, content_type = self.backend.fetch_image(url)
        target_dir = Path(directory).expanduser() if directory else self.directory
        path = self._unique_path(target_dir / image_filename(url, image.title, content_type))
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to save image to {path}: {exc}") from exc

        logger.info("Saved %s image %s (%d bytes)", image.kind, sanitize_for_logging(path.name), len(data))
        return path.resolve()

    def download_all(
        self,
        output: ModelOutput,
        directory: Optional[Union[str, Path]] = None,
        full_size: bool = True,
    ) -> List[Path]:
        """Save every image of the chosen candidate, web images first.

        Individual failures are logged and skipped; the last one is raised
        only when nothing could be saved.
        """
        images = output.images
        paths: List[Path] = []
        last_error: Optional[DomainError] = None
        for position, image in enumerate(images):
            if position and self.delay:
                self._sleep(self.delay)
            try:
                paths.append(self.download(image, directory, full_size))
            except DomainError as exc:
                logger.warning(
                    "Image download failed: kind=%s %s", exc.kind, sanitize_for_logging(exc.message)
                )
                last_error = exc
        if not paths and last_error is not None:
            raise last_error
        return paths

    @staticmethod
    def _unique_path(path: Path) -> Path:
        candidate = path
        counter = 1
        while candidate.exists():
            candidate = path.with_name(f"{path.stem}_{counter}{path.suffix}")
            counter += 1
        return candidate

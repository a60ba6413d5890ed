"""
Local persistence for image blobs that arrive without a path.

Every record in the index needs an addressable file_path, so raw bytes and
in-memory images are written under UPLOAD_DIR before they are inserted.
"""

import io
import logging
import uuid
from pathlib import Path
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError

from .config import config
from .errors import FileSizeExceededError, InvalidFileFormatError, ValidationError
from .image_sources import ImageSource

logger = logging.getLogger(__name__)

FORMAT_EXTENSIONS = {
    "JPEG": ".jpg",
    "PNG": ".png",
    "GIF": ".gif",
    "BMP": ".bmp",
    "WEBP": ".webp",
    "TIFF": ".tiff",
}


class ImageStore:
    """Writes image blobs to the upload directory under uuid file names."""

    def __init__(self, upload_dir: Optional[Union[str, Path]] = None, max_size: Optional[int] = None):
        self.upload_dir = Path(upload_dir or config.UPLOAD_DIR).expanduser().resolve()
        self.max_size = max_size or config.MAX_UPLOAD_SIZE

    def validate_image_data(self, data: bytes) -> str:
        """Check size and format of image bytes. Returns the PIL format name."""
        if not data:
            raise ValidationError("Image data is empty")
        if len(data) > self.max_size:
            raise FileSizeExceededError(
                f"Image is {len(data)} bytes, the limit is {self.max_size}",
                {"size": len(data), "max_size": self.max_size},
            )
        try:
            with Image.open(io.BytesIO(data)) as image:
                image_format = image.format
        except UnidentifiedImageError as e:
            raise InvalidFileFormatError("File must be an image") from e
        if image_format not in FORMAT_EXTENSIONS:
            raise InvalidFileFormatError(f"Unsupported image format: {image_format}",
                                         {"supported": sorted(FORMAT_EXTENSIONS)})
        return image_format

    def save_bytes(self, data: bytes) -> str:
        """Persist image bytes and return the absolute path of the new file."""
        image_format = self.validate_image_data(data)
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        path = self.upload_dir / f"{uuid.uuid4().hex}{FORMAT_EXTENSIONS[image_format]}"
        path.write_bytes(data)
        logger.info(f"Stored uploaded image at {path} ({len(data)} bytes)")
        return str(path)

    def save_image(self, image: Image.Image) -> str:
        """Persist an in-memory PIL image as PNG."""
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        path = self.upload_dir / f"{uuid.uuid4().hex}.png"
        image.save(path, format="PNG")
        logger.info(f"Stored in-memory image at {path}")
        return str(path)

    def file_path_for(self, source: ImageSource) -> str:
        """The file_path to record for a resolved source."""
        if source.kind in ("path", "url"):
            return source.value
        if source.kind == "bytes":
            return self.save_bytes(source.value)
        return self.save_image(source.value)

    def check(self, source: ImageSource) -> None:
        """Validate raw bytes before any work is spent on them."""
        if source.kind == "bytes":
            self.validate_image_data(source.value)

    def discard(self, file_path: str) -> None:
        """Remove a file this store wrote. Paths outside the upload directory are left alone."""
        path = Path(file_path)
        if path.parent != self.upload_dir:
            return
        path.unlink(missing_ok=True)
        logger.info(f"Removed stored image {path}")

    @staticmethod
    def is_stored(source: ImageSource) -> bool:
        """True when file_path_for() writes a new file for the source."""
        return source.kind in ("bytes", "image")

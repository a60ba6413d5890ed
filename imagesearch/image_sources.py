"""
Resolution of caller supplied image sources.

A source is one of:
- a local file path (absolute, or relative to a base directory)
- an http(s) URL, handed to the model as is
- raw image bytes (bytes, bytearray, memoryview)
- a base64 string, optionally prefixed with ``data:image/...;base64,``
- a PIL image
"""

import base64
import binascii
import io
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from PIL import Image

from .errors import SourceNotFoundError, ValidationError

DATA_URL_PATTERN = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")

SourceLike = Union[str, Path, bytes, bytearray, memoryview, Image.Image, "ImageSource"]


@dataclass(frozen=True)
class ImageSource:
    kind: str  # "path" | "url" | "bytes" | "image"
    value: object
    label: str

    @property
    def is_url(self) -> bool:
        return self.kind == "url"

    @classmethod
    def from_base64(cls, data: str) -> "ImageSource":
        return cls("bytes", decode_base64_image(data), "<base64 image>")


def is_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


def decode_base64_image(data: str) -> bytes:
    """Decode a base64 image string, stripping a data URL prefix if present."""
    payload = DATA_URL_PATTERN.sub("", data.strip())
    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Image data is not valid base64", {"reason": str(e)}) from e
    if not decoded:
        raise ValidationError("Image data is empty")
    return decoded


def resolve_source(source: SourceLike, base_dir: Optional[Union[str, Path]] = None) -> ImageSource:
    """
    Turn a caller supplied source into an ImageSource.

    Local paths must exist; URLs are not checked.

    Raises:
        ValidationError: empty or unsupported source
        SourceNotFoundError: local path does not exist
    """
    if isinstance(source, ImageSource):
        return source

    if isinstance(source, Image.Image):
        return ImageSource("image", source, "<image>")

    if isinstance(source, memoryview):
        source = source.tobytes()
    if isinstance(source, (bytes, bytearray)):
        if not source:
            raise ValidationError("Image data is empty")
        return ImageSource("bytes", bytes(source), f"<{len(source)} bytes>")

    if isinstance(source, Path):
        source = str(source)
    if not isinstance(source, str):
        raise ValidationError(f"Unsupported image source type: {type(source).__name__}")

    source = source.strip()
    if not source:
        raise ValidationError("Image source is empty")

    if is_url(source):
        return ImageSource("url", source, source)

    if DATA_URL_PATTERN.match(source):
        return ImageSource("bytes", decode_base64_image(source), "<data url>")

    path = Path(source).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = Path(base_dir) / path
    if not path.is_file():
        raise SourceNotFoundError(f"Image file does not exist: {path}", {"path": str(path)})
    resolved = str(path.resolve())
    return ImageSource("path", resolved, resolved)


def open_image(data: bytes) -> Image.Image:
    """Decode image bytes into an RGB PIL image."""
    image = Image.open(io.BytesIO(data))
    if image.mode != 'RGB':
        image = image.convert('RGB')
    return image

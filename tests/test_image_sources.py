import base64
import io
import sys
from pathlib import Path

import pytest
from PIL import Image

# Ensure project root is on sys.path so `imagesearch` package can be imported
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from imagesearch.errors import (
    FileSizeExceededError,
    InvalidFileFormatError,
    SourceNotFoundError,
    ValidationError,
)
from imagesearch.image_sources import ImageSource, decode_base64_image, resolve_source
from imagesearch.storage import ImageStore


def jpeg_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color=(1, 2, 3)).save(buffer, format="JPEG")
    return buffer.getvalue()


def test_relative_path_resolves_against_base_dir(tmp_path):
    (tmp_path / "look.jpg").write_bytes(jpeg_bytes())

    source = resolve_source("look.jpg", base_dir=tmp_path)

    assert source.kind == "path"
    assert source.value == str((tmp_path / "look.jpg").resolve())


def test_missing_path_is_not_found(tmp_path):
    with pytest.raises(SourceNotFoundError):
        resolve_source("nope.jpg", base_dir=tmp_path)


def test_urls_are_not_checked():
    source = resolve_source("https://cdn.example.com/a.jpg")
    assert source.is_url
    assert source.value == "https://cdn.example.com/a.jpg"


def test_data_url_is_decoded():
    data = jpeg_bytes()
    data_url = "data:image/jpeg;base64," + base64.b64encode(data).decode()

    source = resolve_source(data_url)

    assert source.kind == "bytes"
    assert source.value == data


def test_plain_base64_via_from_base64():
    data = jpeg_bytes()
    source = ImageSource.from_base64(base64.b64encode(data).decode())
    assert source.value == data


@pytest.mark.parametrize("value", ["", "   ", b""])
def test_empty_sources_are_rejected(value):
    with pytest.raises(ValidationError):
        resolve_source(value)


def test_bad_base64_is_rejected():
    with pytest.raises(ValidationError):
        decode_base64_image("data:image/png;base64,@@@not-base64@@@")


def test_unsupported_source_type_is_rejected():
    with pytest.raises(ValidationError):
        resolve_source(42)


def test_store_saves_bytes_with_format_extension(tmp_path):
    store = ImageStore(tmp_path / "uploads")

    path = Path(store.save_bytes(jpeg_bytes()))

    assert path.suffix == ".jpg"
    assert path.is_absolute()
    assert path.read_bytes() == jpeg_bytes()


def test_store_rejects_oversized_data(tmp_path):
    store = ImageStore(tmp_path / "uploads", max_size=10)
    with pytest.raises(FileSizeExceededError):
        store.save_bytes(jpeg_bytes())
    assert not (tmp_path / "uploads").exists()


def test_store_rejects_non_images(tmp_path):
    store = ImageStore(tmp_path / "uploads")
    with pytest.raises(InvalidFileFormatError):
        store.save_bytes(b"plain text, not pixels")


def test_store_saves_in_memory_images_as_png(tmp_path):
    store = ImageStore(tmp_path / "uploads")
    source = resolve_source(Image.new("RGB", (4, 4)))

    path = Path(store.file_path_for(source))

    assert path.suffix == ".png"
    assert path.exists()


def test_store_discard_only_touches_its_own_files(tmp_path):
    store = ImageStore(tmp_path / "uploads")
    stored = store.save_bytes(jpeg_bytes())
    outside = tmp_path / "keep.jpg"
    outside.write_bytes(jpeg_bytes())

    store.discard(stored)
    store.discard(str(outside))
    store.discard(stored)

    assert not Path(stored).exists()
    assert outside.exists()


def test_store_check_validates_bytes_only(tmp_path):
    store = ImageStore(tmp_path / "uploads", max_size=10)
    with pytest.raises(FileSizeExceededError):
        store.check(resolve_source(jpeg_bytes()))
    store.check(resolve_source("https://cdn.example.com/a.jpg"))
    assert not (tmp_path / "uploads").exists()

import asyncio
import io
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

# Ensure project root is on sys.path so `imagesearch` package can be imported
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from imagesearch.batch_processor import BatchProcessor
from imagesearch.database import IndexConfig, IndexGateway
from imagesearch.errors import CorrelationNotFoundError, DatabaseError, UpsertError, ValidationError
from imagesearch.storage import ImageStore
from imagesearch.vector_processor import ImageEmbedder, ModelCache, OfflineMode

from fakes import FakeDBManager, FakeExtractor, FakeIndexDatabase, FakeModelFactory

DIM = 8


def png_bytes(color=(10, 120, 240)):
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def images(tmp_path):
    paths = []
    for name, color in [("red.png", (255, 0, 0)), ("green.png", (0, 255, 0))]:
        path = tmp_path / name
        Image.new("RGB", (8, 8), color=color).save(path)
        paths.append(str(path.resolve()))
    return paths


@pytest.fixture
def db():
    return FakeIndexDatabase.ready()


def make_processor(tmp_path, db, extractor=None, store=None):
    embedder = ImageEmbedder(
        model_name="acme/fashion-model",
        dimension=DIM,
        cache_dir=str(tmp_path / "cache"),
        device="cpu",
        base_dir=str(tmp_path),
        model_factory=FakeModelFactory(extractor or FakeExtractor(width=DIM)),
        cache=ModelCache(),
        offline=OfflineMode(False),
        sleep=lambda seconds: None,
    )
    gateway = IndexGateway(FakeDBManager(db), IndexConfig(dimension=DIM), sleep=lambda seconds: None)
    return BatchProcessor(embedder, gateway, store or ImageStore(tmp_path / "uploads"))


@pytest.fixture
def processor(tmp_path, db):
    return make_processor(tmp_path, db)


def stored_files(tmp_path):
    uploads = tmp_path / "uploads"
    return sorted(uploads.iterdir()) if uploads.exists() else []


def test_failed_item_does_not_abort_batch(processor, images, db):
    sources = [images[0], str(Path(images[0]).parent / "missing.png"), images[1]]

    result = processor.process(sources, correlation_id="spring-2024")

    assert [item.status for item in result.items] == ["success", "failed", "success"]
    assert [item.index for item in result.items] == [0, 1, 2]
    assert result.items[1].error["error"] == "SourceNotFoundError"
    assert result.items[1].record_ids == []
    assert len(db.rows) == 2
    assert {row["correlation_id"] for row in db.rows.values()} == {"spring-2024"}
    assert result.summary() == {
        "correlation_id": "spring-2024",
        "batch_name": "",
        "total": 3,
        "succeeded": 2,
        "failed": 1,
    }


def test_batch_defaults_correlation_id_and_echoes_name(processor, images):
    result = processor.process(images, batch_name="lookbook")

    assert result.correlation_id.startswith("batch_")
    assert all(item.correlation_id == result.correlation_id for item in result.items)
    assert all(item.batch_name == "lookbook" for item in result.items)


def test_batch_persists_blob_sources(processor, tmp_path, db):
    result = processor.process([png_bytes()], correlation_id="blobs")

    item = result.items[0]
    assert item.succeeded
    stored = Path(item.file_path)
    assert stored.parent == (tmp_path / "uploads").resolve()
    assert stored.suffix == ".png"
    assert stored.read_bytes() == png_bytes()
    assert db.rows[item.record_ids[0]]["file_path"] == item.file_path


def test_batch_records_invalid_blob_as_failed(processor, db):
    result = processor.process([b"not an image"], correlation_id="blobs")

    assert result.items[0].status == "failed"
    assert result.items[0].error["error"] == "InvalidFileFormatError"
    assert db.rows == {}


def test_oversized_blob_fails_before_embedding(tmp_path, db):
    extractor = FakeExtractor(width=DIM)
    processor = make_processor(tmp_path, db, extractor, ImageStore(tmp_path / "uploads", max_size=10))

    result = processor.process([png_bytes()], correlation_id="blobs")

    assert result.items[0].status == "failed"
    assert result.items[0].error["error"] == "FileSizeExceededError"
    assert extractor.calls == []
    assert stored_files(tmp_path) == []


def test_failed_insert_removes_stored_blob(processor, tmp_path, db, images):
    db.connect_errors.append(DatabaseError("relation \"images\" does not exist"))

    result = processor.process([png_bytes(), images[0]], correlation_id="blobs")

    assert [item.status for item in result.items] == ["failed", "success"]
    assert result.items[0].error["error"] == "InsertError"
    assert stored_files(tmp_path) == []
    assert Path(images[0]).exists()


def test_failed_upsert_removes_stored_blobs(processor, tmp_path, db, images):
    db.add_row("/old/a.png", "look-1", np.zeros(DIM))
    db.connect_errors.extend([None, DatabaseError("relation \"images\" does not exist")])

    with pytest.raises(UpsertError):
        processor.update([png_bytes(), images[0]], "look-1")

    assert stored_files(tmp_path) == []
    assert Path(images[0]).exists()
    assert np.array_equal(db.rows[1]["embedding"], np.zeros(DIM))


def test_empty_batch(processor):
    result = processor.process([], correlation_id="nothing")
    assert result.items == []
    assert result.failure_count == 0


def test_process_async_is_sequential_and_complete(processor, images, db):
    sources = [images[0], "", images[1]]

    result = asyncio.run(processor.process_async(sources, correlation_id="async"))

    assert [item.status for item in result.items] == ["success", "failed", "success"]
    assert result.items[1].error["error"] == "ValidationError"
    ids = [item.record_ids[0] for item in result.items if item.succeeded]
    assert ids == sorted(ids)
    assert len(db.rows) == 2


def test_update_replaces_embeddings(processor, images, db):
    db.add_row("/old/a.png", "look-1", np.zeros(DIM))
    db.add_row("/old/b.png", "look-1", np.zeros(DIM))

    result = processor.update([images[0]], "look-1")

    assert result.upsert.matched_count == 2
    assert result.upsert.upserted_count == 2
    assert result.success_count == 1
    first, second = db.rows[1], db.rows[2]
    assert first["file_path"] == images[0]
    assert not np.array_equal(first["embedding"], np.zeros(DIM))
    assert np.array_equal(first["embedding"], second["embedding"])


def test_update_unknown_correlation_raises(processor, images):
    with pytest.raises(CorrelationNotFoundError):
        processor.update(images, "ghost")


def test_update_requires_correlation_id(processor, images):
    with pytest.raises(ValidationError):
        processor.update(images, "")


def test_update_with_no_embeddable_source_leaves_records(processor, db):
    db.add_row("/old/a.png", "look-1", np.ones(DIM))

    result = processor.update(["missing.png"], "look-1")

    assert result.upsert is None
    assert result.error is not None
    assert result.items[0].status == "failed"
    assert np.array_equal(db.rows[1]["embedding"], np.ones(DIM))


def test_update_async(processor, images, db):
    db.add_row("/old/a.png", "look-2", np.zeros(DIM))

    result = asyncio.run(processor.update_async(images, "look-2"))

    assert result.upsert.upserted_count == 1
    assert db.rows[1]["file_path"] == images[0]

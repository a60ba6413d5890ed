import io
import json
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

# Ensure project root is on sys.path so `imagesearch` package can be imported
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from imagesearch import cli
from imagesearch.database import IndexConfig, IndexGateway
from imagesearch.errors import DatabaseError, InsertError, ServiceUnavailableError, ValidationError
from imagesearch.service import ImageSimilarityService
from imagesearch.storage import ImageStore
from imagesearch.vector_processor import ImageEmbedder, ModelCache, OfflineMode

from fakes import FakeDBManager, FakeExtractor, FakeIndexDatabase, FakeModelFactory

DIM = 8


def make_service(tmp_path, db, dimension=DIM):
    embedder = ImageEmbedder(
        model_name="acme/fashion-model",
        dimension=dimension,
        cache_dir=str(tmp_path / "cache"),
        device="cpu",
        base_dir=str(tmp_path),
        model_factory=FakeModelFactory(FakeExtractor(width=DIM)),
        cache=ModelCache(),
        offline=OfflineMode(False),
        sleep=lambda seconds: None,
    )
    gateway = IndexGateway(FakeDBManager(db), IndexConfig(dimension=DIM), sleep=lambda seconds: None)
    return ImageSimilarityService(embedder=embedder, gateway=gateway, store=ImageStore(tmp_path / "uploads"))


@pytest.fixture
def db():
    return FakeIndexDatabase.ready()


@pytest.fixture
def service(tmp_path, db):
    return make_service(tmp_path, db)


@pytest.fixture
def image_path(tmp_path):
    path = tmp_path / "coat.png"
    Image.new("RGB", (8, 8), color=(90, 60, 30)).save(path)
    return str(path.resolve())


def test_mismatched_embedder_and_index_width_is_rejected(tmp_path, db):
    with pytest.raises(ValidationError):
        make_service(tmp_path, db, dimension=16)


def test_insert_record_then_search_by_vector(service):
    vector = np.linspace(0, 1, DIM, dtype=np.float32)
    result = service.insert_record("/catalog/coat.jpg", "c1", vector)

    hits = service.search_by_vector(vector, limit=3)

    assert result.ids == [1]
    assert hits[0].id == 1
    assert hits[0].normalized_score == 1.0
    assert hits[0].correlation_id == "c1"


def test_search_by_image_finds_inserted_image(service, image_path):
    inserted = service.insert_image(image_path, "c1")
    service.insert_record("/catalog/other.jpg", "c2", np.ones(DIM, dtype=np.float32) * 5)

    hits = service.search_by_image(image_path, limit=2)

    assert hits[0].file_path == image_path
    assert hits[0].id == inserted.ids[0]
    assert hits[0].rank == 1
    assert hits[0].normalized_score >= hits[1].normalized_score


def test_insert_image_stores_blob(service, tmp_path, db):
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(5, 5, 5)).save(buffer, format="PNG")

    result = service.insert_image(buffer.getvalue(), "c1")

    stored = Path(result.file_path)
    assert stored.parent == (tmp_path / "uploads").resolve()
    assert db.rows[result.ids[0]]["file_path"] == result.file_path


def test_insert_image_failure_leaves_no_stored_blob(service, tmp_path, db):
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(5, 5, 5)).save(buffer, format="PNG")
    db.connect_errors.append(DatabaseError("relation \"images\" does not exist"))

    with pytest.raises(InsertError):
        service.insert_image(buffer.getvalue(), "c1")

    uploads = tmp_path / "uploads"
    assert not uploads.exists() or list(uploads.iterdir()) == []


def test_insert_image_failure_keeps_caller_file(service, image_path, db):
    db.connect_errors.append(DatabaseError("relation \"images\" does not exist"))

    with pytest.raises(InsertError):
        service.insert_image(image_path, "c1")

    assert Path(image_path).exists()


@pytest.mark.parametrize("limit", [0, -1, True, 2.5])
def test_search_rejects_invalid_limit(service, limit):
    with pytest.raises(ValidationError):
        service.search_by_vector(np.zeros(DIM), limit=limit)


def test_delete_by_correlation_summary(service):
    service.insert_record("/catalog/a.jpg", "c1", np.zeros(DIM))
    service.insert_record("/catalog/b.jpg", "c1", np.ones(DIM))

    summary = service.delete_by_correlation("c1")

    assert summary.deleted_count == 2
    assert service.query_by_correlation("c1") == []


def test_upsert_embeddings_accepts_plain_mappings(service, db):
    service.insert_record("/catalog/a.jpg", "c1", np.zeros(DIM))

    summary = service.upsert_embeddings_by_correlation("c1", [{"vector": np.ones(DIM)}])

    assert summary.upserted_count == 1
    assert np.array_equal(db.rows[1]["embedding"], np.ones(DIM))
    assert db.rows[1]["file_path"] == "/catalog/a.jpg"


def test_upsert_embeddings_requires_embedding(service):
    with pytest.raises(ValidationError):
        service.upsert_embeddings_by_correlation("c1", [{"file_path": "/catalog/a.jpg"}])


def test_status_reports_index_failure_without_raising(service, db):
    db.connect_errors.append(ServiceUnavailableError("connection refused"))

    status = service.status()

    assert status["collection"]["exists"] is False
    assert status["model"]["loaded"] is False
    assert status["config"]["database"]["password"] == "***"


def test_cli_batch_prints_summary(service, image_path, capsys):
    code = cli.main(["batch", image_path, "--correlation-id", "cli-batch"], service_factory=lambda: service)

    output = json.loads(capsys.readouterr().out)
    assert code == 0
    assert output["summary"]["succeeded"] == 1
    assert output["items"][0]["correlation_id"] == "cli-batch"


def test_cli_search_with_vector_file(service, tmp_path, capsys):
    service.insert_record("/catalog/a.jpg", "c1", np.zeros(DIM))
    vector_file = tmp_path / "query.json"
    vector_file.write_text(json.dumps([0.0] * DIM))

    code = cli.main(["search", "--vector-file", str(vector_file), "--limit", "1"],
                    service_factory=lambda: service)

    hits = json.loads(capsys.readouterr().out)
    assert code == 0
    assert hits[0]["file_path"] == "/catalog/a.jpg"


def test_cli_reports_errors_as_json(service, capsys):
    code = cli.main(["update", "ghost", "missing.png"], service_factory=lambda: service)

    captured = capsys.readouterr()
    error = json.loads(captured.err[captured.err.index("{\n"):])
    assert code == 1
    assert error["error"] == "CorrelationNotFoundError"
    assert error["code"] == 404

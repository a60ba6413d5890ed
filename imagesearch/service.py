"""
High-level image similarity service.

Combines the embedder, the index gateway and the batch processor behind the
operations an outer layer (HTTP handler, CLI, worker) calls.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from .batch_processor import BatchProcessor
from .config import config
from .database import DatabaseConfig, DatabaseManager, IndexConfig, IndexGateway
from .errors import ValidationError
from .image_sources import SourceLike, resolve_source
from .models import (
    BatchResult,
    DeleteSummary,
    ImageRecord,
    InsertResult,
    SearchHit,
    UpdateResult,
    UpsertSummary,
)
from .storage import ImageStore
from .vector_processor import ImageEmbedder, is_model_cached

logger = logging.getLogger(__name__)

RecordLike = Union[ImageRecord, Mapping[str, Any]]


def to_image_record(record: RecordLike, correlation_id: str) -> ImageRecord:
    """Accept ImageRecord or a mapping with `embedding` (or `vector`) and optional `file_path`."""
    if isinstance(record, ImageRecord):
        return record
    if not isinstance(record, Mapping):
        raise ValidationError(f"Unsupported record type: {type(record).__name__}")
    embedding = record.get("embedding")
    if embedding is None:
        embedding = record.get("vector")
    if embedding is None:
        raise ValidationError("Record has no embedding")
    return ImageRecord(
        file_path=record.get("file_path") or "",
        embedding=embedding,
        correlation_id=correlation_id,
    )


class ImageSimilarityService:
    """
    High-level service for image similarity operations.
    """

    def __init__(self, embedder: ImageEmbedder = None, gateway: IndexGateway = None,
                 store: ImageStore = None, db_config: DatabaseConfig = None,
                 index_config: IndexConfig = None):
        self.embedder = embedder or ImageEmbedder()
        self.gateway = gateway or IndexGateway(DatabaseManager(db_config), index_config)
        self.store = store or ImageStore()
        self.batch_processor = BatchProcessor(self.embedder, self.gateway, self.store)

        if self.embedder.dimension != self.gateway.dimension:
            raise ValidationError(
                f"Embedder produces {self.embedder.dimension} components but the index stores "
                f"{self.gateway.dimension}",
                {"embedder": self.embedder.dimension, "index": self.gateway.dimension},
            )

    def initialize(self):
        """Bring the vector collection to its ready state."""
        self.gateway.initialize()

    def status(self) -> Dict[str, Any]:
        """Collection, model and configuration status. Never raises on index failures."""
        return {
            "collection": self.gateway.collection_status(),
            "model": {
                "name": self.embedder.model_name,
                "loaded": self.embedder.model_key in self.embedder.model_cache,
                "cached_locally": is_model_cached(self.embedder.model_name, self.embedder.cache_dir),
                "offline_mode": self.embedder.offline_mode.enabled,
                "dimension": self.embedder.dimension,
            },
            "config": config.get_all_config(),
        }

    # Embedding

    def embed_image(self, source: SourceLike) -> np.ndarray:
        return self.embedder.embed(source)

    # Insert

    def insert_record(self, file_path: str, correlation_id: Optional[str], vector) -> InsertResult:
        """Store a precomputed vector."""
        record = ImageRecord(file_path=file_path, embedding=vector, correlation_id=correlation_id or None)
        ids = self.gateway.insert(record)
        return InsertResult(ids=ids, file_path=record.file_path, correlation_id=record.correlation_id)

    def insert_image(self, source: SourceLike, correlation_id: Optional[str] = None) -> InsertResult:
        """Embed an image and store it. Blobs are persisted to the upload directory first."""
        image_source = resolve_source(source, self.embedder.base_dir)
        self.store.check(image_source)
        embedding = self.embedder.embed(image_source)
        file_path = self.store.file_path_for(image_source)
        try:
            return self.insert_record(file_path, correlation_id, embedding)
        except Exception:
            if self.store.is_stored(image_source):
                self.store.discard(file_path)
            raise

    # Search

    def _check_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return config.DEFAULT_SEARCH_LIMIT
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError(f"limit must be a positive integer, got {limit!r}")
        return limit

    def search_by_vector(self, vector, limit: Optional[int] = None) -> List[SearchHit]:
        return self.gateway.search(vector, self._check_limit(limit))

    def search_by_image(self, source: SourceLike, limit: Optional[int] = None) -> List[SearchHit]:
        limit = self._check_limit(limit)
        query_vector = self.embedder.embed(source)
        return self.gateway.search(query_vector, limit)

    # Correlation id operations

    def query_by_correlation(self, correlation_id: str) -> List[Dict[str, Any]]:
        return self.gateway.query_by_correlation(correlation_id)

    def delete_by_correlation(self, correlation_id: str) -> DeleteSummary:
        deleted = self.gateway.delete_by_correlation(correlation_id)
        return DeleteSummary(correlation_id=correlation_id, deleted_count=deleted)

    def upsert_embeddings_by_correlation(self, correlation_id: str,
                                         records: Sequence[RecordLike]) -> UpsertSummary:
        """Replace the embeddings of an existing correlation id with precomputed vectors."""
        new_records = [to_image_record(record, correlation_id) for record in records]
        return self.gateway.upsert_by_correlation(correlation_id, new_records)

    def update_embeddings(self, sources: Sequence[SourceLike], correlation_id: str) -> UpdateResult:
        return self.batch_processor.update(sources, correlation_id)

    async def update_embeddings_async(self, sources: Sequence[SourceLike], correlation_id: str) -> UpdateResult:
        return await self.batch_processor.update_async(sources, correlation_id)

    # Batches

    def process_batch(self, sources: Sequence[SourceLike], correlation_id: Optional[str] = None,
                      batch_name: str = "") -> BatchResult:
        return self.batch_processor.process(sources, correlation_id, batch_name)

    async def process_batch_async(self, sources: Sequence[SourceLike], correlation_id: Optional[str] = None,
                                  batch_name: str = "") -> BatchResult:
        return await self.batch_processor.process_async(sources, correlation_id, batch_name)

"""
Sequential batch processing of image sources.

Each item is resolved, embedded and written before the next one starts.
A failing item is recorded with its error and never aborts the batch;
items already inserted are not rolled back.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from PIL import Image

from .errors import CorrelationNotFoundError, ImageSearchError, ValidationError
from .image_sources import ImageSource, SourceLike, resolve_source
from .models import BatchItemResult, BatchResult, ImageRecord, UpdateResult
from .storage import ImageStore

logger = logging.getLogger(__name__)


def new_batch_correlation_id() -> str:
    return f"batch_{uuid.uuid4()}"


def describe_source(source: Any) -> str:
    """Short printable label for a source, safe for unresolvable input."""
    if isinstance(source, ImageSource):
        return source.label
    if isinstance(source, (bytes, bytearray, memoryview)):
        return f"<{len(source)} bytes>"
    if isinstance(source, Image.Image):
        return "<image>"
    if isinstance(source, Path):
        return str(source)
    if isinstance(source, str):
        return source if len(source) <= 200 else f"{source[:50]}... ({len(source)} chars)"
    return f"<{type(source).__name__}>"


def describe_error(error: Exception) -> Dict[str, Any]:
    if isinstance(error, ImageSearchError):
        return error.to_dict()
    return {"error": type(error).__name__, "message": str(error), "details": {}}


class BatchProcessor:
    """
    Runs batches of sources through the embedder and the index gateway.

    Concurrency within one batch is always one; separate batches may run
    on separate threads or tasks against the same processor.
    """

    def __init__(self, embedder, gateway, store: Optional[ImageStore] = None):
        self.embedder = embedder
        self.gateway = gateway
        self.store = store or ImageStore()

    def _embed_source(self, source: SourceLike) -> Tuple[str, Any, bool]:
        """
        Embed one source and give it a file_path.

        Returns (file_path, embedding, stored); stored is True when the file
        was written to the upload directory for this call.
        """
        image_source = resolve_source(source, self.embedder.base_dir)
        self.store.check(image_source)
        embedding = self.embedder.embed(image_source)
        file_path = self.store.file_path_for(image_source)
        return file_path, embedding, self.store.is_stored(image_source)

    def _process_item(self, index: int, source: SourceLike, correlation_id: str,
                      batch_name: str) -> BatchItemResult:
        label = describe_source(source)
        try:
            file_path, embedding, stored = self._embed_source(source)
            try:
                record_ids = self.gateway.insert(
                    ImageRecord(file_path=file_path, embedding=embedding, correlation_id=correlation_id)
                )
            except Exception:
                if stored:
                    self.store.discard(file_path)
                raise
            logger.info(f"Batch item {index} ({label}) stored as {record_ids}")
            return BatchItemResult(
                index=index,
                source=label,
                status="success",
                file_path=file_path,
                correlation_id=correlation_id,
                record_ids=record_ids,
                batch_name=batch_name,
            )
        except Exception as e:
            logger.error(f"Batch item {index} ({label}) failed: {e}")
            return BatchItemResult(
                index=index,
                source=label,
                status="failed",
                correlation_id=correlation_id,
                error=describe_error(e),
                batch_name=batch_name,
            )

    def _embed_item(self, index: int, source: SourceLike,
                    correlation_id: str) -> Tuple[BatchItemResult, Optional[ImageRecord], bool]:
        label = describe_source(source)
        try:
            file_path, embedding, stored = self._embed_source(source)
            logger.info(f"Update item {index} ({label}) embedded")
            item = BatchItemResult(index=index, source=label, status="success",
                                   file_path=file_path, correlation_id=correlation_id)
            record = ImageRecord(file_path=file_path, embedding=embedding, correlation_id=correlation_id)
            return item, record, stored
        except Exception as e:
            logger.error(f"Update item {index} ({label}) failed: {e}")
            item = BatchItemResult(index=index, source=label, status="failed",
                                   correlation_id=correlation_id, error=describe_error(e))
            return item, None, False

    def _start(self, sources: Sequence[SourceLike], correlation_id: Optional[str]) -> str:
        correlation_id = correlation_id or new_batch_correlation_id()
        logger.info(f"Processing batch {correlation_id} ({len(sources)} images)")
        return correlation_id

    def _finish(self, correlation_id: str, batch_name: str, items: List[BatchItemResult]) -> BatchResult:
        result = BatchResult(correlation_id=correlation_id, batch_name=batch_name, items=items)
        logger.info(f"Batch {correlation_id} complete: {result.success_count} succeeded, "
                    f"{result.failure_count} failed")
        return result

    def process(self, sources: Sequence[SourceLike], correlation_id: Optional[str] = None,
                batch_name: str = "") -> BatchResult:
        """
        Embed and insert every source under one correlation id.

        Returns one BatchItemResult per source, in input order.
        """
        correlation_id = self._start(sources, correlation_id)
        items = [
            self._process_item(index, source, correlation_id, batch_name)
            for index, source in enumerate(sources)
        ]
        return self._finish(correlation_id, batch_name, items)

    async def process_async(self, sources: Sequence[SourceLike], correlation_id: Optional[str] = None,
                            batch_name: str = "") -> BatchResult:
        """process() for asyncio callers; items are offloaded to a thread one at a time."""
        correlation_id = self._start(sources, correlation_id)
        items = []
        for index, source in enumerate(sources):
            item = await asyncio.to_thread(self._process_item, index, source, correlation_id, batch_name)
            items.append(item)
        return self._finish(correlation_id, batch_name, items)

    def _check_update(self, sources: Sequence[SourceLike], correlation_id: str):
        if not correlation_id:
            raise ValidationError("correlation_id is required to update embeddings")
        if not sources:
            raise ValidationError("At least one image source is required to update embeddings")
        existing = self.gateway.query_by_correlation(correlation_id)
        if not existing:
            raise CorrelationNotFoundError(
                f"No image records found for correlation_id {correlation_id}",
                {"correlation_id": correlation_id},
            )
        logger.info(f"Updating {len(existing)} records of {correlation_id} from {len(sources)} images")

    def _apply_update(self, correlation_id: str, items: List[BatchItemResult],
                      records: List[ImageRecord], stored_paths: List[str]) -> UpdateResult:
        if not records:
            logger.warning(f"No image of the update for {correlation_id} could be embedded, nothing written")
            return UpdateResult(
                correlation_id=correlation_id,
                items=items,
                error={"message": "No image could be embedded; existing records were left unchanged"},
            )
        try:
            summary = self.gateway.upsert_by_correlation(correlation_id, records)
        except Exception:
            for file_path in stored_paths:
                self.store.discard(file_path)
            raise
        return UpdateResult(correlation_id=correlation_id, items=items, upsert=summary)

    def update(self, sources: Sequence[SourceLike], correlation_id: str) -> UpdateResult:
        """
        Re-embed sources and replace the embeddings stored for a correlation id.

        Raises CorrelationNotFoundError when the id has no records.
        """
        self._check_update(sources, correlation_id)
        items, records, stored_paths = [], [], []
        for index, source in enumerate(sources):
            item, record, stored = self._embed_item(index, source, correlation_id)
            items.append(item)
            if record is not None:
                records.append(record)
            if stored:
                stored_paths.append(record.file_path)
        return self._apply_update(correlation_id, items, records, stored_paths)

    async def update_async(self, sources: Sequence[SourceLike], correlation_id: str) -> UpdateResult:
        await asyncio.to_thread(self._check_update, sources, correlation_id)
        items, records, stored_paths = [], [], []
        for index, source in enumerate(sources):
            item, record, stored = await asyncio.to_thread(self._embed_item, index, source, correlation_id)
            items.append(item)
            if record is not None:
                records.append(record)
            if stored:
                stored_paths.append(record.file_path)
        return await asyncio.to_thread(self._apply_update, correlation_id, items, records, stored_paths)

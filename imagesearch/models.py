"""
Data model for records stored in the vector index and for the results
handed back to callers.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field


@dataclass
class ImageRecord:
    """A record of the vector index. `id` is assigned by the index on insert."""
    file_path: str
    embedding: np.ndarray
    correlation_id: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        self.embedding = np.asarray(self.embedding, dtype=np.float32).ravel()

    @property
    def dimension(self) -> int:
        return int(self.embedding.shape[0])


class SearchHit(BaseModel):
    id: Optional[int] = None
    file_path: str
    raw_distance: float
    normalized_score: float = Field(gt=0.0, le=1.0)
    correlation_id: Optional[str] = None
    rank: int = Field(ge=1)


class InsertResult(BaseModel):
    ids: List[int]
    file_path: str
    correlation_id: Optional[str] = None


class DeleteSummary(BaseModel):
    correlation_id: str
    deleted_count: int


class UpsertSummary(BaseModel):
    correlation_id: str
    upserted_count: int
    inserted_count: int
    deleted_count: int
    matched_count: int


class BatchItemResult(BaseModel):
    index: int
    source: str
    status: str  # "success" | "failed"
    file_path: Optional[str] = None
    correlation_id: Optional[str] = None
    record_ids: List[int] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    batch_name: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class BatchResult(BaseModel):
    correlation_id: str
    batch_name: str = ""
    items: List[BatchItemResult]

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.items if item.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.items) - self.success_count

    def summary(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "batch_name": self.batch_name,
            "total": len(self.items),
            "succeeded": self.success_count,
            "failed": self.failure_count,
        }


class UpdateResult(BaseModel):
    """Outcome of re-embedding a set of sources for one correlation id."""
    correlation_id: str
    items: List[BatchItemResult]
    upsert: Optional[UpsertSummary] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.items if item.succeeded)

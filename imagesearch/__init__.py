"""
Image Similarity Search Core

This package provides the core of an image similarity search system with:
- Image embeddings from Hugging Face feature extraction models
- PostgreSQL/pgvector collection with HNSW, IVFFlat or exact search
- Correlation id based grouping, replacement and deletion of records
- Sequential batch ingestion with per-item outcomes

Main components:
- vector_processor: model acquisition, caching and embedding generation
- database: vector collection lifecycle and record operations
- batch_processor: sequential batch ingestion and embedding updates
- service: high-level facade used by outer layers
- config: configuration management and environment variables
"""

__version__ = "1.0.0"
__author__ = "Image Similarity Search Team"

from .config import Config, config
from .errors import ErrorCode, ImageSearchError
from .vector_processor import ImageEmbedder, ModelCache, OfflineMode
from .database import CollectionState, DatabaseConfig, DatabaseManager, IndexConfig, IndexGateway
from .batch_processor import BatchProcessor
from .service import ImageSimilarityService

__all__ = [
    'ImageEmbedder',
    'ModelCache',
    'OfflineMode',
    'IndexGateway',
    'IndexConfig',
    'CollectionState',
    'DatabaseManager',
    'DatabaseConfig',
    'BatchProcessor',
    'ImageSimilarityService',
    'ErrorCode',
    'ImageSearchError',
    'Config',
    'config'
]

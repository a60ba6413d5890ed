"""
Configuration management for the image similarity core.
"""

import os
from pathlib import Path
from typing import Dict, Any
from dotenv import load_dotenv

# Load environment variables from .env files (package first, then cwd)
env_path = Path(__file__).parent / ".env"
if env_path.exists():
    load_dotenv(env_path)
load_dotenv()


def env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration class."""

    # Database Configuration
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", 5432))
    DB_NAME: str = os.getenv("DB_NAME", "imsrc")
    DB_USER: str = os.getenv("DB_USER", "postgres")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "postgres")

    # Model Configuration
    MODEL_NAME: str = os.getenv("MODEL_NAME", "facebook/dinov2-base")
    MODEL_CACHE_DIR: str = os.getenv("MODEL_CACHE_DIR", str(Path.cwd() / ".cache"))
    MODEL_POOLING: bool = env_bool("MODEL_POOLING", "true")
    DEVICE: str = os.getenv("DEVICE", "auto")
    OFFLINE_MODE: bool = env_bool("OFFLINE_MODE")
    PAD_RANGE: float = float(os.getenv("PAD_RANGE", 0.0005))

    # Vector index Configuration
    VECTOR_DIMENSION: int = int(os.getenv("VECTOR_DIMENSION", 768))
    COLLECTION_NAME: str = os.getenv("COLLECTION_NAME", "fashion_images")
    INDEX_SCHEMA: str = os.getenv("INDEX_SCHEMA", "image_search")
    INDEX_TYPE: str = os.getenv("INDEX_TYPE", "HNSW")
    METRIC_TYPE: str = os.getenv("METRIC_TYPE", "L2")
    HNSW_M: int = int(os.getenv("HNSW_M", 16))
    HNSW_EF_CONSTRUCTION: int = int(os.getenv("HNSW_EF_CONSTRUCTION", 200))
    HNSW_EF_SEARCH: int = int(os.getenv("HNSW_EF_SEARCH", 64))
    IVF_LISTS: int = int(os.getenv("IVF_LISTS", 100))
    IVF_PROBES: int = int(os.getenv("IVF_PROBES", 10))
    PREWARM_ON_LOAD: bool = env_bool("PREWARM_ON_LOAD", "true")

    # Retry / timeout policy
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", 3))
    BACKOFF_BASE: float = float(os.getenv("BACKOFF_BASE", 2))
    CONNECT_TIMEOUT: int = int(os.getenv("CONNECT_TIMEOUT", 10))
    OPERATION_TIMEOUT: int = int(os.getenv("OPERATION_TIMEOUT", 30))

    # Image sources
    UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "./uploads")
    MAX_UPLOAD_SIZE: int = int(os.getenv("MAX_UPLOAD_SIZE", 10 * 1024 * 1024))  # 10MB
    IMAGE_BASE_DIR: str = os.getenv("IMAGE_BASE_DIR", str(Path.cwd()))
    DEFAULT_SEARCH_LIMIT: int = int(os.getenv("DEFAULT_SEARCH_LIMIT", 20))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def get_db_config(cls) -> Dict[str, Any]:
        """Get database configuration as dictionary."""
        return {
            "host": cls.DB_HOST,
            "port": cls.DB_PORT,
            "dbname": cls.DB_NAME,
            "user": cls.DB_USER,
            "password": cls.DB_PASSWORD,
            "connect_timeout": cls.CONNECT_TIMEOUT,
            "operation_timeout": cls.OPERATION_TIMEOUT,
        }

    @classmethod
    def get_model_config(cls) -> Dict[str, Any]:
        """Get feature extraction model configuration as dictionary."""
        return {
            "model_name": cls.MODEL_NAME,
            "cache_dir": cls.MODEL_CACHE_DIR,
            "pooling": cls.MODEL_POOLING,
            "device": cls.DEVICE,
            "offline": cls.OFFLINE_MODE,
            "dimension": cls.VECTOR_DIMENSION,
            "pad_range": cls.PAD_RANGE,
            "max_retries": cls.MAX_RETRIES,
            "backoff_base": cls.BACKOFF_BASE,
        }

    @classmethod
    def get_index_config(cls) -> Dict[str, Any]:
        """Get vector index configuration as dictionary."""
        return {
            "collection_name": cls.COLLECTION_NAME,
            "schema": cls.INDEX_SCHEMA,
            "dimension": cls.VECTOR_DIMENSION,
            "index_type": cls.INDEX_TYPE,
            "metric_type": cls.METRIC_TYPE,
            "hnsw_m": cls.HNSW_M,
            "hnsw_ef_construction": cls.HNSW_EF_CONSTRUCTION,
            "hnsw_ef_search": cls.HNSW_EF_SEARCH,
            "ivf_lists": cls.IVF_LISTS,
            "ivf_probes": cls.IVF_PROBES,
            "prewarm": cls.PREWARM_ON_LOAD,
            "max_retries": cls.MAX_RETRIES,
            "backoff_base": cls.BACKOFF_BASE,
        }

    @classmethod
    def get_all_config(cls) -> Dict[str, Any]:
        """Get all configuration as dictionary (password masked)."""
        db_config = cls.get_db_config()
        db_config["password"] = "***"
        return {
            "database": db_config,
            "model": cls.get_model_config(),
            "index": cls.get_index_config(),
            "upload_dir": cls.UPLOAD_DIR,
            "max_upload_size": cls.MAX_UPLOAD_SIZE,
            "image_base_dir": cls.IMAGE_BASE_DIR,
            "default_search_limit": cls.DEFAULT_SEARCH_LIMIT,
            "log_level": cls.LOG_LEVEL,
        }

# Create global config instance
config = Config()

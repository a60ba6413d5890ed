"""
Database utilities for the image vector index.
Handles the PostgreSQL/pgvector collection lifecycle and the record
operations (insert, search, query, delete, upsert) against it.
"""

import json
import logging
import math
import os
import re
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Type

import numpy as np
import psycopg2
import psycopg2.errors
from psycopg2.extras import RealDictCursor
from pgvector.psycopg2 import register_vector

from .config import config
from .errors import (
    TRANSIENT_ERRORS,
    CorrelationNotFoundError,
    DatabaseError,
    DeleteError,
    DimensionMismatchError,
    GatewayTimeoutError,
    ImageSearchError,
    InsertError,
    QueryError,
    SearchError,
    ServiceUnavailableError,
    UpsertError,
    ValidationError,
)
from .models import ImageRecord, SearchHit, UpsertSummary

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
INDEX_TYPES = ("HNSW", "IVFFLAT", "FLAT")

# Range pgvector accepts for hnsw.ef_search
HNSW_EF_SEARCH_MAX = 1000

MIN_SCORE = sys.float_info.min

# metric -> (distance operator, operator class)
METRIC_OPERATORS = {
    "L2": ("<->", "vector_l2_ops"),
    "IP": ("<#>", "vector_ip_ops"),
    "COSINE": ("<=>", "vector_cosine_ops"),
}
FILE_PATH_MAX_LENGTH = 500
CORRELATION_ID_MAX_LENGTH = 100


def log_index_event(operation: str, **kwargs):
    """Log structured JSON event for index operations"""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    log_data = {
        "ts": time.time(),
        "module": "index_gateway",
        "operation": operation,
        **kwargs
    }
    logger.debug(f"INDEX_EVENT: {json.dumps(log_data, default=str)}")


def normalize_score(raw_distance: float) -> float:
    """
    Convert a raw distance into a similarity score in (0, 1].

    score = 1 / (1 + distance), clamped; 1.0 only at zero distance for
    non-negative metrics. Overflowed or undefined distances get the
    smallest positive score.
    """
    if math.isnan(raw_distance):
        return MIN_SCORE
    if raw_distance <= 0:
        return 1.0
    return max(MIN_SCORE, min(1.0, 1.0 / (1.0 + raw_distance)))


def to_raw_distance(value: float, metric_type: str) -> float:
    """pgvector returns the Euclidean distance for L2; the index reports it squared."""
    if metric_type == "L2":
        return value * value
    return value


def build_search_hits(rows: Sequence[Dict[str, Any]], metric_type: str) -> List[SearchHit]:
    hits = []
    for rank, row in enumerate(rows, start=1):
        raw_distance = to_raw_distance(float(row["distance"]), metric_type)
        hits.append(SearchHit(
            id=row["id"],
            file_path=row["file_path"],
            raw_distance=raw_distance,
            normalized_score=normalize_score(raw_distance),
            correlation_id=row["correlation_id"],
            rank=rank,
        ))
    return hits


def pair_records(existing: Sequence[Dict[str, Any]], new_records: Sequence[ImageRecord],
                 correlation_id: str) -> List[tuple]:
    """
    Pair existing rows of a correlation id with freshly computed embeddings.

    Existing row i takes new_records[i]; rows beyond the supplied records
    reuse new_records[0]. Primary key and correlation id are kept.
    """
    if len(new_records) < len(existing):
        logger.warning(f"Only {len(new_records)} embeddings supplied for {len(existing)} records of "
                       f"correlation_id {correlation_id}; reusing the first embedding for the rest")
    elif len(new_records) > len(existing):
        logger.warning(f"{len(new_records) - len(existing)} supplied embeddings have no existing record "
                       f"for correlation_id {correlation_id} and are ignored")

    rows = []
    for index, record in enumerate(existing):
        replacement = new_records[index] if index < len(new_records) else new_records[0]
        rows.append((
            record["id"],
            replacement.file_path or record["file_path"],
            correlation_id,
            replacement.embedding,
        ))
    return rows


def translate_database_error(error: psycopg2.Error) -> ImageSearchError:
    """Map a psycopg2 error onto the error taxonomy."""
    message = str(error).strip()
    details = {"pgcode": getattr(error, "pgcode", None)}
    if isinstance(error, psycopg2.errors.QueryCanceled):
        return GatewayTimeoutError(f"Index operation timed out: {message}", details)
    if isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        if "timeout expired" in message:
            return GatewayTimeoutError(f"Index connection timed out: {message}", details)
        return ServiceUnavailableError(f"Index connection failed: {message}", details)
    if isinstance(error, psycopg2.DataError) and "dimensions" in message:
        return DimensionMismatchError(f"Index rejected vector: {message}", details)
    return DatabaseError(message, details)


def check_identifier(name: str, label: str) -> str:
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise ValidationError(f"Invalid {label}: {name!r}", {label: name})
    return name


@dataclass
class DatabaseConfig:
    """Database configuration.

    Values default to environment variables when not provided so that
    creating `DatabaseConfig()` picks up settings from `.env` or the
    environment (matching `imagesearch/config.py`).
    """
    host: str = None
    port: int = None
    dbname: str = None
    user: str = None
    password: str = None
    connect_timeout: int = None
    operation_timeout: int = None

    def __post_init__(self):
        # Read from environment if values not explicitly provided
        self.host = self.host or os.getenv("DB_HOST", "localhost")
        self.port = int(self.port or os.getenv("DB_PORT", 5432))
        self.dbname = self.dbname or os.getenv("DB_NAME", "imsrc")
        self.user = self.user or os.getenv("DB_USER", "postgres")
        self.password = self.password or os.getenv("DB_PASSWORD", "postgres")
        self.connect_timeout = int(self.connect_timeout or config.CONNECT_TIMEOUT)
        self.operation_timeout = int(self.operation_timeout or config.OPERATION_TIMEOUT)

    def get_connection_kwargs(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "options": f"-c statement_timeout={self.operation_timeout * 1000}",
        }


@dataclass
class IndexConfig:
    """Vector collection configuration, defaulting to `imagesearch.config`."""
    collection_name: str = None
    schema: str = None
    dimension: int = None
    index_type: str = None
    metric_type: str = None
    hnsw_m: int = None
    hnsw_ef_construction: int = None
    hnsw_ef_search: int = None
    ivf_lists: int = None
    ivf_probes: int = None
    prewarm: bool = None
    max_retries: int = None
    backoff_base: float = None

    def __post_init__(self):
        self.collection_name = check_identifier(self.collection_name or config.COLLECTION_NAME, "collection_name")
        self.schema = check_identifier(self.schema or config.INDEX_SCHEMA, "schema")
        self.dimension = int(self.dimension or config.VECTOR_DIMENSION)
        self.index_type = (self.index_type or config.INDEX_TYPE).upper()
        self.metric_type = (self.metric_type or config.METRIC_TYPE).upper()
        self.hnsw_m = int(self.hnsw_m or config.HNSW_M)
        self.hnsw_ef_construction = int(self.hnsw_ef_construction or config.HNSW_EF_CONSTRUCTION)
        self.hnsw_ef_search = int(self.hnsw_ef_search or config.HNSW_EF_SEARCH)
        self.ivf_lists = int(self.ivf_lists or config.IVF_LISTS)
        self.ivf_probes = int(self.ivf_probes or config.IVF_PROBES)
        self.prewarm = config.PREWARM_ON_LOAD if self.prewarm is None else self.prewarm
        self.max_retries = max(1, int(self.max_retries or config.MAX_RETRIES))
        self.backoff_base = config.BACKOFF_BASE if self.backoff_base is None else self.backoff_base

        if self.dimension <= 0:
            raise ValidationError(f"Vector dimension must be positive, got {self.dimension}")
        if self.index_type not in INDEX_TYPES:
            raise ValidationError(f"Unsupported index type: {self.index_type}", {"supported": list(INDEX_TYPES)})
        if self.metric_type not in METRIC_OPERATORS:
            raise ValidationError(f"Unsupported metric type: {self.metric_type}",
                                  {"supported": list(METRIC_OPERATORS)})
        if not 1 <= self.hnsw_ef_search <= HNSW_EF_SEARCH_MAX:
            raise ValidationError(f"hnsw_ef_search must be between 1 and {HNSW_EF_SEARCH_MAX}, "
                                  f"got {self.hnsw_ef_search}")

    @property
    def table(self) -> str:
        return f"{self.schema}.{self.collection_name}"

    @property
    def vector_index_name(self) -> str:
        return f"{self.collection_name}_embedding_idx"

    @property
    def correlation_index_name(self) -> str:
        return f"{self.collection_name}_correlation_idx"

    @property
    def distance_operator(self) -> str:
        return METRIC_OPERATORS[self.metric_type][0]

    @property
    def operator_class(self) -> str:
        return METRIC_OPERATORS[self.metric_type][1]

    @property
    def has_ann_index(self) -> bool:
        return self.index_type != "FLAT"


class DatabaseManager:
    """
    Manages database connections for the vector index.

    A connection is opened per operation, so one manager can be shared by
    any number of threads.
    """

    def __init__(self, config: DatabaseConfig = None):
        self.config = config or DatabaseConfig()

    def _connect(self, connect_timeout: Optional[int] = None):
        kwargs = self.config.get_connection_kwargs()
        if connect_timeout is not None:
            kwargs["connect_timeout"] = connect_timeout
        try:
            return psycopg2.connect(**kwargs)
        except psycopg2.Error as e:
            logger.error(f"Could not connect to {self.config.host}:{self.config.port}/{self.config.dbname}: {e}")
            raise translate_database_error(e) from e

    @contextmanager
    def get_connection(self, register_vector_type: bool = True, connect_timeout: Optional[int] = None):
        """Context manager for database connections."""
        conn = self._connect(connect_timeout)
        try:
            if register_vector_type:
                register_vector(conn)
            yield conn
        except psycopg2.Error as e:
            self._rollback(conn)
            logger.error(f"Database error: {e}")
            raise translate_database_error(e) from e
        except Exception:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn):
        if conn.closed:
            return
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed: {e}")


class CollectionState(Enum):
    UNKNOWN = "unknown"
    CHECKING_CONNECTION = "checking_connection"
    SELECTING_NAMESPACE = "selecting_namespace"
    CHECKING_COLLECTION = "checking_collection"
    CHECKING_LOAD_STATE = "checking_load_state"
    CREATING_SCHEMA = "creating_schema"
    BUILDING_INDEX = "building_index"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class LoadState(Enum):
    NOT_EXIST = "LoadStateNotExist"
    NOT_LOADED = "LoadStateNotLoad"
    LOADED = "LoadStateLoaded"


class CollectionManager:
    """
    Owns the lifecycle of the vector collection: connection check, schema
    namespace, table creation, ANN index build and prewarm.
    """

    def __init__(self, db_manager: DatabaseManager, index_config: IndexConfig, health_timeout: int = 10):
        self.db_manager = db_manager
        self.config = index_config
        self.health_timeout = health_timeout
        self.state = CollectionState.UNKNOWN

    def _transition(self, state: CollectionState):
        logger.debug(f"Collection {self.config.table}: {self.state.value} -> {state.value}")
        self.state = state

    def initialize(self):
        """
        Bring the collection to the READY state.

        Creates the schema, table and index when absent; on an existing
        collection only the load state is checked. Any failing step is fatal.
        """
        logger.info(f"Initializing vector collection {self.config.table}...")
        try:
            self._transition(CollectionState.CHECKING_CONNECTION)
            self.check_health()

            self._transition(CollectionState.SELECTING_NAMESPACE)
            self.use_namespace()

            self._transition(CollectionState.CHECKING_COLLECTION)
            if self.has_collection():
                logger.info(f"Collection {self.config.table} already exists")
                self._transition(CollectionState.CHECKING_LOAD_STATE)
                if self.get_load_state() != LoadState.LOADED:
                    self._transition(CollectionState.LOADING)
                    self.load_collection()
            else:
                logger.info(f"Collection {self.config.table} does not exist, creating...")
                self._transition(CollectionState.CREATING_SCHEMA)
                self.create_collection()
                self._transition(CollectionState.BUILDING_INDEX)
                self.build_index()
                self._transition(CollectionState.LOADING)
                self.load_collection()

            self._transition(CollectionState.READY)
            logger.info(f"Vector collection {self.config.table} is ready")
        except ImageSearchError as e:
            failed_step = self.state.value
            self._transition(CollectionState.FAILED)
            logger.error(f"Collection initialization failed while {failed_step}: {e}")
            e.details.setdefault("step", failed_step)
            raise

    @property
    def is_ready(self) -> bool:
        return self.state == CollectionState.READY

    def check_health(self) -> bool:
        """Verify the index answers within the health check timeout."""
        with self.db_manager.get_connection(register_vector_type=False,
                                            connect_timeout=self.health_timeout) as conn:
            with conn.cursor() as cur:
                cur.execute("SET statement_timeout = %s", (self.health_timeout * 1000,))
                cur.execute("SELECT 1")
                cur.fetchone()
        logger.info("Index connection health check passed")
        return True

    def use_namespace(self):
        """Ensure the pgvector extension and the collection schema exist."""
        schema = self.config.schema
        with self.db_manager.get_connection(register_vector_type=False) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'vector')")
                if not cur.fetchone()[0]:
                    logger.info("Creating pgvector extension")
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                cur.execute("""
                    SELECT EXISTS (
                        SELECT 1 FROM information_schema.schemata WHERE schema_name = %s
                    )
                """, (schema,))
                if not cur.fetchone()[0]:
                    logger.info(f"Creating schema: {schema}")
                    cur.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}")
            conn.commit()
        logger.info(f"Using schema: {schema}")

    def has_collection(self) -> bool:
        with self.db_manager.get_connection(register_vector_type=False) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT EXISTS (
                        SELECT 1 FROM information_schema.tables
                        WHERE table_schema = %s AND table_name = %s
                    )
                """, (self.config.schema, self.config.collection_name))
                return bool(cur.fetchone()[0])

    def get_load_state(self) -> LoadState:
        """
        An ANN collection counts as loaded when its vector index exists and
        is valid; a FLAT collection when its table exists.
        """
        if not self.has_collection():
            return LoadState.NOT_EXIST
        if not self.config.has_ann_index:
            return LoadState.LOADED

        valid = self._vector_index_validity()
        return LoadState.LOADED if valid else LoadState.NOT_LOADED

    def _vector_index_validity(self) -> Optional[bool]:
        """None when the vector index is missing, otherwise whether it is usable."""
        with self.db_manager.get_connection(register_vector_type=False) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT i.indisvalid AND i.indisready
                    FROM pg_index i
                    JOIN pg_class c ON c.oid = i.indexrelid
                    JOIN pg_namespace n ON n.oid = c.relnamespace
                    WHERE n.nspname = %s AND c.relname = %s
                """, (self.config.schema, self.config.vector_index_name))
                row = cur.fetchone()
        return None if row is None else bool(row[0])

    def create_collection(self):
        """Create the collection table and its correlation_id index."""
        table = self.config.table
        logger.info(f"Creating collection: {table}")
        with self.db_manager.get_connection(register_vector_type=False) as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id BIGSERIAL PRIMARY KEY,
                        file_path VARCHAR({FILE_PATH_MAX_LENGTH}) NOT NULL,
                        correlation_id VARCHAR({CORRELATION_ID_MAX_LENGTH}),
                        embedding vector({self.config.dimension}) NOT NULL
                    )
                """)
                cur.execute(f"CREATE INDEX IF NOT EXISTS {self.config.correlation_index_name} "
                            f"ON {table} (correlation_id)")
            conn.commit()

    def build_index(self):
        """Build the ANN index over the embedding column."""
        cfg = self.config
        if not cfg.has_ann_index:
            logger.info("FLAT index type, searches use exact scans")
            return

        if cfg.index_type == "HNSW":
            method = "hnsw"
            params = f"m = {cfg.hnsw_m}, ef_construction = {cfg.hnsw_ef_construction}"
        else:
            method = "ivfflat"
            params = f"lists = {cfg.ivf_lists}"

        logger.info(f"Building {method} index {cfg.vector_index_name} ({cfg.metric_type}, {params})")
        with self.db_manager.get_connection(register_vector_type=False) as conn:
            with conn.cursor() as cur:
                cur.execute(f"CREATE INDEX IF NOT EXISTS {cfg.vector_index_name} ON {cfg.table} "
                            f"USING {method} (embedding {cfg.operator_class}) WITH ({params})")
            conn.commit()

    def load_collection(self):
        """Make sure the vector index is usable and warm it into shared buffers."""
        cfg = self.config
        if cfg.has_ann_index:
            validity = self._vector_index_validity()
            if validity is None:
                self.build_index()
            elif not validity:
                logger.info(f"Rebuilding invalid index {cfg.vector_index_name}")
                with self.db_manager.get_connection(register_vector_type=False) as conn:
                    with conn.cursor() as cur:
                        cur.execute(f"REINDEX INDEX {cfg.schema}.{cfg.vector_index_name}")
                    conn.commit()

        if not cfg.prewarm:
            return

        target = f"{cfg.schema}.{cfg.vector_index_name}" if cfg.has_ann_index else cfg.table
        logger.info(f"Loading {target} into memory...")
        with self.db_manager.get_connection(register_vector_type=False) as conn:
            with conn.cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS pg_prewarm")
                cur.execute("SELECT pg_prewarm(%s::regclass)", (target,))
                blocks = cur.fetchone()[0]
            conn.commit()
        logger.info(f"Loaded {blocks} blocks of {target}")

    def count(self) -> int:
        with self.db_manager.get_connection(register_vector_type=False) as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) FROM {self.config.table}")
                return int(cur.fetchone()[0])

    def collection_status(self) -> Dict[str, Any]:
        """Report existence and load state without raising."""
        try:
            load_state = self.get_load_state()
            exists = load_state != LoadState.NOT_EXIST
            return {
                "collection": self.config.table,
                "exists": exists,
                "loaded": load_state == LoadState.LOADED,
                "row_count": self.count() if exists else 0,
                "state": self.state.value,
            }
        except ImageSearchError as e:
            logger.error(f"Checking collection status failed: {e}")
            return {
                "collection": self.config.table,
                "exists": False,
                "loaded": False,
                "state": self.state.value,
                "error": e.message,
            }


class IndexGateway:
    """
    Consistency operations against the image vector collection.

    Every operation runs under the connection's statement timeout and is
    retried only on ServiceUnavailableError / GatewayTimeoutError.
    """

    def __init__(self, db_manager: DatabaseManager = None, index_config: IndexConfig = None,
                 health_timeout: int = 10, sleep: Callable[[float], None] = time.sleep):
        self.db_manager = db_manager or DatabaseManager()
        self.config = index_config or IndexConfig()
        self.collection = CollectionManager(self.db_manager, self.config, health_timeout)
        self._sleep = sleep

    @property
    def dimension(self) -> int:
        return self.config.dimension

    def initialize(self):
        self.collection.initialize()

    def check_health(self) -> bool:
        return self.collection.check_health()

    def collection_status(self) -> Dict[str, Any]:
        return self.collection.collection_status()

    def _execute(self, operation: str, func: Callable[[], Any], error_class: Type[DatabaseError]):
        max_retries = self.config.max_retries
        start = time.time()
        for attempt in range(1, max_retries + 1):
            try:
                result = func()
                log_index_event(operation, table=self.config.table, attempt=attempt,
                                elapsed=round(time.time() - start, 4))
                return result
            except TRANSIENT_ERRORS as e:
                logger.warning(f"{operation} failed (attempt {attempt}/{max_retries}): {e}")
                if attempt == max_retries:
                    raise
                wait_time = self.config.backoff_base ** attempt
                logger.info(f"Waiting {wait_time:.1f}s before retrying {operation}...")
                self._sleep(wait_time)
            except DatabaseError as e:
                if isinstance(e, error_class):
                    raise
                raise error_class(f"{operation} failed: {e.message}", e.details) from e

    # Validation

    def _validate_vector(self, vector) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32).ravel()
        if array.shape[0] != self.dimension:
            raise DimensionMismatchError(
                f"Vector dimension mismatch! Expected: {self.dimension}, actual: {array.shape[0]}",
                {"expected": self.dimension, "actual": int(array.shape[0])},
            )
        if not np.all(np.isfinite(array)):
            raise ValidationError("Vector contains NaN or infinite values")
        return array

    @staticmethod
    def _validate_correlation_id(correlation_id: Optional[str], required: bool = True) -> Optional[str]:
        if correlation_id is None or correlation_id == "":
            if required:
                raise ValidationError("correlation_id is required")
            return None
        if not isinstance(correlation_id, str):
            raise ValidationError(f"correlation_id must be a string, got {type(correlation_id).__name__}")
        if len(correlation_id) > CORRELATION_ID_MAX_LENGTH:
            raise ValidationError(f"correlation_id exceeds {CORRELATION_ID_MAX_LENGTH} characters")
        return correlation_id

    def _validate_record(self, record: ImageRecord) -> ImageRecord:
        if not record.file_path:
            raise ValidationError("file_path is required")
        if len(record.file_path) > FILE_PATH_MAX_LENGTH:
            raise ValidationError(f"file_path exceeds {FILE_PATH_MAX_LENGTH} characters")
        self._validate_correlation_id(record.correlation_id, required=False)
        record.embedding = self._validate_vector(record.embedding)
        return record

    # Operations

    def insert(self, record: ImageRecord) -> List[int]:
        """Append one record. Returns the ids assigned by the index."""
        record = self._validate_record(record)
        logger.info(f"Inserting record: file_path={record.file_path}, "
                    f"correlation_id={record.correlation_id}, dim={record.dimension}")

        def _insert():
            with self.db_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"""
                        INSERT INTO {self.config.table} (file_path, correlation_id, embedding)
                        VALUES (%s, %s, %s)
                        RETURNING id
                    """, (record.file_path, record.correlation_id, record.embedding))
                    ids = [row[0] for row in cur.fetchall()]
                conn.commit()
            return ids

        ids = self._execute("insert", _insert, InsertError)
        logger.info(f"Inserted record ids: {ids}")
        return ids

    def search(self, query_vector, limit: int = 20) -> List[SearchHit]:
        """
        Nearest neighbour search without filters.

        Returns up to `limit` hits ordered by ascending distance with a
        normalized score and 1-based rank.
        """
        vector = self._validate_vector(query_vector)
        if not isinstance(limit, int) or limit < 1:
            raise ValidationError(f"limit must be a positive integer, got {limit!r}")

        cfg = self.config
        operator = cfg.distance_operator

        def _search():
            with self.db_manager.get_connection() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    if cfg.index_type == "HNSW":
                        ef_search = min(max(cfg.hnsw_ef_search, limit), HNSW_EF_SEARCH_MAX)
                        cur.execute("SET LOCAL hnsw.ef_search = %s", (ef_search,))
                    elif cfg.index_type == "IVFFLAT":
                        cur.execute("SET LOCAL ivfflat.probes = %s", (cfg.ivf_probes,))
                    cur.execute(f"""
                        SELECT id, file_path, correlation_id, embedding {operator} %s AS distance
                        FROM {cfg.table}
                        ORDER BY embedding {operator} %s
                        LIMIT %s
                    """, (vector, vector, limit))
                    rows = cur.fetchall()
                conn.commit()
            return rows

        rows = self._execute("search", _search, SearchError)
        hits = build_search_hits(rows, cfg.metric_type)
        if hits:
            logger.info(f"Search returned {len(hits)} hits, best score {hits[0].normalized_score:.4f}")
        else:
            logger.info("Search returned no hits")
        return hits

    def query_by_correlation(self, correlation_id: str) -> List[Dict[str, Any]]:
        """All records of a correlation id (id, file_path, correlation_id)."""
        correlation_id = self._validate_correlation_id(correlation_id)

        def _query():
            with self.db_manager.get_connection(register_vector_type=False) as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(f"""
                        SELECT id, file_path, correlation_id
                        FROM {self.config.table}
                        WHERE correlation_id = %s
                        ORDER BY id
                    """, (correlation_id,))
                    return [dict(row) for row in cur.fetchall()]

        records = self._execute("query", _query, QueryError)
        logger.info(f"Found {len(records)} records for correlation_id {correlation_id}")
        return records

    def delete_by_correlation(self, correlation_id: str) -> int:
        """Delete all records of a correlation id. Unknown ids delete nothing."""
        correlation_id = self._validate_correlation_id(correlation_id)

        def _delete():
            with self.db_manager.get_connection(register_vector_type=False) as conn:
                with conn.cursor() as cur:
                    cur.execute(f"DELETE FROM {self.config.table} WHERE correlation_id = %s",
                                (correlation_id,))
                    deleted = cur.rowcount
                conn.commit()
            return max(deleted, 0)

        deleted = self._execute("delete", _delete, DeleteError)
        logger.info(f"Deleted {deleted} records for correlation_id {correlation_id}")
        return deleted

    def upsert_by_correlation(self, correlation_id: str,
                              new_records: Sequence[ImageRecord]) -> UpsertSummary:
        """
        Replace the embeddings of an existing correlation id.

        Raises CorrelationNotFoundError when the id has no records; this
        never creates a new correlation id.
        """
        correlation_id = self._validate_correlation_id(correlation_id)
        if not new_records:
            raise ValidationError("At least one embedding record is required")
        for record in new_records:
            record.embedding = self._validate_vector(record.embedding)
            if record.file_path and len(record.file_path) > FILE_PATH_MAX_LENGTH:
                raise ValidationError(f"file_path exceeds {FILE_PATH_MAX_LENGTH} characters")

        table = self.config.table
        logger.info(f"Updating embeddings of correlation_id {correlation_id} "
                    f"with {len(new_records)} records")

        def _upsert():
            with self.db_manager.get_connection() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(f"""
                        SELECT id, file_path, correlation_id
                        FROM {table}
                        WHERE correlation_id = %s
                        ORDER BY id
                        FOR UPDATE
                    """, (correlation_id,))
                    existing = cur.fetchall()
                    if not existing:
                        raise CorrelationNotFoundError(
                            f"No image records found for correlation_id {correlation_id}",
                            {"correlation_id": correlation_id},
                        )

                    rows = pair_records(existing, new_records, correlation_id)
                    placeholders = ", ".join(["(%s, %s, %s, %s)"] * len(rows))
                    params = [value for row in rows for value in row]
                    cur.execute(f"""
                        INSERT INTO {table} (id, file_path, correlation_id, embedding)
                        VALUES {placeholders}
                        ON CONFLICT (id) DO UPDATE SET
                            file_path = EXCLUDED.file_path,
                            correlation_id = EXCLUDED.correlation_id,
                            embedding = EXCLUDED.embedding
                        RETURNING id, (xmax = 0) AS inserted
                    """, params)
                    written = cur.fetchall()
                conn.commit()
            return existing, written

        existing, written = self._execute("upsert", _upsert, UpsertError)
        inserted = sum(1 for row in written if row["inserted"])
        summary = UpsertSummary(
            correlation_id=correlation_id,
            upserted_count=len(written),
            inserted_count=inserted,
            deleted_count=len(written) - inserted,
            matched_count=len(existing),
        )
        logger.info(f"Upsert result for {correlation_id}: {summary.model_dump()}")
        return summary

    def count(self) -> int:
        return self._execute("count", self.collection.count, QueryError)

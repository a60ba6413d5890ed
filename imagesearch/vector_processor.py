"""
Vector processing module for image similarity search.
Handles feature extraction model acquisition, embedding generation and
reconciliation of model output to the index width.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import numpy as np
import requests
import torch
from PIL import UnidentifiedImageError
from transformers import pipeline

from .config import config
from .errors import EmbeddingGenerationError, ModelLoadError, ValidationError
from .image_sources import ImageSource, SourceLike, open_image, resolve_source

logger = logging.getLogger(__name__)

RETRYABLE_CAUSES = ("network", "timeout")
MISSING_STATUSES = (404, 410)

NETWORK_MARKERS = (
    "fetch failed",
    "couldn't connect",
    "connection error",
    "connection refused",
    "connection reset",
    "max retries exceeded",
    "name or service not known",
    "temporary failure in name resolution",
    "network is unreachable",
)


def classify_failure(error: BaseException) -> str:
    """
    Classify a failure raised by the model capability.

    Returns one of 'network', 'timeout', 'not_found', 'invalid_image', 'model'.
    Only 'network' and 'timeout' are retried.
    """
    if isinstance(error, UnidentifiedImageError):
        return "invalid_image"
    if isinstance(error, FileNotFoundError):
        return "not_found"
    if isinstance(error, requests.exceptions.HTTPError):
        response = error.response
        if response is not None and response.status_code == 404:
            return "not_found"
    if isinstance(error, (TimeoutError, requests.exceptions.Timeout)):
        return "timeout"
    if isinstance(error, (ConnectionError, requests.exceptions.ConnectionError)):
        return "network"

    message = str(error).lower()
    if any(marker in message for marker in NETWORK_MARKERS):
        return "network"
    if "timed out" in message:
        return "timeout"
    if "404" in message or "not found" in message:
        return "not_found"
    return "model"


def url_status(url: str, timeout: float = 10) -> Optional[int]:
    """HTTP status of an image URL, or None when the server cannot be reached."""
    try:
        response = requests.head(url, allow_redirects=True, timeout=timeout)
        if response.status_code == 405:
            response = requests.get(url, stream=True, timeout=timeout)
            response.close()
        return response.status_code
    except requests.exceptions.RequestException as e:
        logger.warning(f"Could not check status of {url}: {e}")
        return None


class OfflineMode:
    """
    Process-wide switch telling model acquisition to use local artifacts only.

    Starts from configuration and can only move from online to offline, once.
    """

    def __init__(self, enabled: bool = False):
        self._lock = threading.Lock()
        self._enabled = bool(enabled)
        self.reason = "configured" if enabled else None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def engage(self, reason: str) -> bool:
        """Switch to offline mode. Returns True only for the call that made the transition."""
        with self._lock:
            if self._enabled:
                return False
            self._enabled = True
            self.reason = reason
            return True


class ModelCache:
    """
    Process-wide cache of constructed model handles keyed by model identity.

    Construction is single-flight per key: concurrent cold lookups wait for
    the first builder instead of loading the model twice.
    """

    def __init__(self):
        self._handles: Dict[str, Any] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def __contains__(self, key: str) -> bool:
        return key in self._handles

    def get(self, key: str) -> Optional[Any]:
        return self._handles.get(key)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def get_or_create(self, key: str, builder: Callable[[], Any]) -> Any:
        handle = self._handles.get(key)
        if handle is not None:
            return handle

        with self._lock_for(key):
            # Another thread may have finished construction while we waited
            handle = self._handles.get(key)
            if handle is not None:
                return handle
            handle = builder()
            self._handles[key] = handle
            return handle

    def invalidate(self, key: Optional[str] = None):
        """Drop one handle (or all) so the next lookup reconstructs it."""
        with self._guard:
            if key is None:
                self._handles.clear()
            else:
                self._handles.pop(key, None)


# Shared by every embedder in the process
model_cache = ModelCache()
offline_mode = OfflineMode(config.OFFLINE_MODE)


def is_model_cached(model_name: str, cache_dir: str) -> bool:
    """Check whether model artifacts are available locally."""
    if Path(model_name).is_dir():
        return True
    repo_dir = Path(cache_dir) / f"models--{model_name.replace('/', '--')}"
    snapshots = repo_dir / "snapshots"
    return snapshots.is_dir() and any(snapshots.iterdir())


def resolve_device(device: Optional[str] = None) -> str:
    if device is None or device == 'auto':
        if torch.cuda.is_available():
            logger.info(f"GPU detected: {torch.cuda.get_device_name(0)}")
            return 'cuda'
        logger.info("GPU not available, using CPU")
        return 'cpu'
    return device


def load_feature_extractor(model_name: str, cache_dir: str, local_files_only: bool = False,
                           device: Optional[str] = None):
    """Construct the image feature extraction pipeline."""
    return pipeline(
        "image-feature-extraction",
        model=model_name,
        device=resolve_device(device),
        model_kwargs={"cache_dir": cache_dir, "local_files_only": local_files_only},
    )


def reconcile_dimensions(embedding, target_dim: int, pad_range: float = 0.0005,
                         rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """
    Fit a raw model vector to the index width.

    Longer vectors keep their leading `target_dim` components. Shorter vectors
    are padded on the right with uniform random values in [-pad_range, pad_range).
    """
    if target_dim <= 0:
        raise ValidationError(f"Target dimension must be positive, got {target_dim}")

    vector = np.asarray(embedding, dtype=np.float32).ravel()
    current_dim = vector.shape[0]

    if current_dim == target_dim:
        return vector

    logger.warning(f"Vector dimension mismatch! Expected: {target_dim}, actual: {current_dim}")

    if current_dim > target_dim:
        logger.info(f"Truncating to the first {target_dim} components")
        return vector[:target_dim].copy()

    logger.info(f"Padding {target_dim - current_dim} components with values within ±{pad_range}")
    rng = rng or np.random.default_rng()
    padding = rng.uniform(-pad_range, pad_range, size=target_dim - current_dim).astype(np.float32)
    return np.concatenate([vector, padding])


class ImageEmbedder:
    """
    Turns image sources into fixed width feature vectors.

    The model handle is shared through a ModelCache; both acquisition and
    extraction retry network and timeout failures with exponential backoff.
    """

    def __init__(self, model_name: Optional[str] = None, dimension: Optional[int] = None,
                 cache_dir: Optional[str] = None, device: Optional[str] = None,
                 pooling: Optional[bool] = None, pad_range: Optional[float] = None,
                 max_retries: Optional[int] = None, backoff_base: Optional[float] = None,
                 base_dir: Optional[str] = None,
                 model_factory: Optional[Callable[..., Any]] = None,
                 cache: Optional[ModelCache] = None, offline: Optional[OfflineMode] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 rng: Optional[np.random.Generator] = None):
        self.model_name = model_name or config.MODEL_NAME
        self.dimension = int(dimension or config.VECTOR_DIMENSION)
        self.cache_dir = cache_dir or config.MODEL_CACHE_DIR
        self.device = device or config.DEVICE
        self.pooling = config.MODEL_POOLING if pooling is None else pooling
        self.pad_range = config.PAD_RANGE if pad_range is None else pad_range
        self.max_retries = max(1, int(max_retries or config.MAX_RETRIES))
        self.backoff_base = config.BACKOFF_BASE if backoff_base is None else backoff_base
        self.base_dir = base_dir or config.IMAGE_BASE_DIR
        self.model_factory = model_factory or load_feature_extractor
        self.model_cache = cache if cache is not None else model_cache
        self.offline_mode = offline if offline is not None else offline_mode
        self._sleep = sleep
        self._rng = rng or np.random.default_rng()

        if self.dimension <= 0:
            raise ValidationError(f"Vector dimension must be positive, got {self.dimension}")

    @property
    def model_key(self) -> str:
        return self.model_name

    def _backoff(self, attempt: int):
        wait_time = self.backoff_base ** attempt
        logger.info(f"Waiting {wait_time:.1f}s before retrying...")
        self._sleep(wait_time)

    def acquire_model(self):
        """Return the shared model handle, constructing it on first use."""
        handle = self.model_cache.get(self.model_key)
        if handle is not None:
            logger.debug(f"Using cached model: {self.model_key}")
            return handle
        return self.model_cache.get_or_create(self.model_key, self._construct_model)

    def _construct_model(self):
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            offline = self.offline_mode.enabled
            if offline and not is_model_cached(self.model_name, self.cache_dir):
                raise ModelLoadError(
                    f"Offline mode is active and no local copy of {self.model_name} "
                    f"was found in {self.cache_dir}",
                    {"model": self.model_name, "cause": "offline_cache_miss", "attempts": attempt - 1},
                ) from last_error

            try:
                logger.info(f"Loading model {self.model_name} "
                            f"(attempt {attempt}/{self.max_retries}, offline={offline})")
                handle = self.model_factory(
                    self.model_name,
                    cache_dir=self.cache_dir,
                    local_files_only=offline,
                    device=self.device,
                )
                logger.info(f"Model {self.model_name} loaded and cached")
                return handle
            except Exception as e:
                last_error = e
                cause = classify_failure(e)
                logger.warning(f"Model load failed (attempt {attempt}/{self.max_retries}): {e}")

                if cause not in RETRYABLE_CAUSES:
                    raise ModelLoadError(
                        f"Failed to load model {self.model_name}: {e}",
                        {"model": self.model_name, "cause": cause, "attempts": attempt},
                    ) from e

                if cause == "network" and attempt < self.max_retries:
                    if self.offline_mode.engage(f"network failure loading {self.model_name}"):
                        logger.warning("Network failure, switching to offline mode")
                    continue

                if attempt < self.max_retries:
                    self._backoff(attempt)

        raise ModelLoadError(
            f"Failed to load model {self.model_name} after {self.max_retries} attempts. "
            f"Check network connectivity or pre-download the model for offline mode: {last_error}",
            {"model": self.model_name, "cause": classify_failure(last_error), "attempts": self.max_retries},
        ) from last_error

    def _prepare_input(self, source: ImageSource):
        if source.kind == "bytes":
            try:
                return open_image(source.value)
            except (UnidentifiedImageError, OSError) as e:
                raise EmbeddingGenerationError(
                    f"Could not decode image data: {e}",
                    {"cause": "invalid_image", "source": source.label},
                ) from e
        if source.kind == "image":
            image = source.value
            return image if image.mode == 'RGB' else image.convert('RGB')
        return source.value

    def _failure_message(self, source: ImageSource, cause: str, error: BaseException) -> str:
        if cause == "network":
            if source.is_url:
                return (f"Network failure, could not fetch image URL {source.label}. "
                        f"Check connectivity or that the URL is valid: {error}")
            return f"Network failure, could not download model. Check connectivity or use offline mode: {error}"
        if cause == "not_found":
            if source.is_url:
                return f"Image URL does not exist or is not accessible: {source.label}"
            return f"File not found: {source.label}"
        if cause == "timeout":
            return f"Feature extraction timed out for {source.label}: {error}"
        if cause == "invalid_image":
            return f"Could not decode image {source.label}: {error}"
        return f"Feature extraction failed for {source.label}: {error}"

    def _extract_with_retry(self, extractor, source: ImageSource) -> np.ndarray:
        payload = self._prepare_input(source)
        call_kwargs = {"pool": True} if self.pooling else {}

        for attempt in range(1, self.max_retries + 1):
            try:
                logger.debug(f"Extracting features (attempt {attempt}/{self.max_retries}) from {source.label}")
                output = extractor(payload, **call_kwargs)
                features = np.asarray(output, dtype=np.float32)
                logger.debug(f"Raw feature shape: {features.shape}, dtype: {features.dtype}")
                return features.ravel()
            except Exception as e:
                cause = classify_failure(e)
                # Missing URLs come back as an error page that fails to decode
                if cause == "invalid_image" and source.is_url and url_status(source.value) in MISSING_STATUSES:
                    cause = "not_found"
                logger.warning(f"Feature extraction failed (attempt {attempt}/{self.max_retries}): {e}")
                if cause not in RETRYABLE_CAUSES or attempt == self.max_retries:
                    raise EmbeddingGenerationError(
                        self._failure_message(source, cause, e),
                        {"cause": cause, "source": source.label, "attempts": attempt},
                    ) from e
                self._backoff(attempt)

    def embed(self, source: SourceLike) -> np.ndarray:
        """
        Generate an embedding of exactly `dimension` components for a source.

        Args:
            source: local path, URL, image bytes, base64 data URL or PIL image

        Returns:
            float32 numpy array of length `dimension`
        """
        image_source = resolve_source(source, self.base_dir)
        if image_source.is_url:
            logger.info(f"Processing image URL: {image_source.label}")
        else:
            logger.info(f"Processing image: {image_source.label}")

        extractor = self.acquire_model()
        raw = self._extract_with_retry(extractor, image_source)
        if raw.size == 0:
            raise EmbeddingGenerationError(
                f"Model returned an empty feature vector for {image_source.label}",
                {"cause": "model", "source": image_source.label},
            )

        embedding = reconcile_dimensions(raw, self.dimension, self.pad_range, self._rng)
        self.log_embedding_details(embedding)
        return embedding

    def log_embedding_details(self, embedding: np.ndarray):
        if not logger.isEnabledFor(logging.DEBUG):
            return
        head = ", ".join(f"{v:.6f}" for v in embedding[:5])
        tail = ", ".join(f"{v:.6f}" for v in embedding[-5:])
        logger.debug(f"Embedding details: dim={embedding.shape[0]} (expected {self.dimension}), "
                     f"head=[{head}...], tail=[...{tail}], "
                     f"norm={float(np.linalg.norm(embedding)):.6f}, "
                     f"range=[{float(embedding.min()):.6f}, {float(embedding.max()):.6f}]")

"""
Command line interface for the image similarity core.

Examples:
    imagesearch init
    imagesearch batch photos/a.jpg photos/b.jpg --batch-name spring
    imagesearch search photos/query.jpg --limit 5
    imagesearch update batch_1234 photos/a_v2.jpg
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional

import numpy as np
from pydantic import BaseModel

from .config import config
from .errors import ImageSearchError, ValidationError

logger = logging.getLogger(__name__)


def setup_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, list):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    return value


def emit(value: Any):
    print(json.dumps(to_jsonable(value), indent=2, default=str))


def load_vector(path: str) -> np.ndarray:
    """Read a query or insert vector from a .npy file or a JSON array."""
    vector_path = Path(path)
    if not vector_path.is_file():
        raise ValidationError(f"Vector file does not exist: {path}")
    if vector_path.suffix == ".npy":
        return np.load(vector_path)
    try:
        return np.asarray(json.loads(vector_path.read_text()), dtype=np.float32)
    except (json.JSONDecodeError, ValueError, TypeError) as e:
        raise ValidationError(f"Vector file {path} is not a JSON array of numbers") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="imagesearch", description="Image similarity search core")
    parser.add_argument("--log-level", help="Logging level (default: LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create or load the vector collection")
    sub.add_parser("check", help="Report collection and model status")

    embed = sub.add_parser("embed", help="Print the embedding of an image")
    embed.add_argument("source", help="Image path or URL")
    embed.add_argument("--output", help="Save the vector to this .npy file instead of printing it")

    insert = sub.add_parser("insert", help="Embed and store an image, or store a precomputed vector")
    insert.add_argument("source", nargs="?", help="Image path or URL")
    insert.add_argument("--vector-file", help="Precomputed vector (.npy or JSON array)")
    insert.add_argument("--file-path", help="file_path recorded with --vector-file")
    insert.add_argument("--correlation-id", help="Correlation id of the record")

    search = sub.add_parser("search", help="Find similar images")
    search.add_argument("source", nargs="?", help="Query image path or URL")
    search.add_argument("--vector-file", help="Query vector (.npy or JSON array)")
    search.add_argument("--limit", type=int, default=config.DEFAULT_SEARCH_LIMIT, help="Maximum number of hits")

    query = sub.add_parser("query", help="List records of a correlation id")
    query.add_argument("correlation_id")

    delete = sub.add_parser("delete", help="Delete records of a correlation id")
    delete.add_argument("correlation_id")

    update = sub.add_parser("update", help="Re-embed images and replace the embeddings of a correlation id")
    update.add_argument("correlation_id")
    update.add_argument("sources", nargs="+", help="Image paths or URLs")

    batch = sub.add_parser("batch", help="Embed and store a list of images under one correlation id")
    batch.add_argument("sources", nargs="+", help="Image paths or URLs")
    batch.add_argument("--correlation-id", help="Correlation id (default: batch_<uuid>)")
    batch.add_argument("--batch-name", default="", help="Name echoed on each item")

    return parser


def run_command(args: argparse.Namespace, service) -> int:
    if args.command == "init":
        service.initialize()
        emit(service.status())
        return 0

    if args.command == "check":
        status = service.status()
        emit(status)
        collection = status["collection"]
        return 0 if collection.get("exists") and collection.get("loaded") else 1

    if args.command == "embed":
        embedding = service.embed_image(args.source)
        if args.output:
            np.save(args.output, embedding)
            emit({"dimension": int(embedding.shape[0]), "output": args.output})
        else:
            emit({"dimension": int(embedding.shape[0]), "embedding": embedding})
        return 0

    if args.command == "insert":
        if args.vector_file:
            if not args.file_path:
                raise ValidationError("--file-path is required with --vector-file")
            result = service.insert_record(args.file_path, args.correlation_id, load_vector(args.vector_file))
        elif args.source:
            result = service.insert_image(args.source, args.correlation_id)
        else:
            raise ValidationError("Give an image source or --vector-file")
        emit(result)
        return 0

    if args.command == "search":
        if args.vector_file:
            hits = service.search_by_vector(load_vector(args.vector_file), args.limit)
        elif args.source:
            hits = service.search_by_image(args.source, args.limit)
        else:
            raise ValidationError("Give a query image or --vector-file")
        emit(hits)
        return 0

    if args.command == "query":
        emit(service.query_by_correlation(args.correlation_id))
        return 0

    if args.command == "delete":
        emit(service.delete_by_correlation(args.correlation_id))
        return 0

    if args.command == "update":
        result = service.update_embeddings(args.sources, args.correlation_id)
        emit(result)
        return 0 if result.upsert is not None else 1

    if args.command == "batch":
        result = service.process_batch(args.sources, args.correlation_id, args.batch_name)
        emit({"summary": result.summary(), "items": result.items})
        return 0 if result.failure_count == 0 else 1

    raise ValidationError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None, service_factory: Optional[Callable[[], Any]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        if service_factory is None:
            from .service import ImageSimilarityService
            service_factory = ImageSimilarityService
        service = service_factory()
        return run_command(args, service)
    except ImageSearchError as e:
        logger.error(f"{args.command} failed: {e}")
        print(json.dumps(e.to_dict(), indent=2, default=str), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

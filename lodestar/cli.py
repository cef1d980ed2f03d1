"""CLI for the Lodestar retrieval pipeline."""

import argparse
import json
import logging
import os
import sys

from . import __version__
from .exceptions import LodestarError

# Set USER_AGENT to suppress langchain warning
if not os.environ.get("USER_AGENT"):
    os.environ["USER_AGENT"] = f"lodestar-rag/{__version__}"

logger = logging.getLogger("lodestar.cli")


def _config(args: argparse.Namespace):
    from .config import LodestarConfig

    config = LodestarConfig.from_env()
    if args.index_dir:
        config.index_dir = args.index_dir
    if args.collection:
        config.collection = args.collection
    return config


def ingest(args: argparse.Namespace) -> int:
    """Load, chunk, embed and index documents."""
    from .loaders import load_sources
    from .orchestrator import create_orchestrator

    config = _config(args)
    if args.chunk_size:
        config.chunking.chunk_size = args.chunk_size
    if args.strategy:
        config.chunking.strategy = args.strategy

    docs = load_sources(args.paths)
    if not docs:
        print("No documents found.", file=sys.stderr)
        return 1

    with create_orchestrator(config) as rag:
        summary = rag.ingest(docs, use_tqdm=args.progress)

    print(json.dumps(summary.to_dict(), indent=2))
    return 1 if summary.errors else 0


def query(args: argparse.Namespace) -> int:
    """Retrieve reranked context for a query."""
    from .orchestrator import create_orchestrator

    with create_orchestrator(_config(args)) as rag:
        result = rag.query(args.text, top_k=args.top_k, top_m=args.top_m)

    if args.json:
        print(json.dumps({
            "query": result.query,
            "degraded_embedding": result.degraded_embedding,
            "results": [
                {"id": r.id, "rerank_score": r.rerank_score, "original_score": r.original_score, "text": r.text}
                for r in result.results
            ],
        }, indent=2))
        return 0

    if result.degraded_embedding:
        print("Warning: query embedding unavailable, results are not semantic\n", file=sys.stderr)
    for i, r in enumerate(result.results, 1):
        print(f"{i}. [{r.rerank_score:.3f} | {r.original_score:.3f}] {r.text[:200]}")
    return 0


def stats(args: argparse.Namespace) -> int:
    """Show collection statistics."""
    from .orchestrator import create_orchestrator

    with create_orchestrator(_config(args)) as rag:
        info = rag.stats()
    print(json.dumps(info, indent=2))
    return 0


def collections(args: argparse.Namespace) -> int:
    """List every collection in the index."""
    from .orchestrator import create_orchestrator

    with create_orchestrator(_config(args)) as rag:
        listing = rag.list_collections()

    if args.json:
        print(json.dumps(listing, indent=2))
        return 0
    if not listing:
        print("No collections.")
    for info in listing:
        print(f"{info['name']}: {info['points']} points, dimension {info['dimension']}, {info['metric']}")
    return 0


def serve(args: argparse.Namespace) -> int:
    """Start the REST API server."""
    import uvicorn
    from .api import create_app

    app = create_app(_config(args))
    print(f"Starting Lodestar API server on http://{args.host}:{args.port}")
    print(f"  Docs: http://{args.host}:{args.port}/docs\n")
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lodestar",
        description="Lodestar - chunk, embed, search and rerank for RAG",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  lodestar ingest ./docs             Ingest a directory of documents
  lodestar query "How does X work?"  Retrieve reranked context
  lodestar stats                     Show collection statistics
  lodestar collections               List collections in the index
  lodestar serve                     Start REST API server

Environment variables:
  OLLAMA_ENDPOINT          Ollama server for embeddings
  OLLAMA_EMBEDDING_MODEL   Embedding model name
  DEFAULT_BASE_URL         Rerank API base URL
  API_KEY                  Rerank API key
  INDEX_BACKEND            'usearch' (default) or 'qdrant'
  QDRANT_URL               Qdrant server when INDEX_BACKEND=qdrant
  EMBED_TIMEOUT            Seconds per embedding call (also SEARCH_TIMEOUT,
                           RERANK_TIMEOUT, UPSERT_TIMEOUT)
"""
    )

    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--index-dir", type=str, help="Directory for the local index (default: LODESTAR_INDEX_DIR)"
    )
    parser.add_argument(
        "--collection", type=str, help="Collection name (default: LODESTAR_COLLECTION)"
    )
    parser.add_argument(
        "--log-level", type=str, default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level (default: WARNING)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest files, directories or URLs")
    ingest_parser.add_argument("paths", nargs="+", help="Files, directories or URLs")
    ingest_parser.add_argument("--chunk-size", type=int, help="Chunk size in characters")
    ingest_parser.add_argument("--strategy", choices=["fixed", "sentence"], help="Chunking strategy")
    ingest_parser.add_argument("--progress", action="store_true", help="Show a progress bar")
    ingest_parser.set_defaults(func=ingest)

    query_parser = subparsers.add_parser("query", help="Retrieve reranked context")
    query_parser.add_argument("text", help="Query text")
    query_parser.add_argument("--top-k", type=int, default=None, help="Candidates from vector search")
    query_parser.add_argument("--top-m", type=int, default=None, help="Results kept after reranking")
    query_parser.add_argument("--json", action="store_true", help="Print JSON")
    query_parser.set_defaults(func=query)

    stats_parser = subparsers.add_parser("stats", help="Show collection statistics")
    stats_parser.set_defaults(func=stats)

    collections_parser = subparsers.add_parser("collections", help="List collections in the index")
    collections_parser.add_argument("--json", action="store_true", help="Print JSON")
    collections_parser.set_defaults(func=collections)

    serve_parser = subparsers.add_parser("serve", help="Start REST API server")
    serve_parser.add_argument(
        "--host", type=str, default="127.0.0.1", help="Host to bind (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", type=int, default=8000, help="Port to bind (default: 8000)"
    )
    serve_parser.set_defaults(func=serve)

    return parser


def main(argv=None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        code = args.func(args)
    except LodestarError as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {type(exc).__name__}: {exc}", file=sys.stderr)
        sys.exit(2)
    sys.exit(code)


if __name__ == "__main__":
    main()

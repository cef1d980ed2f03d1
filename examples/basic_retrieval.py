#!/usr/bin/env python3
"""
Example: ingest a folder and retrieve reranked context with Lodestar

This example demonstrates:
- Building the pipeline from environment variables
- Loading documents from files, directories or URLs
- Ingesting with degraded-mode reporting
- Querying for reranked context to put in an LLM prompt

Requirements:
    pip install lodestar-rag
    ollama pull bge-m3                   # local embeddings
    export DEFAULT_BASE_URL=http://localhost:8080/v1   # rerank API
    export LODESTAR_INDEX_DIR=./lodestar_index
"""

import logging
import sys

from lodestar import LodestarConfig, create_orchestrator, load_sources

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")


def main() -> None:
    sources = sys.argv[1:] or ["./docs"]
    config = LodestarConfig.from_env()

    docs = load_sources(sources)
    print(f"Loaded {len(docs)} documents")

    with create_orchestrator(config) as rag:
        summary = rag.ingest(docs)
        print(f"Wrote {summary.chunks_written} chunks to '{summary.collection}'")
        if summary.degraded:
            print(f"  {summary.degraded_embeddings} chunks used synthetic vectors, re-ingest later")
        for error in summary.errors:
            print(f"  error: {error}")

        for question in ("What is this project about?", "How do I configure it?"):
            result = rag.query(question)
            print(f"\n=== {question} ===")
            for i, r in enumerate(result.results, 1):
                print(f"{i}. [{r.rerank_score:.3f}] {r.text[:120]}...")


if __name__ == "__main__":
    main()

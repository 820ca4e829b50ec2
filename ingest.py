"""Command line entry point for loading help-center articles.

Reads Markdown, HTML or JSON article exports, chunks and embeds them, and
stores the vectors in the pgvector index named by ``KNOWLEDGE_DATABASE_URL``.
Articles already indexed are skipped unless ``--reindex`` is given.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from kbchat.config import get_settings
from kbchat.dependencies import build_embedder, psycopg_conninfo
from kbchat.knowledge.index import PgVectorIndex
from kbchat.knowledge.ingestion import ingest_articles, load_articles


def main(argv: list[str] | None = None) -> int:
    """Parse CLI arguments and index the requested articles."""

    load_dotenv()
    parser = argparse.ArgumentParser(description="Index help-center articles")
    parser.add_argument(
        "--docs",
        action="append",
        default=[],
        help="Article file or directory (may be specified multiple times)",
    )
    parser.add_argument(
        "--reindex",
        action="store_true",
        help="Re-embed articles that are already indexed",
    )
    parser.add_argument("--max-chars", type=int, default=1200, help="Chunk size")
    parser.add_argument("--overlap", type=int, default=200, help="Chunk overlap")
    parser.add_argument(
        "--database-url",
        default=os.getenv("KNOWLEDGE_DATABASE_URL"),
        help="PostgreSQL URL of the pgvector index",
    )
    args = parser.parse_args(argv)

    if not args.docs and os.getenv("DOCS_DIR"):
        args.docs = [os.getenv("DOCS_DIR")]
    if not args.docs:
        parser.error("--docs is required (or set DOCS_DIR)")
    if not args.database_url:
        parser.error("--database-url is required (or set KNOWLEDGE_DATABASE_URL)")

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    log = logging.getLogger("ingest")

    settings = get_settings()
    index = PgVectorIndex(
        psycopg_conninfo(args.database_url), dimensions=settings.embedding_dimensions
    )
    index.ensure_schema()
    embedder = build_embedder(settings)

    failed = 0
    for doc in args.docs:
        path = Path(doc)
        if not path.exists():
            log.error("%s does not exist", path)
            failed += 1
            continue
        log.info("ingesting %s", path)
        report = ingest_articles(
            load_articles(path),
            embedder,
            index,
            reindex=args.reindex,
            max_chars=args.max_chars,
            overlap=args.overlap,
        )
        log.info(
            "%s: %d indexed, %d skipped, %d failed, %d chunks",
            path,
            len(report.indexed),
            len(report.skipped),
            len(report.failed),
            report.chunks,
        )
        failed += len(report.failed)
    return 1 if failed else 0


if __name__ == "__main__":  # pragma: no cover - CLI execution
    sys.exit(main())

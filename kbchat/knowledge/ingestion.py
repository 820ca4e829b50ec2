"""Load help articles from disk and index them for retrieval."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List

from bs4 import BeautifulSoup

from .chunking import chunk_text
from .embeddings import EmbeddingProvider
from .index import SimilarityIndex
from .models import Article

logger = logging.getLogger(__name__)

ARTICLE_SUFFIXES = {".md", ".markdown", ".html", ".htm", ".json"}

BLOCK_TAGS = {
    "article",
    "blockquote",
    "div",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "li",
    "p",
    "pre",
    "section",
    "td",
    "th",
}

_URL_LINE = re.compile(r"^url:\s*(\S+)\s*$", re.I)
_BLANK_LINE = re.compile(r"\n\s*\n")


@dataclass
class IngestReport:
    indexed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    chunks: int = 0


def _article_id(path: Path) -> str:
    return hashlib.sha1(str(path.as_posix()).encode("utf-8")).hexdigest()[:16]


def extract_html_text(html: str) -> tuple[str | None, str]:
    """Return ``(title, text)`` with one paragraph per block element."""

    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else None
    for tag in soup(["script", "style", "noscript", "template", "title"]):
        tag.decompose()
    for block in soup.find_all(sorted(BLOCK_TAGS)):
        block.append("\n\n")

    paragraphs = (" ".join(part.split()) for part in _BLANK_LINE.split(soup.get_text()))
    return title, "\n\n".join(p for p in paragraphs if p)


def parse_markdown_article(path: Path, text: str) -> Article:
    """Markdown articles use the first ``# heading`` as title and an optional
    ``url: ...`` line anywhere before the body."""

    title = path.stem.replace("-", " ").replace("_", " ").strip()
    url = ""
    body: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not url and _URL_LINE.match(stripped):
            url = _URL_LINE.match(stripped).group(1)  # type: ignore[union-attr]
            continue
        if stripped.startswith("# ") and not any(b.strip() for b in body):
            title = stripped[2:].strip()
            continue
        body.append(line)
    return Article(id=_article_id(path), title=title, url=url, content="\n".join(body).strip())


def load_articles(path: Path) -> Iterator[Article]:
    """Yield articles from a file or, recursively, from a directory."""

    if path.is_dir():
        files = sorted(p for p in path.rglob("*") if p.is_file())
    else:
        files = [path]
    for file in files:
        suffix = file.suffix.lower()
        if suffix not in ARTICLE_SUFFIXES:
            continue
        text = file.read_text(encoding="utf-8")
        if suffix == ".json":
            for item in json.loads(text):
                yield Article(
                    id=str(item.get("id") or _article_id(Path(item["title"]))),
                    title=item["title"],
                    url=item.get("url", ""),
                    content=item.get("content", ""),
                )
        elif suffix in {".html", ".htm"}:
            title, body = extract_html_text(text)
            yield Article(
                id=_article_id(file),
                title=title or file.stem,
                url="",
                content=body,
            )
        else:
            yield parse_markdown_article(file, text)


def ingest_articles(
    articles: Iterable[Article],
    embedder: EmbeddingProvider,
    index: SimilarityIndex,
    *,
    reindex: bool = False,
    max_chars: int = 1200,
    overlap: int = 200,
) -> IngestReport:
    """Chunk, embed and store ``articles``.

    Articles already present in the index are skipped unless ``reindex`` is
    set. A failure on one article is logged and does not stop the others.
    """

    report = IngestReport()
    for article in articles:
        if not reindex and index.has_article(article.id):
            report.skipped.append(article.id)
            continue
        chunks = chunk_text(
            f"{article.title}\n\n{article.content}", max_chars=max_chars, overlap=overlap
        )
        if not chunks:
            report.skipped.append(article.id)
            continue
        try:
            vectors = embedder.embed_many(chunks)
            report.chunks += index.upsert_article(article, chunks, vectors)
        except Exception:
            logger.exception("Failed to index article %s (%s)", article.id, article.title)
            report.failed.append(article.id)
            continue
        report.indexed.append(article.id)
        logger.info("Indexed %s (%d chunks)", article.title, len(chunks))
    return report


__all__ = [
    "IngestReport",
    "extract_html_text",
    "ingest_articles",
    "load_articles",
    "parse_markdown_article",
]

"""Document loading utilities for multiple source types."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Sequence, Union
from urllib.parse import urlparse

from langchain_core.documents import Document as LCDocument
from langchain_community.document_loaders import (
    TextLoader,
    PyMuPDFLoader,
    WebBaseLoader,
    DirectoryLoader,
)

from .models import Document

logger = logging.getLogger(__name__)

TEXT_PATTERNS = ("**/*.txt", "**/*.md", "**/*.mdx")


def _is_url(s: str) -> bool:
    """Check if string is a URL."""
    p = urlparse(s)
    return p.scheme in ("http", "https") and bool(p.netloc)


def clean_content(text: str) -> str:
    """Trim every line and drop the empty ones."""
    lines = (line.strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def _file_times(source: str) -> dict:
    path = Path(source)
    if not path.is_file():
        return {}
    stat = path.stat()
    return {
        "created_at": datetime.fromtimestamp(stat.st_ctime, tz=timezone.utc),
        "modified_at": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
    }


def to_document(lc_doc: LCDocument, clean: bool = True) -> Document:
    """Convert a langchain document into a Document."""
    text = lc_doc.page_content or ""
    if clean:
        text = clean_content(text)
    metadata = dict(lc_doc.metadata)
    source = str(metadata.get("source", ""))
    # PDF loaders yield one document per page; keep pages apart
    if "page" in metadata:
        metadata["source"] = f"{source}#page={metadata['page']}"
    file_name = Path(source).name if source and not _is_url(source) else source
    return Document(content=text, file_name=file_name, metadata=metadata, **_file_times(source))


def load_sources(
    sources: Union[str, Sequence[str]],
    *,
    recursive: bool = True,
    autodetect_encoding: bool = True,
    pdf_extract_images: bool = False,
    clean: bool = True,
) -> List[Document]:
    """
    Load documents from mixed sources (URLs, directories, files).

    Supported:
    - URLs: WebBaseLoader (BeautifulSoup-based HTML extraction)
    - Directories: .txt/.md/.mdx/.pdf files
    - Files: Direct loading based on extension

    Sources that fail to load are logged and skipped. Documents whose
    content is empty after cleanup are dropped.

    Args:
        sources: Single source or list of sources (URLs, paths, directories)
        recursive: Recursively scan directories
        autodetect_encoding: Auto-detect text file encoding
        pdf_extract_images: Extract images from PDFs (requires extra deps)
        clean: Trim lines and drop empty ones

    Returns:
        List of Document objects
    """
    if isinstance(sources, str):
        sources = [sources]

    lc_docs: List[LCDocument] = []

    for src in sources:
        if _is_url(src):
            try:
                lc_docs.extend(WebBaseLoader(web_paths=[src]).load())
            except Exception as e:
                logger.warning("Failed to load URL %s: %s", src, e)
            continue

        path = Path(src)
        if path.is_dir():
            for pattern in TEXT_PATTERNS:
                try:
                    lc_docs.extend(
                        DirectoryLoader(
                            str(path),
                            glob=pattern,
                            recursive=recursive,
                            loader_cls=TextLoader,
                            loader_kwargs={"autodetect_encoding": autodetect_encoding},
                            silent_errors=True,
                        ).load()
                    )
                except Exception as e:
                    logger.warning("Failed to load %s from %s: %s", pattern, src, e)

            try:
                lc_docs.extend(
                    DirectoryLoader(
                        str(path),
                        glob="**/*.pdf",
                        recursive=recursive,
                        loader_cls=PyMuPDFLoader,
                        loader_kwargs={"extract_images": pdf_extract_images},
                        silent_errors=True,
                    ).load()
                )
            except Exception as e:
                logger.warning("Failed to load PDFs from %s: %s", src, e)
            continue

        if not path.exists():
            logger.warning("File not found: %s", src)
            continue

        ext = path.suffix.lower()
        try:
            if ext == ".pdf":
                lc_docs.extend(PyMuPDFLoader(str(path), extract_images=pdf_extract_images).load())
            else:
                lc_docs.extend(TextLoader(str(path), autodetect_encoding=autodetect_encoding).load())
        except Exception as e:
            logger.warning("Failed to load %s: %s", src, e)

    out: List[Document] = []
    for d in lc_docs:
        doc = to_document(d, clean=clean)
        if not doc.content.strip():
            logger.debug("Dropping empty document %s", doc.metadata.get("source"))
            continue
        out.append(doc)

    logger.info("Loaded %d documents from %d sources", len(out), len(sources))
    return out

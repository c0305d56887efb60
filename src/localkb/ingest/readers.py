"""Document readers: plain text, markdown and PDF (page-based via pypdf)."""

from __future__ import annotations

import logging
from pathlib import Path

import pypdf
from pypdf.errors import PyPdfError

logger = logging.getLogger(__name__)

TEXT_SUFFIXES: frozenset[str] = frozenset([".txt", ".md", ".markdown"])
PDF_SUFFIXES: frozenset[str] = frozenset([".pdf"])
SUPPORTED_SUFFIXES: frozenset[str] = TEXT_SUFFIXES | PDF_SUFFIXES


def read_document(path: Path) -> str:
    """Return the extracted text of *path*, or ``""`` if nothing usable.

    Unsupported file types yield empty text. Unreadable files are logged and
    also yield empty text so one bad file never stops a batch.
    """
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        logger.debug("Skipping unsupported file type: %s", path)
        return ""
    try:
        if suffix in PDF_SUFFIXES:
            return _extract_pdf_text(path)
        return path.read_text(encoding="utf-8", errors="replace")
    except (OSError, PyPdfError, ValueError) as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return ""


def _extract_pdf_text(path: Path) -> str:
    """Extract all page text from the PDF at *path*.

    Pages that yield no text (scanned images, etc.) are skipped.
    """
    reader = pypdf.PdfReader(str(path))
    parts: list[str] = []
    for page in reader.pages:
        page_text = page.extract_text() or ""
        stripped = page_text.strip()
        if stripped:
            parts.append(stripped)
    return "\n\n".join(parts)

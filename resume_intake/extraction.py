"""Text extraction for resume attachments.

PDF text comes from pypdf and DOCX text from python-docx.  Both run in a
worker thread under a wall-clock limit so one pathological file cannot
stall a run.
"""

from __future__ import annotations

import abc
import asyncio
import io
from pathlib import PurePath

import docx
import structlog
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .config import ExtractionConfig
from .errors import ExtractionError, MalformedFileError, NoTextLayerError

logger = structlog.get_logger()

UNSUPPORTED_SENTINEL = "[UNSUPPORTED_DOC_LEGACY]"
NO_TEXT_LAYER_SENTINEL = "[SCANNED_PDF_NO_TEXT_LAYER]"
TRUNCATION_SUFFIX = "\n\n[Text truncated]"
_FAILED_PREFIX = "[TEXT_EXTRACTION_FAILED"

_PDF_TYPES = frozenset({"application/pdf"})
_DOCX_TYPES = frozenset({"application/vnd.openxmlformats-officedocument.wordprocessingml.document"})
_DOC_TYPES = frozenset({"application/msword"})


def failed_sentinel(reason: str) -> str:
    return f"{_FAILED_PREFIX}: {reason}]"


def is_sentinel(text: str | None) -> bool:
    """True for any placeholder stored instead of real extracted text."""
    if not text:
        return False
    return text in (UNSUPPORTED_SENTINEL, NO_TEXT_LAYER_SENTINEL) or text.startswith(_FAILED_PREFIX)


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_SUFFIX


class TextExtractor(abc.ABC):
    """Converts attachment bytes to plain text."""

    @abc.abstractmethod
    async def extract(self, data: bytes, filename: str, content_type: str | None = None) -> str:
        """Return the text, or :data:`UNSUPPORTED_SENTINEL` for legacy formats.

        Raises :class:`NoTextLayerError` for a PDF without a text layer and
        :class:`ExtractionError` (or :class:`MalformedFileError`) otherwise.
        """
        ...


class DocumentTextExtractor(TextExtractor):
    """PDF and DOCX extraction with a page cap and a timeout."""

    def __init__(self, config: ExtractionConfig) -> None:
        self._config = config

    async def extract(self, data: bytes, filename: str, content_type: str | None = None) -> str:
        kind = _detect_kind(filename, content_type)
        if kind == "doc":
            return UNSUPPORTED_SENTINEL
        if kind == "pdf":
            func = self._extract_pdf
        elif kind == "docx":
            func = _extract_docx
        elif kind == "txt":
            return data.decode("utf-8", errors="replace")
        else:
            raise ExtractionError(f"unsupported file type: {filename}")

        try:
            text = await asyncio.wait_for(
                asyncio.to_thread(func, data),
                timeout=self._config.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ExtractionError(f"extraction timed out after {self._config.timeout_seconds}s") from exc

        logger.debug("text_extracted", filename=filename, kind=kind, chars=len(text))
        return text

    def _extract_pdf(self, data: bytes) -> str:
        try:
            reader = PdfReader(io.BytesIO(data))
            if reader.is_encrypted:
                reader.decrypt("")
            pages = reader.pages[: self._config.pdf_page_cap]
            text = "\n".join((page.extract_text() or "") for page in pages).strip()
        except PdfReadError as exc:
            raise MalformedFileError(f"unreadable PDF: {exc}") from exc
        except Exception as exc:  # DependencyError for AES without cryptography, FileNotDecryptedError, ...
            raise ExtractionError(f"PDF text could not be read: {exc}") from exc

        if not text:
            raise NoTextLayerError()
        if len(text) < self._config.min_text_chars:
            raise ExtractionError(f"PDF yielded only {len(text)} characters")
        return text


def _extract_docx(data: bytes) -> str:
    try:
        document = docx.Document(io.BytesIO(data))
    except Exception as exc:  # python-docx raises zipfile/KeyError/ValueError variants
        raise MalformedFileError(f"unreadable DOCX: {exc}") from exc

    parts = [p.text for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    text = "\n".join(parts).strip()
    if not text:
        raise ExtractionError("DOCX contains no text")
    return text


def _detect_kind(filename: str, content_type: str | None) -> str | None:
    suffix = PurePath(filename.lower()).suffix
    if suffix == ".pdf" or content_type in _PDF_TYPES:
        return "pdf"
    if suffix == ".docx" or content_type in _DOCX_TYPES:
        return "docx"
    if suffix == ".doc" or content_type in _DOC_TYPES:
        return "doc"
    if suffix == ".txt" or content_type == "text/plain":
        return "txt"
    return None

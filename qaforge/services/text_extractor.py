"""
Text extraction from uploaded documents.

    PDF   → pypdf page text; empty or failed extraction falls back to raw decode
    DOCX  → python-docx paragraphs + table cells; failure yields "" (no raw fallback:
            the zip container decodes to noise)
    other → raw decode: UTF-8 with replacement, runs of non-printable characters
            collapsed to one space, cut to MAX_EXTRACTED_CHARS

``extract_text`` never raises.
"""

import io
import logging
import re

import docx
from pypdf import PdfReader

logger = logging.getLogger(__name__)

MAX_EXTRACTED_CHARS = 200_000

PDF_MIMETYPE = "application/pdf"
DOCX_MIMETYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

_NON_PRINTABLE_RE = re.compile(r"[^\x09\x0A\x0D\x20-\x7E]+")

# File-context cap for scenario-mode code generation
CONTEXT_MAX_FILES = 4
CONTEXT_CHARS_PER_FILE = 2200
CONTEXT_MAX_CHARS = 8000


def _is_pdf(mimetype: str, filename: str) -> bool:
    return mimetype == PDF_MIMETYPE or filename.lower().endswith(".pdf")


def _is_docx(mimetype: str, filename: str) -> bool:
    return mimetype == DOCX_MIMETYPE or filename.lower().endswith(".docx")


def decode_raw(data: bytes) -> str:
    """Naive decode used for plain text and as the PDF fallback."""
    text = data.decode("utf-8", errors="replace")
    return _NON_PRINTABLE_RE.sub(" ", text)[:MAX_EXTRACTED_CHARS]


def _extract_pdf(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    pages = [(page.extract_text() or "") for page in reader.pages]
    return "\n".join(pages)


def _extract_docx(data: bytes) -> str:
    document = docx.Document(io.BytesIO(data))
    parts = [p.text for p in document.paragraphs if p.text]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n".join(parts)


def extract_text(data: bytes | None, mimetype: str | None = "", filename: str | None = "") -> str:
    """Convert an uploaded blob to bounded plain text. Never raises."""
    if not data:
        return ""
    mimetype = (mimetype or "").lower()
    filename = filename or ""

    if _is_pdf(mimetype, filename):
        try:
            text = _extract_pdf(data)
            if text.strip():
                return text[:MAX_EXTRACTED_CHARS]
            logger.info("PDF %s produced no text; using raw decode", filename or "<upload>")
        except Exception as exc:  # pypdf raises a wide range of errors on corrupt input
            logger.warning("PDF extraction failed for %s: %s", filename or "<upload>", exc)
        return decode_raw(data)

    if _is_docx(mimetype, filename):
        try:
            return _extract_docx(data)[:MAX_EXTRACTED_CHARS]
        except Exception as exc:
            logger.warning("DOCX extraction failed for %s: %s", filename or "<upload>", exc)
            return ""

    return decode_raw(data)


def build_file_context(files) -> str:
    """Bounded document-context block from stored files (newest first).

    At most CONTEXT_MAX_FILES files contribute, each cut to
    CONTEXT_CHARS_PER_FILE; stops before the total passes CONTEXT_MAX_CHARS.
    """
    blocks = []
    total = 0
    for f in list(files)[:CONTEXT_MAX_FILES]:
        text = extract_text(f.data, f.mimetype, f.filename)
        if not text.strip():
            continue
        block = f'File: {f.filename}\n"""{text[:CONTEXT_CHARS_PER_FILE]}"""'
        if total + len(block) > CONTEXT_MAX_CHARS:
            break
        blocks.append(block)
        total += len(block)
    return "\n\n".join(blocks)

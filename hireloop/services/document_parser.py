"""
Candidate document parsing.

Extracts plain text from CVs and cover letters attached to candidate issues:
- PDF via pdfplumber (tables flattened to `a | b | c` rows)
- DOCX via python-docx

The file type is sniffed from the leading bytes, falling back to the file
name extension.
"""
import io
import logging
from typing import Optional

import docx
import httpx
import pdfplumber

from hireloop.services.errors import DocumentParseError
from hireloop.services.retry import raise_for_status, with_retry

logger = logging.getLogger(__name__)

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

MAX_DOCUMENT_BYTES = 10 * 1024 * 1024


def detect_document_type(data: bytes, file_name: str) -> Optional[str]:
    if data[:5] == b"%PDF-":
        return PDF
    # DOCX is a zip container
    if data[:4] == b"PK\x03\x04" and not file_name.lower().endswith(".pdf"):
        return DOCX

    extension = file_name.lower().rsplit(".", 1)[-1] if "." in file_name else ""
    if extension == "pdf":
        return PDF
    if extension in ("docx", "doc"):
        return DOCX
    return None


def _extract_pdf_text(data: bytes) -> str:
    parts = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            for table in page.extract_tables():
                for row in table or []:
                    if row:
                        parts.append(" | ".join(str(cell or "") for cell in row))
            parts.append(page.extract_text() or "")
    return "\n".join(parts).strip()


def _extract_docx_text(data: bytes) -> str:
    document = docx.Document(io.BytesIO(data))
    paragraphs = [p.text for p in document.paragraphs if p.text]
    return "\n".join(paragraphs).strip()


def parse_document(data: bytes, file_name: str) -> str:
    """
    Extract text from a PDF or DOCX document.

    Raises:
        DocumentParseError: unsupported type, unreadable file, or no text
    """
    document_type = detect_document_type(data, file_name)
    if document_type is None:
        raise DocumentParseError(file_name, "Unsupported file type")

    try:
        text = _extract_pdf_text(data) if document_type == PDF else _extract_docx_text(data)
    except Exception as e:
        raise DocumentParseError(file_name, f"Failed to parse document: {e}") from e

    if not text:
        raise DocumentParseError(file_name, "Document appears to be empty or contains no extractable text")
    return text


async def fetch_attachment(url: str, timeout: float = 30.0) -> bytes:
    """Download an attachment body."""

    async def _get() -> bytes:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.get(url)
        raise_for_status("attachment", response)
        if len(response.content) > MAX_DOCUMENT_BYTES:
            raise DocumentParseError(url, "Attachment too large")
        return response.content

    return await with_retry(_get, label="attachment")


async def fetch_and_parse(url: str, file_name: str) -> str:
    data = await fetch_attachment(url)
    text = parse_document(data, file_name)
    logger.info(f"Parsed {file_name}: {len(text)} characters")
    return text

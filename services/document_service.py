"""
Document Service - plain text extraction from uploaded contracts
"""
import logging
import zipfile
from io import BytesIO

from docx import Document as DocxDocument
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from utils.security_utils import get_file_extension

logger = logging.getLogger(__name__)


def _extract_pdf(data: bytes) -> str:
    reader = PdfReader(BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(pages).strip()


def _extract_docx(data: bytes) -> str:
    doc = DocxDocument(BytesIO(data))
    parts = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n".join(parts).strip()


def extract_text(filename: str, data: bytes) -> str:
    """
    Extract plain text from PDF / DOCX / TXT.

    Legacy .doc files are stored but yield no text. Unreadable documents
    also yield an empty string; callers treat empty text as an extraction failure.
    """
    ext = get_file_extension(filename)
    try:
        if ext == ".pdf":
            return _extract_pdf(data)
        if ext == ".docx":
            return _extract_docx(data)
        if ext == ".txt":
            return data.decode("utf-8", errors="ignore").strip()
    except (PdfReadError, PackageNotFoundError, zipfile.BadZipFile, ValueError, KeyError, OSError) as e:
        logger.warning(f"Text extraction failed for {filename}: {e}")
        return ""
    if ext == ".doc":
        logger.info(f"No text extraction for legacy .doc file {filename}")
    return ""

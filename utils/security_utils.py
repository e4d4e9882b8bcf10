"""
Security utilities for contract upload validation and sanitization
"""
import re
from pathlib import Path
from typing import Optional
from fastapi import UploadFile

from config.settings import settings
from utils.errors import ValidationError


# Security constants
ALLOWED_EXTENSIONS = [".pdf", ".doc", ".docx", ".txt"]

EXTENSION_MIME_TYPES = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".txt": "text/plain",
}


def sanitize_filename(filename: str) -> str:
    """
    Sanitize filename to prevent path traversal attacks.

    Removes:
    - Directory separators (/ and \\)
    - Path traversal sequences (..)
    - Null bytes (\\x00)
    - Any other potentially dangerous characters

    Args:
        filename: Original filename

    Returns:
        Sanitized filename safe for use in file paths
    """
    if not filename:
        raise ValueError("Filename cannot be empty")

    filename = filename.replace("\x00", "")
    filename = filename.replace("/", "").replace("\\", "")

    while ".." in filename:
        filename = filename.replace("..", "")

    # Keep letters, numbers, dots, hyphens, underscores and spaces
    filename = re.sub(r'[^a-zA-Z0-9._\-\s]', '', filename)
    filename = filename.strip('. ')

    if not filename:
        raise ValueError("Filename is invalid after sanitization")

    if len(filename) > 200:
        ext = Path(filename).suffix
        name_without_ext = Path(filename).stem[:200 - len(ext)]
        filename = name_without_ext + ext

    return filename


def get_file_extension(filename: str) -> str:
    """
    Extract file extension from filename (lowercase).

    Returns:
        File extension with leading dot (e.g., ".pdf") or empty string
    """
    return Path(filename).suffix.lower()


def validate_file_extension(filename: str) -> None:
    """
    Validate that file extension is in the whitelist.

    Raises:
        ValidationError: If extension is not allowed
    """
    ext = get_file_extension(filename)
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError(
            f"File extension '{ext}' is not allowed. Allowed extensions: {', '.join(ALLOWED_EXTENSIONS)}",
            code="INVALID_FILE_TYPE",
        )


def detect_mime_type_from_content(content: bytes) -> Optional[str]:
    """
    Detect MIME type from file content using magic bytes.

    Returns:
        Detected MIME type or None if unknown (plain text has no signature)
    """
    if not content:
        return None

    if content[:5] == b'%PDF-':
        return "application/pdf"

    # DOCX is a ZIP container
    if content[:4] == b'PK\x03\x04':
        return "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

    # Legacy Word: OLE2 compound document
    if content[:8] == b'\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1':
        return "application/msword"

    return None


def validate_file_content(content: bytes, filename: str, max_size: Optional[int] = None) -> str:
    """
    Validate file content (size and type signature).

    Args:
        content: File content bytes
        filename: Sanitized filename
        max_size: Byte ceiling, defaults to MAX_FILE_SIZE

    Returns:
        MIME type for the file

    Raises:
        ValidationError: If validation fails
    """
    max_size = max_size or settings.max_file_size
    if len(content) > max_size:
        size_mb = len(content) / (1024 * 1024)
        max_mb = max_size / (1024 * 1024)
        raise ValidationError(
            f"File size ({size_mb:.2f}MB) exceeds maximum allowed size ({max_mb:.0f}MB)",
            code="FILE_TOO_LARGE",
        )

    if len(content) == 0:
        raise ValidationError("File is empty", code="EMPTY_FILE")

    ext = get_file_extension(filename)
    expected = EXTENSION_MIME_TYPES[ext]
    detected = detect_mime_type_from_content(content)

    if ext == ".txt":
        if detected is not None or b"\x00" in content[:1024]:
            raise ValidationError("File content does not look like plain text", code="INVALID_FILE_TYPE")
        return expected

    if detected != expected:
        raise ValidationError(
            f"File content does not match its '{ext}' extension",
            code="INVALID_FILE_TYPE",
        )
    return expected


async def validate_uploaded_file(file: UploadFile) -> tuple[str, bytes, str]:
    """
    Comprehensive validation of an uploaded contract.

    This function:
    1. Sanitizes the filename
    2. Validates file extension
    3. Reads and validates file content (size and signature)

    Returns:
        Tuple of (sanitized_filename, file_content, mime_type)

    Raises:
        ValidationError: If any validation fails
    """
    if not file or not file.filename:
        raise ValidationError("File is required", code="MISSING_FILE")

    try:
        sanitized_filename = sanitize_filename(file.filename)
    except ValueError as e:
        raise ValidationError(str(e), code="INVALID_FILENAME")

    validate_file_extension(sanitized_filename)

    content = await file.read()
    mime_type = validate_file_content(content, sanitized_filename)

    await file.seek(0)

    return sanitized_filename, content, mime_type

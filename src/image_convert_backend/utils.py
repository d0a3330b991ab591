"""
Utility functions for file system operations and string formatting.

This module provides helper functions for:
- Sanitizing client-provided filenames for safe staging and storage keys
- Ensuring directory creation
- Human-readable byte sizes
- Mapping output formats to MIME types and extensions
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path

from .models import TargetFormat

# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

# Characters that XML 1.0 documents (DOCX, PPTX) cannot carry
XML_INVALID_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\ud800-\udfff\ufffe\uffff]")

OUTPUT_MIME_TYPES = {
    TargetFormat.PDF: "application/pdf",
    TargetFormat.DOCX: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    TargetFormat.PPTX: "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_filename(filename: str, fallback: str = "image") -> str:
    """
    Generate a filesystem-safe name from a client-provided filename.

    Path components are dropped, unsafe characters are replaced with
    underscores and the extension is lowercased.

    Args:
        filename: The original filename as sent by the client
        fallback: Stem used if nothing usable remains

    Returns:
        A filesystem-safe filename

    Example:
        >>> sanitize_filename("../My Photo (1).JPG")
        "My_Photo_1.jpg"
    """
    path = Path(filename.replace("\\", "/")).name
    stem, suffix = split_extension(path)
    safe_stem = SANITIZE_PATTERN.sub("_", stem).strip("._") or fallback
    safe_suffix = SANITIZE_PATTERN.sub("", suffix).lower()
    return f"{safe_stem}{safe_suffix}"


def display_name(name: str, fallback: str = "image") -> str:
    """
    Make a client-provided filename safe to print in document captions.

    Example:
        >>> display_name("bad" + chr(1) + "name.jpg")
        "badname.jpg"
    """
    cleaned = XML_INVALID_PATTERN.sub("", name or "").strip()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and extension components.

    Example:
        >>> split_extension("slides.pptx")
        ("slides", ".pptx")
    """
    path = Path(filename)
    return path.stem, path.suffix


def format_file_size(num_bytes: int) -> str:
    """
    Format a byte count the way the class materials list shows it.

    Example:
        >>> format_file_size(2048)
        "2.00 KB"
    """
    if num_bytes < 1024:
        return f"{num_bytes} bytes"
    if num_bytes < 1024**2:
        return f"{num_bytes / 1024:.2f} KB"
    if num_bytes < 1024**3:
        return f"{num_bytes / 1024**2:.2f} MB"
    return f"{num_bytes / 1024**3:.2f} GB"


def mime_type_for(target_format: TargetFormat) -> str:
    return OUTPUT_MIME_TYPES.get(target_format, "application/octet-stream")

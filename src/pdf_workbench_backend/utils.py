"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided strings for safe filesystem usage
- Ensuring directory creation
- Deriving a trusted file extension from an upload's filename hint
- Generating short random tokens for unique artifact names
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional
from uuid import uuid4

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

# Extensions are accepted only when short and purely alphanumeric
EXTENSION_PATTERN = re.compile(r"^\.[a-z0-9]{1,8}$")

DEFAULT_EXTENSION = ".pdf"


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Document!", "document")
        'my-document'
        >>> sanitize_label("@#$", "document")
        'document'
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
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


def trusted_extension(filename: Optional[str], default: str = DEFAULT_EXTENSION) -> str:
    """
    Derive a safe extension (with leading dot) from a filename hint.

    Anything missing, overlong or containing unexpected characters falls back
    to ``default``.

    Example:
        >>> trusted_extension("Report.PDF")
        '.pdf'
        >>> trusted_extension("notes")
        '.pdf'
        >>> trusted_extension("evil.p$f", default=".bin")
        '.bin'
    """
    if not filename:
        return default
    suffix = Path(filename).suffix.lower()
    if not EXTENSION_PATTERN.match(suffix):
        return default
    return suffix


def normalize_extension(extension: str) -> str:
    """Return ``extension`` with exactly one leading dot."""
    extension = extension.strip()
    if not extension:
        return ""
    return extension if extension.startswith(".") else f".{extension}"


def short_token(length: int = 8) -> str:
    """Random hex token used to keep generated names unique."""
    return uuid4().hex[:length]

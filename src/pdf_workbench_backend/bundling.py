"""
Packaging of multi-file results (splits, page images, batch jobs) into a
single zip archive for one download.
"""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path

from .errors import BundlingFailure
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

COMPRESSION_METHODS = {
    "deflated": zipfile.ZIP_DEFLATED,
    "stored": zipfile.ZIP_STORED,
    "bzip2": zipfile.ZIP_BZIP2,
    "lzma": zipfile.ZIP_LZMA,
}


def create_archive(source_dir: Path, archive_path: Path, compression: str = "deflated") -> Path:
    """
    Write every top-level file of ``source_dir`` into ``archive_path``.

    Subdirectories are skipped. Entries are named by the file's base name and
    added in sorted order.

    Args:
        source_dir: Directory holding the files to package
        archive_path: Destination of the zip file
        compression: Key of COMPRESSION_METHODS (default: deflated)

    Returns:
        ``archive_path``

    Raises:
        BundlingFailure: If the directory cannot be listed or the archive
            cannot be written. A partially written archive is left in place.
    """
    try:
        method = COMPRESSION_METHODS[compression]
    except KeyError as exc:
        raise BundlingFailure(f"Unsupported archive compression {compression!r}") from exc

    try:
        files = sorted(entry for entry in source_dir.iterdir() if entry.is_file())
    except OSError as exc:
        raise BundlingFailure(f"Cannot read {source_dir}: {exc}") from exc

    try:
        with zipfile.ZipFile(archive_path, "w", compression=method) as archive:
            for file_path in files:
                archive.write(file_path, arcname=file_path.name)
    except (OSError, zipfile.BadZipFile) as exc:
        raise BundlingFailure(f"ZIP creation failed: {exc}") from exc

    logger.info("Bundled %d files from %s into %s", len(files), source_dir.name, archive_path.name)
    return archive_path


def bundle_directory(
    workspace: WorkspaceManager,
    source_dir: Path,
    prefix: str,
    compression: str = "deflated",
) -> Path:
    """
    Reserve a zip output path and bundle ``source_dir`` into it.

    The source directory is left for the caller to discard.
    """
    archive_path = workspace.reserve_output_path(prefix, ".zip")
    return create_archive(source_dir, archive_path, compression=compression)

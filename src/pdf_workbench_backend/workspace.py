"""
Sandboxed working directory for uploads, outputs and scratch space.

Layout under the configured root::

    <root>/uploads/<uuid><ext>              staged uploads
    <root>/output/<prefix>-<token><ext>     reserved outputs (download area)
    <root>/output/<prefix>-<token>/         per-operation scratch directories

Every upload and reserved output is registered with the ArtifactRegistry
before the call returns. Output paths are registered before the file exists,
so a crash between reservation and write still leaves an entry the sweeper
will clear. Scratch directories are not registered; the owning operation
removes them with ``discard_scratch`` on success and failure alike.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import BinaryIO, Optional
from uuid import uuid4

from starlette.datastructures import UploadFile

from .errors import IOFailure
from .registry import ArtifactRegistry
from .utils import DEFAULT_EXTENSION, ensure_directory, normalize_extension, sanitize_label, short_token, trusted_extension

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8 * 1024 * 1024


class WorkspaceManager:
    """
    Hands out unique, tracked paths inside the working directory tree.

    Args:
        root: Base working directory
        registry: Registry that tracks every staged or reserved artifact
        uploads_dir: Name of the uploads area under ``root``
        output_dir: Name of the output area under ``root``
        default_extension: Extension used when an upload's hint is missing or untrusted
    """

    def __init__(
        self,
        root: Path,
        registry: ArtifactRegistry,
        uploads_dir: str = "uploads",
        output_dir: str = "output",
        default_extension: str = DEFAULT_EXTENSION,
    ) -> None:
        self.registry = registry
        self.default_extension = normalize_extension(default_extension) or DEFAULT_EXTENSION
        try:
            self.root = ensure_directory(Path(root)).resolve()
            self.upload_root = ensure_directory(self.root / uploads_dir)
            self.output_root = ensure_directory(self.root / output_dir)
        except OSError as exc:
            raise IOFailure(f"Could not prepare workspace at {root}: {exc}") from exc

    def _upload_destination(self, filename_hint: Optional[str]) -> Path:
        extension = trusted_extension(filename_hint, default=self.default_extension)
        return self.upload_root / f"{uuid4()}{extension}"

    def stage_upload(self, stream: BinaryIO, filename_hint: Optional[str] = None) -> Path:
        """
        Copy an inbound byte stream into the uploads area.

        Args:
            stream: Readable binary file-like object
            filename_hint: Original filename, used only to pick the extension

        Returns:
            Registered absolute path of the staged copy

        Raises:
            IOFailure: If the stream cannot be read or the file cannot be written.
                The partial file is removed before raising.
        """
        destination = self._upload_destination(filename_hint)
        try:
            with destination.open("wb") as buffer:
                shutil.copyfileobj(stream, buffer, CHUNK_SIZE)
        except (OSError, ValueError) as exc:
            self._discard_partial(destination)
            raise IOFailure(f"Failed to stage upload: {exc}") from exc
        return self.registry.register(destination)

    async def stage_upload_file(self, upload: UploadFile) -> Path:
        """Async variant of ``stage_upload`` for multipart uploads."""
        destination = self._upload_destination(upload.filename)
        try:
            with destination.open("wb") as buffer:
                while chunk := await upload.read(CHUNK_SIZE):
                    buffer.write(chunk)
        except (OSError, ValueError) as exc:
            self._discard_partial(destination)
            raise IOFailure(f"Failed to stage upload {upload.filename!r}: {exc}") from exc
        finally:
            await upload.close()
        return self.registry.register(destination)

    def reserve_output_path(self, prefix: str, extension: str) -> Path:
        """
        Reserve and register a unique output path (the file is not created).

        Example:
            ``reserve_output_path("merged", ".pdf")`` -> ``<root>/output/merged-1a2b3c4d.pdf``
        """
        safe_prefix = sanitize_label(prefix, fallback="output")
        path = self.output_root / f"{safe_prefix}-{short_token()}{normalize_extension(extension)}"
        return self.registry.register(path)

    def new_scratch_directory(self, prefix: str) -> Path:
        """
        Create a fresh directory for multi-file intermediate output.

        Raises:
            IOFailure: If the directory cannot be created
        """
        safe_prefix = sanitize_label(prefix, fallback="scratch")
        path = self.output_root / f"{safe_prefix}-{short_token()}"
        try:
            path.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise IOFailure(f"Failed to create scratch directory {path}: {exc}") from exc
        return path

    def discard_scratch(self, path: Path) -> None:
        shutil.rmtree(path, ignore_errors=True)

    def copy_into(self, source: Path, destination: Path) -> Path:
        """
        Copy ``source`` onto a reserved path, for engines that mutate in place.

        Raises:
            IOFailure: If the copy fails
        """
        try:
            shutil.copyfile(source, destination)
        except OSError as exc:
            raise IOFailure(f"Failed to copy {source.name}: {exc}") from exc
        return destination

    def resolve_download(self, filename: str) -> Optional[Path]:
        """
        Map a download name to an existing file directly inside the output area.

        Returns None for unknown files and for anything that escapes the area.
        """
        candidate = (self.output_root / filename).resolve()
        if candidate.parent != self.output_root:
            return None
        if not candidate.is_file():
            return None
        return candidate

    def _discard_partial(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            # Left on disk: track it so the sweeper reclaims it later
            logger.warning("Could not remove partial upload %s: %s", path, exc)
            self.registry.register(path)

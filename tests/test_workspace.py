"""
Tests for the workspace manager: upload staging, output reservation and
scratch directories.
"""

import asyncio
import io

import pytest
from starlette.datastructures import UploadFile

from pdf_workbench_backend.errors import IOFailure
from pdf_workbench_backend.utils import sanitize_label, trusted_extension


class BrokenStream(io.RawIOBase):
    """Yields some bytes, then fails mid-read."""

    def __init__(self):
        self.reads = 0

    def readable(self):
        return True

    def readinto(self, buffer):
        self.reads += 1
        if self.reads > 1:
            raise OSError("connection reset")
        buffer[:4] = b"%PDF"
        return 4


class TestLayout:
    """Tests for the on-disk layout."""

    def test_creates_uploads_and_output_areas(self, workspace):
        """Both fixed subdirectories should exist under the root."""
        assert workspace.upload_root.is_dir()
        assert workspace.output_root.is_dir()
        assert workspace.upload_root.parent == workspace.root
        assert workspace.output_root.parent == workspace.root


class TestStageUpload:
    """Tests for WorkspaceManager.stage_upload."""

    def test_stage_copies_stream_and_registers(self, workspace, registry):
        """The staged file should hold the stream's bytes and be tracked."""
        path = workspace.stage_upload(io.BytesIO(b"hello"), "report.pdf")

        assert path.read_bytes() == b"hello"
        assert path.parent == workspace.upload_root
        assert path.suffix == ".pdf"
        assert path in registry

    def test_stage_keeps_trusted_extension(self, workspace):
        """A well-formed extension from the hint should be kept, lowercased."""
        path = workspace.stage_upload(io.BytesIO(b"x"), "Slides.PPTX")
        assert path.suffix == ".pptx"

    @pytest.mark.parametrize("hint", [None, "", "noextension", "weird.p$f", "long.abcdefghijk"])
    def test_stage_defaults_untrusted_extension(self, workspace, hint):
        """Missing or suspicious extensions should fall back to .pdf."""
        path = workspace.stage_upload(io.BytesIO(b"x"), hint)
        assert path.suffix == ".pdf"

    def test_stage_does_not_use_client_filename(self, workspace):
        """Only the extension of the hint should reach the filesystem."""
        path = workspace.stage_upload(io.BytesIO(b"x"), "../../etc/passwd.pdf")
        assert path.parent == workspace.upload_root
        assert "passwd" not in path.name

    def test_failed_stream_leaves_nothing_behind(self, workspace, registry):
        """A failing stream should raise IOFailure and remove the partial file."""
        with pytest.raises(IOFailure):
            workspace.stage_upload(BrokenStream(), "a.pdf")

        assert list(workspace.upload_root.iterdir()) == []
        assert len(registry) == 0

    def test_async_stage_upload_file(self, workspace, registry):
        """Multipart uploads should be staged and registered the same way."""
        upload = UploadFile(io.BytesIO(b"multipart body"), filename="doc.docx")
        path = asyncio.run(workspace.stage_upload_file(upload))

        assert path.read_bytes() == b"multipart body"
        assert path.suffix == ".docx"
        assert path in registry


class TestReserveOutputPath:
    """Tests for WorkspaceManager.reserve_output_path."""

    def test_paths_are_unique(self, workspace):
        """Successive reservations should never collide."""
        paths = [workspace.reserve_output_path("merged", ".pdf") for _ in range(500)]
        assert len(set(paths)) == len(paths)

    def test_reservation_registers_before_file_exists(self, workspace, registry):
        """The path should be tracked even though nothing has been written."""
        path = workspace.reserve_output_path("compressed", ".pdf")
        assert path in registry
        assert not path.exists()

    def test_name_format(self, workspace):
        """Names should be prefix, an 8 character token and the extension."""
        path = workspace.reserve_output_path("split", "zip")
        prefix, token = path.stem.rsplit("-", 1)

        assert path.parent == workspace.output_root
        assert prefix == "split"
        assert len(token) == 8
        assert path.suffix == ".zip"

    def test_unswept_reservation_is_harmless(self, workspace, registry, clock):
        """A reservation whose write never happened should be swept without error."""
        workspace.reserve_output_path("crashed", ".pdf")
        clock.advance(601)
        assert registry.sweep_expired(600) == 1


class TestScratchDirectories:
    """Tests for scratch directory handling."""

    def test_new_scratch_directory_is_unregistered(self, workspace, registry):
        """Scratch directories belong to the operation, not the registry."""
        scratch = workspace.new_scratch_directory("split")
        assert scratch.is_dir()
        assert scratch.parent == workspace.output_root
        assert scratch.name.startswith("split-")
        assert scratch not in registry

    def test_discard_scratch_removes_tree(self, workspace):
        """Discarding should remove the directory and its contents."""
        scratch = workspace.new_scratch_directory("images")
        (scratch / "page-1.png").write_bytes(b"img")
        workspace.discard_scratch(scratch)
        assert not scratch.exists()

    def test_discard_missing_scratch_is_noop(self, workspace):
        """Discarding twice should not raise."""
        scratch = workspace.new_scratch_directory("batch")
        workspace.discard_scratch(scratch)
        workspace.discard_scratch(scratch)


class TestResolveDownload:
    """Tests for mapping download names to files."""

    def test_resolves_existing_output(self, workspace):
        path = workspace.reserve_output_path("merged", ".pdf")
        path.write_bytes(b"pdf")
        assert workspace.resolve_download(path.name) == path

    def test_rejects_traversal(self, workspace):
        (workspace.upload_root / "secret.pdf").write_bytes(b"secret")
        assert workspace.resolve_download("../uploads/secret.pdf") is None

    def test_rejects_missing_and_directories(self, workspace):
        scratch = workspace.new_scratch_directory("split")
        assert workspace.resolve_download("nope.pdf") is None
        assert workspace.resolve_download(scratch.name) is None


class TestUtils:
    """Tests for naming helpers."""

    def test_sanitize_label(self):
        assert sanitize_label("My Document!", "document") == "my-document"
        assert sanitize_label("@#$", "document") == "document"

    def test_trusted_extension(self):
        assert trusted_extension("a.JPG") == ".jpg"
        assert trusted_extension(None, default=".bin") == ".bin"

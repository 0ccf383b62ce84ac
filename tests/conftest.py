"""
Pytest configuration and fixtures for PDF Workbench Backend tests.
"""

import io
import os
import re
import shutil
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from pypdf import PdfWriter

# Set test environment variables before importing the app
os.environ["TEMP_DIR"] = tempfile.mkdtemp(prefix="pdf_workbench_test_")
os.environ["FILE_TTL_MINUTES"] = "10"

from pdf_workbench_backend.configuration import make_settings
from pdf_workbench_backend.engines import EngineRunner
from pdf_workbench_backend.errors import EngineInvocationFailure
from pdf_workbench_backend.main import create_app
from pdf_workbench_backend.registry import ArtifactRegistry
from pdf_workbench_backend.workspace import WorkspaceManager

RESOLUTION_ARG = re.compile(r"^-dColorImageResolution=(\d+)$")


@pytest.fixture(scope="session", autouse=True)
def default_temp_dir():
    """Remove the working directory used by the module-level app."""
    yield os.environ["TEMP_DIR"]
    shutil.rmtree(os.environ["TEMP_DIR"], ignore_errors=True)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRunner(EngineRunner):
    """
    Stands in for the external engines.

    Records every command and writes a plausible output file where the real
    engine would. Binaries listed in ``fail`` raise EngineInvocationFailure.
    Ghostscript compression output is ``dpi * 100`` bytes.
    """

    def __init__(self, fail=()):
        super().__init__()
        self.calls = []
        self.fail = set(fail)

    def run(self, args, timeout=None):
        command = [str(arg) for arg in args]
        self.calls.append(command)
        if command[0] in self.fail:
            raise EngineInvocationFailure(f"{command[0]} exited with status 1", command, returncode=1)

        if command[0] == "libreoffice":
            output_dir = Path(command[command.index("--outdir") + 1])
            convert_format = command[command.index("--convert-to") + 1]
            (output_dir / f"{Path(command[-1]).stem}.{convert_format}").write_bytes(b"converted")
            return ""

        output = next((arg.split("=", 1)[1] for arg in command if arg.startswith("-sOutputFile=")), command[-1])
        if "%d" in output:
            for page in (1, 2):
                Path(output.replace("%d", str(page))).write_bytes(b"image")
            return ""

        resolution = next((int(m.group(1)) for m in map(RESOLUTION_ARG.match, command) if m), None)
        payload = b"x" * (resolution * 100) if resolution else b"%PDF-1.4 fake"
        Path(output).write_bytes(payload)
        return ""

    @staticmethod
    def available(binary):
        return False


def make_pdf(pages: int = 3) -> bytes:
    """Build a small valid PDF with blank letter-size pages."""
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    """A fresh registry per test, driven by the fake clock."""
    return ArtifactRegistry(clock=clock)


@pytest.fixture
def workspace(tmp_path, registry):
    return WorkspaceManager(tmp_path / "work", registry)


@pytest.fixture
def sample_pdf():
    return make_pdf(3)


@pytest.fixture
def sample_pdf_path(tmp_path, sample_pdf):
    path = tmp_path / "sample.pdf"
    path.write_bytes(sample_pdf)
    return path


@pytest.fixture
def settings(tmp_path):
    return make_settings({"workspace": {"root": str(tmp_path / "app")}})


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def app(settings, runner):
    return create_app(settings, runner=runner)


@pytest.fixture
def client(app):
    """Create a test client for an isolated app instance."""
    return TestClient(app)

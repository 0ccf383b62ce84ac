"""
Invocation of external processing engines.

Engines (Ghostscript, LibreOffice, ImageMagick, poppler, wkhtmltopdf) are
treated as black boxes: this module only assembles argument vectors, runs the
binary, and turns a missing binary, a timeout or a nonzero exit into an
EngineInvocationFailure. The generic optimization pass and the structural
edits (document info, crop box, encryption) run in-process through pikepdf.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import pikepdf
from omegaconf import DictConfig

from .errors import EngineInvocationFailure, InvalidRequest

logger = logging.getLogger(__name__)

Arg = Union[str, Path, int]

# Page-number anchors: position name -> (horizontal, vertical)
ANCHORS: Dict[str, tuple[str, str]] = {
    "bottom-center": ("center", "bottom"),
    "bottom-left": ("left", "bottom"),
    "bottom-right": ("right", "bottom"),
    "top-center": ("center", "top"),
    "top-left": ("left", "top"),
    "top-right": ("right", "top"),
}
DEFAULT_ANCHOR = "bottom-center"

_OUTPUT_TAIL = 2000


class EngineRunner:
    """
    Runs external binaries synchronously in the calling thread.

    Args:
        timeout: Default per-invocation timeout in seconds (None: no limit)
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout

    def run(self, args: Sequence[Arg], timeout: Optional[float] = None) -> str:
        """
        Execute ``args`` and return the combined stdout/stderr.

        Raises:
            EngineInvocationFailure: If the binary is missing, times out or exits nonzero
        """
        command = [str(arg) for arg in args]
        name = command[0]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout if timeout is not None else self.timeout,
            )
        except FileNotFoundError as exc:
            raise EngineInvocationFailure(f"{name} is not installed", command) from exc
        except subprocess.TimeoutExpired as exc:
            raise EngineInvocationFailure(f"{name} timed out after {exc.timeout}s", command) from exc

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            logger.warning("%s exited with %d: %s", name, result.returncode, output.strip()[-_OUTPUT_TAIL:])
            raise EngineInvocationFailure(
                f"{name} exited with status {result.returncode}",
                command,
                returncode=result.returncode,
                output=output,
            )
        return output

    @staticmethod
    def available(binary: str) -> bool:
        return shutil.which(binary) is not None


def check_dependencies(settings: DictConfig, runner: EngineRunner) -> Dict[str, bool]:
    engines = settings.engines
    return {
        "libreoffice": runner.available(engines.libreoffice),
        "tesseract": runner.available(engines.tesseract),
        "ghostscript": runner.available(engines.ghostscript),
        "imagemagick": runner.available(engines.imagemagick),
        "pdftotext": runner.available(engines.pdftotext),
    }


def optimize_pdf(input_path: Path, output_path: Path) -> Path:
    """
    Generic, target-less optimization pass: drop unreferenced resources and
    rewrite with compressed streams and object streams.

    Raises:
        EngineInvocationFailure: If the document cannot be opened or saved
    """
    try:
        with pikepdf.open(input_path) as pdf:
            pdf.remove_unreferenced_resources()
            pdf.save(
                output_path,
                compress_streams=True,
                object_stream_mode=pikepdf.ObjectStreamMode.generate,
            )
    except (pikepdf.PdfError, OSError) as exc:
        raise EngineInvocationFailure(f"Optimization failed: {exc}", ["pikepdf", str(input_path)]) from exc
    return output_path


def set_document_info(input_path: Path, output_path: Path, properties: Dict[str, str]) -> Path:
    """Write ``properties`` (e.g. ``{"Title": ...}``) into the document info dictionary."""
    try:
        with pikepdf.open(input_path) as pdf:
            for key, value in properties.items():
                pdf.docinfo[f"/{key}"] = value
            pdf.save(output_path)
    except (pikepdf.PdfError, OSError) as exc:
        raise EngineInvocationFailure(f"Metadata update failed: {exc}", ["pikepdf", str(input_path)]) from exc
    return output_path


def crop_pages(input_path: Path, output_path: Path, box: Sequence[float]) -> Path:
    """Set the crop box ``[left, bottom, right, top]`` (points) on every page."""
    try:
        with pikepdf.open(input_path) as pdf:
            for page in pdf.pages:
                page.obj[pikepdf.Name.CropBox] = pikepdf.Array(box)
            pdf.save(output_path)
    except (pikepdf.PdfError, OSError) as exc:
        raise EngineInvocationFailure(f"Crop failed: {exc}", ["pikepdf", str(input_path)]) from exc
    return output_path


def encrypt_pdf(input_path: Path, output_path: Path, password: str) -> Path:
    """Save with AES-256 encryption, ``password`` as both user and owner password."""
    try:
        with pikepdf.open(input_path) as pdf:
            pdf.save(output_path, encryption=pikepdf.Encryption(owner=password, user=password, R=6))
    except (pikepdf.PdfError, OSError) as exc:
        raise EngineInvocationFailure(f"Protect failed: {exc}", ["pikepdf", str(input_path)]) from exc
    return output_path


def decrypt_pdf(input_path: Path, output_path: Path, password: str) -> Path:
    """
    Open with ``password`` and save without encryption.

    Raises:
        InvalidRequest: If the password is wrong
        EngineInvocationFailure: If the document cannot be opened or saved
    """
    try:
        with pikepdf.open(input_path, password=password) as pdf:
            pdf.save(output_path)
    except pikepdf.PasswordError as exc:
        raise InvalidRequest("Unlock failed (wrong password?)") from exc
    except (pikepdf.PdfError, OSError) as exc:
        raise EngineInvocationFailure(f"Unlock failed: {exc}", ["pikepdf", str(input_path)]) from exc
    return output_path


# ==================== ARGUMENT BUILDERS ====================


def ghostscript_compress_args(gs: str, input_path: Path, output_path: Path, dpi: int) -> List[Arg]:
    return [
        gs,
        "-q", "-dNOPAUSE", "-dBATCH", "-dSAFER",
        "-sDEVICE=pdfwrite",
        "-dCompatibilityLevel=1.5",
        "-dDetectDuplicateImages=true",
        "-dCompressFonts=true",
        "-dSubsetFonts=true",
        "-dDownsampleColorImages=true",
        "-dDownsampleGrayImages=true",
        "-dDownsampleMonoImages=true",
        "-dColorImageDownsampleType=/Bicubic",
        "-dGrayImageDownsampleType=/Bicubic",
        "-dMonoImageDownsampleType=/Subsample",
        f"-dColorImageResolution={dpi}",
        f"-dGrayImageResolution={dpi}",
        f"-dMonoImageResolution={dpi * 2}",
        f"-sOutputFile={output_path}",
        input_path,
    ]


def ghostscript_pdfa_args(gs: str, input_path: Path, output_path: Path) -> List[Arg]:
    return [
        gs,
        "-dPDFA=2",
        "-dBATCH", "-dNOPAUSE",
        "-sColorConversionStrategy=UseDeviceIndependentColor",
        "-sDEVICE=pdfwrite",
        "-dPDFACompatibilityPolicy=1",
        f"-sOutputFile={output_path}",
        input_path,
    ]


def ghostscript_render_args(gs: str, input_path: Path, output_dir: Path, image_format: str, dpi: int) -> List[Arg]:
    device = "jpeg" if image_format in ("jpg", "jpeg") else "png16m"
    return [
        gs,
        "-dNOPAUSE", "-dBATCH",
        f"-sDEVICE={device}",
        f"-r{dpi}",
        f"-sOutputFile={output_dir}/page-%d.{image_format}",
        input_path,
    ]


def ghostscript_stamp_args(gs: str, input_path: Path, output_path: Path, postscript: str) -> List[Arg]:
    return [
        gs,
        "-q", "-dNOPAUSE", "-dBATCH",
        "-sDEVICE=pdfwrite",
        f"-sOutputFile={output_path}",
        "-c", postscript,
        "-f", input_path,
    ]


def libreoffice_args(binary: str, profile: str, convert_format: str, output_dir: Path, input_path: Path) -> List[Arg]:
    return [
        binary,
        "--headless",
        f"-env:UserInstallation={profile}",
        "--convert-to", convert_format,
        "--outdir", output_dir,
        input_path,
    ]


# ==================== STAMPING ====================


def _ps_string(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
    return f"({escaped})"


def watermark_postscript(text: str, font: str, size: float, gray: float, rotation: float) -> str:
    """EndPage procedure drawing ``text`` centered and rotated on every page."""
    return (
        "<< /EndPage { exch pop 2 ne dup { "
        "gsave "
        "currentpagedevice /PageSize get aload pop 2 div exch 2 div exch translate "
        f"{rotation} rotate "
        f"/{font} findfont {size} scalefont setfont {gray} setgray "
        f"{_ps_string(text)} dup stringwidth pop 2 div neg {-size / 3:.2f} moveto show "
        "grestore "
        "} if } bind >> setpagedevice"
    )


def page_number_postscript(position: str, font: str, size: float, margin: float) -> str:
    """EndPage procedure printing the running page number at an anchor."""
    horizontal, vertical = ANCHORS.get(position, ANCHORS[DEFAULT_ANCHOR])
    x = {
        "left": f"{margin}",
        "center": "PWPageW PWTextW sub 2 div",
        "right": f"PWPageW PWTextW sub {margin} sub",
    }[horizontal]
    y = f"{margin}" if vertical == "bottom" else f"PWPageH {margin} sub {size} sub"
    return (
        "/PWPageNo 0 def "
        "<< /EndPage { exch pop 2 ne dup { "
        "/PWPageNo PWPageNo 1 add store "
        "gsave "
        f"/{font} findfont {size} scalefont setfont 0 setgray "
        "currentpagedevice /PageSize get aload pop /PWPageH exch def /PWPageW exch def "
        "PWPageNo 10 string cvs dup stringwidth pop /PWTextW exch def "
        f"{x} {y} moveto show "
        "grestore "
        "} if } bind >> setpagedevice"
    )

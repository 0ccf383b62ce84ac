"""
Per-operation handlers.

Each handler consumes staged input paths from the WorkspaceManager, reserves
its output path(s), and hands the actual work to an external engine, pypdf or
pikepdf. Handlers are synchronous and may block for as long as the engine
runs; the HTTP layer calls them from a worker thread.
"""

from __future__ import annotations

import io
import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from omegaconf import DictConfig
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError

from .bundling import bundle_directory
from .compression import CompressionOutcome, CompressionSearch, ghostscript_level_compressor
from .engines import (
    EngineRunner,
    crop_pages,
    decrypt_pdf,
    encrypt_pdf,
    ghostscript_pdfa_args,
    ghostscript_render_args,
    ghostscript_stamp_args,
    libreoffice_args,
    optimize_pdf,
    page_number_postscript,
    set_document_info,
    watermark_postscript,
)
from .errors import EngineInvocationFailure, InvalidRequest
from .models import PageRange
from .utils import sanitize_label
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

# Conversion type -> (LibreOffice target format, output extension)
LIBREOFFICE_CONVERSIONS = {
    "word": ("pdf", ".pdf"),
    "excel": ("pdf", ".pdf"),
    "ppt": ("pdf", ".pdf"),
    "html": ("pdf", ".pdf"),
    "pdf-to-word": ("docx", ".docx"),
    "pdf-to-excel": ("xlsx", ".xlsx"),
    "pdf-to-ppt": ("pptx", ".pptx"),
}

IMAGE_FORMATS = {"png", "jpg", "jpeg"}
MAX_RENDER_DPI = 1200


@contextmanager
def pdf_engine(action: str) -> Iterator[None]:
    """Report pypdf failures the same way as external engine failures."""
    try:
        yield
    except (PyPdfError, OSError) as exc:
        raise EngineInvocationFailure(f"{action} failed: {exc}", ["pypdf", action]) from exc


def _read_pdf(path: Path) -> PdfReader:
    # Read fully so the same path can be rewritten in place afterwards
    return PdfReader(io.BytesIO(path.read_bytes()))


def _select_pages(reader: PdfReader, pages: Sequence[int]) -> PdfWriter:
    total = len(reader.pages)
    writer = PdfWriter()
    for number in pages:
        if not 1 <= number <= total:
            raise InvalidRequest(f"Page {number} is out of range (document has {total} pages)")
        writer.add_page(reader.pages[number - 1])
    return writer


class OperationService:
    """
    Operation dispatch over the workspace core.

    Args:
        workspace: Source of staged inputs and reserved outputs
        runner: Executes external engines
        settings: Immutable process configuration
    """

    def __init__(self, workspace: WorkspaceManager, runner: EngineRunner, settings: DictConfig) -> None:
        self.workspace = workspace
        self.runner = runner
        self.settings = settings
        self.engines = settings.engines
        self.compression = CompressionSearch(
            workspace,
            compress_level=ghostscript_level_compressor(runner, self.engines.ghostscript),
            optimize=optimize_pdf,
            ladder=list(settings.compression.ladder),
            keep_intermediates=bool(settings.compression.keep_intermediates),
        )

    def _bundle(self, scratch: Path, prefix: str) -> Path:
        return bundle_directory(self.workspace, scratch, prefix, compression=self.settings.archive.compression)

    # ==================== PAGE OPERATIONS ====================

    def merge(self, inputs: Sequence[Path]) -> Path:
        if len(inputs) < 2:
            raise InvalidRequest("At least 2 files required")
        output = self.workspace.reserve_output_path("merged", ".pdf")
        with pdf_engine("Merge"):
            writer = PdfWriter()
            for path in inputs:
                writer.append(str(path))
            writer.write(output)
        return output

    def split(self, input_path: Path, mode: Optional[str], ranges: Optional[List[PageRange]]) -> Path:
        if mode != "individual" and not ranges:
            raise InvalidRequest("Either 'mode=individual' or 'ranges' required")

        scratch = self.workspace.new_scratch_directory("split")
        try:
            with pdf_engine("Split"):
                reader = _read_pdf(input_path)
                if mode == "individual":
                    for index, page in enumerate(reader.pages, start=1):
                        writer = PdfWriter()
                        writer.add_page(page)
                        writer.write(scratch / f"page_{index}.pdf")
                else:
                    for page_range in ranges or []:
                        try:
                            if page_range.start > page_range.end:
                                raise InvalidRequest(f"Range start {page_range.start} is after end {page_range.end}")
                            writer = _select_pages(reader, range(page_range.start, page_range.end + 1))
                        except InvalidRequest as exc:
                            logger.warning("Range %d-%d extraction failed: %s", page_range.start, page_range.end, exc)
                            continue
                        writer.write(scratch / f"pages_{page_range.start}-{page_range.end}.pdf")
            return self._bundle(scratch, "split")
        finally:
            self.workspace.discard_scratch(scratch)

    def rotate(self, input_path: Path, angle: int) -> Path:
        if angle % 90 != 0:
            raise InvalidRequest("Angle must be a multiple of 90")
        output = self.workspace.reserve_output_path("rotated", ".pdf")
        self.workspace.copy_into(input_path, output)
        with pdf_engine("Rotation"):
            writer = PdfWriter(clone_from=_read_pdf(output))
            for page in writer.pages:
                page.rotate(angle)
            writer.write(output)
        return output

    def extract(self, input_path: Path, pages: Sequence[int]) -> Path:
        if not pages:
            raise InvalidRequest("No pages specified")
        output = self.workspace.reserve_output_path("extracted", ".pdf")
        with pdf_engine("Extraction"):
            _select_pages(_read_pdf(input_path), pages).write(output)
        return output

    def delete_pages(self, input_path: Path, pages: Sequence[int]) -> Path:
        if not pages:
            raise InvalidRequest("No pages specified")
        output = self.workspace.reserve_output_path("deleted-pages", ".pdf")
        with pdf_engine("Delete pages"):
            reader = _read_pdf(input_path)
            doomed = set(pages)
            remaining = [number for number in range(1, len(reader.pages) + 1) if number not in doomed]
            if not remaining:
                raise InvalidRequest("Cannot delete every page")
            _select_pages(reader, remaining).write(output)
        return output

    def reorder(self, input_path: Path, order: Sequence[int]) -> Path:
        if not order:
            raise InvalidRequest("No order specified")
        output = self.workspace.reserve_output_path("reordered", ".pdf")
        with pdf_engine("Reorder"):
            _select_pages(_read_pdf(input_path), order).write(output)
        return output

    def repair(self, input_path: Path) -> Path:
        output = self.workspace.reserve_output_path("repaired", ".pdf")
        return optimize_pdf(input_path, output)

    def compress(self, input_path: Path, target_size: Optional[int] = None) -> CompressionOutcome:
        return self.compression.run(input_path, target_size)

    def crop(self, input_path: Path, left: float, bottom: float, right: float, top: float) -> Path:
        """Apply one crop box, in points from the lower-left corner, to every page."""
        if left < 0 or bottom < 0 or right <= left or top <= bottom:
            raise InvalidRequest(f"Invalid crop dimensions [{left} {bottom} {right} {top}]")
        output = self.workspace.reserve_output_path("cropped", ".pdf")
        return crop_pages(input_path, output, [left, bottom, right, top])

    def update_metadata(self, input_path: Path, properties: Dict[str, str]) -> Path:
        output = self.workspace.reserve_output_path("metadata", ".pdf")
        properties = {key: value for key, value in properties.items() if value}
        if not properties:
            return self.workspace.copy_into(input_path, output)
        return set_document_info(input_path, output, properties)

    # ==================== SECURITY ====================

    def protect(self, input_path: Path, password: str) -> Path:
        if not password:
            raise InvalidRequest("Password required")
        output = self.workspace.reserve_output_path("protected", ".pdf")
        return encrypt_pdf(input_path, output, password)

    def unlock(self, input_path: Path, password: str) -> Path:
        output = self.workspace.reserve_output_path("unlocked", ".pdf")
        return decrypt_pdf(input_path, output, password)

    # ==================== STAMPING ====================

    def watermark(self, input_path: Path, text: str) -> Path:
        style = self.settings.stamps.watermark
        postscript = watermark_postscript(text or "WATERMARK", style.font, style.size, style.gray, style.rotation)
        output = self.workspace.reserve_output_path("watermarked", ".pdf")
        self.runner.run(ghostscript_stamp_args(self.engines.ghostscript, input_path, output, postscript))
        return output

    def add_page_numbers(self, input_path: Path, position: Optional[str]) -> Path:
        style = self.settings.stamps.page_numbers
        postscript = page_number_postscript(position or "", style.font, style.size, style.margin)
        output = self.workspace.reserve_output_path("numbered", ".pdf")
        self.runner.run(ghostscript_stamp_args(self.engines.ghostscript, input_path, output, postscript))
        return output

    # ==================== CONVERSIONS ====================

    def libreoffice_convert(self, input_path: Path, conversion: str) -> Path:
        convert_format, extension = LIBREOFFICE_CONVERSIONS.get(conversion, ("pdf", ".pdf"))
        scratch = self.workspace.new_scratch_directory("convert")
        try:
            self.runner.run(
                libreoffice_args(
                    self.engines.libreoffice,
                    self.engines.libreoffice_profile,
                    convert_format,
                    scratch,
                    input_path,
                )
            )
            converted = scratch / f"{input_path.stem}.{convert_format}"
            if not converted.is_file():
                raise EngineInvocationFailure(f"LibreOffice produced no {convert_format} output")
            output = self.workspace.reserve_output_path("converted", extension)
            shutil.move(str(converted), output)
            return output
        finally:
            self.workspace.discard_scratch(scratch)

    def html_to_pdf(self, input_path: Path) -> Path:
        output = self.workspace.reserve_output_path("html-converted", ".pdf")
        try:
            self.runner.run([self.engines.wkhtmltopdf, input_path, output])
        except EngineInvocationFailure as exc:
            logger.info("wkhtmltopdf failed, trying LibreOffice: %s", exc)
            self.workspace.registry.discard(output)
            return self.libreoffice_convert(input_path, "html")
        return output

    def images_to_pdf(self, inputs: Sequence[Path]) -> Path:
        if not inputs:
            raise InvalidRequest("Failed to read image file")
        output = self.workspace.reserve_output_path("images-to-pdf", ".pdf")
        self.runner.run([self.engines.imagemagick, *inputs, output])
        return output

    def pdf_to_images(self, input_path: Path, image_format: str = "png", dpi: int = 150) -> Path:
        image_format = image_format.lower()
        if image_format not in IMAGE_FORMATS:
            raise InvalidRequest(f"Unsupported image format {image_format!r}")
        if not 0 < dpi <= MAX_RENDER_DPI:
            raise InvalidRequest(f"dpi must be between 1 and {MAX_RENDER_DPI}")
        scratch = self.workspace.new_scratch_directory("images")
        try:
            self.runner.run(ghostscript_render_args(self.engines.ghostscript, input_path, scratch, image_format, dpi))
            return self._bundle(scratch, "pdf-images")
        finally:
            self.workspace.discard_scratch(scratch)

    def pdf_to_text(self, input_path: Path) -> Path:
        output = self.workspace.reserve_output_path("extracted-text", ".txt")
        self.runner.run([self.engines.pdftotext, "-layout", input_path, output])
        return output

    def pdf_to_pdfa(self, input_path: Path) -> Path:
        output = self.workspace.reserve_output_path("pdfa", ".pdf")
        self.runner.run(ghostscript_pdfa_args(self.engines.ghostscript, input_path, output))
        return output

    # ==================== BATCH ====================

    def batch_compress(self, inputs: Sequence[Tuple[Path, str]]) -> Path:
        """
        Optimize each ``(staged path, original filename)`` and bundle the results.

        Files that fail are logged and left out of the archive.
        """
        if not inputs:
            raise InvalidRequest("No files provided")
        scratch = self.workspace.new_scratch_directory("batch")
        try:
            for index, (input_path, original_name) in enumerate(inputs):
                stem = sanitize_label(Path(original_name).stem, fallback=f"file{index}")
                target = scratch / f"{stem}-compressed.pdf"
                if target.exists():
                    target = scratch / f"{stem}-{index}-compressed.pdf"
                try:
                    optimize_pdf(input_path, target)
                except EngineInvocationFailure as exc:
                    logger.warning("Batch compress failed for file %d: %s", index, exc)
            return self._bundle(scratch, "batch-compressed")
        finally:
            self.workspace.discard_scratch(scratch)

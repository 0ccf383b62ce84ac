from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from omegaconf import DictConfig
from pydantic import TypeAdapter, ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from .configuration import build_config_metadata, configure_logging, load_settings, ttl_seconds
from .engines import EngineRunner, check_dependencies
from .errors import InvalidRequest, IOFailure, WorkbenchError
from .models import CompressionResponse, ConfigMetadata, DownloadResponse, ErrorResponse, HealthStatus, PageRange
from .operations import OperationService
from .registry import ArtifactRegistry
from .sweeper import RetentionSweeper
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

_PAGE_LIST = TypeAdapter(List[int])
_RANGE_LIST = TypeAdapter(List[PageRange])


def create_app(
    settings: Optional[DictConfig] = None,
    registry: Optional[ArtifactRegistry] = None,
    runner: Optional[EngineRunner] = None,
) -> FastAPI:
    """
    Composition root: wires registry, workspace, sweeper and operations into an app.

    The sweeper runs for the lifetime of the app (started and stopped by the
    lifespan handler).
    """
    settings = settings or load_settings()
    configure_logging(settings)
    registry = registry or ArtifactRegistry()
    runner = runner or EngineRunner(timeout=settings.engines.timeout_seconds)
    workspace = WorkspaceManager(
        Path(settings.workspace.root),
        registry,
        uploads_dir=settings.workspace.uploads_dir,
        output_dir=settings.workspace.output_dir,
        default_extension=settings.workspace.default_extension,
    )
    sweeper = RetentionSweeper(registry, ttl=ttl_seconds(settings), interval=settings.retention.sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info("PDF Workbench server starting")
        logger.info("Temp directory: %s", workspace.root)
        logger.info("File TTL: %s minutes", settings.retention.ttl_minutes)
        sweeper.start()
        try:
            yield
        finally:
            sweeper.stop()

    app = FastAPI(title="PDF Workbench API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.server.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.workspace = workspace
    app.state.sweeper = sweeper
    app.state.runner = runner
    app.state.service = OperationService(workspace, runner, settings)

    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(WorkbenchError, _workbench_error_handler)
    app.include_router(router)
    return app


async def _http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(error=str(exc.detail)).model_dump())


async def _workbench_error_handler(_: Request, exc: WorkbenchError) -> JSONResponse:
    status_code = 400 if isinstance(exc, (InvalidRequest, IOFailure)) else 500
    if status_code == 500:
        logger.error("Operation failed: %s", exc)
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=str(exc)).model_dump())


def get_service(request: Request) -> OperationService:
    return request.app.state.service


# ==================== REQUEST HELPERS ====================


def _download(request: Request, path: Path) -> DownloadResponse:
    host = str(request.app.state.settings.server.host).rstrip("/")
    return DownloadResponse(download_url=f"{host}/files/{path.name}")


def _form_int(form: FormData, key: str, default: int = 0) -> int:
    raw = form.get(key)
    if raw is None or isinstance(raw, UploadFile) or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"'{key}' must be an integer") from exc


def _form_float(form: FormData, key: str, default: float = 0.0) -> float:
    raw = form.get(key)
    if raw is None or isinstance(raw, UploadFile) or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"'{key}' must be a number") from exc


def _form_str(form: FormData, key: str, default: str = "") -> str:
    raw = form.get(key)
    if raw is None or isinstance(raw, UploadFile):
        return default
    return raw


def _form_json(form: FormData, key: str, adapter: TypeAdapter) -> Any:
    raw = _form_str(form, key)
    if not raw:
        return []
    try:
        return adapter.validate_python(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid '{key}' value") from exc


async def _stage(request: Request, form: FormData, key: str) -> Tuple[Path, str]:
    upload = form.get(key)
    if not isinstance(upload, UploadFile):
        raise HTTPException(status_code=400, detail=f"Failed to read {key}")
    limit = int(request.app.state.settings.server.max_upload_mb) * 1024 * 1024
    if upload.size is not None and upload.size > limit:
        raise HTTPException(status_code=413, detail=f"{key} exceeds {limit // (1024 * 1024)}MB")
    name = upload.filename or key
    path = await request.app.state.workspace.stage_upload_file(upload)
    return path, name


async def _stage_many(request: Request, form: FormData, count: int) -> List[Tuple[Path, str]]:
    return [await _stage(request, form, f"file{index}") for index in range(count)]


async def _stage_available(request: Request, form: FormData, count: int) -> List[Tuple[Path, str]]:
    """Stage ``file0..file{count-1}``, skipping parts that are missing or unreadable."""
    staged = []
    for index in range(count):
        key = f"file{index}"
        try:
            staged.append(await _stage(request, form, key))
        except HTTPException as exc:
            logger.warning("Skipping %s: %s", key, exc.detail)
        except IOFailure as exc:
            logger.warning("Skipping %s: %s", key, exc)
    return staged


# ==================== ROUTES ====================

router = APIRouter()


@router.get("/health", response_model=HealthStatus)
def health(request: Request) -> HealthStatus:
    state = request.app.state
    return HealthStatus(
        status="ok",
        dependencies=check_dependencies(state.settings, state.runner),
        tracked_artifacts=len(state.registry),
    )


@router.get("/config", response_model=ConfigMetadata)
def config(request: Request) -> ConfigMetadata:
    return build_config_metadata(request.app.state.settings)


@router.get("/files/{filename}")
def serve_file(filename: str, request: Request) -> FileResponse:
    path = request.app.state.workspace.resolve_download(filename)
    if path is None:
        raise HTTPException(status_code=404, detail="File not found or expired")
    return FileResponse(path, filename=path.name)


# ---------- PDF operations ----------

@router.post("/api/pdf/merge", response_model=DownloadResponse)
async def merge(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    count = _form_int(form, "fileCount")
    if count < 2:
        raise HTTPException(status_code=400, detail="At least 2 files required")
    staged = await _stage_many(request, form, count)
    output = await run_in_threadpool(service.merge, [path for path, _ in staged])
    return _download(request, output)


@router.post("/api/pdf/split", response_model=DownloadResponse)
async def split(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    ranges = _form_json(form, "ranges", _RANGE_LIST)
    output = await run_in_threadpool(service.split, input_path, _form_str(form, "mode") or None, ranges)
    return _download(request, output)


@router.post("/api/pdf/compress", response_model=CompressionResponse)
async def compress(request: Request, service: OperationService = Depends(get_service)) -> CompressionResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    target_size = _form_int(form, "targetSize")
    outcome = await run_in_threadpool(service.compress, input_path, target_size)
    return CompressionResponse(
        download_url=_download(request, outcome.path).download_url,
        size=outcome.size,
        target_size=target_size or None,
        met_target=outcome.met_target,
        level=outcome.level,
    )


@router.post("/api/pdf/rotate", response_model=DownloadResponse)
async def rotate(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    angle = _form_int(form, "angle") or 90
    output = await run_in_threadpool(service.rotate, input_path, angle)
    return _download(request, output)


@router.post("/api/pdf/extract", response_model=DownloadResponse)
async def extract(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.extract, input_path, _form_json(form, "pages", _PAGE_LIST))
    return _download(request, output)


@router.post("/api/pdf/delete-pages", response_model=DownloadResponse)
async def delete_pages(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.delete_pages, input_path, _form_json(form, "pages", _PAGE_LIST))
    return _download(request, output)


@router.post("/api/pdf/reorder", response_model=DownloadResponse)
async def reorder(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.reorder, input_path, _form_json(form, "order", _PAGE_LIST))
    return _download(request, output)


@router.post("/api/pdf/repair", response_model=DownloadResponse)
async def repair(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.repair, input_path)
    return _download(request, output)


@router.post("/api/pdf/crop", response_model=DownloadResponse)
async def crop(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    box = [_form_float(form, side) for side in ("left", "bottom", "right", "top")]
    output = await run_in_threadpool(service.crop, input_path, *box)
    return _download(request, output)


@router.post("/api/pdf/metadata", response_model=DownloadResponse)
async def metadata(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    properties = {field.capitalize(): _form_str(form, field) for field in ("title", "author", "subject", "keywords")}
    output = await run_in_threadpool(service.update_metadata, input_path, properties)
    return _download(request, output)


@router.post("/api/pdf/unlock", response_model=DownloadResponse)
async def unlock(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.unlock, input_path, _form_str(form, "password"))
    return _download(request, output)


@router.post("/api/security/protect", response_model=DownloadResponse)
async def protect(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.protect, input_path, _form_str(form, "password"))
    return _download(request, output)


@router.post("/api/pdf/watermark", response_model=DownloadResponse)
async def watermark(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.watermark, input_path, _form_str(form, "text"))
    return _download(request, output)


@router.post("/api/pdf/add-page-numbers", response_model=DownloadResponse)
async def add_page_numbers(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.add_page_numbers, input_path, _form_str(form, "position"))
    return _download(request, output)


@router.post("/api/pdf/batch", response_model=DownloadResponse)
async def batch(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    count = _form_int(form, "fileCount")
    if count == 0:
        raise HTTPException(status_code=400, detail="No files provided")
    operation = _form_str(form, "operation") or "compress"
    if operation == "merge":
        return await merge(request, service)
    if operation != "compress":
        raise HTTPException(status_code=400, detail=f"Unsupported batch operation {operation!r}")
    staged = await _stage_available(request, form, count)
    if not staged:
        raise HTTPException(status_code=400, detail="No readable files provided")
    output = await run_in_threadpool(service.batch_compress, staged)
    return _download(request, output)


# ---------- Conversions ----------

def _libreoffice_route(path: str, conversion: str) -> None:
    @router.post(path, response_model=DownloadResponse, name=conversion)
    async def convert(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
        form = await request.form()
        input_path, _ = await _stage(request, form, "file0")
        output = await run_in_threadpool(service.libreoffice_convert, input_path, conversion)
        return _download(request, output)


_libreoffice_route("/api/convert/word-to-pdf", "word")
_libreoffice_route("/api/convert/excel-to-pdf", "excel")
_libreoffice_route("/api/convert/ppt-to-pdf", "ppt")
_libreoffice_route("/api/convert/pdf-to-word", "pdf-to-word")
_libreoffice_route("/api/convert/pdf-to-excel", "pdf-to-excel")
_libreoffice_route("/api/convert/pdf-to-ppt", "pdf-to-ppt")


@router.post("/api/convert/html-to-pdf", response_model=DownloadResponse)
async def html_to_pdf(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.html_to_pdf, input_path)
    return _download(request, output)


@router.post("/api/convert/image-to-pdf", response_model=DownloadResponse)
async def image_to_pdf(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    count = _form_int(form, "fileCount") or 1
    inputs = [(await _stage(request, form, "file0"))[0]]
    for index in range(1, count):
        if not isinstance(form.get(f"file{index}"), UploadFile):
            break
        inputs.append((await _stage(request, form, f"file{index}"))[0])
    output = await run_in_threadpool(service.images_to_pdf, inputs)
    return _download(request, output)


@router.post("/api/convert/pdf-to-image", response_model=DownloadResponse)
async def pdf_to_image(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    image_format = _form_str(form, "format") or "png"
    dpi = _form_int(form, "dpi") or 150
    output = await run_in_threadpool(service.pdf_to_images, input_path, image_format, dpi)
    return _download(request, output)


@router.post("/api/convert/pdf-to-text", response_model=DownloadResponse)
async def pdf_to_text(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.pdf_to_text, input_path)
    return _download(request, output)


@router.post("/api/convert/pdf-to-pdfa", response_model=DownloadResponse)
async def pdf_to_pdfa(request: Request, service: OperationService = Depends(get_service)) -> DownloadResponse:
    form = await request.form()
    input_path, _ = await _stage(request, form, "file0")
    output = await run_in_threadpool(service.pdf_to_pdfa, input_path)
    return _download(request, output)


app = create_app()

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class DownloadResponse(BaseModel):
    download_url: str = Field(serialization_alias="downloadUrl")


class CompressionResponse(DownloadResponse):
    size: int
    target_size: Optional[int] = Field(default=None, serialization_alias="targetSize")
    met_target: bool = Field(serialization_alias="metTarget")
    level: Optional[int] = None


class ErrorResponse(BaseModel):
    error: str


class HealthStatus(BaseModel):
    status: str
    dependencies: Dict[str, bool]
    tracked_artifacts: int


class PageRange(BaseModel):
    start: int = Field(ge=1)
    end: int = Field(ge=1)


class ConfigMetadata(BaseModel):
    effective: Dict[str, Any]
    env_overrides: Dict[str, str]
    notes: Dict[str, str]

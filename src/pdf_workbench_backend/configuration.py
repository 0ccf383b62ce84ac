from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import ConfigMetadata

load_dotenv()

DEFAULTS_PATH = Path(__file__).resolve().parent / "config/defaults.yaml"
CONFIG_ENV_VAR = "PDF_WORKBENCH_CONFIG"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Environment variable -> (dotted config key, caster)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "HOST": ("server.host", str),
    "PORT": ("server.port", int),
    "MAX_UPLOAD_MB": ("server.max_upload_mb", int),
    "TEMP_DIR": ("workspace.root", str),
    "FILE_TTL_MINUTES": ("retention.ttl_minutes", float),
    "SWEEP_INTERVAL_SECONDS": ("retention.sweep_interval_seconds", float),
    "LOG_LEVEL": ("logging.level", str),
}

NOTES = {
    "retention.ttl_minutes": "Artifacts older than this are deleted by the sweeper, whether or not they were downloaded.",
    "compression.ladder": "DPI levels tried in order when a target size is requested; the first level that fits wins.",
    "stamps": "Stamp placement is tuning, not contract; adjust freely.",
}

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not DEFAULTS_PATH.exists():  # pragma: no cover - packaging error
        raise FileNotFoundError(f"Default config not found at {DEFAULTS_PATH}")
    return OmegaConf.load(DEFAULTS_PATH)


def get_default_config_container() -> Dict[str, Any]:
    return OmegaConf.to_container(_load_default_config(), resolve=True)  # type: ignore[return-value]


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """
    Translate recognised environment variables into a nested override dict.

    Values that cannot be cast are ignored with a warning, keeping the
    default in place.
    """
    overrides = OmegaConf.create({})
    for name, (key, caster) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = caster(raw)
        except ValueError:
            logger.warning("Ignoring %s=%r: expected %s", name, raw, caster.__name__)
            continue
        OmegaConf.update(overrides, key, value, force_add=True)
    return OmegaConf.to_container(overrides)  # type: ignore[return-value]


def make_settings(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    config_file: Optional[Path] = None,
) -> DictConfig:
    """
    Build the immutable process configuration.

    Precedence, lowest first: packaged defaults, ``config_file``, environment
    variables, explicit ``overrides``. Unknown keys are rejected.
    """
    base = OmegaConf.create(get_default_config_container())
    OmegaConf.set_struct(base, True)

    layers = []
    if config_file is not None:
        layers.append(OmegaConf.load(config_file))
    if environ is not None:
        layers.append(OmegaConf.create(env_overrides(environ)))
    if overrides:
        layers.append(OmegaConf.create(overrides))

    merged: DictConfig = OmegaConf.merge(base, *layers) if layers else base  # type: ignore[assignment]
    OmegaConf.set_struct(merged, True)
    _validate(merged)
    OmegaConf.set_readonly(merged, True)
    return merged


def _validate(settings: DictConfig) -> None:
    ladder = list(settings.compression.ladder)
    if not ladder:
        raise ValueError("compression.ladder must contain at least one level")
    if any(later >= earlier for earlier, later in zip(ladder, ladder[1:])):
        raise ValueError(f"compression.ladder must be strictly descending, got {ladder}")
    if settings.retention.ttl_minutes <= 0:
        raise ValueError("retention.ttl_minutes must be positive")
    if settings.retention.sweep_interval_seconds <= 0:
        raise ValueError("retention.sweep_interval_seconds must be positive")


@lru_cache(maxsize=1)
def load_settings() -> DictConfig:
    config_file = os.environ.get(CONFIG_ENV_VAR)
    return make_settings(
        environ=os.environ,
        config_file=Path(config_file) if config_file else None,
    )


def ttl_seconds(settings: DictConfig) -> float:
    return float(settings.retention.ttl_minutes) * 60.0


def configure_logging(settings: DictConfig) -> None:
    level = str(settings.logging.level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


def build_config_metadata(settings: DictConfig) -> ConfigMetadata:
    return ConfigMetadata(
        effective=OmegaConf.to_container(settings, resolve=True),  # type: ignore[arg-type]
        env_overrides={name: key for name, (key, _) in ENV_OVERRIDES.items()},
        notes=NOTES,
    )

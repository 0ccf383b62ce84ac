"""
Size-targeted compression.

Given a document and a byte-size ceiling, CompressionSearch walks a fixed
quality ladder from least to most aggressive and stops at the first level
whose output fits. The first fit is therefore the least lossy acceptable
result. When nothing fits, the smallest output produced (the last successful
level) is returned as a best-effort result with ``met_target=False``.

Only one candidate is kept on disk at a time: each superseded best-so-far is
discarded from the registry and the filesystem as soon as a newer candidate
replaces it, unless ``keep_intermediates`` is set for diagnostics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .engines import EngineRunner, ghostscript_compress_args, optimize_pdf
from .errors import CompressionFailure, EngineInvocationFailure
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

DEFAULT_LADDER: tuple[int, ...] = (150, 100, 72, 50, 30, 20)

# (input, output, dpi) -> None; raises EngineInvocationFailure
LevelCompressor = Callable[[Path, Path, int], None]
# (input, output) -> output; raises EngineInvocationFailure
Optimizer = Callable[[Path, Path], Path]


@dataclass
class LevelAttempt:
    level: int
    size: Optional[int] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class CompressionOutcome:
    """
    Result of a compression request.

    Attributes:
        path: Registered output artifact
        size: Size of ``path`` in bytes
        level: Ladder level that produced ``path``; None for the generic pass
        met_target: False when a target was given and could not be reached
        attempts: Every ladder level tried, in order
    """

    path: Path
    size: int
    level: Optional[int]
    met_target: bool
    attempts: List[LevelAttempt] = field(default_factory=list)


def ghostscript_level_compressor(runner: EngineRunner, gs: str = "gs") -> LevelCompressor:
    def compress(input_path: Path, output_path: Path, dpi: int) -> None:
        runner.run(ghostscript_compress_args(gs, input_path, output_path, dpi))

    return compress


class CompressionSearch:
    """
    Quality-ladder search for an output under a byte-size ceiling.

    Args:
        workspace: Provides and tracks candidate output paths
        compress_level: Engine call producing a candidate at one DPI level
        optimize: Generic optimization pass used without a target or as fallback
        ladder: Strictly descending quality levels
        keep_intermediates: Keep superseded candidates instead of deleting them
        prefix: Human-readable prefix for output names
    """

    def __init__(
        self,
        workspace: WorkspaceManager,
        compress_level: LevelCompressor,
        optimize: Optimizer = optimize_pdf,
        ladder: Sequence[int] = DEFAULT_LADDER,
        keep_intermediates: bool = False,
        prefix: str = "compressed",
    ) -> None:
        levels = [int(level) for level in ladder]
        if not levels:
            raise ValueError("Quality ladder must not be empty")
        if any(later >= earlier for earlier, later in zip(levels, levels[1:])):
            raise ValueError(f"Quality ladder must be strictly descending, got {levels}")
        self.workspace = workspace
        self.compress_level = compress_level
        self.optimize = optimize
        self.ladder = levels
        self.keep_intermediates = keep_intermediates
        self.prefix = prefix

    def run(self, input_path: Path, target_size: Optional[int] = None) -> CompressionOutcome:
        """
        Compress ``input_path``, aiming for at most ``target_size`` bytes.

        A missing or non-positive target skips the ladder and runs the generic
        optimization pass once.

        Raises:
            CompressionFailure: If every ladder level and the fallback pass failed
        """
        if not target_size or target_size <= 0:
            return self._optimize_once(input_path, target_size=None, attempts=[])

        attempts: List[LevelAttempt] = []
        best: Optional[CompressionOutcome] = None

        for level in self.ladder:
            attempt = LevelAttempt(level=level)
            attempts.append(attempt)
            candidate = self.workspace.reserve_output_path(self.prefix, ".pdf")

            try:
                self.compress_level(input_path, candidate, level)
                attempt.size = candidate.stat().st_size
            except (EngineInvocationFailure, OSError) as exc:
                attempt.error = str(exc)
                logger.warning("Compression at %d dpi failed, trying next level: %s", level, exc)
                self.workspace.registry.discard(candidate)
                continue

            if best is not None:
                self._supersede(best.path)
            best = CompressionOutcome(
                path=candidate,
                size=attempt.size,
                level=level,
                met_target=attempt.size <= target_size,
                attempts=attempts,
            )
            if best.met_target:
                logger.info("Compressed to %d bytes at %d dpi (target %d)", best.size, level, target_size)
                return best

        if best is not None:
            logger.warning(
                "Target %d bytes unreachable; returning smallest result %d bytes at %d dpi",
                target_size,
                best.size,
                best.level,
            )
            return best

        logger.warning("All %d compression levels failed; falling back to generic optimization", len(self.ladder))
        return self._optimize_once(input_path, target_size=target_size, attempts=attempts)

    def _supersede(self, path: Path) -> None:
        if not self.keep_intermediates:
            self.workspace.registry.discard(path)

    def _optimize_once(
        self,
        input_path: Path,
        target_size: Optional[int],
        attempts: List[LevelAttempt],
    ) -> CompressionOutcome:
        output_path = self.workspace.reserve_output_path(self.prefix, ".pdf")
        try:
            self.optimize(input_path, output_path)
            size = output_path.stat().st_size
        except (EngineInvocationFailure, OSError) as exc:
            self.workspace.registry.discard(output_path)
            raise CompressionFailure(f"Compression failed: {exc}") from exc
        met_target = target_size is None or size <= target_size
        return CompressionOutcome(
            path=output_path,
            size=size,
            level=None,
            met_target=met_target,
            attempts=attempts,
        )

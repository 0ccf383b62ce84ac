"""
Exception taxonomy for the artifact lifecycle and processing pipeline.

Workspace and bundling failures propagate synchronously to the operation
layer, which turns them into error responses. Engine failures are raised the
same way, except inside the compression search where a failed quality level
is logged and skipped.
"""

from __future__ import annotations

from typing import Optional, Sequence


class WorkbenchError(Exception):
    """Base class for all errors raised by the processing core."""


class IOFailure(WorkbenchError):
    """A stream could not be read, or a file or directory could not be written."""


class BundlingFailure(WorkbenchError):
    """A multi-file result could not be packaged into an archive."""


class EngineInvocationFailure(WorkbenchError):
    """
    An external processing engine could not be started or exited nonzero.

    Attributes:
        command: The argument vector that was executed
        returncode: Exit status, or None when the binary never started
        output: Combined stdout/stderr captured from the engine
    """

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.output = output


class CompressionFailure(WorkbenchError):
    """Neither the quality ladder nor the generic optimization pass produced output."""


class InvalidRequest(WorkbenchError):
    """Operation parameters do not fit the uploaded document (e.g. page out of range)."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional


class ErrorKind(str, Enum):
    """Error taxonomy used in logs, stage results and batch summaries."""

    DATA_MISSING = "DataMissing"
    VALIDATION_FAILURE = "ValidationFailure"
    PROCESSING_FAILURE = "ProcessingFailure"
    INVALID_ARGS = "InvalidArgs"


class PipelineError(Exception):
    kind: ErrorKind = ErrorKind.PROCESSING_FAILURE

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = Path(path) if path is not None else None

    def describe(self) -> str:
        where = f" ({self.path})" if self.path is not None else ""
        return f"{self.kind.value}: {self.message}{where}"


class DataMissingError(PipelineError, FileNotFoundError):
    """A required artifact could not be resolved by convention or by search."""

    kind = ErrorKind.DATA_MISSING


class ValidationFailureError(PipelineError):
    kind = ErrorKind.VALIDATION_FAILURE


class ProcessingFailureError(PipelineError, RuntimeError):
    """A toolkit operation (and its fallback, if any) failed."""

    kind = ErrorKind.PROCESSING_FAILURE


class InvalidArgsError(PipelineError, ValueError):
    kind = ErrorKind.INVALID_ARGS

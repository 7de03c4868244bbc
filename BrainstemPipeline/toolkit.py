from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

OperationFn = Callable[..., List[Path]]

# Operation -> the single automatic retry used when it fails.
FALLBACKS: Dict[str, str] = {
    "register_nonlinear": "register_linear",
}


@dataclass(frozen=True)
class ToolkitResult:
    ok: bool
    outputs: Tuple[Path, ...] = ()
    returncode: int = 0
    message: str = ""
    operation: str = ""


class Toolkit(ABC):
    """Blocking `(inputs, parameters) -> outputs | failure` calls into the imaging toolkit."""

    @abstractmethod
    def run(self, operation: str, inputs: Sequence[Path], outputs: Sequence[Path], **params) -> ToolkitResult:
        raise NotImplementedError


def default_operations() -> Dict[str, OperationFn]:
    from BrainstemPipeline.brain_mask import brain_extract_op
    from BrainstemPipeline.dicom_import import convert_dicom_op
    from BrainstemPipeline.noise_bias import bias_correct_op
    from BrainstemPipeline.registration import (
        apply_transform_op,
        register_linear_op,
        register_nonlinear_op,
        standardize_dimensions_op,
    )
    from BrainstemPipeline.segmentation import segment_brainstem_op

    return {
        "convert_dicom": convert_dicom_op,
        "bias_correct": bias_correct_op,
        "brain_extract": brain_extract_op,
        "standardize_dimensions": standardize_dimensions_op,
        "register_nonlinear": register_nonlinear_op,
        "register_linear": register_linear_op,
        "apply_transform": apply_transform_op,
        "segment_brainstem": segment_brainstem_op,
    }


class SimpleITKToolkit(Toolkit):
    """In-process toolkit: each operation reads its inputs and writes its outputs.

    Exceptions never cross the boundary; they come back as a failed result.
    """

    def __init__(self, operations: Optional[Dict[str, OperationFn]] = None) -> None:
        self.operations: Dict[str, OperationFn] = default_operations()
        if operations:
            self.operations.update(operations)

    def run(self, operation: str, inputs: Sequence[Path], outputs: Sequence[Path], **params) -> ToolkitResult:
        fn = self.operations.get(operation)
        if fn is None:
            return ToolkitResult(False, (), 2, f"unknown operation {operation!r}", operation)
        try:
            produced = fn([Path(p) for p in inputs], [Path(p) for p in outputs], **params)
        except Exception as exc:
            return ToolkitResult(False, (), 1, f"{type(exc).__name__}: {exc}", operation)
        missing = [Path(p) for p in outputs if not Path(p).exists()]
        if missing:
            return ToolkitResult(False, tuple(produced or ()), 1, f"expected output not written: {missing[0]}", operation)
        return ToolkitResult(True, tuple(Path(p) for p in (produced or outputs)), 0, "", operation)


def run_with_fallback(
    toolkit: Toolkit,
    operation: str,
    inputs: Sequence[Path],
    outputs: Sequence[Path],
    **params,
) -> ToolkitResult:
    """Run `operation`; on failure retry once with its fallback, if one is defined."""
    result = toolkit.run(operation, inputs, outputs, **params)
    if result.ok:
        return result
    fallback = FALLBACKS.get(operation)
    if fallback is None:
        return result
    print(f"[toolkit] ProcessingFailure: {operation} failed ({result.message}); retrying with {fallback}")
    retry = toolkit.run(fallback, inputs, outputs, **params)
    if retry.ok:
        return retry
    return ToolkitResult(False, retry.outputs, retry.returncode, f"{result.message}; {fallback}: {retry.message}", fallback)

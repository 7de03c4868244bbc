from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pytest
import SimpleITK as sitk

from BrainstemPipeline.toolkit import Toolkit, ToolkitResult


def write_volume(path: Path, arr: np.ndarray, spacing: Tuple[float, ...] = (1.0, 1.0, 1.0)) -> Path:
    image = sitk.GetImageFromArray(arr)
    image.SetSpacing(spacing)
    path.parent.mkdir(parents=True, exist_ok=True)
    sitk.WriteImage(image, str(path), True)
    return path


def noisy_volume(shape: Tuple[int, int, int] = (8, 8, 8), seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.normal(100.0, 10.0, size=shape).astype(np.float32)


def cube_mask(shape: Tuple[int, int, int] = (8, 8, 8), lo: int = 2, hi: int = 5) -> np.ndarray:
    arr = np.zeros(shape, dtype=np.uint8)
    arr[lo:hi, lo:hi, lo:hi] = 1
    return arr


class RecordingToolkit(Toolkit):
    """Writes small synthetic outputs for every operation and records the call order."""

    def __init__(self, fail: Sequence[str] = (), raise_on: Sequence[str] = (), float_masks: bool = False) -> None:
        self.calls: List[str] = []
        self.fail = set(fail)
        self.raise_on = set(raise_on)
        self.float_masks = float_masks

    def run(self, operation, inputs, outputs, **params) -> ToolkitResult:
        self.calls.append(operation)
        if operation in self.raise_on:
            raise RuntimeError("boom")
        if operation in self.fail:
            return ToolkitResult(False, (), 1, "forced failure", operation)
        for out in outputs:
            self._write(Path(out), [Path(p) for p in inputs])
        return ToolkitResult(True, tuple(Path(p) for p in outputs), 0, "", operation)

    def _source(self, inputs: Sequence[Path]) -> Optional[sitk.Image]:
        for path in inputs:
            if path.is_file() and path.name.endswith(".nii.gz"):
                return sitk.ReadImage(str(path))
        return None

    def _write(self, out: Path, inputs: Sequence[Path]) -> None:
        out.parent.mkdir(parents=True, exist_ok=True)
        if out.suffix == ".tfm":
            out.write_text("#Insight Transform File V1.0\n", encoding="utf-8")
            return
        if not out.name.endswith(".nii.gz"):
            out.mkdir(parents=True, exist_ok=True)
            return
        source = self._source(inputs)
        if source is None:
            source = sitk.GetImageFromArray(noisy_volume())
        shape = sitk.GetArrayViewFromImage(source).shape
        mask_dtype = np.float32 if self.float_masks else np.uint8
        if out.name.endswith("_brain_mask.nii.gz"):
            image = sitk.GetImageFromArray(np.ones(shape, dtype=mask_dtype))
        elif "brainstem" in out.name or "pons" in out.name:
            image = sitk.GetImageFromArray(cube_mask(shape).astype(mask_dtype))
        else:
            image = sitk.Cast(source, sitk.sitkFloat32)
        image.CopyInformation(source)
        sitk.WriteImage(image, str(out), True)


@pytest.fixture
def make_toolkit():
    return RecordingToolkit


@pytest.fixture
def volume_writer():
    return write_volume


@pytest.fixture
def noisy():
    return noisy_volume


@pytest.fixture
def cube():
    return cube_mask

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Sequence, Tuple

import SimpleITK as sitk

from BrainstemPipeline.classify import Encoding, encoding_from_pixel_id
from BrainstemPipeline.errors import DataMissingError


SPACING_TOLERANCE_MM = 0.01


class AxisStatus(str, Enum):
    COMPATIBLE = "COMPATIBLE"
    MISMATCH = "MISMATCH"


class Recommendation(str, Enum):
    COMPATIBLE = "COMPATIBLE"
    CONVERSION_REQUIRED = "CONVERSION_REQUIRED"
    REGISTRATION_REQUIRED = "REGISTRATION_REQUIRED"


@dataclass(frozen=True)
class ImageGeometry:
    dims: Tuple[int, ...]
    spacing: Tuple[float, ...]
    encoding: Encoding


def read_geometry(path: Path) -> ImageGeometry:
    """Read dims, spacing and encoding from the header only."""
    path = Path(path)
    if not path.is_file():
        raise DataMissingError("image not found", path=path)
    reader = sitk.ImageFileReader()
    reader.SetFileName(str(path))
    reader.ReadImageInformation()
    return ImageGeometry(
        dims=tuple(int(v) for v in reader.GetSize()),
        spacing=tuple(float(v) for v in reader.GetSpacing()),
        encoding=encoding_from_pixel_id(reader.GetPixelID()),
    )


def spacing_distance(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        return math.inf
    return math.sqrt(sum((float(x) - float(y)) ** 2 for x, y in zip(a, b)))


@dataclass(frozen=True)
class SpaceComparison:
    dim_match: bool
    voxel_match: bool
    type_match: bool
    spacing_distance: float
    recommendation: Recommendation

    @property
    def axes(self) -> Dict[str, AxisStatus]:
        def _status(ok: bool) -> AxisStatus:
            return AxisStatus.COMPATIBLE if ok else AxisStatus.MISMATCH

        return {
            "dimensions": _status(self.dim_match),
            "voxel_size": _status(self.voxel_match),
            "datatype": _status(self.type_match),
        }

    @property
    def registration_required(self) -> bool:
        return self.recommendation == Recommendation.REGISTRATION_REQUIRED


def compare(image: ImageGeometry, reference: ImageGeometry) -> SpaceComparison:
    """Compare two geometries; only dims or spacing trigger registration."""
    dim_match = tuple(image.dims) == tuple(reference.dims)
    distance = spacing_distance(image.spacing, reference.spacing)
    voxel_match = distance < SPACING_TOLERANCE_MM
    type_match = image.encoding == reference.encoding
    if not dim_match or not voxel_match:
        recommendation = Recommendation.REGISTRATION_REQUIRED
    elif not type_match:
        recommendation = Recommendation.CONVERSION_REQUIRED
    else:
        recommendation = Recommendation.COMPATIBLE
    return SpaceComparison(
        dim_match=dim_match,
        voxel_match=voxel_match,
        type_match=type_match,
        spacing_distance=distance,
        recommendation=recommendation,
    )


def _fmt(values: Sequence) -> str:
    return " x ".join(f"{v:g}" if isinstance(v, float) else str(v) for v in values)


def format_space_report(
    comparison: SpaceComparison,
    image_path: Path,
    reference_path: Path,
    image: ImageGeometry,
    reference: ImageGeometry,
) -> str:
    lines = [
        "Coordinate space validation",
        f"Image:     {image_path}",
        f"Reference: {reference_path}",
        "",
        f"Dimensions: {_fmt(image.dims)} vs {_fmt(reference.dims)} -> {comparison.axes['dimensions'].value}",
        f"Voxel size: {_fmt(image.spacing)} vs {_fmt(reference.spacing)} "
        f"(distance {comparison.spacing_distance:.4f} mm) -> {comparison.axes['voxel_size'].value}",
        f"Datatype:   {image.encoding.value} vs {reference.encoding.value} -> {comparison.axes['datatype'].value}",
        "",
        f"Recommendation: {comparison.recommendation.value}",
    ]
    return "\n".join(lines) + "\n"


def write_space_report(image_path: Path, reference_path: Path, report_path: Path) -> SpaceComparison:
    image = read_geometry(image_path)
    reference = read_geometry(reference_path)
    comparison = compare(image, reference)
    report_path = Path(report_path)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(
        format_space_report(comparison, image_path, reference_path, image, reference),
        encoding="utf-8",
    )
    return comparison


def same_grid(image: sitk.Image, reference: sitk.Image) -> bool:
    return (
        image.GetSize() == reference.GetSize()
        and spacing_distance(image.GetSpacing(), reference.GetSpacing()) < SPACING_TOLERANCE_MM
        and spacing_distance(image.GetOrigin(), reference.GetOrigin()) < SPACING_TOLERANCE_MM
        and spacing_distance(image.GetDirection(), reference.GetDirection()) < 1e-4
    )


def resample_like(image: sitk.Image, reference: sitk.Image, *, nearest: bool = False) -> sitk.Image:
    """Resample onto the reference grid (identity transform)."""
    resampler = sitk.ResampleImageFilter()
    resampler.SetReferenceImage(reference)
    resampler.SetInterpolator(sitk.sitkNearestNeighbor if nearest else sitk.sitkLinear)
    resampler.SetDefaultPixelValue(0)
    resampler.SetOutputPixelType(image.GetPixelID())
    return resampler.Execute(image)


def ensure_mask_on_grid(mask: sitk.Image, reference: sitk.Image) -> sitk.Image:
    """Return a UINT8 mask on the reference grid, resampling nearest-neighbour if needed."""
    if not same_grid(mask, reference):
        mask = resample_like(mask, reference, nearest=True)
    mask = sitk.Cast(mask, sitk.sitkUInt8)
    mask.CopyInformation(reference)
    return mask

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Tuple

import numpy as np
import SimpleITK as sitk
from scipy.stats import pearsonr

from BrainstemPipeline.errors import DataMissingError
from BrainstemPipeline.spaces import resample_like, same_grid


MI_BINS = 256


class QualityBand(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    ACCEPTABLE = "ACCEPTABLE"
    POOR = "POOR"

    @property
    def rank(self) -> int:
        return _BAND_RANK[self]


_BAND_RANK = {
    QualityBand.POOR: 0,
    QualityBand.ACCEPTABLE: 1,
    QualityBand.GOOD: 2,
    QualityBand.EXCELLENT: 3,
}

# Strict lower bounds on the cross-correlation, best band first.
BAND_THRESHOLDS: Tuple[Tuple[float, QualityBand], ...] = (
    (0.7, QualityBand.EXCELLENT),
    (0.5, QualityBand.GOOD),
    (0.3, QualityBand.ACCEPTABLE),
)


def band_for(cross_correlation: float) -> QualityBand:
    for threshold, band in BAND_THRESHOLDS:
        if cross_correlation > threshold:
            return band
    return QualityBand.POOR


@dataclass(frozen=True)
class QualityReport:
    mean_abs_diff: float
    std_abs_diff: float
    max_abs_diff: float
    mutual_information: float
    cross_correlation: float
    band: QualityBand

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["band"] = self.band.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "QualityReport":
        return cls(
            mean_abs_diff=float(data["mean_abs_diff"]),
            std_abs_diff=float(data["std_abs_diff"]),
            max_abs_diff=float(data["max_abs_diff"]),
            mutual_information=float(data["mutual_information"]),
            cross_correlation=float(data["cross_correlation"]),
            band=QualityBand(data["band"]),
        )


def normalize_to_unit_mean(values: np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    mean = float(arr.mean()) if arr.size else 0.0
    if not np.isfinite(mean) or abs(mean) < 1e-12:
        raise ValueError("cannot normalize an image whose mean intensity is zero")
    return arr / mean


def mutual_information(a: np.ndarray, b: np.ndarray, bins: int = MI_BINS) -> float:
    """Mutual information (nats) from a joint histogram of `bins` x `bins`."""
    joint, _, _ = np.histogram2d(np.ravel(a), np.ravel(b), bins=bins)
    total = joint.sum()
    if total <= 0:
        return 0.0
    pxy = joint / total
    px = pxy.sum(axis=1, keepdims=True)
    py = pxy.sum(axis=0, keepdims=True)
    nz = pxy > 0
    return float(np.sum(pxy[nz] * np.log(pxy[nz] / (px @ py)[nz])))


def cross_correlation(a: np.ndarray, b: np.ndarray) -> float:
    a1 = np.ravel(a).astype(np.float64)
    b1 = np.ravel(b).astype(np.float64)
    # pearsonr is undefined for constant input
    if a1.size < 2 or np.ptp(a1) == 0 or np.ptp(b1) == 0:
        return 0.0
    return float(pearsonr(a1, b1)[0])


def score_arrays(fixed: np.ndarray, moving: np.ndarray) -> QualityReport:
    """Score alignment of two same-shape arrays. Never retries or modifies inputs."""
    if np.shape(fixed) != np.shape(moving):
        raise ValueError(f"shape mismatch: {np.shape(fixed)} vs {np.shape(moving)}")
    cc = cross_correlation(fixed, moving)
    try:
        diff = np.abs(normalize_to_unit_mean(fixed) - normalize_to_unit_mean(moving))
        mean_diff, std_diff, max_diff = float(diff.mean()), float(diff.std()), float(diff.max())
    except ValueError:
        # e.g. moving image warped entirely out of the field of view
        mean_diff = std_diff = max_diff = float("nan")
    return QualityReport(
        mean_abs_diff=mean_diff,
        std_abs_diff=std_diff,
        max_abs_diff=max_diff,
        mutual_information=mutual_information(fixed, moving),
        cross_correlation=cc,
        band=band_for(cc),
    )


def score_images(fixed: sitk.Image, moving: sitk.Image) -> QualityReport:
    fixed_f = sitk.Cast(fixed, sitk.sitkFloat32)
    moving_f = sitk.Cast(moving, sitk.sitkFloat32)
    if not same_grid(moving_f, fixed_f):
        moving_f = resample_like(moving_f, fixed_f)
    return score_arrays(sitk.GetArrayFromImage(fixed_f), sitk.GetArrayFromImage(moving_f))


def score(fixed_path: Path, moving_path: Path) -> QualityReport:
    for path in (fixed_path, moving_path):
        if not Path(path).is_file():
            raise DataMissingError("image to score does not exist", path=path)
    return score_images(sitk.ReadImage(str(fixed_path)), sitk.ReadImage(str(moving_path)))


def format_quality_report(report: QualityReport, fixed_path: Path, moving_path: Path) -> str:
    lines = [
        "Registration Quality Assessment",
        "==============================",
        f"Fixed:  {fixed_path}",
        f"Moving: {moving_path}",
        "",
        f"Mean Absolute Difference: {report.mean_abs_diff:.6f}",
        f"Standard Deviation of Difference: {report.std_abs_diff:.6f}",
        f"Maximum Absolute Difference: {report.max_abs_diff:.6f}",
        f"Mutual Information: {report.mutual_information:.6f}",
        f"Cross-Correlation: {report.cross_correlation:.6f}",
        "",
        f"Overall Quality: {report.band.value}",
    ]
    return "\n".join(lines) + "\n"


def write_quality_report(report: QualityReport, fixed_path: Path, moving_path: Path, output_dir: Path) -> Path:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    (output_dir / "registration_quality_report.txt").write_text(
        format_quality_report(report, fixed_path, moving_path), encoding="utf-8"
    )
    json_path = output_dir / "registration_quality.json"
    with open(json_path, "w", encoding="utf-8") as handle:
        json.dump(report.to_dict(), handle, indent=2)
    return json_path


def load_quality_report(path: Path) -> QualityReport:
    with open(path, "r", encoding="utf-8") as handle:
        return QualityReport.from_dict(json.load(handle))

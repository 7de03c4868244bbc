from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import SimpleITK as sitk

from BrainstemPipeline.errors import DataMissingError, ValidationFailureError
from BrainstemPipeline.spaces import ensure_mask_on_grid, same_grid


@dataclass(frozen=True)
class Cluster:
    label: int
    voxels: int
    volume_mm3: float
    centroid: Tuple[float, ...]


@dataclass(frozen=True)
class RegionStats:
    reference_mean: float
    reference_std: float
    threshold: float
    hyperintensity_voxels: int
    roi_voxels: int
    percentage_of_region: float
    clusters: Tuple[Cluster, ...] = field(default_factory=tuple)

    @property
    def largest_cluster(self) -> Optional[Cluster]:
        return self.clusters[0] if self.clusters else None

    def summary(self) -> Dict:
        largest = self.largest_cluster
        return {
            "roi_voxels": self.roi_voxels,
            "reference_mean": self.reference_mean,
            "reference_std": self.reference_std,
            "threshold": self.threshold,
            "hyperintensity_voxels": self.hyperintensity_voxels,
            "percentage_of_region": self.percentage_of_region,
            "n_clusters": len(self.clusters),
            "largest_cluster_voxels": largest.voxels if largest else 0,
            "largest_cluster_mm3": largest.volume_mm3 if largest else 0.0,
        }


def reference_region(brain_mask: np.ndarray, roi_mask: np.ndarray) -> np.ndarray:
    """Brain minus ROI, clipped at zero and binarized."""
    diff = np.asarray(brain_mask, dtype=np.float64) - np.asarray(roi_mask, dtype=np.float64)
    return np.clip(diff, 0, None) > 0


def label_clusters(mask: sitk.Image, min_voxels: int = 1) -> Tuple[sitk.Image, Tuple[Cluster, ...]]:
    """Connected components of a binary mask, largest first."""
    mask_u8 = sitk.Cast(mask > 0, sitk.sitkUInt8)
    labeled = sitk.ConnectedComponent(mask_u8)
    relabeled = sitk.RelabelComponent(labeled, minimumObjectSize=int(max(1, min_voxels)), sortByObjectSize=True)
    shape = sitk.LabelShapeStatisticsImageFilter()
    shape.Execute(relabeled)
    clusters = [
        Cluster(
            label=int(label),
            voxels=int(shape.GetNumberOfPixels(label)),
            volume_mm3=float(shape.GetPhysicalSize(label)),
            centroid=tuple(float(v) for v in shape.GetCentroid(label)),
        )
        for label in shape.GetLabels()
    ]
    clusters.sort(key=lambda c: (-c.voxels, c.label))
    return relabeled, tuple(clusters)


def detect_hyperintensities(
    intensity: sitk.Image,
    roi_mask: sitk.Image,
    threshold_sd: float,
    *,
    brain_mask: Optional[sitk.Image] = None,
    min_cluster_voxels: int = 1,
) -> Tuple[RegionStats, sitk.Image]:
    """Threshold ROI voxels against mean + threshold_sd * std of the reference region.

    The reference region is the brain mask minus the ROI. Without an explicit
    brain mask every non-zero intensity voxel counts as brain.
    """
    image_f = sitk.Cast(intensity, sitk.sitkFloat32)
    values = sitk.GetArrayFromImage(image_f).astype(np.float64)
    roi = sitk.GetArrayFromImage(ensure_mask_on_grid(roi_mask, image_f)) > 0
    if brain_mask is None:
        brain = values != 0
    else:
        brain = sitk.GetArrayFromImage(ensure_mask_on_grid(brain_mask, image_f)) > 0

    reference = reference_region(brain, roi)
    if not reference.any():
        raise ValidationFailureError("reference region (brain minus ROI) is empty")

    ref_values = values[reference]
    ref_mean = float(ref_values.mean())
    ref_std = float(ref_values.std())
    threshold = ref_mean + float(threshold_sd) * ref_std

    hyper = (values > threshold) & roi
    hyper_img = sitk.GetImageFromArray(hyper.astype(np.uint8))
    hyper_img.CopyInformation(image_f)

    roi_voxels = int(roi.sum())
    hyper_voxels = int(hyper.sum())
    percentage = 100.0 * hyper_voxels / roi_voxels if roi_voxels else 0.0

    clusters: Tuple[Cluster, ...] = ()
    if hyper_voxels:
        _, clusters = label_clusters(hyper_img, min_voxels=min_cluster_voxels)

    stats = RegionStats(
        reference_mean=ref_mean,
        reference_std=ref_std,
        threshold=threshold,
        hyperintensity_voxels=hyper_voxels,
        roi_voxels=roi_voxels,
        percentage_of_region=percentage,
        clusters=clusters,
    )
    return stats, hyper_img


def analyze(
    intensity: sitk.Image,
    roi_mask: sitk.Image,
    threshold_sd: float,
    brain_mask: Optional[sitk.Image] = None,
) -> RegionStats:
    stats, _ = detect_hyperintensities(intensity, roi_mask, threshold_sd, brain_mask=brain_mask)
    return stats


def threshold_tag(threshold_sd: float) -> str:
    return f"thresh{threshold_sd:g}"


def _write_clusters_csv(stats: RegionStats, path: Path) -> None:
    rows = [
        {
            "Rank": rank,
            "Voxels": c.voxels,
            "VolumeMM3": round(c.volume_mm3, 3),
            "CentroidX": round(c.centroid[0], 3),
            "CentroidY": round(c.centroid[1], 3),
            "CentroidZ": round(c.centroid[2], 3) if len(c.centroid) > 2 else 0.0,
        }
        for rank, c in enumerate(stats.clusters, start=1)
    ]
    columns = ["Rank", "Voxels", "VolumeMM3", "CentroidX", "CentroidY", "CentroidZ"]
    pd.DataFrame(rows, columns=columns).to_csv(path, index=False)


def _region_report(region: str, stats: RegionStats, threshold_sd: float) -> str:
    largest = stats.largest_cluster
    lines = [
        f"Hyperintensity analysis: {region}",
        f"Threshold: mean + {threshold_sd:g} x SD",
        f"Reference mean: {stats.reference_mean:.4f}",
        f"Reference SD: {stats.reference_std:.4f}",
        f"Threshold value: {stats.threshold:.4f}",
        f"ROI voxels: {stats.roi_voxels}",
        f"Hyperintense voxels: {stats.hyperintensity_voxels}",
        f"Percentage of region: {stats.percentage_of_region:.2f}%",
        f"Clusters: {len(stats.clusters)}",
        f"Largest cluster: {largest.voxels if largest else 0} voxels",
    ]
    return "\n".join(lines) + "\n"


def analyze_regions(
    intensity_path: Path,
    masks: Dict[str, Path],
    *,
    threshold_sd: float,
    output_dir: Path,
    subject_id: str,
    brain_mask_path: Optional[Path] = None,
    min_cluster_voxels: int = 1,
) -> Dict[str, RegionStats]:
    """Run the analyzer once per region mask and tabulate the results.

    Writes per region a binary hyperintensity mask, a cluster table and a text
    report, plus `<subject>_region_comparison.csv` across regions.
    """
    intensity_path = Path(intensity_path)
    if not intensity_path.is_file():
        raise DataMissingError("intensity image for region analysis not found", path=intensity_path)
    intensity = sitk.ReadImage(str(intensity_path))
    brain_mask = sitk.ReadImage(str(brain_mask_path)) if brain_mask_path is not None else None
    output_dir = Path(output_dir)
    tag = threshold_tag(threshold_sd)

    results: Dict[str, RegionStats] = {}
    for region, mask_path in masks.items():
        mask = sitk.ReadImage(str(mask_path))
        if not same_grid(mask, intensity):
            print(f"[regions] {subject_id}: resampling {Path(mask_path).name} onto {intensity_path.name}")
        try:
            stats, hyper = detect_hyperintensities(
                intensity,
                mask,
                threshold_sd,
                brain_mask=brain_mask,
                min_cluster_voxels=min_cluster_voxels,
            )
        except ValidationFailureError as exc:
            print(f"[regions] {subject_id}: {exc.describe()} ({mask_path})")
            continue

        region_dir = output_dir / region
        region_dir.mkdir(parents=True, exist_ok=True)
        sitk.WriteImage(hyper, str(region_dir / f"{subject_id}_{region}_{tag}_bin.nii.gz"), True)
        _write_clusters_csv(stats, region_dir / f"{subject_id}_{region}_clusters.csv")
        (region_dir / f"{subject_id}_{region}_report.txt").write_text(
            _region_report(region, stats, threshold_sd), encoding="utf-8"
        )
        results[region] = stats

    write_region_comparison(results, output_dir / f"{subject_id}_region_comparison.csv")
    return results


def region_table(results: Dict[str, RegionStats]) -> pd.DataFrame:
    rows: List[Dict] = [{"Region": region, **stats.summary()} for region, stats in results.items()]
    columns = ["Region"] + list(RegionStats(0.0, 0.0, 0.0, 0, 0, 0.0).summary().keys())
    return pd.DataFrame(rows, columns=columns)


def write_region_comparison(results: Dict[str, RegionStats], path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    region_table(results).to_csv(path, index=False)
    return path


def write_analysis_json(results: Dict[str, RegionStats], threshold_sd: float, path: Path) -> Path:
    payload = {
        "threshold_sd": threshold_sd,
        "regions": {region: stats.summary() for region, stats in results.items()},
    }
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)
    return path


def load_analysis_json(path: Path) -> Dict:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)

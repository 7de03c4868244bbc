from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import SimpleITK as sitk  # noqa: E402

from BrainstemPipeline.spaces import ensure_mask_on_grid, resample_like, same_grid  # noqa: E402


def _norm(arr: np.ndarray) -> np.ndarray:
    arr = np.nan_to_num(arr.astype(np.float32))
    lo, hi = np.percentile(arr, [1.0, 99.0]) if arr.size else (0.0, 1.0)
    if hi <= lo:
        return np.zeros_like(arr)
    return np.clip((arr - lo) / (hi - lo), 0.0, 1.0)


def _pick_slice(mask: Optional[np.ndarray], depth: int) -> int:
    """Axial slice with the most mask voxels, else the middle slice."""
    if mask is not None and mask.any():
        return int(np.argmax(mask.reshape(depth, -1).sum(axis=1)))
    return depth // 2


def _save_overlay(background: np.ndarray, overlay: Optional[np.ndarray], out_path: Path, title: str, *, cmap: str, alpha: float) -> Path:
    fig, ax = plt.subplots(figsize=(6, 6))
    ax.imshow(_norm(background), cmap="gray", origin="lower")
    if overlay is not None and np.any(overlay > 0):
        ax.imshow(np.ma.masked_where(overlay <= 0, overlay), cmap=cmap, origin="lower", alpha=alpha)
    ax.set_title(title)
    ax.axis("off")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=100, bbox_inches="tight")
    plt.close(fig)
    return out_path


def write_registration_overlay(fixed_path: Path, moving_path: Path, out_path: Path, title: str = "") -> Path:
    """Mid-slice of the moving image blended over the fixed image."""
    fixed = sitk.Cast(sitk.ReadImage(str(fixed_path)), sitk.sitkFloat32)
    moving = sitk.Cast(sitk.ReadImage(str(moving_path)), sitk.sitkFloat32)
    if not same_grid(moving, fixed):
        moving = resample_like(moving, fixed)
    fixed_arr = sitk.GetArrayFromImage(fixed)
    moving_arr = _norm(sitk.GetArrayFromImage(moving))
    z = _pick_slice(None, fixed_arr.shape[0])
    return _save_overlay(fixed_arr[z], moving_arr[z], Path(out_path), title or "registration check", cmap="hot", alpha=0.4)


def write_mask_overlay(intensity_path: Path, mask_path: Path, out_path: Path, title: str = "") -> Path:
    intensity = sitk.Cast(sitk.ReadImage(str(intensity_path)), sitk.sitkFloat32)
    mask = ensure_mask_on_grid(sitk.ReadImage(str(mask_path)), intensity)
    background = sitk.GetArrayFromImage(intensity)
    mask_arr = sitk.GetArrayFromImage(mask) > 0
    z = _pick_slice(mask_arr, background.shape[0])
    return _save_overlay(background[z], mask_arr[z].astype(np.float32), Path(out_path), title, cmap="autumn", alpha=0.7)


def write_region_overlays(intensity_path: Path, masks: Dict[str, Path], output_dir: Path, subject_id: str) -> List[Path]:
    written: List[Path] = []
    for region, mask_path in masks.items():
        out_path = Path(output_dir) / f"{subject_id}_{region}_overlay.png"
        written.append(write_mask_overlay(intensity_path, mask_path, out_path, title=f"{subject_id} {region}"))
    return written

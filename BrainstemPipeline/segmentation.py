from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import SimpleITK as sitk

from BrainstemPipeline.registration import register_affine, resample_with_transform


def warp_mask(mask: sitk.Image, reference: sitk.Image, transform: sitk.Transform) -> sitk.Image:
    """Nearest-neighbour warp of a template-space mask onto the subject grid."""
    binary = sitk.Cast(mask > 0, sitk.sitkUInt8)
    return resample_with_transform(
        binary,
        reference,
        transform,
        interpolator=sitk.sitkNearestNeighbor,
        pixel_type=sitk.sitkUInt8,
    )


def _physical_coordinates(image: sitk.Image, zyx_indices: Tuple[np.ndarray, ...]) -> np.ndarray:
    """Physical (x, y, z) points for voxels given as numpy (z, y, x) index arrays."""
    xyz = np.stack([zyx_indices[2], zyx_indices[1], zyx_indices[0]], axis=0).astype(np.float64)
    spacing = np.asarray(image.GetSpacing(), dtype=np.float64)[:, None]
    direction = np.asarray(image.GetDirection(), dtype=np.float64).reshape(3, 3)
    origin = np.asarray(image.GetOrigin(), dtype=np.float64)[:, None]
    return origin + direction @ (xyz * spacing)


def _from_array(arr: np.ndarray, reference: sitk.Image) -> sitk.Image:
    out = sitk.GetImageFromArray(arr.astype(np.uint8))
    out.CopyInformation(reference)
    return out


def pons_from_brainstem(brainstem: sitk.Image) -> sitk.Image:
    """Approximate the pons as the middle third of the brainstem along the superior-inferior axis."""
    arr = sitk.GetArrayFromImage(brainstem) > 0
    idx = np.nonzero(arr)
    out = np.zeros(arr.shape, dtype=np.uint8)
    if idx[0].size == 0:
        return _from_array(out, brainstem)
    z = _physical_coordinates(brainstem, idx)[2]
    lo, hi = float(z.min()), float(z.max())
    third = (hi - lo) / 3.0
    keep = (z >= lo + third) & (z <= hi - third)
    if not keep.any():
        keep = np.ones_like(z, dtype=bool)
    out[tuple(axis[keep] for axis in idx)] = 1
    return _from_array(out, brainstem)


def split_pons(pons: sitk.Image) -> Tuple[sitk.Image, sitk.Image]:
    """Split the pons at its median anterior-posterior coordinate.

    Returns (dorsal, ventral). In LPS physical space larger y is posterior, so
    voxels behind the median are dorsal.
    """
    arr = sitk.GetArrayFromImage(pons) > 0
    idx = np.nonzero(arr)
    dorsal = np.zeros(arr.shape, dtype=np.uint8)
    ventral = np.zeros(arr.shape, dtype=np.uint8)
    if idx[0].size:
        y = _physical_coordinates(pons, idx)[1]
        median = float(np.median(y))
        posterior = y > median
        dorsal[tuple(axis[posterior] for axis in idx)] = 1
        ventral[tuple(axis[~posterior] for axis in idx)] = 1
    return _from_array(dorsal, pons), _from_array(ventral, pons)


def segment_brainstem(
    t1: sitk.Image,
    template: sitk.Image,
    brainstem_atlas: sitk.Image,
    pons_atlas: Optional[sitk.Image] = None,
    **registration_params,
) -> Dict[str, sitk.Image]:
    """Atlas segmentation: register the template to T1 and carry its masks across."""
    transform = register_affine(
        sitk.Cast(t1, sitk.sitkFloat32),
        sitk.Cast(template, sitk.sitkFloat32),
        **registration_params,
    )
    brainstem = warp_mask(brainstem_atlas, t1, transform)
    if pons_atlas is not None:
        pons = warp_mask(pons_atlas, t1, transform)
    else:
        pons = pons_from_brainstem(brainstem)
    dorsal, ventral = split_pons(pons)
    return {
        "brainstem": brainstem,
        "pons": pons,
        "dorsal_pons": dorsal,
        "ventral_pons": ventral,
    }


def segment_brainstem_op(inputs: Sequence[Path], outputs: Sequence[Path], **params) -> List[Path]:
    """inputs: (t1, template, brainstem atlas[, pons atlas]); outputs: brainstem, pons, dorsal, ventral."""
    t1 = sitk.ReadImage(str(inputs[0]))
    template = sitk.ReadImage(str(inputs[1]))
    brainstem_atlas = sitk.ReadImage(str(inputs[2]))
    pons_atlas = sitk.ReadImage(str(inputs[3])) if len(inputs) > 3 and inputs[3] else None
    masks = segment_brainstem(t1, template, brainstem_atlas, pons_atlas, **params)
    written: List[Path] = []
    for region, out_path in zip(("brainstem", "pons", "dorsal_pons", "ventral_pons"), outputs):
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        sitk.WriteImage(masks[region], str(out_path), True)
        written.append(out_path)
    return written

from __future__ import annotations

from pathlib import Path
from typing import List, Sequence, Tuple

import numpy as np
import SimpleITK as sitk


def _ones_mask_like(image: sitk.Image) -> sitk.Image:
    ones = sitk.Image(image.GetSize(), sitk.sitkUInt8) + 1
    ones.CopyInformation(image)
    return ones


def largest_component(mask: sitk.Image) -> sitk.Image:
    """Keep only the largest connected component of a binary mask."""
    labeled = sitk.ConnectedComponent(sitk.Cast(mask, sitk.sitkUInt8))
    relabeled = sitk.RelabelComponent(labeled, sortByObjectSize=True)
    largest = sitk.BinaryThreshold(relabeled, lowerThreshold=1, upperThreshold=1, insideValue=1, outsideValue=0)
    largest.CopyInformation(mask)
    return largest


def foreground_mask(image: sitk.Image, closing_radius: int = 2) -> sitk.Image:
    """Otsu foreground with holes filled; an all-ones mask when Otsu finds nothing."""
    image_f = sitk.Cast(image, sitk.sitkFloat32)
    mask = sitk.OtsuThreshold(image_f, 0, 1, 128)
    mask = sitk.Cast(mask, sitk.sitkUInt8)
    mask = sitk.BinaryFillhole(mask)
    if closing_radius > 0:
        mask = sitk.BinaryMorphologicalClosing(mask, [int(closing_radius)] * 3)
    if int(sitk.GetArrayViewFromImage(mask).sum()) == 0:
        return _ones_mask_like(image)
    mask.CopyInformation(image)
    return mask


def extract_brain(image: sitk.Image, *, closing_radius: int = 2, erosion_radius: int = 0) -> Tuple[sitk.Image, sitk.Image]:
    """Return (brain, mask): foreground threshold, largest component, holes filled.

    The brain keeps the input intensities as FLOAT32; the mask is UINT8.
    """
    mask = largest_component(foreground_mask(image, closing_radius=closing_radius))
    mask = sitk.BinaryFillhole(sitk.Cast(mask, sitk.sitkUInt8))
    if erosion_radius > 0:
        mask = sitk.BinaryErode(mask, [int(erosion_radius)] * 3)
    mask = sitk.Cast(mask, sitk.sitkUInt8)
    mask.CopyInformation(image)

    image_f = sitk.Cast(image, sitk.sitkFloat32)
    arr = sitk.GetArrayFromImage(image_f) * sitk.GetArrayViewFromImage(mask).astype(np.float32)
    brain = sitk.GetImageFromArray(arr.astype(np.float32))
    brain.CopyInformation(image)
    return brain, mask


def brain_extract_op(inputs: Sequence[Path], outputs: Sequence[Path], closing_radius: int = 2, erosion_radius: int = 0) -> List[Path]:
    image = sitk.ReadImage(str(inputs[0]))
    brain, mask = extract_brain(image, closing_radius=closing_radius, erosion_radius=erosion_radius)
    brain_path, mask_path = Path(outputs[0]), Path(outputs[1])
    brain_path.parent.mkdir(parents=True, exist_ok=True)
    sitk.WriteImage(brain, str(brain_path), True)
    sitk.WriteImage(mask, str(mask_path), True)
    return [brain_path, mask_path]

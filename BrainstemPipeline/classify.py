from __future__ import annotations

import re
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import SimpleITK as sitk

from BrainstemPipeline.errors import DataMissingError


class Encoding(str, Enum):
    UINT8 = "UINT8"
    INT16 = "INT16"
    INT32 = "INT32"
    FLOAT32 = "FLOAT32"
    FLOAT64 = "FLOAT64"
    OTHER = "OTHER"

    @property
    def is_float(self) -> bool:
        return self in (Encoding.FLOAT32, Encoding.FLOAT64)


class ImageClass(str, Enum):
    MASK = "mask"
    INTENSITY = "intensity"
    UNKNOWN = "unknown"


_SITK_TO_ENCODING = {
    sitk.sitkUInt8: Encoding.UINT8,
    sitk.sitkInt16: Encoding.INT16,
    sitk.sitkInt32: Encoding.INT32,
    sitk.sitkFloat32: Encoding.FLOAT32,
    sitk.sitkFloat64: Encoding.FLOAT64,
}
_ENCODING_TO_SITK = {enc: pixel_id for pixel_id, enc in _SITK_TO_ENCODING.items()}

MASK_TOKENS = re.compile(r"(mask|bin|binary|brain_mask|seg|label)", re.IGNORECASE)
MODALITY_TOKENS = re.compile(r"(T1|MPRAGE|FLAIR|T2|DWI|SWI|EPI|_brain)", re.IGNORECASE)
BRAIN_EXTRACTION_AUX = re.compile(r"(Mask|Template|Prior|BrainFace|CSF)")

MASK_RANGE_TOLERANCE = 1.01
LABEL_MIN = -0.01
LABEL_MAX = 5.01
HISTOGRAM_BINS = 10
MAX_LABEL_BINS = 7


def encoding_from_pixel_id(pixel_id: int) -> Encoding:
    return _SITK_TO_ENCODING.get(pixel_id, Encoding.OTHER)


def encoding_of(image: sitk.Image) -> Encoding:
    return encoding_from_pixel_id(image.GetPixelID())


def sitk_pixel_type(encoding: Encoding) -> int:
    if encoding not in _ENCODING_TO_SITK:
        raise ValueError(f"No SimpleITK pixel type for encoding {encoding.value}")
    return _ENCODING_TO_SITK[encoding]


@dataclass(frozen=True)
class Classification:
    image_class: ImageClass
    target_encoding: Encoding
    confidence: float
    reason: str


def _has_modality_override(name: str) -> bool:
    if "BrainExtraction" in name and not BRAIN_EXTRACTION_AUX.search(name):
        return True
    return bool(MODALITY_TOKENS.search(name)) and not MASK_TOKENS.search(name)


def _stats_say_mask(values: np.ndarray) -> Tuple[bool, float, str]:
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        return False, 0.5, "no finite voxels"
    vmin = float(finite.min())
    vmax = float(finite.max())
    if vmax - vmin <= MASK_RANGE_TOLERANCE:
        return True, 0.9, f"binary range [{vmin:g}, {vmax:g}]"
    if vmin >= LABEL_MIN and vmax <= LABEL_MAX:
        counts, _ = np.histogram(finite, bins=HISTOGRAM_BINS, range=(vmin, vmax))
        populated = int(np.count_nonzero(counts))
        if populated < MAX_LABEL_BINS:
            return True, 0.7, f"{populated} populated histogram bins"
        return False, 0.6, f"{populated} populated histogram bins"
    return False, 0.6, f"range [{vmin:g}, {vmax:g}] exceeds label range"


def target_encoding_for(image_class: ImageClass, current: Encoding, name: str) -> Encoding:
    if image_class == ImageClass.MASK:
        return Encoding.UINT8
    if image_class == ImageClass.UNKNOWN:
        return current
    if current.is_float:
        return current
    if MODALITY_TOKENS.search(name):
        return Encoding.FLOAT32
    return Encoding.INT16


def classify_array(name: str, values: Optional[np.ndarray], current: Encoding) -> Classification:
    """Classify from a filename and (optionally) the voxel values.

    Order of the cascade: mask keywords decide the tentative class; a tentative
    mask is confirmed or rejected from intensity statistics; modality tokens
    without a mask token always mean intensity.
    """
    if MASK_TOKENS.search(name):
        image_class, confidence, reason = ImageClass.MASK, 0.5, "mask token in filename"
        if values is not None:
            is_mask, confidence, reason = _stats_say_mask(np.asarray(values))
            image_class = ImageClass.MASK if is_mask else ImageClass.INTENSITY
    else:
        image_class, confidence, reason = ImageClass.INTENSITY, 0.5, "no mask token in filename"

    if _has_modality_override(name):
        image_class, confidence, reason = ImageClass.INTENSITY, 1.0, "modality token in filename"

    return Classification(image_class, target_encoding_for(image_class, current, name), confidence, reason)


def classify(path: Path) -> Classification:
    path = Path(path)
    if not path.is_file():
        raise DataMissingError("image to classify does not exist", path=path)
    image = sitk.ReadImage(str(path))
    values = sitk.GetArrayViewFromImage(image)
    return classify_array(path.name, values, encoding_of(image))


def convert_encoding(image: sitk.Image, target: Encoding) -> sitk.Image:
    """Cast `image` to `target`; masks are rounded and clipped to [0, 255]."""
    if target == Encoding.UINT8:
        arr = sitk.GetArrayFromImage(image).astype(np.float64)
        arr = np.clip(np.rint(np.nan_to_num(arr)), 0, 255).astype(np.uint8)
        out = sitk.GetImageFromArray(arr)
        out.CopyInformation(image)
        return out
    return sitk.Cast(image, sitk_pixel_type(target))


def standardize_image_format(
    input_path: Path,
    output_path: Path,
    target: Optional[Encoding] = None,
) -> Tuple[Path, Classification, bool]:
    """Write `input_path` to `output_path` in its target encoding.

    Returns (output_path, classification, converted). When the encoding already
    matches the file is copied unchanged.
    """
    input_path = Path(input_path)
    output_path = Path(output_path)
    image = sitk.ReadImage(str(input_path))
    current = encoding_of(image)
    result = classify_array(input_path.name, sitk.GetArrayViewFromImage(image), current)
    wanted = target or result.target_encoding
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if wanted == current:
        if output_path.resolve() != input_path.resolve():
            shutil.copyfile(input_path, output_path)
        return output_path, result, False
    print(f"[classify] {input_path.name}: {current.value} -> {wanted.value} ({result.image_class.value})")
    sitk.WriteImage(convert_encoding(image, wanted), str(output_path), True)
    return output_path, result, True

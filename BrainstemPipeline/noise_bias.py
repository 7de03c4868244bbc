from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import SimpleITK as sitk

from BrainstemPipeline.brain_mask import foreground_mask
from BrainstemPipeline.spaces import ensure_mask_on_grid


def estimate_log_bias_field_n4(
    image: sitk.Image,
    *,
    mask: sitk.Image,
    shrink_factor: int,
    max_iterations: Iterable[int],
    convergence_threshold: float,
) -> sitk.Image:
    """Estimate the log bias field with N4 on a shrunken copy.

    Returns a log-bias-field image defined on the input `image` geometry.
    """
    image_f = sitk.Cast(image, sitk.sitkFloat32)
    mask_u8 = ensure_mask_on_grid(mask, image_f)
    if shrink_factor > 1:
        factors = [int(shrink_factor)] * image_f.GetDimension()
        image_small = sitk.Shrink(image_f, factors)
        mask_small = sitk.Shrink(mask_u8, factors)
    else:
        image_small = image_f
        mask_small = mask_u8

    n4 = sitk.N4BiasFieldCorrectionImageFilter()
    n4.SetMaximumNumberOfIterations([int(v) for v in max_iterations])
    n4.SetConvergenceThreshold(float(convergence_threshold))
    n4.Execute(image_small, mask_small)
    log_field = n4.GetLogBiasFieldAsImage(image_f)
    log_field.CopyInformation(image_f)
    return log_field


def apply_log_bias_field(image: sitk.Image, log_bias_field: sitk.Image) -> sitk.Image:
    """Bias-correct via division by exp(field)."""
    image_f = sitk.Cast(image, sitk.sitkFloat32)
    field = sitk.Cast(log_bias_field, sitk.sitkFloat32)
    corrected = sitk.Divide(image_f, sitk.Exp(field))
    corrected.CopyInformation(image)
    return corrected


def n4_bias_correct(
    image: sitk.Image,
    *,
    mask: Optional[sitk.Image] = None,
    shrink_factor: int = 3,
    max_iterations: Iterable[int] = (50, 50, 30),
    convergence_threshold: float = 1e-5,
) -> sitk.Image:
    if mask is None:
        mask = foreground_mask(image)
    log_field = estimate_log_bias_field_n4(
        image,
        mask=mask,
        shrink_factor=shrink_factor,
        max_iterations=max_iterations,
        convergence_threshold=convergence_threshold,
    )
    return apply_log_bias_field(image, log_field)


def bias_correct_op(
    inputs: Sequence[Path],
    outputs: Sequence[Path],
    shrink_factor: int = 3,
    max_iterations: Iterable[int] = (50, 50, 30),
    convergence_threshold: float = 1e-5,
) -> List[Path]:
    image = sitk.ReadImage(str(inputs[0]))
    corrected = n4_bias_correct(
        image,
        shrink_factor=int(shrink_factor),
        max_iterations=max_iterations,
        convergence_threshold=float(convergence_threshold),
    )
    out_path = Path(outputs[0])
    out_path.parent.mkdir(parents=True, exist_ok=True)
    sitk.WriteImage(corrected, str(out_path), True)
    return [out_path]

from __future__ import annotations

import math
from pathlib import Path

import numpy as np
import SimpleITK as sitk

from BrainstemPipeline.brain_mask import brain_extract_op, extract_brain
from BrainstemPipeline.noise_bias import apply_log_bias_field
from BrainstemPipeline.registration import (
    apply_transform_op,
    register_linear_op,
    resample_to_spacing,
    standardize_dimensions_op,
)


def _sphere(size: int = 24, radius: float = 7.0, center=None) -> np.ndarray:
    c = np.asarray(center if center is not None else (size / 2.0,) * 3)
    zz, yy, xx = np.indices((size, size, size)).astype(np.float64)
    dist = np.sqrt((zz - c[0]) ** 2 + (yy - c[1]) ** 2 + (xx - c[2]) ** 2)
    return np.where(dist <= radius, 200.0, 5.0).astype(np.float32)


def _blob(size: int = 32, shift: float = 0.0) -> np.ndarray:
    zz, yy, xx = np.indices((size, size, size)).astype(np.float64)
    c = size / 2.0
    return (1000.0 * np.exp(-(((zz - c) ** 2) + (yy - c) ** 2 + (xx - c - shift) ** 2) / (2 * 5.0 ** 2))).astype(np.float32)


def test_extract_brain_keeps_largest_foreground_component() -> None:
    arr = _sphere()
    arr[0:2, 0:2, 0:2] = 200.0
    image = sitk.GetImageFromArray(arr)
    brain, mask = extract_brain(image)
    mask_arr = sitk.GetArrayFromImage(mask)
    assert mask.GetPixelID() == sitk.sitkUInt8
    assert brain.GetPixelID() == sitk.sitkFloat32
    assert mask_arr[12, 12, 12] == 1
    assert mask_arr[0, 0, 0] == 0
    assert sitk.GetArrayFromImage(brain)[0, 0, 0] == 0.0


def test_brain_extract_op_writes_brain_and_mask(tmp_path: Path, volume_writer) -> None:
    src = volume_writer(tmp_path / "S1_T1_n4.nii.gz", _sphere())
    brain_path, mask_path = tmp_path / "S1_T1_brain.nii.gz", tmp_path / "S1_T1_brain_mask.nii.gz"
    written = brain_extract_op([src], [brain_path, mask_path])
    assert written == [brain_path, mask_path]
    assert sitk.ReadImage(str(mask_path)).GetPixelID() == sitk.sitkUInt8


def test_apply_log_bias_field_divides_by_exp_field() -> None:
    image = sitk.Image([4, 4, 4], sitk.sitkFloat32) + 10.0
    field = sitk.Image([4, 4, 4], sitk.sitkFloat32) + math.log(2.0)
    field.CopyInformation(image)
    corrected = apply_log_bias_field(image, field)
    assert np.allclose(sitk.GetArrayFromImage(corrected), 5.0)


def test_resample_to_spacing_keeps_extent() -> None:
    image = sitk.Image([10, 10, 20], sitk.sitkFloat32)
    image.SetSpacing((2.0, 2.0, 0.5))
    out = resample_to_spacing(image, spacing_mm=1.0)
    assert out.GetSpacing() == (1.0, 1.0, 1.0)
    assert out.GetSize() == (20, 20, 10)
    assert resample_to_spacing(out, spacing_mm=1.0) is out


def test_standardize_dimensions_op(tmp_path: Path, volume_writer) -> None:
    src = volume_writer(tmp_path / "S1_T1_brain.nii.gz", _sphere(12, 4.0), spacing=(0.5, 0.5, 0.5))
    out = tmp_path / "S1_T1_std.nii.gz"
    standardize_dimensions_op([src], [out], spacing_mm=1.0)
    image = sitk.ReadImage(str(out))
    assert image.GetSize() == (6, 6, 6)
    assert image.GetPixelID() == sitk.sitkFloat32


def test_apply_transform_nearest_writes_uint8(tmp_path: Path, volume_writer, cube) -> None:
    mask = volume_writer(tmp_path / "atlas_mask.nii.gz", cube().astype(np.float32))
    reference = volume_writer(tmp_path / "S1_T1_std.nii.gz", _sphere(8, 3.0))
    tfm = tmp_path / "identity.tfm"
    sitk.WriteTransform(sitk.Euler3DTransform(), str(tfm))
    out = tmp_path / "S1_mask.nii.gz"
    apply_transform_op([mask, reference, tfm], [out], interpolator="nearest")
    image = sitk.ReadImage(str(out))
    assert image.GetPixelID() == sitk.sitkUInt8
    assert int(sitk.GetArrayViewFromImage(image).sum()) == int(cube().sum())


def test_register_linear_op_writes_warped_on_fixed_grid(tmp_path: Path, volume_writer) -> None:
    fixed = volume_writer(tmp_path / "S1_T1_std.nii.gz", _blob())
    moving = volume_writer(tmp_path / "S1_FLAIR_std.nii.gz", _blob(shift=2.0))
    warped, transform = tmp_path / "S1_FLAIR_Warped.nii.gz", tmp_path / "S1_FLAIR_to_T1.tfm"
    register_linear_op(
        [fixed, moving],
        [warped, transform],
        iterations=20,
        sampling_percentage=0.2,
        shrink_factors=(2, 1),
        smoothing_sigmas=(1.0, 0.0),
        registration_spacing_mm=1.0,
    )
    assert warped.exists() and transform.exists()
    assert sitk.ReadImage(str(warped)).GetSize() == sitk.ReadImage(str(fixed)).GetSize()
    sitk.ReadTransform(str(transform))

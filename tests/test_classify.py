from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import SimpleITK as sitk

from BrainstemPipeline.classify import (
    Encoding,
    ImageClass,
    classify,
    classify_array,
    standardize_image_format,
)
from BrainstemPipeline.errors import DataMissingError


def test_binary_range_with_mask_token_is_mask() -> None:
    values = np.array([0.0, 1.0, 1.0, 0.0], dtype=np.float32)
    result = classify_array("S1_brainstem_mask.nii.gz", values, Encoding.FLOAT32)
    assert result.image_class == ImageClass.MASK
    assert result.target_encoding == Encoding.UINT8
    assert result.confidence == pytest.approx(0.9)


def test_small_label_set_with_mask_token_is_mask() -> None:
    values = np.array([0, 1, 2, 3, 4, 5] * 10, dtype=np.int16)
    result = classify_array("S1_seg.nii.gz", values, Encoding.INT16)
    assert result.image_class == ImageClass.MASK


def test_mask_token_with_wide_range_is_intensity() -> None:
    values = np.linspace(0.0, 900.0, 1000)
    result = classify_array("S1_label_weighted.nii.gz", values, Encoding.INT16)
    assert result.image_class == ImageClass.INTENSITY
    assert result.target_encoding == Encoding.INT16


def test_modality_token_without_mask_token_is_intensity() -> None:
    values = np.array([0.0, 1.0], dtype=np.float32)
    result = classify_array("S1_FLAIR.nii.gz", values, Encoding.INT16)
    assert result.image_class == ImageClass.INTENSITY
    assert result.target_encoding == Encoding.FLOAT32
    assert result.confidence == pytest.approx(1.0)


def test_modality_token_is_case_insensitive() -> None:
    result = classify_array("s1_t1_std.nii.gz", None, Encoding.FLOAT32)
    assert result.image_class == ImageClass.INTENSITY
    assert result.target_encoding == Encoding.FLOAT32


def test_brain_mask_keeps_mask_class_despite_brain_token() -> None:
    values = np.array([0, 1], dtype=np.uint8)
    result = classify_array("S1_T1_brain_mask.nii.gz", values, Encoding.UINT8)
    assert result.image_class == ImageClass.MASK


def test_brain_extraction_output_overrides_to_intensity() -> None:
    values = np.array([0.0, 1.0], dtype=np.float32)
    result = classify_array("S1_BrainExtractionBrain.nii.gz", values, Encoding.FLOAT32)
    assert result.image_class == ImageClass.INTENSITY


def test_classify_missing_file(tmp_path: Path) -> None:
    with pytest.raises(DataMissingError):
        classify(tmp_path / "missing_mask.nii.gz")


def test_standardize_image_format_converts_float_mask(tmp_path: Path, volume_writer, cube) -> None:
    src = volume_writer(tmp_path / "S1_pons_mask.nii.gz", cube().astype(np.float32))
    out, result, converted = standardize_image_format(src, tmp_path / "out" / "S1_pons_mask.nii.gz")
    assert converted is True
    assert result.image_class == ImageClass.MASK
    image = sitk.ReadImage(str(out))
    assert image.GetPixelID() == sitk.sitkUInt8
    assert int(sitk.GetArrayFromImage(image).sum()) == int(cube().sum())


def test_standardize_image_format_copies_when_already_target(tmp_path: Path, volume_writer, noisy) -> None:
    src = volume_writer(tmp_path / "S1_T1.nii.gz", noisy())
    out, _, converted = standardize_image_format(src, tmp_path / "copy" / "S1_T1.nii.gz")
    assert converted is False
    assert out.read_bytes() == src.read_bytes()

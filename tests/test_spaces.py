from __future__ import annotations

from pathlib import Path

import numpy as np
import SimpleITK as sitk

from BrainstemPipeline.classify import Encoding
from BrainstemPipeline.spaces import (
    ImageGeometry,
    Recommendation,
    compare,
    ensure_mask_on_grid,
    read_geometry,
    write_space_report,
)


def test_spacing_difference_above_tolerance_requires_registration() -> None:
    a = ImageGeometry((256, 256, 180), (1.0, 1.0, 1.0), Encoding.FLOAT32)
    b = ImageGeometry((256, 256, 180), (1.0, 1.0, 1.02), Encoding.FLOAT32)
    result = compare(a, b)
    assert result.dim_match is True
    assert result.voxel_match is False
    assert result.recommendation == Recommendation.REGISTRATION_REQUIRED
    assert result.registration_required


def test_type_only_mismatch_needs_conversion() -> None:
    a = ImageGeometry((10, 10, 10), (1.0, 1.0, 1.0), Encoding.INT16)
    b = ImageGeometry((10, 10, 10), (1.0, 1.0, 1.005), Encoding.FLOAT32)
    result = compare(a, b)
    assert result.voxel_match is True
    assert result.type_match is False
    assert result.recommendation == Recommendation.CONVERSION_REQUIRED


def test_identical_geometry_is_compatible() -> None:
    a = ImageGeometry((10, 10, 10), (0.5, 0.5, 2.0), Encoding.UINT8)
    assert compare(a, a).recommendation == Recommendation.COMPATIBLE


def test_compare_is_symmetric() -> None:
    geometries = [
        ImageGeometry((256, 256, 180), (1.0, 1.0, 1.0), Encoding.FLOAT32),
        ImageGeometry((256, 256, 180), (1.0, 1.0, 1.02), Encoding.INT16),
        ImageGeometry((192, 256, 256), (1.0, 1.0, 1.0), Encoding.FLOAT32),
        ImageGeometry((256, 256), (1.0, 1.0), Encoding.UINT8),
    ]
    for a in geometries:
        for b in geometries:
            ab, ba = compare(a, b), compare(b, a)
            assert (ab.dim_match, ab.voxel_match, ab.type_match) == (ba.dim_match, ba.voxel_match, ba.type_match)


def test_read_geometry_and_report(tmp_path: Path, volume_writer, noisy) -> None:
    t1 = volume_writer(tmp_path / "S1_T1.nii.gz", noisy((6, 8, 10)), spacing=(1.0, 1.0, 1.0))
    flair = volume_writer(tmp_path / "S1_FLAIR.nii.gz", noisy((6, 8, 10)).astype(np.int16), spacing=(1.0, 1.0, 1.2))
    geometry = read_geometry(t1)
    assert geometry.dims == (10, 8, 6)
    assert geometry.encoding == Encoding.FLOAT32

    report = tmp_path / "validation" / "space_validation_report.txt"
    result = write_space_report(flair, t1, report)
    assert result.recommendation == Recommendation.REGISTRATION_REQUIRED
    text = report.read_text(encoding="utf-8")
    assert "Recommendation: REGISTRATION_REQUIRED" in text
    assert "Datatype:   INT16 vs FLOAT32 -> MISMATCH" in text


def test_ensure_mask_on_grid_resamples_to_reference(cube) -> None:
    reference = sitk.Image([8, 8, 8], sitk.sitkFloat32)
    mask = sitk.GetImageFromArray(cube((4, 4, 4), 1, 3).astype(np.float32))
    mask.SetSpacing((2.0, 2.0, 2.0))
    on_grid = ensure_mask_on_grid(mask, reference)
    assert on_grid.GetSize() == reference.GetSize()
    assert on_grid.GetPixelID() == sitk.sitkUInt8
    assert sitk.GetArrayViewFromImage(on_grid).max() == 1

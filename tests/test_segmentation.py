from __future__ import annotations

from pathlib import Path

import numpy as np
import SimpleITK as sitk

from BrainstemPipeline import segmentation
from BrainstemPipeline.segmentation import pons_from_brainstem, segment_brainstem_op, split_pons


def _mask(arr: np.ndarray) -> sitk.Image:
    return sitk.GetImageFromArray(arr.astype(np.uint8))


def test_split_pons_is_disjoint_and_covers_pons(cube) -> None:
    pons = cube()
    dorsal, ventral = split_pons(_mask(pons))
    d = sitk.GetArrayFromImage(dorsal)
    v = sitk.GetArrayFromImage(ventral)
    assert not np.any(d & v)
    assert np.array_equal(d | v, pons)
    # numpy axis 1 is physical y; larger y (posterior) is dorsal.
    assert d[:, 4, :].sum() == 9
    assert d[:, 2:4, :].sum() == 0
    assert v[:, 2:4, :].sum() == 18


def test_split_empty_pons() -> None:
    dorsal, ventral = split_pons(_mask(np.zeros((4, 4, 4))))
    assert sitk.GetArrayViewFromImage(dorsal).sum() == 0
    assert sitk.GetArrayViewFromImage(ventral).sum() == 0


def test_pons_from_brainstem_keeps_middle_third() -> None:
    arr = np.zeros((9, 4, 4), dtype=np.uint8)
    arr[:, 1:3, 1:3] = 1
    pons = sitk.GetArrayFromImage(pons_from_brainstem(_mask(arr)))
    assert [int(pons[z].sum()) for z in range(9)] == [0, 0, 0, 4, 4, 4, 0, 0, 0]


def test_segment_brainstem_op_writes_four_masks(tmp_path: Path, monkeypatch, volume_writer, noisy, cube) -> None:
    monkeypatch.setattr(segmentation, "register_affine", lambda fixed, moving, **kwargs: sitk.Euler3DTransform())
    t1 = volume_writer(tmp_path / "S1_T1_std.nii.gz", noisy())
    template = volume_writer(tmp_path / "template.nii.gz", noisy(seed=5))
    atlas = volume_writer(tmp_path / "brainstem_atlas.nii.gz", cube((8, 8, 8), 1, 7).astype(np.float32))
    outputs = [
        tmp_path / "seg" / "brainstem" / "S1_brainstem.nii.gz",
        tmp_path / "seg" / "pons" / "S1_pons.nii.gz",
        tmp_path / "seg" / "pons" / "S1_dorsal_pons.nii.gz",
        tmp_path / "seg" / "pons" / "S1_ventral_pons.nii.gz",
    ]
    written = segment_brainstem_op([t1, template, atlas], outputs, iterations=5)
    assert written == outputs
    brainstem, pons, dorsal, ventral = (sitk.ReadImage(str(p)) for p in outputs)
    assert brainstem.GetPixelID() == sitk.sitkUInt8
    assert int(sitk.GetArrayViewFromImage(brainstem).sum()) == 216
    pons_sum = int(sitk.GetArrayViewFromImage(pons).sum())
    assert 0 < pons_sum < 216
    assert int(sitk.GetArrayViewFromImage(dorsal).sum()) + int(sitk.GetArrayViewFromImage(ventral).sum()) == pons_sum

from __future__ import annotations

import json
from pathlib import Path

from BrainstemPipeline.artifacts import ArtifactLocator, InMemoryArtifactRegistry
from BrainstemPipeline.classify import Encoding
from BrainstemPipeline.stages import Stage
from BrainstemPipeline.tracking import progress_record, write_progress
from BrainstemPipeline.verify import verify_stage


ROOT = Path("/out/S1")


def _segmentation_registry(dorsal_encoding: Encoding) -> InMemoryArtifactRegistry:
    return InMemoryArtifactRegistry(
        encodings={
            ROOT / "segmentation/brainstem/S1_brainstem.nii.gz": Encoding.UINT8,
            ROOT / "segmentation/pons/S1_dorsal_pons.nii.gz": dorsal_encoding,
            ROOT / "segmentation/pons/S1_ventral_pons.nii.gz": Encoding.UINT8,
        }
    )


def test_segmentation_verifier_warns_on_missing_optional_pons() -> None:
    locator = ArtifactLocator(ROOT, registry=_segmentation_registry(Encoding.UINT8))
    report = verify_stage(Stage.SEGMENTATION, locator, "S1")
    assert report.ok
    assert report.warnings == ["missing segmentation/pons/S1_pons.nii.gz"]


def test_verifier_flags_non_uint8_mask() -> None:
    locator = ArtifactLocator(ROOT, registry=_segmentation_registry(Encoding.FLOAT32))
    report = verify_stage(Stage.SEGMENTATION, locator, "S1")
    assert not report.ok
    assert "S1_dorsal_pons.nii.gz is FLOAT32" in report.failures[0]


def test_verifier_requires_convention_names() -> None:
    registry = InMemoryArtifactRegistry([ROOT / "extracted" / "T1_MPRAGE_SAG_2.nii.gz"])
    locator = ArtifactLocator(ROOT, registry=registry)
    report = verify_stage(Stage.IMPORT, locator, "S1")
    assert len(report.failures) == 2


def test_verifier_flags_uint8_intensity_image() -> None:
    registry = InMemoryArtifactRegistry(
        encodings={
            ROOT / "extracted/S1_T1.nii.gz": Encoding.UINT8,
            ROOT / "extracted/S1_FLAIR.nii.gz": Encoding.INT16,
        }
    )
    report = verify_stage(Stage.IMPORT, ArtifactLocator(ROOT, registry=registry), "S1")
    assert report.failures == ["intensity image S1_T1.nii.gz is UINT8"]
    assert report.failure_paths == [ROOT / "extracted/S1_T1.nii.gz"]


def test_registration_verifier_warns_without_quality_report() -> None:
    registry = InMemoryArtifactRegistry(
        [ROOT / "registered/S1_FLAIR_Warped.nii.gz", ROOT / "registered/S1_FLAIR_to_T1.tfm"]
    )
    report = verify_stage(Stage.REGISTRATION, ArtifactLocator(ROOT, registry=registry), "S1")
    assert report.ok
    assert report.warnings == ["registration quality report not written"]


def test_progress_record_lists_stage_artifacts() -> None:
    registry = InMemoryArtifactRegistry(
        [ROOT / "extracted/S1_T1.nii.gz", ROOT / "extracted/S1_FLAIR.nii.gz"]
    )
    record = progress_record(ArtifactLocator(ROOT, registry=registry), "S1", {"import": "SUCCESS"})
    stages = {s["stage"]: s for s in record["stages"]}
    assert "tracking" not in stages
    assert stages["import"]["complete"] is True
    assert stages["import"]["status"] == "SUCCESS"
    assert stages["preprocess"]["complete"] is False
    assert stages["preprocess"]["directories"] == ["bias_corrected", "brain_extraction", "standardized"]
    assert record["stages_complete"] == 1
    assert record["stages_total"] == 6


def test_write_progress(tmp_path: Path) -> None:
    path = write_progress(ArtifactLocator(tmp_path), "S1")
    assert path == tmp_path / "progress" / "S1_progress.json"
    assert json.loads(path.read_text(encoding="utf-8"))["subject"] == "S1"

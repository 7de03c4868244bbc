from __future__ import annotations

import json
from pathlib import Path

import yaml

from BrainstemPipeline.cli import main


def test_classify_prints_class_and_encoding(tmp_path: Path, volume_writer, cube, capsys) -> None:
    mask = volume_writer(tmp_path / "S1_brain_mask.nii.gz", cube())

    assert main(["classify", str(mask)]) == 0
    out = capsys.readouterr().out
    assert out.startswith("S1_brain_mask.nii.gz: mask (UINT8 ->")


def test_compare_space_exit_code(tmp_path: Path, volume_writer, noisy, capsys) -> None:
    a = volume_writer(tmp_path / "a.nii.gz", noisy())
    b = volume_writer(tmp_path / "b.nii.gz", noisy(seed=3))
    c = volume_writer(tmp_path / "c.nii.gz", noisy(), spacing=(2.0, 2.0, 2.0))

    assert main(["compare-space", str(a), str(b)]) == 0
    assert "Recommendation: COMPATIBLE" in capsys.readouterr().out
    assert main(["compare-space", str(a), str(c)]) == 1
    assert "Recommendation: REGISTRATION_REQUIRED" in capsys.readouterr().out


def test_score_registration_writes_reports(tmp_path: Path, volume_writer, noisy, capsys) -> None:
    fixed = volume_writer(tmp_path / "fixed.nii.gz", noisy())

    assert main(["score-registration", str(fixed), str(fixed), "--output-dir", str(tmp_path / "qc")]) == 0
    assert "Overall Quality: EXCELLENT" in capsys.readouterr().out
    assert (tmp_path / "qc" / "registration_quality.json").exists()
    assert (tmp_path / "qc" / "registration_quality_report.txt").exists()


def test_analyze_regions_writes_json(tmp_path: Path, volume_writer, noisy, cube) -> None:
    flair = volume_writer(tmp_path / "flair.nii.gz", noisy())
    mask = volume_writer(tmp_path / "brainstem.nii.gz", cube())
    out = tmp_path / "hyper"

    code = main(
        ["analyze-regions", str(flair), "--mask", f"brainstem={mask}", "--subject-id", "S1", "--output-dir", str(out)]
    )

    assert code == 0
    data = json.loads((out / "S1_analysis.json").read_text(encoding="utf-8"))
    assert data["regions"]["brainstem"]["roi_voxels"] == 27


def test_run_missing_config_returns_usage_error(tmp_path: Path, capsys) -> None:
    assert main(["run", "--config", str(tmp_path / "missing.yaml")]) == 2
    assert "[run] InvalidArgs" in capsys.readouterr().out


def test_run_import_only(tmp_path: Path, volume_writer, noisy) -> None:
    subject_dir = tmp_path / "in" / "S1"
    volume_writer(subject_dir / "T1_MPRAGE_SAG_2.nii.gz", noisy(seed=1))
    volume_writer(subject_dir / "T2_SPACE_FLAIR_Sag_CS_3.nii.gz", noisy(seed=2))
    config = tmp_path / "pipeline.yaml"
    config.write_text(
        yaml.safe_dump({"input_dir": str(subject_dir), "output_dir": str(tmp_path / "out")}),
        encoding="utf-8",
    )

    assert main(["run", "--config", str(config), "--end-stage", "import"]) == 0
    assert (tmp_path / "out" / "S1" / "extracted" / "S1_T1.nii.gz").exists()
    assert (tmp_path / "out" / "S1" / "extracted" / "S1_FLAIR.nii.gz").exists()


def test_batch_run_honours_end_stage(tmp_path: Path, volume_writer, noisy) -> None:
    subject_dir = tmp_path / "in" / "S1"
    volume_writer(subject_dir / "T1_MPRAGE_SAG_2.nii.gz", noisy(seed=1))
    volume_writer(subject_dir / "T2_SPACE_FLAIR_Sag_CS_3.nii.gz", noisy(seed=2))
    subjects = tmp_path / "subjects.txt"
    subjects.write_text(f"S1 {subject_dir}\n", encoding="utf-8")
    config = tmp_path / "pipeline.yaml"
    config.write_text(
        yaml.safe_dump({"input_dir": str(tmp_path / "in"), "output_dir": str(tmp_path / "out")}),
        encoding="utf-8",
    )

    code = main(["run", "--config", str(config), "--subject-list", str(subjects), "--end-stage", "import"])

    assert code == 0
    assert (tmp_path / "out" / "S1" / "extracted" / "S1_T1.nii.gz").exists()
    assert not (tmp_path / "out" / "S1" / "bias_corrected").exists()
    summary = (tmp_path / "out" / "summary" / "batch_summary.csv").read_text(encoding="utf-8")
    assert "S1,COMPLETE" in summary

from __future__ import annotations

from pathlib import Path
from typing import List, Sequence

import pytest

from BrainstemPipeline.toolkit import FALLBACKS, SimpleITKToolkit, default_operations, run_with_fallback


def _touch_outputs(inputs: Sequence[Path], outputs: Sequence[Path], **params) -> List[Path]:
    for out in outputs:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text("ok", encoding="utf-8")
    return list(outputs)


def _boom(inputs: Sequence[Path], outputs: Sequence[Path], **params) -> List[Path]:
    raise RuntimeError("boom")


def _write_nothing(inputs: Sequence[Path], outputs: Sequence[Path], **params) -> List[Path]:
    return []


def test_default_operations_cover_pipeline() -> None:
    ops = default_operations()
    for name in (
        "convert_dicom",
        "bias_correct",
        "brain_extract",
        "standardize_dimensions",
        "register_nonlinear",
        "register_linear",
        "apply_transform",
        "segment_brainstem",
    ):
        assert callable(ops[name])
    assert FALLBACKS == {"register_nonlinear": "register_linear"}


def test_toolkit_success_reports_outputs(tmp_path: Path) -> None:
    toolkit = SimpleITKToolkit({"touch": _touch_outputs})
    out = tmp_path / "a" / "out.txt"
    result = toolkit.run("touch", [], [out])
    assert result.ok
    assert result.outputs == (out,)
    assert result.returncode == 0
    assert result.operation == "touch"


def test_toolkit_exception_becomes_failed_result(tmp_path: Path) -> None:
    toolkit = SimpleITKToolkit({"boom": _boom})
    result = toolkit.run("boom", [], [tmp_path / "x"])
    assert not result.ok
    assert result.returncode == 1
    assert "RuntimeError: boom" in result.message


def test_toolkit_missing_output_is_failure(tmp_path: Path) -> None:
    toolkit = SimpleITKToolkit({"lazy": _write_nothing})
    result = toolkit.run("lazy", [], [tmp_path / "never.nii.gz"])
    assert not result.ok
    assert "never.nii.gz" in result.message


def test_unknown_operation() -> None:
    result = SimpleITKToolkit().run("teleport", [], [])
    assert not result.ok
    assert result.returncode == 2


def test_fallback_runs_once_after_nonlinear_failure(tmp_path: Path, capsys) -> None:
    toolkit = SimpleITKToolkit({"register_nonlinear": _boom, "register_linear": _touch_outputs})
    result = run_with_fallback(toolkit, "register_nonlinear", [], [tmp_path / "warped.nii.gz"])
    assert result.ok
    assert result.operation == "register_linear"
    assert "ProcessingFailure" in capsys.readouterr().out


def test_fallback_failure_reports_both_messages(tmp_path: Path) -> None:
    toolkit = SimpleITKToolkit({"register_nonlinear": _boom, "register_linear": _write_nothing})
    result = run_with_fallback(toolkit, "register_nonlinear", [], [tmp_path / "warped.nii.gz"])
    assert not result.ok
    assert "boom" in result.message
    assert "register_linear" in result.message


@pytest.mark.parametrize("operation", ["bias_correct", "brain_extract"])
def test_no_fallback_for_other_operations(tmp_path: Path, operation: str) -> None:
    calls: List[str] = []

    def failing(inputs, outputs, **params):
        calls.append(operation)
        raise RuntimeError("nope")

    toolkit = SimpleITKToolkit({operation: failing, "register_linear": _touch_outputs})
    result = run_with_fallback(toolkit, operation, [], [tmp_path / "x"])
    assert not result.ok
    assert calls == [operation]

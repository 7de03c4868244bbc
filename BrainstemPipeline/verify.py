from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple

from BrainstemPipeline.artifacts import STAGE_ARTIFACTS, ArtifactLocator
from BrainstemPipeline.classify import Encoding, ImageClass, classify
from BrainstemPipeline.errors import DataMissingError, ValidationFailureError
from BrainstemPipeline.spaces import read_geometry
from BrainstemPipeline.stages import Stage


@dataclass
class VerificationReport:
    stage: Stage
    checked: List[Path] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    failure_paths: List[Path] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def fail(self, message: str, path: Path) -> None:
        self.failures.append(message)
        self.failure_paths.append(path)

    def failed_artifacts(self) -> List[Tuple[str, Path]]:
        return list(zip(self.failures, self.failure_paths))


def _check_encoding(report: VerificationReport, locator: ArtifactLocator, path: Path, kind: str) -> None:
    encoding = locator.registry.encoding(path)
    if encoding is None:
        return
    if kind == "mask" and encoding != Encoding.UINT8:
        report.fail(f"mask {path.name} is {encoding.value}, expected UINT8", path)
    elif kind == "intensity" and encoding == Encoding.UINT8:
        report.fail(f"intensity image {path.name} is UINT8", path)


def verify_stage(stage: Stage, locator: ArtifactLocator, subject_id: str) -> VerificationReport:
    """Check that a stage left its artifacts under the naming convention with sane datatypes.

    A required artifact that is absent by convention is a failure even when a
    substitute could be found; optional ones only produce warnings.
    """
    report = VerificationReport(stage=stage)
    for spec in STAGE_ARTIFACTS[stage]:
        path = locator.spec_path(spec, subject_id)
        if not locator.registry.exists(path):
            message = f"missing {spec.stage_dir}/{spec.filename(subject_id)}"
            if spec.required:
                report.fail(message, path)
            else:
                report.warnings.append(message)
            continue
        report.checked.append(path)
        if spec.kind in ("mask", "intensity"):
            _check_encoding(report, locator, path, spec.kind)

    if stage == Stage.REGISTRATION:
        quality = locator.stage_dir("registered") / "validation" / "registration_quality.json"
        if not locator.registry.exists(quality):
            report.warnings.append("registration quality report not written")
    return report


def validate_input(path: Path, label: str) -> List[ValidationFailureError]:
    """Check a stage input before any operation reads it.

    An absent or unreadable file raises DataMissingError; a 3-D intensity
    image is expected, anything else comes back as a validation failure.
    """
    try:
        geometry = read_geometry(path)
    except RuntimeError as exc:
        raise DataMissingError(f"{label} is not a readable image: {exc}", path=path) from None

    problems: List[ValidationFailureError] = []
    if len(geometry.dims) != 3:
        problems.append(ValidationFailureError(f"{label} has {len(geometry.dims)} dimensions, expected 3", path=path))
    result = classify(path)
    if result.image_class == ImageClass.MASK or geometry.encoding == Encoding.UINT8:
        problems.append(
            ValidationFailureError(
                f"{label} looks like a mask ({result.image_class.value}, {geometry.encoding.value})", path=path
            )
        )
    return problems

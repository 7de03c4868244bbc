from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from BrainstemPipeline.errors import InvalidArgsError
from BrainstemPipeline.stages import Stage, parse_stage


PIPELINE_TYPE_ALIASES: Dict[str, str] = {
    "single": "single",
    "subject": "single",
    "full": "single",
    "basic": "single",
    "custom": "single",
    "batch": "batch",
}

DEFAULT_T1_PATTERNS: List[str] = ["T1_MPRAGE_SAG_*.nii.gz", "T1_*.nii.gz", "*T1*.nii.gz"]
DEFAULT_FLAIR_PATTERNS: List[str] = ["T2_SPACE_FLAIR_Sag_CS_*.nii.gz", "*FLAIR*.nii.gz"]


@dataclass(frozen=True)
class QualitySettings:
    """Toolkit parameters implied by a quality preset."""

    n4_max_iterations: Tuple[int, ...]
    n4_shrink_factor: int
    n4_convergence_threshold: float
    registration_iterations: int
    sampling_percentage: float
    bspline_mesh_size: int
    shrink_factors: Tuple[int, ...]
    smoothing_sigmas: Tuple[float, ...]


QUALITY_PRESETS: Dict[str, QualitySettings] = {
    "LOW": QualitySettings(
        n4_max_iterations=(20, 20),
        n4_shrink_factor=4,
        n4_convergence_threshold=1e-4,
        registration_iterations=50,
        sampling_percentage=0.05,
        bspline_mesh_size=4,
        shrink_factors=(4, 2),
        smoothing_sigmas=(2.0, 1.0),
    ),
    "MEDIUM": QualitySettings(
        n4_max_iterations=(50, 50, 30),
        n4_shrink_factor=3,
        n4_convergence_threshold=1e-5,
        registration_iterations=100,
        sampling_percentage=0.1,
        bspline_mesh_size=6,
        shrink_factors=(4, 2, 1),
        smoothing_sigmas=(2.0, 1.0, 0.0),
    ),
    "HIGH": QualitySettings(
        n4_max_iterations=(50, 50, 50, 50),
        n4_shrink_factor=2,
        n4_convergence_threshold=1e-6,
        registration_iterations=200,
        sampling_percentage=0.2,
        bspline_mesh_size=8,
        shrink_factors=(4, 2, 1),
        smoothing_sigmas=(2.0, 1.0, 0.0),
    ),
}


def normalize_quality_preset(value: Any) -> str:
    preset = str(value or "MEDIUM").strip().upper()
    if preset not in QUALITY_PRESETS:
        raise InvalidArgsError(f"Unknown quality preset {value!r}. Known presets: {sorted(QUALITY_PRESETS)}")
    return preset


def normalize_pipeline_type(value: Any) -> str:
    raw = str(value or "single").strip().lower()
    if raw not in PIPELINE_TYPE_ALIASES:
        raise InvalidArgsError(f"Unknown pipeline type {value!r}. Use 'single' or 'batch'.")
    return PIPELINE_TYPE_ALIASES[raw]


@dataclass
class ParallelConfig:
    """Worker bounds for subjects and per-subject modality channels."""

    jobs: int = 1
    halt_on_failure: bool = False
    parallel_channels: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ParallelConfig":
        defaults = cls()
        merged = {**defaults.__dict__, **(data or {})}
        jobs = int(merged["jobs"])
        if jobs < 1:
            raise InvalidArgsError("parallel.jobs must be >= 1.")
        return cls(
            jobs=jobs,
            halt_on_failure=bool(merged["halt_on_failure"]),
            parallel_channels=bool(merged["parallel_channels"]),
        )


@dataclass
class PatternConfig:
    """Filename patterns used to find T1/FLAIR inputs, most specific first."""

    t1: List[str] = field(default_factory=lambda: list(DEFAULT_T1_PATTERNS))
    flair: List[str] = field(default_factory=lambda: list(DEFAULT_FLAIR_PATTERNS))

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "PatternConfig":
        data = data or {}
        t1 = data.get("t1", DEFAULT_T1_PATTERNS)
        flair = data.get("flair", DEFAULT_FLAIR_PATTERNS)
        if isinstance(t1, str):
            t1 = [t1]
        if isinstance(flair, str):
            flair = [flair]
        return cls(t1=[str(p) for p in t1], flair=[str(p) for p in flair])

    def for_channel(self, channel: str) -> List[str]:
        return list(self.t1 if channel.upper() == "T1" else self.flair)


@dataclass
class AnalysisConfig:
    threshold_sd: float = 2.0
    min_cluster_voxels: int = 1

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "AnalysisConfig":
        defaults = cls()
        merged = {**defaults.__dict__, **(data or {})}
        return cls(
            threshold_sd=float(merged["threshold_sd"]),
            min_cluster_voxels=max(1, int(merged["min_cluster_voxels"])),
        )


@dataclass
class AtlasConfig:
    """Template and template-space masks used by atlas-based segmentation."""

    template: Optional[Path] = None
    brainstem_mask: Optional[Path] = None
    pons_mask: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "AtlasConfig":
        data = data or {}

        def _path(key: str) -> Optional[Path]:
            value = data.get(key)
            return Path(value) if value else None

        return cls(
            template=_path("template"),
            brainstem_mask=_path("brainstem_mask"),
            pons_mask=_path("pons_mask"),
        )


@dataclass
class ImportConfig:
    dicom_converter: str = "sitk"
    deduplicate: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ImportConfig":
        defaults = cls()
        merged = {**defaults.__dict__, **(data or {})}
        converter = str(merged["dicom_converter"]).strip().lower()
        if converter not in ("sitk", "dcm2niix"):
            raise InvalidArgsError("import.dicom_converter must be 'sitk' or 'dcm2niix'.")
        return cls(dicom_converter=converter, deduplicate=bool(merged["deduplicate"]))


@dataclass
class PipelineConfig:
    """Top-level configuration for one pipeline invocation."""

    input_dir: Path
    output_dir: Path
    subject_id: Optional[str] = None
    quality_preset: str = "MEDIUM"
    start_stage: Stage = Stage.IMPORT
    end_stage: Stage = Stage.TRACKING
    pipeline_type: str = "single"
    subject_list: Optional[Path] = None
    target_spacing_mm: float = 1.0
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    patterns: PatternConfig = field(default_factory=PatternConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    atlas: AtlasConfig = field(default_factory=AtlasConfig)
    dicom: ImportConfig = field(default_factory=ImportConfig)

    @property
    def subject(self) -> str:
        return self.subject_id or Path(self.input_dir).name

    @property
    def quality(self) -> QualitySettings:
        return QUALITY_PRESETS[normalize_quality_preset(self.quality_preset)]

    @classmethod
    def from_dict(cls, data: Dict) -> "PipelineConfig":
        if "input_dir" not in data or "output_dir" not in data:
            raise InvalidArgsError("Configuration must define input_dir and output_dir.")
        subject_list = data.get("subject_list")
        return cls(
            input_dir=Path(data["input_dir"]),
            output_dir=Path(data["output_dir"]),
            subject_id=data.get("subject_id"),
            quality_preset=normalize_quality_preset(data.get("quality_preset", "MEDIUM")),
            start_stage=parse_stage(data.get("start_stage", Stage.IMPORT)),
            end_stage=parse_stage(data.get("end_stage", Stage.TRACKING)),
            pipeline_type=normalize_pipeline_type(data.get("pipeline_type", "single")),
            subject_list=Path(subject_list) if subject_list else None,
            target_spacing_mm=float(data.get("target_spacing_mm", 1.0)),
            parallel=ParallelConfig.from_dict(data.get("parallel")),
            patterns=PatternConfig.from_dict(data.get("patterns")),
            analysis=AnalysisConfig.from_dict(data.get("analysis")),
            atlas=AtlasConfig.from_dict(data.get("atlas")),
            dicom=ImportConfig.from_dict(data.get("import")),
        )


def load_config(config_path: Optional[Path]) -> PipelineConfig:
    """Load configuration from YAML."""
    if config_path is None:
        raise InvalidArgsError("A configuration path is required.")
    if not Path(config_path).is_file():
        raise InvalidArgsError(f"Configuration file not found: {config_path}", path=config_path)
    with open(config_path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise InvalidArgsError(f"Configuration must be a mapping: {config_path}", path=config_path)
    return PipelineConfig.from_dict(data)

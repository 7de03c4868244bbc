from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from enum import Enum
from multiprocessing import Pool
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from BrainstemPipeline.artifacts import ArtifactLocator, ArtifactRegistry
from BrainstemPipeline.classify import classify, standardize_image_format
from BrainstemPipeline.config import PipelineConfig
from BrainstemPipeline.dicom_import import import_nifti
from BrainstemPipeline.errors import (
    DataMissingError,
    ErrorKind,
    InvalidArgsError,
    PipelineError,
    ProcessingFailureError,
    ValidationFailureError,
)
from BrainstemPipeline.quality import QualityBand, score, write_quality_report
from BrainstemPipeline.regions import analyze_regions, threshold_tag, write_analysis_json
from BrainstemPipeline.spaces import read_geometry, write_space_report
from BrainstemPipeline.stages import Stage, parse_stage, stage_range
from BrainstemPipeline.toolkit import SimpleITKToolkit, Toolkit, ToolkitResult, run_with_fallback
from BrainstemPipeline.tracking import write_progress
from BrainstemPipeline.verify import validate_input, verify_stage
from BrainstemPipeline.visualization import write_region_overlays, write_registration_overlay


CHANNELS: Tuple[str, ...] = ("T1", "FLAIR")

# (operation, inputs, outputs, params)
Step = Tuple[str, List[Path], List[Path], Dict]


class RunState(str, Enum):
    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    PARTIAL = "Partial"
    COMPLETED = "Completed"
    FAILED = "Failed"


class RunStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


@dataclass
class Subject:
    subject_id: str
    current_stage: Optional[Stage] = None
    error_count: int = 0


@dataclass
class PipelineRun:
    """One subject's run. The orchestrator owns and mutates its state."""

    subject: Subject
    input_dir: Path
    output_dir: Path
    quality_preset: str = "MEDIUM"
    start_stage: Stage = Stage.IMPORT
    pipeline_type: str = "single"
    end_stage: Stage = Stage.TRACKING
    t1_input: Optional[Path] = None
    flair_input: Optional[Path] = None
    state: RunState = RunState.NOT_STARTED
    history: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: PipelineConfig, **overrides) -> "PipelineRun":
        subject_id = overrides.pop("subject_id", None) or cfg.subject
        return cls(
            subject=Subject(subject_id),
            input_dir=Path(overrides.pop("input_dir", cfg.input_dir)),
            output_dir=Path(overrides.pop("output_dir", cfg.output_dir)),
            quality_preset=cfg.quality_preset,
            start_stage=parse_stage(overrides.pop("start_stage", cfg.start_stage)),
            end_stage=parse_stage(overrides.pop("end_stage", cfg.end_stage)),
            pipeline_type=cfg.pipeline_type,
            **overrides,
        )

    @property
    def subject_id(self) -> str:
        return self.subject.subject_id


@dataclass
class StageResult:
    stage: Stage
    status: RunStatus
    produced_artifacts: List[Path] = field(default_factory=list)
    errors: List[PipelineError] = field(default_factory=list)


@dataclass
class RunResult:
    subject_id: str
    status: RunStatus
    stage_results: List[StageResult] = field(default_factory=list)
    error: Optional[PipelineError] = None

    @property
    def stages_run(self) -> List[Stage]:
        return [r.stage for r in self.stage_results]

    def result_for(self, stage: Stage) -> Optional[StageResult]:
        for result in self.stage_results:
            if result.stage == stage:
                return result
        return None


def run_channel_chain(toolkit: Toolkit, steps: Sequence[Step]) -> ToolkitResult:
    """Run one modality's operations in order, stopping at the first failure."""
    result = ToolkitResult(True)
    for operation, inputs, outputs, params in steps:
        result = run_with_fallback(toolkit, operation, inputs, outputs, **params)
        if not result.ok:
            return result
    return result


def _write_error_file(output_dir: Path, exc: BaseException, kind: ErrorKind) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    err_path = output_dir / "pipeline_error.txt"
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    err_path.write_text(f"{kind.value}\n{type(exc).__name__}: {exc}\n\n{tb}", encoding="utf-8")
    return err_path


StageOutput = Tuple[List[Path], List[ValidationFailureError]]


class PipelineOrchestrator:
    """Drives the seven stages for one subject run.

    The only component that turns errors into run status: DataMissing and
    ProcessingFailure fail the run, ValidationFailure downgrades it to PARTIAL.
    """

    def __init__(
        self,
        cfg: PipelineConfig,
        toolkit: Optional[Toolkit] = None,
        registry: Optional[ArtifactRegistry] = None,
    ) -> None:
        self.cfg = cfg
        self.toolkit = toolkit or SimpleITKToolkit()
        self.registry = registry
        self._runners: Dict[Stage, Callable[[PipelineRun, ArtifactLocator], StageOutput]] = {
            Stage.IMPORT: self._run_import,
            Stage.PREPROCESS: self._run_preprocess,
            Stage.REGISTRATION: self._run_registration,
            Stage.SEGMENTATION: self._run_segmentation,
            Stage.ANALYSIS: self._run_analysis,
            Stage.VISUALIZATION: self._run_visualization,
            Stage.TRACKING: self._run_tracking,
        }

    def locator_for(self, run: PipelineRun) -> ArtifactLocator:
        return ArtifactLocator(
            run.output_dir,
            registry=self.registry,
            fallback_overrides={"T1": self.cfg.patterns.t1, "FLAIR": self.cfg.patterns.flair},
        )

    def check_gate(self, run: PipelineRun) -> None:
        """Raise DataMissingError when the stage before `start_stage` left no artifacts."""
        if run.start_stage <= Stage.IMPORT:
            return
        previous = Stage(run.start_stage - 1)
        missing = self.locator_for(run).missing_required(previous, run.subject_id)
        if missing:
            raise DataMissingError(
                f"{run.subject_id}: cannot start at {run.start_stage.label}; "
                f"{len(missing)} {previous.label} artifact(s) missing",
                path=missing[0],
            )

    def run_stage(self, stage: Stage, run: PipelineRun) -> StageResult:
        locator = self.locator_for(run)
        try:
            produced, warnings = self._runners[stage](run, locator)
        except PipelineError as exc:
            print(f"[orchestrator] {run.subject_id}: {stage.label} failed: {exc.describe()}")
            return StageResult(stage, RunStatus.FAILED, [], [exc])
        except Exception as exc:
            wrapped = ProcessingFailureError(f"{type(exc).__name__}: {exc}", path=run.output_dir)
            wrapped.__cause__ = exc
            print(f"[orchestrator] {run.subject_id}: {stage.label} failed: {wrapped.describe()}")
            return StageResult(stage, RunStatus.FAILED, [], [wrapped])

        errors: List[PipelineError] = list(warnings)
        report = verify_stage(stage, locator, run.subject_id)
        for message in report.warnings:
            print(f"[verify] {run.subject_id}: {stage.label}: {message}")
        for message, path in report.failed_artifacts():
            errors.append(ValidationFailureError(message, path=path))
        for err in errors:
            print(f"[orchestrator] {run.subject_id}: {stage.label}: {err.describe()}")
        status = RunStatus.PARTIAL if errors else RunStatus.SUCCESS
        return StageResult(stage, status, produced, errors)

    def run(self, run: PipelineRun) -> RunResult:
        if run.end_stage < run.start_stage:
            raise InvalidArgsError(f"end stage {run.end_stage.label} precedes start stage {run.start_stage.label}")
        subject = run.subject
        result = RunResult(subject.subject_id, RunStatus.SUCCESS)
        print(f"[orchestrator] {subject.subject_id}: starting at {run.start_stage.label} ({run.quality_preset})")
        try:
            self.check_gate(run)
            for stage in stage_range(run.start_stage, run.end_stage):
                run.state = RunState.RUNNING
                subject.current_stage = stage
                stage_result = self.run_stage(stage, run)
                result.stage_results.append(stage_result)
                run.history[stage.label] = stage_result.status.value
                if stage_result.status == RunStatus.FAILED:
                    subject.error_count += 1
                    raise stage_result.errors[0]
                if stage_result.status == RunStatus.PARTIAL:
                    subject.error_count += len(stage_result.errors)
                    run.state = RunState.PARTIAL
                    result.status = RunStatus.PARTIAL
        except PipelineError as exc:
            if not result.stage_results:
                print(f"[orchestrator] {subject.subject_id}: {exc.describe()}")
            return self._fail(run, result, exc, exc)
        except Exception as exc:
            subject.error_count += 1
            wrapped = ProcessingFailureError(f"{type(exc).__name__}: {exc}", path=run.output_dir)
            print(f"[orchestrator] {subject.subject_id}: {wrapped.describe()}")
            return self._fail(run, result, wrapped, exc)

        run.state = RunState.COMPLETED
        print(f"[orchestrator] {subject.subject_id}: finished with status {result.status.value}")
        return result

    def _fail(self, run: PipelineRun, result: RunResult, error: PipelineError, exc: BaseException) -> RunResult:
        run.state = RunState.FAILED
        result.status = RunStatus.FAILED
        result.error = error
        _write_error_file(run.output_dir, exc, error.kind)
        return result

    # Stage runners

    def _toolkit_step(self, operation: str, inputs: List[Path], outputs: List[Path], **params) -> ToolkitResult:
        result = run_with_fallback(self.toolkit, operation, inputs, outputs, **params)
        if not result.ok:
            raise ProcessingFailureError(f"{operation} failed: {result.message}", path=outputs[0] if outputs else None)
        return result

    def _run_import(self, run: PipelineRun, locator: ArtifactLocator) -> StageOutput:
        extracted = locator.stage_dir("extracted")
        extracted.mkdir(parents=True, exist_ok=True)
        explicit = {"T1": run.t1_input, "FLAIR": run.flair_input}
        produced: List[Path] = []

        if all(explicit.values()):
            for channel in CHANNELS:
                target = locator.convention("extracted", run.subject_id, channel)
                produced.append(import_nifti(explicit[channel], target))
            return produced, []

        sources = {ch: locator.find(run.input_dir, self.cfg.patterns.for_channel(ch)) for ch in CHANNELS}
        if not all(sources.values()):
            self._toolkit_step(
                "convert_dicom",
                [run.input_dir],
                [extracted],
                converter=self.cfg.dicom.dicom_converter,
                deduplicate_outputs=self.cfg.dicom.deduplicate,
            )
            sources = {ch: locator.find(extracted, self.cfg.patterns.for_channel(ch)) for ch in CHANNELS}

        for channel in CHANNELS:
            source = sources[channel]
            target = locator.convention("extracted", run.subject_id, channel)
            if source is None:
                raise DataMissingError(f"{run.subject_id}: no {channel} series found", path=extracted)
            if source != target:
                print(f"[import] {run.subject_id}: {channel} <- {source.name}")
                import_nifti(source, target)
            produced.append(target)
        return produced, []

    def _preprocess_steps(self, run: PipelineRun, locator: ArtifactLocator, channel: str) -> List[Step]:
        s = run.subject_id
        q = self.cfg.quality
        source = locator.require(Stage.IMPORT, s, channel)
        n4 = locator.convention("bias_corrected", s, f"{channel}_n4")
        brain = locator.convention("brain_extraction", s, f"{channel}_brain")
        mask = locator.convention("brain_extraction", s, f"{channel}_brain_mask")
        std = locator.convention("standardized", s, f"{channel}_std")
        return [
            (
                "bias_correct",
                [source],
                [n4],
                {
                    "shrink_factor": q.n4_shrink_factor,
                    "max_iterations": q.n4_max_iterations,
                    "convergence_threshold": q.n4_convergence_threshold,
                },
            ),
            ("brain_extract", [n4], [brain, mask], {}),
            ("standardize_dimensions", [brain], [std], {"spacing_mm": self.cfg.target_spacing_mm}),
        ]

    def _run_preprocess(self, run: PipelineRun, locator: ArtifactLocator) -> StageOutput:
        warnings: List[ValidationFailureError] = []
        for channel in CHANNELS:
            source = locator.require(Stage.IMPORT, run.subject_id, channel)
            warnings.extend(validate_input(source, f"{channel} input"))

        chains = [self._preprocess_steps(run, locator, channel) for channel in CHANNELS]
        parallel = self.cfg.parallel.parallel_channels and self.cfg.parallel.jobs > 1
        if parallel:
            with Pool(processes=len(chains)) as pool:
                results = pool.starmap(run_channel_chain, [(self.toolkit, chain) for chain in chains])
        else:
            results = [run_channel_chain(self.toolkit, chain) for chain in chains]

        for channel, result in zip(CHANNELS, results):
            if not result.ok:
                raise ProcessingFailureError(
                    f"{run.subject_id}: {channel} preprocessing failed at {result.operation}: {result.message}",
                    path=locator.stage_dir("bias_corrected"),
                )
        produced = [out for chain in chains for _, _, outputs, _ in chain for out in outputs]
        return produced, warnings

    def _registration_params(self) -> Dict:
        q = self.cfg.quality
        return {
            "iterations": q.registration_iterations,
            "sampling_percentage": q.sampling_percentage,
            "shrink_factors": q.shrink_factors,
            "smoothing_sigmas": q.smoothing_sigmas,
        }

    def _run_registration(self, run: PipelineRun, locator: ArtifactLocator) -> StageOutput:
        s = run.subject_id
        warnings: List[ValidationFailureError] = []
        reg_dir = locator.stage_dir("registered")
        validation_dir = reg_dir / "validation"
        validation_dir.mkdir(parents=True, exist_ok=True)

        inputs: Dict[str, Path] = {}
        for channel in CHANNELS:
            path = locator.require(Stage.PREPROCESS, s, f"{channel}_std")
            result = classify(path)
            if read_geometry(path).encoding != result.target_encoding:
                converted = reg_dir / "inputs" / f"{s}_{channel}_{result.target_encoding.value.lower()}.nii.gz"
                path, _, _ = standardize_image_format(path, converted, result.target_encoding)
            inputs[channel] = path

        comparison = write_space_report(inputs["FLAIR"], inputs["T1"], validation_dir / "space_validation_report.txt")
        print(f"[registration] {s}: FLAIR vs T1 space: {comparison.recommendation.value}")

        warped = locator.convention("registered", s, "FLAIR_Warped")
        transform = locator.convention("registered", s, "FLAIR_to_T1", ext=".tfm")
        params = {**self._registration_params(), "bspline_mesh_size": self.cfg.quality.bspline_mesh_size}
        result = self._toolkit_step("register_nonlinear", [inputs["T1"], inputs["FLAIR"]], [warped, transform], **params)
        if result.operation == "register_linear":
            warnings.append(ValidationFailureError("nonlinear registration failed; linear fallback used", path=warped))

        report = score(inputs["T1"], warped)
        quality_json = write_quality_report(report, inputs["T1"], warped, validation_dir)
        print(f"[registration] {s}: quality {report.band.value} (cc={report.cross_correlation:.3f})")
        if report.band == QualityBand.POOR:
            warnings.append(
                ValidationFailureError(f"registration quality POOR (cc={report.cross_correlation:.3f})", path=quality_json)
            )
        return [warped, transform], warnings

    def _run_segmentation(self, run: PipelineRun, locator: ArtifactLocator) -> StageOutput:
        s = run.subject_id
        atlas = self.cfg.atlas
        if atlas.template is None or atlas.brainstem_mask is None:
            raise ProcessingFailureError(
                f"{s}: segmentation needs atlas.template and atlas.brainstem_mask in the configuration",
                path=locator.stage_dir("segmentation"),
            )
        t1 = locator.require(Stage.PREPROCESS, s, "T1_std")
        inputs = [t1, Path(atlas.template), Path(atlas.brainstem_mask)]
        if atlas.pons_mask is not None:
            inputs.append(Path(atlas.pons_mask))
        outputs = [
            locator.convention("segmentation/brainstem", s, "brainstem"),
            locator.convention("segmentation/pons", s, "pons"),
            locator.convention("segmentation/pons", s, "dorsal_pons"),
            locator.convention("segmentation/pons", s, "ventral_pons"),
        ]
        self._toolkit_step("segment_brainstem", inputs, outputs, **self._registration_params())
        return outputs, []

    def _run_analysis(self, run: PipelineRun, locator: ArtifactLocator) -> StageOutput:
        s = run.subject_id
        flair = locator.require(Stage.REGISTRATION, s, "FLAIR_Warped")
        masks = locator.discover_region_masks(s)
        if not masks:
            raise DataMissingError(f"{s}: no region masks found", path=locator.stage_dir("segmentation"))
        brain_mask = locator.resolve("brain_extraction", s, "T1_brain_mask")

        out_dir = locator.stage_dir("hyperintensities")
        sd = self.cfg.analysis.threshold_sd
        results = analyze_regions(
            flair,
            masks,
            threshold_sd=sd,
            output_dir=out_dir,
            subject_id=s,
            brain_mask_path=brain_mask,
            min_cluster_voxels=self.cfg.analysis.min_cluster_voxels,
        )
        summary = write_analysis_json(results, sd, out_dir / f"{s}_analysis.json")
        warnings = [
            ValidationFailureError(f"region {region} could not be analyzed", path=path)
            for region, path in masks.items()
            if region not in results
        ]
        produced = [out_dir / region / f"{s}_{region}_{threshold_tag(sd)}_bin.nii.gz" for region in results]
        return produced + [out_dir / f"{s}_region_comparison.csv", summary], warnings

    def _run_visualization(self, run: PipelineRun, locator: ArtifactLocator) -> StageOutput:
        s = run.subject_id
        t1 = locator.require(Stage.PREPROCESS, s, "T1_std")
        flair = locator.require(Stage.REGISTRATION, s, "FLAIR_Warped")
        vis_dir = locator.stage_dir("visualization")
        produced = [write_registration_overlay(t1, flair, vis_dir / f"{s}_registration_overlay.png", title=f"{s} FLAIR on T1")]

        hyper_root = locator.stage_dir("hyperintensities")
        tag = threshold_tag(self.cfg.analysis.threshold_sd)
        hyper_masks = {
            p.parent.name: p
            for p in sorted(hyper_root.glob(f"*/{s}_*_{tag}_bin.nii.gz"))
        }
        produced.extend(write_region_overlays(flair, hyper_masks, vis_dir, s))
        return produced, []

    def _run_tracking(self, run: PipelineRun, locator: ArtifactLocator) -> StageOutput:
        return [write_progress(locator, run.subject_id, dict(run.history))], []

from __future__ import annotations

from dataclasses import dataclass, replace
from multiprocessing import Pool
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import SimpleITK as sitk
from tqdm import tqdm

from BrainstemPipeline.artifacts import ArtifactLocator, artifact_spec
from BrainstemPipeline.config import PipelineConfig
from BrainstemPipeline.errors import InvalidArgsError
from BrainstemPipeline.orchestrator import PipelineOrchestrator, PipelineRun, RunStatus
from BrainstemPipeline.quality import load_quality_report
from BrainstemPipeline.regions import load_analysis_json
from BrainstemPipeline.stages import Stage
from BrainstemPipeline.toolkit import Toolkit


SUMMARY_COLUMNS: List[str] = [
    "Subject",
    "Status",
    "BrainstemVolume",
    "PonsVolume",
    "DorsalPonsVolume",
    "HyperintensityVolume",
    "LargestClusterVolume",
    "RegistrationQuality",
]

BATCH_STATUS: Dict[str, str] = {
    RunStatus.SUCCESS.value: "COMPLETE",
    RunStatus.PARTIAL.value: "INCOMPLETE",
    RunStatus.FAILED.value: "FAILED",
}

NOT_AVAILABLE = "N/A"

# Region whose hyperintensities headline the summary, first match wins.
HEADLINE_REGIONS: Tuple[str, ...] = ("brainstem", "pons", "dorsal_pons", "ventral_pons")


@dataclass(frozen=True)
class SubjectEntry:
    """One subject-list line: `subject_id [input] [flair t1]`."""

    subject_id: str
    input_dir: Optional[Path] = None
    flair: Optional[Path] = None
    t1: Optional[Path] = None


def parse_subject_list(path: Path) -> List[SubjectEntry]:
    """Parse a whitespace-separated subject list; blank and `#` lines are ignored.

    Lines carry `subject_id`, optionally followed by an input directory or by
    two input paths in the order FLAIR, T1.
    """
    path = Path(path)
    if not path.is_file():
        raise InvalidArgsError("subject list not found", path=path)
    entries: List[SubjectEntry] = []
    seen = set()
    for lineno, raw in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        subject_id = parts[0]
        if subject_id in seen:
            raise InvalidArgsError(f"duplicate subject {subject_id!r} on line {lineno}", path=path)
        seen.add(subject_id)
        if len(parts) == 1:
            entries.append(SubjectEntry(subject_id))
        elif len(parts) == 2:
            entries.append(SubjectEntry(subject_id, input_dir=Path(parts[1])))
        elif len(parts) == 3:
            entries.append(SubjectEntry(subject_id, flair=Path(parts[1]), t1=Path(parts[2])))
        else:
            raise InvalidArgsError(f"line {lineno}: expected at most 3 fields, got {len(parts)}", path=path)
    return entries


def build_run(cfg: PipelineConfig, entry: SubjectEntry) -> PipelineRun:
    overrides: Dict = {
        "subject_id": entry.subject_id,
        "output_dir": Path(cfg.output_dir) / entry.subject_id,
        "input_dir": entry.input_dir or Path(cfg.input_dir) / entry.subject_id,
    }
    if entry.flair is not None and entry.t1 is not None:
        if entry.flair.is_dir() and entry.t1.is_dir():
            overrides["input_dir"] = entry.flair.parent
        else:
            overrides["flair_input"] = entry.flair
            overrides["t1_input"] = entry.t1
            overrides["input_dir"] = entry.t1.parent
    return PipelineRun.from_config(cfg, **overrides)


def run_subject(cfg: PipelineConfig, entry: SubjectEntry, toolkit: Optional[Toolkit] = None) -> Tuple[str, str]:
    """Run one subject in isolation; returns (subject_id, run status)."""
    run = build_run(cfg, entry)
    orchestrator = PipelineOrchestrator(cfg, toolkit=toolkit)
    try:
        result = orchestrator.run(run)
    except InvalidArgsError as exc:
        print(f"[batch] {entry.subject_id}: {exc.describe()}")
        return entry.subject_id, RunStatus.FAILED.value
    return entry.subject_id, result.status.value


def _run_subject_args(args: Tuple[PipelineConfig, SubjectEntry, Optional[Toolkit]]) -> Tuple[str, str]:
    return run_subject(*args)


def _mask_voxels(path: Optional[Path]):
    if path is None:
        return NOT_AVAILABLE
    arr = sitk.GetArrayViewFromImage(sitk.ReadImage(str(path)))
    return int(np.count_nonzero(arr))


def summarize_subject(cfg: PipelineConfig, subject_id: str, status: str) -> Dict:
    locator = ArtifactLocator(Path(cfg.output_dir) / subject_id)
    row: Dict = {col: NOT_AVAILABLE for col in SUMMARY_COLUMNS}
    row["Subject"] = subject_id
    row["Status"] = BATCH_STATUS.get(status, "FAILED")

    for column, region in (
        ("BrainstemVolume", "brainstem"),
        ("PonsVolume", "pons"),
        ("DorsalPonsVolume", "dorsal_pons"),
    ):
        path = locator.resolve_spec(artifact_spec(Stage.SEGMENTATION, region), subject_id)
        row[column] = _mask_voxels(path)

    analysis_path = locator.stage_dir("hyperintensities") / f"{subject_id}_analysis.json"
    if analysis_path.is_file():
        regions = load_analysis_json(analysis_path).get("regions", {})
        headline = next((r for r in HEADLINE_REGIONS if r in regions), next(iter(regions), None))
        if headline is not None:
            row["HyperintensityVolume"] = regions[headline]["hyperintensity_voxels"]
            row["LargestClusterVolume"] = regions[headline]["largest_cluster_voxels"]

    quality_path = locator.stage_dir("registered") / "validation" / "registration_quality.json"
    if quality_path.is_file():
        row["RegistrationQuality"] = load_quality_report(quality_path).band.value
    return row


class BatchRunner:
    """Runs isolated subject pipelines with bounded parallelism and a halt policy."""

    def __init__(self, cfg: PipelineConfig, toolkit: Optional[Toolkit] = None) -> None:
        self.cfg = cfg
        self.toolkit = toolkit

    def _worker_cfg(self) -> PipelineConfig:
        # Pool workers are daemonic and cannot start their own channel pools.
        return replace(self.cfg, parallel=replace(self.cfg.parallel, parallel_channels=False))

    def run(self, entries: Optional[Sequence[SubjectEntry]] = None) -> pd.DataFrame:
        if entries is None:
            if self.cfg.subject_list is None:
                raise InvalidArgsError("batch mode needs a subject list")
            entries = parse_subject_list(self.cfg.subject_list)
        entries = list(entries)
        jobs = max(1, int(self.cfg.parallel.jobs))
        halt = self.cfg.parallel.halt_on_failure
        outcomes: Dict[str, str] = {}

        with tqdm(total=len(entries), desc="subjects") as bar:
            if jobs == 1:
                for entry in entries:
                    subject_id, status = run_subject(self.cfg, entry, self.toolkit)
                    outcomes[subject_id] = status
                    bar.update(1)
                    if halt and status == RunStatus.FAILED.value:
                        break
            else:
                worker_cfg = self._worker_cfg()
                with Pool(processes=jobs) as pool:
                    for start in range(0, len(entries), jobs):
                        wave = entries[start : start + jobs]
                        results = pool.map(_run_subject_args, [(worker_cfg, e, self.toolkit) for e in wave])
                        outcomes.update(dict(results))
                        bar.update(len(wave))
                        if halt and any(status == RunStatus.FAILED.value for _, status in results):
                            break

        for entry in entries:
            if entry.subject_id not in outcomes:
                print(f"[batch] {entry.subject_id}: not run (halted after failure)")
                outcomes[entry.subject_id] = RunStatus.FAILED.value

        rows = [summarize_subject(self.cfg, e.subject_id, outcomes[e.subject_id]) for e in entries]
        summary = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)
        write_batch_summary(summary, Path(self.cfg.output_dir) / "summary" / "batch_summary.csv")
        counts = summary["Status"].value_counts().to_dict()
        print(f"[batch] {len(entries)} subjects: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
        return summary


def write_batch_summary(summary: pd.DataFrame, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    summary.to_csv(path, index=False)
    return path

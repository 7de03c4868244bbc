from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Dict, List, Optional

from BrainstemPipeline.batch import BatchRunner
from BrainstemPipeline.classify import classify
from BrainstemPipeline.config import QUALITY_PRESETS, load_config, normalize_pipeline_type
from BrainstemPipeline.errors import PipelineError
from BrainstemPipeline.orchestrator import PipelineOrchestrator, PipelineRun, RunStatus
from BrainstemPipeline.quality import format_quality_report, score, write_quality_report
from BrainstemPipeline.regions import analyze_regions, write_analysis_json
from BrainstemPipeline.spaces import compare, format_space_report, read_geometry
from BrainstemPipeline.stages import STAGE_ORDER, parse_stage


def _stage_help() -> str:
    return ",".join(f"{int(s)}={s.label}" for s in STAGE_ORDER)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Brainstem FLAIR hyperintensity pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the pipeline for one subject or a subject list")
    run.add_argument("--config", required=True, type=Path, help="Path to pipeline config YAML")
    run.add_argument("--start-stage", default=None, help=f"Stage to start at, name or number ({_stage_help()})")
    run.add_argument("--end-stage", default=None, help="Last stage to run (default: tracking)")
    run.add_argument("--quality", default=None, choices=sorted(QUALITY_PRESETS), help="Quality preset override")
    run.add_argument("--pipeline-type", default=None, help="single (full|basic|custom) or batch")
    run.add_argument("--subject-list", type=Path, default=None, help="Subject list for batch runs")
    run.add_argument("--subject-id", default=None, help="Override the subject id for single runs")
    run.add_argument("--input-dir", type=Path, default=None, help="Override input directory")
    run.add_argument("--output-dir", type=Path, default=None, help="Override output directory")
    run.add_argument("--jobs", type=int, default=None, help="Maximum concurrent subject workers")
    run.add_argument("--halt-on-failure", action="store_true", help="Stop scheduling subjects after a failure")

    classify_p = sub.add_parser("classify", help="Classify images as mask or intensity")
    classify_p.add_argument("images", nargs="+", type=Path, help="NIfTI images")

    space_p = sub.add_parser("compare-space", help="Compare an image's grid against a reference")
    space_p.add_argument("image", type=Path)
    space_p.add_argument("reference", type=Path)

    score_p = sub.add_parser("score-registration", help="Score a registered image against its fixed image")
    score_p.add_argument("fixed", type=Path)
    score_p.add_argument("moving", type=Path)
    score_p.add_argument("--output-dir", type=Path, default=None, help="Write text and JSON reports here")

    regions_p = sub.add_parser("analyze-regions", help="Detect hyperintensities inside region masks")
    regions_p.add_argument("intensity", type=Path, help="Registered FLAIR image")
    regions_p.add_argument("--mask", action="append", required=True, metavar="NAME=PATH", help="Region mask, repeatable")
    regions_p.add_argument("--brain-mask", type=Path, default=None, help="Brain mask (default: nonzero intensity)")
    regions_p.add_argument("--threshold-sd", type=float, default=2.0)
    regions_p.add_argument("--subject-id", default="subject")
    regions_p.add_argument("--output-dir", type=Path, required=True)

    return parser.parse_args(argv)


def _cmd_run(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    if args.quality:
        cfg.quality_preset = args.quality
    if args.start_stage is not None:
        cfg.start_stage = parse_stage(args.start_stage)
    if args.end_stage is not None:
        cfg.end_stage = parse_stage(args.end_stage)
    if args.pipeline_type:
        cfg.pipeline_type = normalize_pipeline_type(args.pipeline_type)
    if args.subject_list is not None:
        cfg.subject_list = args.subject_list
        cfg.pipeline_type = "batch"
    if args.subject_id:
        cfg.subject_id = args.subject_id
    if args.input_dir is not None:
        cfg.input_dir = args.input_dir
    if args.output_dir is not None:
        cfg.output_dir = args.output_dir
    if args.jobs is not None:
        cfg.parallel.jobs = max(1, args.jobs)
    if args.halt_on_failure:
        cfg.parallel.halt_on_failure = True

    if cfg.pipeline_type == "batch":
        summary = BatchRunner(cfg).run()
        return 0 if (summary["Status"] == "COMPLETE").all() else 1

    run = PipelineRun.from_config(cfg, output_dir=Path(cfg.output_dir) / cfg.subject)
    result = PipelineOrchestrator(cfg).run(run)
    return 0 if result.status == RunStatus.SUCCESS else 1


def _cmd_classify(args: argparse.Namespace) -> int:
    for path in args.images:
        result = classify(path)
        current = read_geometry(path).encoding
        print(
            f"{path.name}: {result.image_class.value} ({current.value} -> {result.target_encoding.value}, "
            f"confidence {result.confidence:.2f}) {result.reason}"
        )
    return 0


def _cmd_compare_space(args: argparse.Namespace) -> int:
    image = read_geometry(args.image)
    reference = read_geometry(args.reference)
    comparison = compare(image, reference)
    print(format_space_report(comparison, args.image, args.reference, image, reference), end="")
    return 0 if not comparison.registration_required else 1


def _cmd_score_registration(args: argparse.Namespace) -> int:
    report = score(args.fixed, args.moving)
    if args.output_dir is not None:
        out = write_quality_report(report, args.fixed, args.moving, args.output_dir)
        print(f"[score-registration] Wrote {out}")
    print(format_quality_report(report, args.fixed, args.moving))
    return 0


def _parse_masks(values: List[str]) -> Dict[str, Path]:
    masks: Dict[str, Path] = {}
    for value in values:
        name, sep, path = value.partition("=")
        if not sep:
            name, path = Path(value).name.split(".")[0], value
        masks[name] = Path(path)
    return masks


def _cmd_analyze_regions(args: argparse.Namespace) -> int:
    results = analyze_regions(
        args.intensity,
        _parse_masks(args.mask),
        threshold_sd=args.threshold_sd,
        output_dir=args.output_dir,
        subject_id=args.subject_id,
        brain_mask_path=args.brain_mask,
    )
    out = write_analysis_json(results, args.threshold_sd, args.output_dir / f"{args.subject_id}_analysis.json")
    print(json.dumps({region: stats.summary() for region, stats in results.items()}, indent=2))
    print(f"[analyze-regions] Wrote {out}")
    return 0


COMMANDS = {
    "run": _cmd_run,
    "classify": _cmd_classify,
    "compare-space": _cmd_compare_space,
    "score-registration": _cmd_score_registration,
    "analyze-regions": _cmd_analyze_regions,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        return COMMANDS[args.command](args)
    except PipelineError as exc:
        print(f"[{args.command}] {exc.describe()}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())

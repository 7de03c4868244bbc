from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from BrainstemPipeline.artifacts import STAGE_ARTIFACTS, ArtifactLocator
from BrainstemPipeline.stages import STAGE_DIRS, STAGE_ORDER, Stage


def progress_record(locator: ArtifactLocator, subject_id: str, statuses: Optional[Dict[str, str]] = None) -> Dict:
    """Per-stage listing of expected artifacts and whether each resolves."""
    stages: List[Dict] = []
    for stage in STAGE_ORDER:
        if stage == Stage.TRACKING:
            continue
        artifacts = []
        for spec in STAGE_ARTIFACTS[stage]:
            resolved = locator.resolve_spec(spec, subject_id)
            artifacts.append(
                {
                    "suffix": spec.suffix,
                    "path": str(locator.spec_path(spec, subject_id)),
                    "required": spec.required,
                    "exists": resolved is not None,
                    "resolved": str(resolved) if resolved is not None else None,
                }
            )
        complete = all(a["exists"] for a in artifacts if a["required"])
        stages.append(
            {
                "stage": stage.label,
                "number": int(stage),
                "directories": list(STAGE_DIRS[stage]),
                "complete": complete,
                "status": (statuses or {}).get(stage.label),
                "artifacts": artifacts,
            }
        )
    done = sum(1 for s in stages if s["complete"])
    return {
        "subject": subject_id,
        "updated": datetime.now().isoformat(timespec="seconds"),
        "stages_complete": done,
        "stages_total": len(stages),
        "stages": stages,
    }


def write_progress(locator: ArtifactLocator, subject_id: str, statuses: Optional[Dict[str, str]] = None) -> Path:
    record = progress_record(locator, subject_id, statuses)
    out_path = locator.stage_dir("progress") / f"{subject_id}_progress.json"
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as handle:
        json.dump(record, handle, indent=2)
    return out_path

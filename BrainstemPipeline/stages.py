from __future__ import annotations

from enum import IntEnum
from typing import Dict, List, Tuple

from BrainstemPipeline.errors import InvalidArgsError


class Stage(IntEnum):
    IMPORT = 1
    PREPROCESS = 2
    REGISTRATION = 3
    SEGMENTATION = 4
    ANALYSIS = 5
    VISUALIZATION = 6
    TRACKING = 7

    @property
    def label(self) -> str:
        return self.name.lower()


STAGE_ORDER: List[Stage] = sorted(Stage)

STAGE_ALIASES: Dict[str, Stage] = {
    "import": Stage.IMPORT,
    "dicom": Stage.IMPORT,
    "preprocess": Stage.PREPROCESS,
    "preprocessing": Stage.PREPROCESS,
    "pre": Stage.PREPROCESS,
    "registration": Stage.REGISTRATION,
    "register": Stage.REGISTRATION,
    "reg": Stage.REGISTRATION,
    "segmentation": Stage.SEGMENTATION,
    "segment": Stage.SEGMENTATION,
    "seg": Stage.SEGMENTATION,
    "analysis": Stage.ANALYSIS,
    "analyze": Stage.ANALYSIS,
    "visualization": Stage.VISUALIZATION,
    "visualize": Stage.VISUALIZATION,
    "vis": Stage.VISUALIZATION,
    "tracking": Stage.TRACKING,
    "track": Stage.TRACKING,
    "progress": Stage.TRACKING,
}


def parse_stage(value: object) -> Stage:
    """Resolve a stage from a name, alias, number (1-7) or ``Stage``.

    Raises ``InvalidArgsError`` for anything else.
    """
    if isinstance(value, Stage):
        return value
    if isinstance(value, bool):
        raise InvalidArgsError(f"Invalid start stage: {value!r}")
    if isinstance(value, int):
        try:
            return Stage(value)
        except ValueError:
            raise InvalidArgsError(f"Invalid start stage: {value!r}. Valid stages: 1-7") from None
    raw = str(value).strip().lower()
    if raw.isdigit():
        return parse_stage(int(raw))
    if raw in STAGE_ALIASES:
        return STAGE_ALIASES[raw]
    known = ", ".join(stage.label for stage in STAGE_ORDER)
    raise InvalidArgsError(f"Invalid start stage: {value!r}. Valid stages: {known}")


def stage_range(start: object, end: object = Stage.TRACKING) -> List[Stage]:
    """Return the closed, ordered range of stages ``[start, end]``."""
    first = parse_stage(start)
    last = parse_stage(end)
    if last < first:
        raise InvalidArgsError("end stage must come after start stage in pipeline order.")
    return [stage for stage in STAGE_ORDER if first <= stage <= last]


STAGE_DIRS: Dict[Stage, Tuple[str, ...]] = {
    Stage.IMPORT: ("extracted",),
    Stage.PREPROCESS: ("bias_corrected", "brain_extraction", "standardized"),
    Stage.REGISTRATION: ("registered",),
    Stage.SEGMENTATION: ("segmentation/brainstem", "segmentation/pons"),
    Stage.ANALYSIS: ("hyperintensities",),
    Stage.VISUALIZATION: ("visualization",),
    Stage.TRACKING: ("progress",),
}

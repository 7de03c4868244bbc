from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from BrainstemPipeline.classify import Encoding
from BrainstemPipeline.errors import DataMissingError
from BrainstemPipeline.spaces import read_geometry
from BrainstemPipeline.stages import Stage


NIFTI_SUFFIXES: Tuple[str, ...] = (".nii.gz", ".nii")


def strip_nifti_suffix(name: str) -> str:
    for suf in NIFTI_SUFFIXES:
        if name.endswith(suf):
            return name[: -len(suf)]
    return Path(name).stem


def is_nifti(path: Path) -> bool:
    return any(path.name.endswith(suf) for suf in NIFTI_SUFFIXES)


class ArtifactRegistry(ABC):
    """Read-only view over the artifacts a run can see."""

    @abstractmethod
    def exists(self, path: Path) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_files(self, directory: Path, recursive: bool = False) -> List[Path]:
        raise NotImplementedError

    @abstractmethod
    def encoding(self, path: Path) -> Optional[Encoding]:
        """Voxel encoding of an image artifact, or None when it cannot be read."""
        raise NotImplementedError


class FilesystemArtifactRegistry(ArtifactRegistry):
    def exists(self, path: Path) -> bool:
        return Path(path).is_file()

    def list_files(self, directory: Path, recursive: bool = False) -> List[Path]:
        directory = Path(directory)
        if not directory.is_dir():
            return []
        iterator = directory.rglob("*") if recursive else directory.iterdir()
        return sorted(p for p in iterator if p.is_file())

    def encoding(self, path: Path) -> Optional[Encoding]:
        if not self.exists(path):
            return None
        try:
            return read_geometry(path).encoding
        except RuntimeError:
            return None


class InMemoryArtifactRegistry(ArtifactRegistry):
    """Registry backed by a path -> encoding mapping; nothing touches the disk."""

    def __init__(self, paths: Iterable[Path] = (), encodings: Optional[Dict[Path, Encoding]] = None) -> None:
        self._paths: Set[Path] = {Path(p) for p in paths}
        self._encodings: Dict[Path, Encoding] = {Path(p): e for p, e in (encodings or {}).items()}
        self._paths.update(self._encodings)

    def add(self, path: Path, encoding: Optional[Encoding] = None) -> None:
        self._paths.add(Path(path))
        if encoding is not None:
            self._encodings[Path(path)] = encoding

    def exists(self, path: Path) -> bool:
        return Path(path) in self._paths

    def encoding(self, path: Path) -> Optional[Encoding]:
        return self._encodings.get(Path(path))

    def list_files(self, directory: Path, recursive: bool = False) -> List[Path]:
        directory = Path(directory)
        if recursive:
            found = [p for p in self._paths if directory in p.parents]
        else:
            found = [p for p in self._paths if p.parent == directory]
        return sorted(found)


@dataclass(frozen=True)
class ArtifactSpec:
    """One artifact a stage owns, addressed by directory + subject + suffix."""

    stage_dir: str
    suffix: str
    ext: str = ".nii.gz"
    kind: str = "intensity"
    required: bool = True
    fallback: Tuple[str, ...] = ()

    def filename(self, subject_id: str) -> str:
        return f"{subject_id}_{self.suffix}{self.ext}"



def _channel_specs(channel: str) -> List[ArtifactSpec]:
    return [
        ArtifactSpec("bias_corrected", f"{channel}_n4", required=False),
        ArtifactSpec("brain_extraction", f"{channel}_brain", required=False),
        ArtifactSpec("brain_extraction", f"{channel}_brain_mask", kind="mask"),
        ArtifactSpec("standardized", f"{channel}_std", fallback=(f"*{channel}*_std.nii.gz",)),
    ]


STAGE_ARTIFACTS: Dict[Stage, List[ArtifactSpec]] = {
    Stage.IMPORT: [
        ArtifactSpec("extracted", "T1", fallback=("T1_MPRAGE_SAG_*.nii.gz", "T1_*.nii.gz", "*T1*.nii.gz")),
        ArtifactSpec("extracted", "FLAIR", fallback=("T2_SPACE_FLAIR_Sag_CS_*.nii.gz", "*FLAIR*.nii.gz")),
    ],
    Stage.PREPROCESS: _channel_specs("T1") + _channel_specs("FLAIR"),
    Stage.REGISTRATION: [
        ArtifactSpec(
            "registered",
            "FLAIR_Warped",
            fallback=("*FLAIR*Warped.nii.gz", "*t1_to_flairWarped.nii.gz", "*Warped.nii.gz"),
        ),
        ArtifactSpec("registered", "FLAIR_to_T1", ext=".tfm", kind="other", required=False),
    ],
    Stage.SEGMENTATION: [
        ArtifactSpec("segmentation/brainstem", "brainstem", kind="mask", required=False, fallback=("*brainstem*.nii.gz",)),
        ArtifactSpec("segmentation/pons", "pons", kind="mask", required=False),
        ArtifactSpec("segmentation/pons", "dorsal_pons", kind="mask", fallback=("*dorsal_pons*.nii.gz",)),
        ArtifactSpec("segmentation/pons", "ventral_pons", kind="mask", fallback=("*ventral_pons*.nii.gz",)),
    ],
    Stage.ANALYSIS: [
        ArtifactSpec("hyperintensities", "region_comparison", ext=".csv", kind="other"),
        ArtifactSpec("hyperintensities", "analysis", ext=".json", kind="other"),
    ],
    Stage.VISUALIZATION: [
        ArtifactSpec("visualization", "registration_overlay", ext=".png", kind="other"),
    ],
    Stage.TRACKING: [
        ArtifactSpec("progress", "progress", ext=".json", kind="other"),
    ],
}


def artifact_spec(stage: Stage, suffix: str) -> ArtifactSpec:
    for spec in STAGE_ARTIFACTS[stage]:
        if spec.suffix == suffix:
            return spec
    raise KeyError(f"{stage.label} owns no artifact with suffix {suffix!r}")


REGION_ORDER: Tuple[str, ...] = ("brainstem", "pons", "dorsal_pons", "ventral_pons")

# (region, patterns, excluded substrings)
REGION_PATTERNS: Tuple[Tuple[str, Tuple[str, ...], Tuple[str, ...]], ...] = (
    ("brainstem", ("*brainstem*.nii.gz",), ("orig",)),
    ("pons", ("*_pons.nii.gz", "*pons*.nii.gz"), ("dorsal", "ventral", "orig")),
    ("dorsal_pons", ("*dorsal_pons*.nii.gz",), ("orig",)),
    ("ventral_pons", ("*ventral_pons*.nii.gz",), ("orig",)),
)

ATLAS_MASK_TOKENS: Tuple[str, ...] = ("talairach", "tailrack", "gold", "manual", "expert")


class ArtifactLocator:
    """Resolves `(stage_dir, subject, suffix)` to a path under one subject's output root.

    The naming convention is tried first; only when that file is absent does the
    locator fall back to pattern search, trying patterns from most specific to
    most general and taking the lexicographically first match.
    """

    def __init__(
        self,
        output_root: Path,
        registry: Optional[ArtifactRegistry] = None,
        fallback_overrides: Optional[Dict[str, Sequence[str]]] = None,
    ) -> None:
        self.output_root = Path(output_root)
        self.registry = registry or FilesystemArtifactRegistry()
        self.fallback_overrides: Dict[str, Tuple[str, ...]] = {
            suffix: tuple(patterns) for suffix, patterns in (fallback_overrides or {}).items()
        }

    def stage_dir(self, name: str) -> Path:
        return self.output_root / name

    def convention(self, stage_dir: str, subject_id: str, suffix: str, ext: str = ".nii.gz") -> Path:
        return self.stage_dir(stage_dir) / f"{subject_id}_{suffix}{ext}"

    def spec_path(self, spec: ArtifactSpec, subject_id: str) -> Path:
        return self.stage_dir(spec.stage_dir) / spec.filename(subject_id)

    def find(
        self,
        directory: Path,
        patterns: Sequence[str],
        exclude: Sequence[str] = (),
        recursive: bool = False,
    ) -> Optional[Path]:
        files = self.registry.list_files(directory, recursive=recursive)
        for pattern in patterns:
            matches = sorted(
                p
                for p in files
                if fnmatchcase(p.name, pattern) and not any(token in p.name for token in exclude)
            )
            if matches:
                return matches[0]
        return None

    def resolve(
        self,
        stage_dir: str,
        subject_id: str,
        suffix: str,
        patterns: Sequence[str] = (),
        ext: str = ".nii.gz",
    ) -> Optional[Path]:
        path = self.convention(stage_dir, subject_id, suffix, ext)
        if self.registry.exists(path):
            return path
        if not patterns:
            return None
        return self.find(self.stage_dir(stage_dir), patterns)

    def resolve_spec(self, spec: ArtifactSpec, subject_id: str) -> Optional[Path]:
        patterns = self.fallback_overrides.get(spec.suffix, spec.fallback)
        return self.resolve(spec.stage_dir, subject_id, spec.suffix, patterns, spec.ext)

    def require(self, stage: Stage, subject_id: str, suffix: str) -> Path:
        spec = artifact_spec(stage, suffix)
        path = self.resolve_spec(spec, subject_id)
        if path is None:
            raise DataMissingError(
                f"{subject_id}: required {stage.label} artifact '{suffix}' not found",
                path=self.spec_path(spec, subject_id),
            )
        if path != self.spec_path(spec, subject_id):
            print(f"[locator] {subject_id}: using substitute {path.name} for {spec.filename(subject_id)}")
        return path

    def missing_required(self, stage: Stage, subject_id: str) -> List[Path]:
        """Return convention paths of required artifacts of `stage` that cannot be resolved."""
        missing: List[Path] = []
        for spec in STAGE_ARTIFACTS[stage]:
            if spec.required and self.resolve_spec(spec, subject_id) is None:
                missing.append(self.spec_path(spec, subject_id))
        return missing

    def discover_region_masks(self, subject_id: str) -> Dict[str, Path]:
        """Find candidate region masks: segmentation outputs first, then atlas masks on disk."""
        seg_root = self.stage_dir("segmentation")
        found: Dict[str, Path] = {}
        for region, patterns, exclude in REGION_PATTERNS:
            spec = artifact_spec(Stage.SEGMENTATION, region)
            conventional = self.spec_path(spec, subject_id)
            if self.registry.exists(conventional):
                found[region] = conventional
                continue
            hit = self.find(seg_root, patterns, exclude=exclude, recursive=True)
            if hit is not None:
                found[region] = hit

        used = set(found.values())
        for path in self.registry.list_files(seg_root, recursive=True):
            if path in used or not path.name.endswith(".nii.gz"):
                continue
            lowered = path.name.lower()
            if "orig" in lowered:
                continue
            if any(token in lowered for token in ATLAS_MASK_TOKENS):
                name = strip_nifti_suffix(path.name)
                if name.startswith(f"{subject_id}_"):
                    name = name[len(subject_id) + 1 :]
                found.setdefault(name, path)
        return found

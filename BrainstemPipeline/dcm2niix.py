from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import shutil
import subprocess
from typing import List, Optional, Tuple

from BrainstemPipeline.errors import ProcessingFailureError


@dataclass(frozen=True)
class Dcm2niixResult:
    nifti_paths: Tuple[Path, ...]
    json_paths: Tuple[Path, ...] = ()
    log: str = ""


def _require_dcm2niix() -> str:
    exe = shutil.which("dcm2niix")
    if not exe:
        raise ProcessingFailureError(
            "dcm2niix not found on PATH. Install it (e.g., from https://github.com/rordenlab/dcm2niix) "
            "or set `import: {dicom_converter: sitk}` in your pipeline config."
        )
    return exe


def _sidecar(nifti_path: Path) -> Optional[Path]:
    name = nifti_path.name
    for suf in (".nii.gz", ".nii"):
        if name.endswith(suf):
            name = name[: -len(suf)]
            break
    candidate = nifti_path.with_name(f"{name}.json")
    return candidate if candidate.exists() else None


def run_dcm2niix(*, input_dir: Path, output_dir: Path, filename: str = "%p_%s") -> Dcm2niixResult:
    """Convert every series under `input_dir` with dcm2niix.

    `filename` is passed to `-f`; the default names outputs by protocol and
    series number. Raises `ProcessingFailureError` on a non-zero exit or when no
    NIfTI is produced.
    """
    exe = _require_dcm2niix()
    output_dir.mkdir(parents=True, exist_ok=True)

    cmd = [
        exe,
        "-z",
        "y",  # gzip
        "-b",
        "y",  # BIDS json sidecars
        "-f",
        filename,
        "-o",
        str(output_dir),
        str(input_dir),
    ]
    proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
    if proc.returncode != 0:
        raise ProcessingFailureError(
            f"dcm2niix exited with status {proc.returncode}: {proc.stdout.strip()[-500:]}",
            path=input_dir,
        )

    niftis: List[Path] = sorted(output_dir.glob("*.nii*"))
    if not niftis:
        raise ProcessingFailureError("dcm2niix produced no NIfTI output", path=output_dir)
    sidecars = [s for s in (_sidecar(p) for p in niftis) if s is not None]
    return Dcm2niixResult(nifti_paths=tuple(niftis), json_paths=tuple(sidecars), log=proc.stdout)

from __future__ import annotations

import hashlib
import re
import shutil
from pathlib import Path
from typing import Dict, List, Sequence

import SimpleITK as sitk

from BrainstemPipeline.artifacts import is_nifti
from BrainstemPipeline.dcm2niix import run_dcm2niix
from BrainstemPipeline.errors import DataMissingError


def _safe_name(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]+", "_", value.strip()).strip("_")
    return cleaned or "series"


def _series_directories(dicom_root: Path) -> List[Path]:
    dirs = {p.parent for p in dicom_root.rglob("*") if p.is_file() and not is_nifti(p)}
    return sorted(dirs)


def _meta(reader: sitk.ImageSeriesReader, key: str) -> str:
    return reader.GetMetaData(0, key).strip() if reader.HasMetaDataKey(0, key) else ""


def convert_series_sitk(dicom_root: Path, output_dir: Path) -> List[Path]:
    """Convert each DICOM series below `dicom_root` to `<description>_<series>.nii.gz`."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for directory in _series_directories(dicom_root):
        for series_id in sitk.ImageSeriesReader.GetGDCMSeriesIDs(str(directory)) or ():
            files = sitk.ImageSeriesReader.GetGDCMSeriesFileNames(str(directory), series_id)
            if not files:
                continue
            reader = sitk.ImageSeriesReader()
            reader.SetFileNames(files)
            reader.MetaDataDictionaryArrayUpdateOn()
            reader.LoadPrivateTagsOn()
            image = reader.Execute()
            description = _meta(reader, "0008|103e") or _meta(reader, "0018|1030")
            number = _meta(reader, "0020|0011") or str(len(written) + 1)
            out_path = output_dir / f"{_safe_name(description)}_{_safe_name(number)}.nii.gz"
            sitk.WriteImage(image, str(out_path), True)
            written.append(out_path)
    return written


def convert_dicom(dicom_root: Path, output_dir: Path, converter: str = "sitk") -> List[Path]:
    dicom_root = Path(dicom_root)
    if not dicom_root.is_dir():
        raise DataMissingError("DICOM input directory not found", path=dicom_root)
    if converter == "dcm2niix":
        return list(run_dcm2niix(input_dir=dicom_root, output_dir=Path(output_dir)).nifti_paths)
    return convert_series_sitk(dicom_root, Path(output_dir))


def _digest(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


def deduplicate(paths: Sequence[Path]) -> List[Path]:
    """Delete byte-identical conversions, keeping the lexicographically first of each group."""
    kept: List[Path] = []
    seen: Dict[str, Path] = {}
    for path in sorted(paths):
        digest = _digest(path)
        if digest in seen:
            print(f"[import] duplicate of {seen[digest].name}: removing {path.name}")
            path.unlink()
            continue
        seen[digest] = path
        kept.append(path)
    return kept


def import_nifti(source: Path, destination: Path) -> Path:
    """Copy an already-converted volume to its conventional location as gzipped NIfTI."""
    source = Path(source)
    if not source.is_file():
        raise DataMissingError("input NIfTI not found", path=source)
    destination.parent.mkdir(parents=True, exist_ok=True)
    if source.name.endswith(".nii.gz"):
        shutil.copyfile(source, destination)
    else:
        sitk.WriteImage(sitk.ReadImage(str(source)), str(destination), True)
    return destination


def convert_dicom_op(inputs: Sequence[Path], outputs: Sequence[Path], converter: str = "sitk", deduplicate_outputs: bool = True) -> List[Path]:
    written = convert_dicom(inputs[0], outputs[0], converter=converter)
    if deduplicate_outputs:
        written = deduplicate(written)
    return written

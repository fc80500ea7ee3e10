from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from sc_readers.readers.base import Reader
from sc_readers.validation.errors import ValidationError, ValidationIssue


@dataclass
class FileEntry:
    type: str
    path: Path


@dataclass
class DatasetConfig:
    """
    Parsed config entry for a single dataset.

    Expected shape:

        {
            "name": "pbmc",
            "format": "MatrixMarket",
            "files": [{"type": "mtx", "path": "pbmc/matrix.mtx.gz"}, ...],
            "options": {...}
        }

    Relative file paths are resolved against `base_dir`.
    """
    raw: Dict[str, Any]
    source_path: Path
    index: int
    base_dir: Path

    @property
    def name(self) -> str:
        return self.raw.get("name", f"Dataset {self.index}")

    @property
    def format(self) -> str:
        return self.raw["format"]

    @property
    def files(self) -> List[FileEntry]:
        output = []
        for entry in self.raw.get("files", []):
            path = Path(entry["path"])
            if not path.is_absolute():
                path = (self.base_dir / path).resolve()
            output.append(FileEntry(type=entry["type"], path=path))
        return output

    @property
    def options(self) -> Dict[str, Any]:
        return dict(self.raw.get("options") or {})

    def file_records(self) -> List[Dict[str, Any]]:
        """
        Entries in the shape ReaderRegistry.create expects.
        """
        return [{"type": f.type, "file": str(f.path)} for f in self.files]

    @classmethod
    def from_raw(cls, raw: Any, source_path: Path, index: int, base_dir: Path) -> DatasetConfig:
        """
        :raises ValidationError: listing every structural problem of the entry
        """
        issues: List[ValidationIssue] = []
        if not isinstance(raw, dict):
            raise ValidationError([ValidationIssue("ENTRY_TYPE", f"{source_path}: dataset entry must be an object.")])

        if not isinstance(raw.get("format"), str):
            issues.append(ValidationIssue("FORMAT_MISSING", f"{source_path}: 'format' must be a string."))

        files = raw.get("files")
        if not isinstance(files, list) or not files:
            issues.append(ValidationIssue("FILES_MISSING", f"{source_path}: 'files' must be a non-empty list."))
        else:
            for i, entry in enumerate(files):
                if not isinstance(entry, dict) or not isinstance(entry.get("type"), str) \
                        or not isinstance(entry.get("path"), str):
                    issues.append(ValidationIssue(
                        "FILE_ENTRY",
                        f"{source_path}: files[{i}] must have string 'type' and 'path'.",
                    ))

        if "options" in raw and raw["options"] is not None and not isinstance(raw["options"], dict):
            issues.append(ValidationIssue("OPTIONS_TYPE", f"{source_path}: 'options' must be an object."))

        if issues:
            raise ValidationError(issues)
        return cls(raw=raw, source_path=source_path, index=index, base_dir=base_dir)


@dataclass
class GlobalConfig:
    data_root: Optional[Path]
    datasets: List[DatasetConfig] = field(default_factory=list)


@dataclass
class NamedDataset:
    """
    A reader built from a config entry, with the name it was configured under.
    """
    name: str
    dataset: Reader
    config: DatasetConfig

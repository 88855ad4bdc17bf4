from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from imgpress.core.models import ConvertedArtifact


@dataclass(slots=True)
class ExportConflicts:
    duplicate_files: list[str]

    @property
    def has_conflicts(self) -> bool:
        return bool(self.duplicate_files)


def detect_export_conflicts(artifacts: Iterable[ConvertedArtifact], directory: Path) -> ExportConflicts:
    duplicates = [artifact.output_name for artifact in artifacts if (directory / artifact.output_name).exists()]
    return ExportConflicts(duplicate_files=duplicates)


def save_artifact(artifact: ConvertedArtifact, directory: Path, overwrite: bool = False) -> Path:
    """Write the artifact's output bytes into ``directory`` under its output name."""
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / artifact.output_name
    if target.exists() and not overwrite:
        raise FileExistsError(f"{target} already exists")
    target.write_bytes(artifact.output_bytes)
    return target

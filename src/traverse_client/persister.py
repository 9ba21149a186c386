from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable

from loguru import logger

from traverse_client.exceptions import PersistError
from traverse_client.paths import output_root
from traverse_client.schema import CommandResult, EmptyResult, LegacyResult, MultiFormatResult


class ArtifactCategory(str, Enum):
    CALL_GRAPH = "callGraph"
    SEQUENCE_DIAGRAM = "sequenceDiagram"
    STORAGE_REPORT = "storageReport"
    OTHER = "other"


_CATEGORY_DIRS = {
    ArtifactCategory.CALL_GRAPH: "call-graphs",
    ArtifactCategory.SEQUENCE_DIAGRAM: "sequence-diagrams",
    ArtifactCategory.STORAGE_REPORT: "storage-reports",
    ArtifactCategory.OTHER: "diagrams",
}
_CATEGORY_STEMS = {
    ArtifactCategory.CALL_GRAPH: "call-graph",
    ArtifactCategory.SEQUENCE_DIAGRAM: "sequence-diagram",
    ArtifactCategory.STORAGE_REPORT: "storage-analysis",
    ArtifactCategory.OTHER: "diagram",
}

_DOT_MARKERS = ("digraph", "strict graph")
_MERMAID_MARKERS = ("sequenceDiagram", "graph TD", "graph LR", "flowchart")


@dataclass(frozen=True)
class PersistedArtifact:
    absolute_path: Path
    category: ArtifactCategory


def category_dir(category: ArtifactCategory) -> str:
    return _CATEGORY_DIRS[category]


def sniff_extension(text: str) -> str:
    if any(marker in text for marker in _DOT_MARKERS):
        return "dot"
    if any(marker in text for marker in _MERMAID_MARKERS):
        return "mmd"
    return "md"


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class ResultPersister:
    """Writes command results under ``<root>/traverse-output/<category>/``."""

    def __init__(self, *, today_fn: Callable[[], date] = _utc_today) -> None:
        self.today_fn = today_fn

    def persist(
        self,
        result: CommandResult,
        category: ArtifactCategory,
        workspace_root: Path,
    ) -> list[PersistedArtifact]:
        if not result.success:
            return []
        if isinstance(result, MultiFormatResult):
            payloads = [(ext, text) for ext, text in (("dot", result.dot), ("mmd", result.mermaid)) if text]
        elif isinstance(result, LegacyResult):
            payloads = [(sniff_extension(result.diagram), result.diagram)]
        elif isinstance(result, EmptyResult):
            payloads = []
        else:
            raise PersistError(f"Unsupported result variant {type(result).__name__}")
        if not payloads:
            return []

        target_dir = output_root(workspace_root) / category_dir(category)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistError(f"Unable to create output directory {target_dir}: {exc}") from exc
        stem = f"{_CATEGORY_STEMS[category]}-{self.today_fn().isoformat()}"
        written: list[PersistedArtifact] = []
        for extension, text in payloads:
            path = (target_dir / f"{stem}.{extension}").absolute()
            try:
                path.write_text(text, encoding="utf-8", newline="")
            except OSError as exc:
                raise PersistError(f"Unable to write {path}: {exc}") from exc
            logger.info(f"Saved {extension} output to {path}")
            written.append(PersistedArtifact(absolute_path=path, category=category))
        return written

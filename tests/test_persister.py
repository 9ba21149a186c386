from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from traverse_client.exceptions import PersistError
from traverse_client.persister import ArtifactCategory, ResultPersister, sniff_extension
from traverse_client.schema import EmptyResult, LegacyResult, MultiFormatResult, parse_command_result

TODAY = date(2024, 5, 17)


def _persister() -> ResultPersister:
    return ResultPersister(today_fn=lambda: TODAY)


def test_multi_format_result_writes_one_file_per_format(workspace: Path) -> None:
    result = MultiFormatResult(success=True, dot="digraph G { A -> B; }", mermaid="graph TD\n  A --> B")

    artifacts = _persister().persist(result, ArtifactCategory.CALL_GRAPH, workspace)

    target = workspace / "traverse-output" / "call-graphs"
    assert [item.absolute_path for item in artifacts] == [
        target / "call-graph-2024-05-17.dot",
        target / "call-graph-2024-05-17.mmd",
    ]
    assert all(item.absolute_path.is_absolute() for item in artifacts)
    assert all(item.category is ArtifactCategory.CALL_GRAPH for item in artifacts)
    assert artifacts[0].absolute_path.read_text(encoding="utf-8") == "digraph G { A -> B; }"
    assert artifacts[1].absolute_path.read_text(encoding="utf-8") == "graph TD\n  A --> B"


def test_unsuccessful_result_writes_nothing(workspace: Path) -> None:
    result = parse_command_result({"success": False, "data": {"dot": "digraph G {}"}})

    assert _persister().persist(result, ArtifactCategory.CALL_GRAPH, workspace) == []
    assert not (workspace / "traverse-output").exists()


def test_success_without_payload_writes_nothing(workspace: Path) -> None:
    assert _persister().persist(EmptyResult(success=True), ArtifactCategory.OTHER, workspace) == []
    assert _persister().persist(MultiFormatResult(success=True), ArtifactCategory.OTHER, workspace) == []
    assert not (workspace / "traverse-output").exists()


@pytest.mark.parametrize(
    ("text", "extension"),
    [
        ("digraph calls {\n}", "dot"),
        ("strict graph g { a -- b }", "dot"),
        ("sequenceDiagram\n  A->>B: hi", "mmd"),
        ("graph LR\n  A --> B", "mmd"),
        ("flowchart TD\n  A --> B", "mmd"),
        ("# Storage report\n", "md"),
    ],
)
def test_legacy_format_is_sniffed_from_markers(text: str, extension: str) -> None:
    assert sniff_extension(text) == extension


def test_legacy_result_lands_in_its_category_directory(workspace: Path) -> None:
    result = LegacyResult(success=True, diagram="# Storage report\n\n- balances: write\n")

    (artifact,) = _persister().persist(result, ArtifactCategory.STORAGE_REPORT, workspace)

    assert artifact.absolute_path == workspace / "traverse-output" / "storage-reports" / "storage-analysis-2024-05-17.md"


def test_same_day_rerun_overwrites_previous_output(workspace: Path) -> None:
    persister = _persister()
    persister.persist(LegacyResult(success=True, diagram="sequenceDiagram\n A->>B: one"), ArtifactCategory.SEQUENCE_DIAGRAM, workspace)
    (artifact,) = persister.persist(
        LegacyResult(success=True, diagram="sequenceDiagram\n A->>B: two"), ArtifactCategory.SEQUENCE_DIAGRAM, workspace
    )

    assert artifact.absolute_path.name == "sequence-diagram-2024-05-17.mmd"
    assert artifact.absolute_path.read_text(encoding="utf-8").endswith("two")
    assert len(list(artifact.absolute_path.parent.iterdir())) == 1


def test_unwritable_output_root_is_a_persist_error(workspace: Path) -> None:
    (workspace / "traverse-output").write_text("not a directory", encoding="utf-8")

    with pytest.raises(PersistError):
        _persister().persist(MultiFormatResult(success=True, dot="digraph {}"), ArtifactCategory.CALL_GRAPH, workspace)


def test_parse_prefers_multi_format_data_over_legacy_diagram() -> None:
    result = parse_command_result({"success": True, "data": {"dot": "digraph {}", "mermaid": ""}, "diagram": "x"})
    assert result == MultiFormatResult(success=True, dot="digraph {}", mermaid=None)


def test_parse_legacy_and_degenerate_payloads() -> None:
    assert parse_command_result({"success": True, "diagram": "graph TD"}) == LegacyResult(success=True, diagram="graph TD")
    assert parse_command_result({"success": True}) == EmptyResult(success=True)
    assert parse_command_result(None).success is False
    assert parse_command_result({"success": True, "data": "oops"}).success is False

from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from traverse_client import cli
from traverse_client.downloader import InstalledBinaryRecord
from traverse_client.locator import BinaryLocation, BinarySource
from traverse_client.orchestrator import AnalysisCommand
from traverse_client.persister import ArtifactCategory, PersistedArtifact
from traverse_client.platform_identity import PlatformTag


class _FakeOrchestrator:
    def __init__(self, *, artifacts: list[PersistedArtifact] | None = None, record=None, location=None) -> None:
        self.artifacts = artifacts or []
        self.record = record
        self.location = location
        self.calls: list[tuple] = []
        self.chunking = False

    def run(self, command, workspace_root, **_kwargs):
        self.calls.append(("run", command, workspace_root))
        return self.artifacts

    def generate_all(self, workspace_root, **_kwargs):
        self.calls.append(("all", workspace_root))
        return self.artifacts

    def toggle_chunking(self) -> bool:
        self.chunking = not self.chunking
        self.calls.append(("toggle",))
        return self.chunking

    def restart_server(self, workspace_root) -> bool:
        self.calls.append(("restart", workspace_root))
        return True

    def download_server(self, workspace_root=None, **_kwargs):
        self.calls.append(("download", workspace_root))
        return self.record

    def locate(self):
        return self.location

    def shutdown(self) -> None:
        self.calls.append(("shutdown",))


def _obj(fake: _FakeOrchestrator, factory_calls: list[dict]) -> dict[str, object]:
    def _factory(**kwargs):
        factory_calls.append(kwargs)
        return fake

    return {
        "orchestrator_factory": _factory,
        "setup_logging": lambda *_args, **_kwargs: None,
    }


def test_call_graph_prints_written_paths(tmp_path: Path) -> None:
    written = tmp_path / "traverse-output" / "call-graphs" / "call-graph-2024-01-02.dot"
    fake = _FakeOrchestrator(artifacts=[PersistedArtifact(written, ArtifactCategory.CALL_GRAPH)])
    factory_calls: list[dict] = []

    result = CliRunner().invoke(
        cli.app,
        ["--storage-dir", str(tmp_path / "store"), "call-graph", str(tmp_path)],
        obj=_obj(fake, factory_calls),
    )

    assert result.exit_code == 0, result.output
    assert str(written) in result.output
    assert fake.calls == [("run", AnalysisCommand.CALL_GRAPH, tmp_path.absolute()), ("shutdown",)]
    assert factory_calls[0]["storage_dir"] == tmp_path / "store"
    assert factory_calls[0]["project_root"] == tmp_path.absolute()
    assert factory_calls[0]["overrides"] == {}
    assert factory_calls[0]["debug"] is False


def test_each_analysis_command_maps_to_its_kind(tmp_path: Path) -> None:
    artifact = PersistedArtifact(tmp_path / "x.dot", ArtifactCategory.OTHER)
    for name, command in (
        ("sequence-diagram", AnalysisCommand.SEQUENCE_DIAGRAM),
        ("storage-analysis", AnalysisCommand.STORAGE_ANALYSIS),
    ):
        fake = _FakeOrchestrator(artifacts=[artifact])
        result = CliRunner().invoke(cli.app, [name, str(tmp_path)], obj=_obj(fake, []))
        assert result.exit_code == 0, result.output
        assert fake.calls[0] == ("run", command, tmp_path.absolute())


def test_no_output_is_exit_code_one(tmp_path: Path) -> None:
    fake = _FakeOrchestrator()

    result = CliRunner().invoke(cli.app, ["all", str(tmp_path)], obj=_obj(fake, []))

    assert result.exit_code == 1
    assert fake.calls == [("all", tmp_path.absolute()), ("shutdown",)]


def test_missing_workspace_is_rejected(tmp_path: Path) -> None:
    fake = _FakeOrchestrator()

    result = CliRunner().invoke(cli.app, ["call-graph", str(tmp_path / "nope")], obj=_obj(fake, []))

    assert result.exit_code == 2
    assert fake.calls == []


def test_global_flags_become_overrides_and_prompt_answers(tmp_path: Path) -> None:
    fake = _FakeOrchestrator(artifacts=[PersistedArtifact(tmp_path / "a.dot", ArtifactCategory.CALL_GRAPH)])
    factory_calls: list[dict] = []

    result = CliRunner().invoke(
        cli.app,
        ["--yes", "--verbose", "--server-path", "/opt/traverse-lsp", "--timeout", "30", "call-graph", str(tmp_path)],
        obj=_obj(fake, factory_calls),
    )

    assert result.exit_code == 0, result.output
    kwargs = factory_calls[0]
    assert kwargs["overrides"] == {"serverPath": "/opt/traverse-lsp", "requestTimeoutSeconds": 30.0}
    assert kwargs["debug"] is True
    assert kwargs["confirm_fn"]("Download?") is True


def test_toggle_chunking_reports_new_state() -> None:
    fake = _FakeOrchestrator()

    result = CliRunner().invoke(cli.app, ["toggle-chunking"], obj=_obj(fake, []))

    assert result.exit_code == 0
    assert "chunking=on" in result.output


def test_restart_server(tmp_path: Path) -> None:
    fake = _FakeOrchestrator()

    result = CliRunner().invoke(cli.app, ["restart-server", str(tmp_path)], obj=_obj(fake, []))

    assert result.exit_code == 0
    assert fake.calls[0] == ("restart", tmp_path.absolute())


def test_download_server_pins_version(tmp_path: Path) -> None:
    path = tmp_path / "traverse-lsp-v2.0.0-linux-x64"
    fake = _FakeOrchestrator(record=InstalledBinaryRecord(path, "v2.0.0", PlatformTag("linux", "x64")))
    factory_calls: list[dict] = []

    result = CliRunner().invoke(cli.app, ["download-server", "--version", "v2.0.0"], obj=_obj(fake, factory_calls))

    assert result.exit_code == 0, result.output
    assert str(path) in result.output
    assert factory_calls[0]["overrides"] == {"releaseVersion": "v2.0.0"}
    assert fake.calls[0] == ("download", None)


def test_download_server_with_root_offers_to_start_there(tmp_path: Path) -> None:
    path = tmp_path / "traverse-lsp-v2.0.0-linux-x64"
    fake = _FakeOrchestrator(record=InstalledBinaryRecord(path, "v2.0.0", PlatformTag("linux", "x64")))
    factory_calls: list[dict] = []

    result = CliRunner().invoke(cli.app, ["download-server", str(tmp_path)], obj=_obj(fake, factory_calls))

    assert result.exit_code == 0, result.output
    assert fake.calls[0] == ("download", tmp_path.absolute())
    assert factory_calls[0]["project_root"] == tmp_path.absolute()
    assert fake.calls[-1] == ("shutdown",)


def test_download_server_failure_exits_non_zero() -> None:
    result = CliRunner().invoke(cli.app, ["download-server"], obj=_obj(_FakeOrchestrator(), []))
    assert result.exit_code == 1


def test_locate(tmp_path: Path) -> None:
    found = _FakeOrchestrator(location=BinaryLocation(tmp_path / "srv", BinarySource.INSTALLED))
    missing = _FakeOrchestrator()

    ok = CliRunner().invoke(cli.app, ["locate"], obj=_obj(found, []))
    absent = CliRunner().invoke(cli.app, ["locate"], obj=_obj(missing, []))

    assert ok.exit_code == 0
    assert f"{tmp_path / 'srv'} (installed)" in ok.output
    assert absent.exit_code == 1


def test_download_progress_tracks_deltas() -> None:
    progress = cli.DownloadProgress()
    progress(10, None)
    progress(50, 100)
    progress(100, 100)
    progress.close()
    progress.close()

"""Host-command facade tying provisioning, the server session and persistence together.

Every public operation here is a boundary: failures of the lower layers are
reported through the notifier and turned into an empty/false result instead of
propagating to the host.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Protocol
import os
import threading

from loguru import logger

from traverse_client.config import SettingsStore, TraverseSettings
from traverse_client.downloader import InstalledBinaryRecord, ProgressFn, ReleaseDownloader
from traverse_client.exceptions import (
    BinaryNotFound,
    DownloadError,
    PersistError,
    RequestCancelled,
    RequestTimeoutError,
    StartError,
    TraverseError,
)
from traverse_client.locator import BinaryLocation, BinaryLocator, BinarySource
from traverse_client.paths import StoragePaths, default_storage_dir, output_root
from traverse_client.persister import ArtifactCategory, PersistedArtifact, ResultPersister
from traverse_client.platform_identity import PlatformTag, identify, is_supported
from traverse_client.rpc import JSONObject, JSONValue
from traverse_client.schema import EmptyResult, parse_command_result
from traverse_client.session import ServerSession

DOWNLOAD_PROMPT = "Traverse LSP server is not installed. Would you like to download it now?"
START_AFTER_DOWNLOAD_PROMPT = "Server downloaded successfully. Start the language server now?"


class AnalysisCommand(str, Enum):
    CALL_GRAPH = "callGraph"
    SEQUENCE_DIAGRAM = "sequenceDiagram"
    STORAGE_ANALYSIS = "storageAnalysis"


@dataclass(frozen=True)
class CommandSpec:
    wire_id: str
    title: str
    category: ArtifactCategory


COMMAND_SPECS: dict[AnalysisCommand, CommandSpec] = {
    AnalysisCommand.CALL_GRAPH: CommandSpec(
        "traverse.generateCallGraph.workspace", "call graph", ArtifactCategory.CALL_GRAPH
    ),
    AnalysisCommand.SEQUENCE_DIAGRAM: CommandSpec(
        "traverse.generateSequenceDiagram.workspace", "sequence diagram", ArtifactCategory.SEQUENCE_DIAGRAM
    ),
    AnalysisCommand.STORAGE_ANALYSIS: CommandSpec(
        "traverse.analyzeStorage.workspace", "storage analysis", ArtifactCategory.STORAGE_REPORT
    ),
}


@dataclass(frozen=True)
class CommandRequest:
    command: AnalysisCommand
    workspace_root: Path
    chunking_enabled: bool = False

    def arguments(self) -> list[JSONValue]:
        return [{"workspace_folder": str(self.workspace_root), "chunking": self.chunking_enabled}]


class Notifier(Protocol):
    def info(self, message: str) -> None:
        """Report progress or success to the user."""

    def warning(self, message: str) -> None:
        """Report a recoverable condition."""

    def error(self, message: str) -> None:
        """Report a failed operation."""


@dataclass(frozen=True)
class LogNotifier:
    """Default notifier used when no host UI is attached."""

    def info(self, message: str) -> None:
        logger.info(message)

    def warning(self, message: str) -> None:
        logger.warning(message)

    def error(self, message: str) -> None:
        logger.error(message)


def _never_confirm(_prompt: str) -> bool:
    return False


def server_environment(
    settings: TraverseSettings,
    *,
    debug: bool = False,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env["RUST_LOG"] = "debug" if debug else "info"
    env["TRAVERSE_LSP_TRACE"] = "verbose" if debug else settings.trace_level
    return env


def initialization_options(settings: TraverseSettings) -> JSONObject:
    return {
        "maxNumberOfProblems": settings.max_number_of_problems,
        "trace": settings.trace_level,
    }


def _display_path(path: Path, root: Path) -> str:
    try:
        return str(path.relative_to(root))
    except ValueError:
        return str(path)


@dataclass
class CommandOrchestrator:
    settings_store: SettingsStore
    locator: BinaryLocator
    downloader: ReleaseDownloader
    session: ServerSession
    platform_tag: PlatformTag
    persister: ResultPersister = field(default_factory=ResultPersister)
    confirm_fn: Callable[[str], bool] = _never_confirm
    notifier: Notifier = field(default_factory=LogNotifier)
    progress_fn: ProgressFn | None = None
    debug: bool = False
    base_env: Mapping[str, str] | None = None
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def locate(self) -> BinaryLocation | None:
        return self.locator.locate(self.settings_store.load().server_path)

    def ensure_session(self, workspace_root: Path, *, cancel_event: threading.Event | None = None) -> bool:
        """Make sure a server is running, provisioning one with consent when none is found."""
        with self._lock:
            if self.session.is_running:
                return True
            settings = self.settings_store.load()
            if not is_supported(self.platform_tag):
                self.notifier.warning(
                    f"Platform {self.platform_tag} has no published Traverse LSP server build"
                )
            location = self.locator.locate(settings.server_path)
            try:
                self._launch(location, Path(workspace_root), settings, cancel_event)
            except BinaryNotFound as exc:
                self.notifier.warning(str(exc))
                return False
            except DownloadError as exc:
                self.notifier.error(f"Failed to download Traverse LSP server: {exc}")
                return False
            except TraverseError as exc:
                self.notifier.error(f"Failed to start Traverse LSP server: {exc}")
                return False
            return True

    def _launch(
        self,
        location: BinaryLocation | None,
        workspace_root: Path,
        settings: TraverseSettings,
        cancel_event: threading.Event | None,
    ) -> None:
        if location is None:
            self._start(self._provision(cancel_event), workspace_root, settings)
            return
        try:
            self._start(self.locator.prepare(location), workspace_root, settings)
        except StartError as exc:
            # A configured path is trusted as given; a broken download is replaced.
            if location.source is not BinarySource.INSTALLED:
                raise
            self.notifier.warning(f"Installed Traverse LSP server {location.path} failed to start: {exc}")
            self._start(self._provision(cancel_event), workspace_root, settings)

    def _provision(self, cancel_event: threading.Event | None) -> Path:
        if not self.confirm_fn(DOWNLOAD_PROMPT):
            raise BinaryNotFound("Traverse LSP server is required to run analysis; download declined")
        record = self.downloader.download_latest(progress_fn=self.progress_fn, cancel_event=cancel_event)
        self.notifier.info(f"Downloaded Traverse LSP server {record.version}")
        return record.path

    def _start(self, executable: Path, workspace_root: Path, settings: TraverseSettings) -> None:
        self.session.start(
            executable,
            workspace_root,
            server_environment(settings, debug=self.debug, base=self.base_env),
            initialization_options=initialization_options(settings),
        )
        logger.info(f"Traverse LSP server running for {workspace_root}")

    def build_request(self, command: AnalysisCommand, workspace_root: Path) -> CommandRequest:
        settings = self.settings_store.load()
        return CommandRequest(
            command=AnalysisCommand(command),
            workspace_root=Path(workspace_root).absolute(),
            chunking_enabled=settings.enable_chunking,
        )

    def run(
        self,
        command: AnalysisCommand,
        workspace_root: Path,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[PersistedArtifact]:
        return self.execute(self.build_request(command, workspace_root), cancel_event=cancel_event)

    def execute(
        self,
        request: CommandRequest,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[PersistedArtifact]:
        descriptor = COMMAND_SPECS[request.command]
        failure = f"Failed to generate {descriptor.title}"
        if not self.ensure_session(request.workspace_root, cancel_event=cancel_event):
            return []
        timeout = self.settings_store.load().request_timeout_seconds
        try:
            payload = self.session.execute_command(
                descriptor.wire_id, request.arguments(), timeout=timeout, cancel_event=cancel_event
            )
        except (RequestTimeoutError, RequestCancelled) as exc:
            # The server may still be working on the abandoned request.
            self.session.stop()
            self.notifier.error(f"{failure}: {exc}")
            return []
        except TraverseError as exc:
            self.notifier.error(f"{failure}: {exc}")
            return []

        result = parse_command_result(payload)
        if not result.success:
            reason = result.reason if isinstance(result, EmptyResult) else ""
            self.notifier.error(f"{failure}: {reason}" if reason else failure)
            return []
        try:
            artifacts = self.persister.persist(result, descriptor.category, request.workspace_root)
        except PersistError as exc:
            self.notifier.error(f"{failure}: {exc}")
            return []
        if not artifacts:
            self.notifier.warning(f"The {descriptor.title} result contained nothing to save")
            return []
        saved = ", ".join(_display_path(item.absolute_path, request.workspace_root) for item in artifacts)
        self.notifier.info(f"Generated {descriptor.title}: {saved}")
        return artifacts

    def generate_all(
        self,
        workspace_root: Path,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[PersistedArtifact]:
        root = Path(workspace_root).absolute()
        if not self.ensure_session(root, cancel_event=cancel_event):
            return []
        written: list[PersistedArtifact] = []
        for command in AnalysisCommand:
            if cancel_event is not None and cancel_event.is_set():
                break
            written.extend(self.run(command, root, cancel_event=cancel_event))
        if written:
            self.notifier.info(f"Analysis complete. Outputs saved under {output_root(root)}")
        else:
            self.notifier.warning("Analysis finished without producing any output")
        return written

    def toggle_chunking(self) -> bool:
        try:
            enabled = self.settings_store.toggle_chunking()
        except OSError as exc:
            self.notifier.error(f"Failed to update chunking setting: {exc}")
            return self.settings_store.load().enable_chunking
        self.notifier.info(f"Chunking {'enabled' if enabled else 'disabled'}")
        return enabled

    def restart_server(self, workspace_root: Path) -> bool:
        root = Path(workspace_root).absolute()
        with self._lock:
            launch = self.session.launch_spec
            if launch is not None and launch.working_directory == root:
                try:
                    self.session.restart()
                except StartError as exc:
                    logger.warning(f"Restart with previous launch parameters failed: {exc}")
                    self.session.stop()
                else:
                    self.notifier.info("Traverse LSP server restarted")
                    return True
            else:
                self.session.stop()
            started = self.ensure_session(root)
            if started:
                self.notifier.info("Traverse LSP server started")
            return started

    def download_server(
        self,
        workspace_root: Path | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> InstalledBinaryRecord | None:
        try:
            record = self.downloader.download_latest(progress_fn=self.progress_fn, cancel_event=cancel_event)
        except DownloadError as exc:
            self.notifier.error(f"Failed to download Traverse LSP server: {exc}")
            return None
        self.notifier.info(f"Downloaded Traverse LSP server {record.version} to {record.path}")
        if workspace_root is not None and self.confirm_fn(START_AFTER_DOWNLOAD_PROMPT):
            with self._lock:
                self.session.stop()
                if self.ensure_session(Path(workspace_root).absolute()):
                    self.notifier.info("Traverse LSP server started")
        return record

    def shutdown(self) -> None:
        with self._lock:
            self.session.stop()


def build_orchestrator(
    *,
    storage_dir: Path | None = None,
    project_root: Path | None = None,
    overrides: Mapping[str, object] | None = None,
    confirm_fn: Callable[[str], bool] = _never_confirm,
    notifier: Notifier | None = None,
    progress_fn: ProgressFn | None = None,
    debug: bool = False,
    token: str | None = None,
) -> CommandOrchestrator:
    """Wire the default collaborators for one host process."""
    storage = StoragePaths(storage_dir if storage_dir is not None else default_storage_dir())
    tag = identify()
    store = SettingsStore(storage, project_root=project_root, overrides=overrides)
    settings = store.load()
    downloader = ReleaseDownloader(
        storage,
        tag,
        repo=settings.release_repo,
        version=settings.release_version,
        token=token if token is not None else os.getenv("GITHUB_TOKEN", ""),
    )
    return CommandOrchestrator(
        settings_store=store,
        locator=BinaryLocator(storage, tag),
        downloader=downloader,
        session=ServerSession(),
        platform_tag=tag,
        confirm_fn=confirm_fn,
        notifier=notifier if notifier is not None else LogNotifier(),
        progress_fn=progress_fn,
        debug=debug,
    )

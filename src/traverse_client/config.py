from __future__ import annotations

from datetime import date, datetime, time
from pathlib import Path
from typing import Mapping, TypeAlias
import json
import os
import tempfile
import tomllib

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from traverse_client.paths import StoragePaths

DEFAULT_CONFIG_NAME = "traverse.toml"
CONFIG_SECTION = "traverse-lsp"
DEFAULT_RELEASE_REPO = "GianlucaBrigandi/traverse"
SERVER_PATH_ENV = "TRAVERSE_SERVER_PATH"
TRACE_LEVELS = ("off", "messages", "verbose")

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]


class TraverseSettings(BaseModel):
    """Read-only configuration surface consumed by the client runtime."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    enable_chunking: bool = Field(False, alias="enableChunking")
    server_path: str = Field("", alias="serverPath")
    trace_server: str = Field("off", alias="trace.server")
    max_number_of_problems: int = Field(100, alias="maxNumberOfProblems")
    release_repo: str = Field(DEFAULT_RELEASE_REPO, alias="releaseRepo")
    release_version: str = Field("", alias="releaseVersion")
    request_timeout_seconds: float | None = Field(None, alias="requestTimeoutSeconds")

    @property
    def trace_level(self) -> str:
        level = self.trace_server.strip().lower()
        return level if level in TRACE_LEVELS else "off"


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        logger.warning(f"Ignoring invalid config {path}: {exc}")
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def _flatten_section(section: Mapping[str, object]) -> dict[str, object]:
    flat: dict[str, object] = {}
    for key, value in section.items():
        if key == "trace" and isinstance(value, Mapping):
            if "server" in value:
                flat["trace.server"] = value["server"]
            continue
        flat[str(key)] = value
    return flat


def project_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> dict[str, object]:
    data = load_config(root=root, config_path=config_path)
    section = data.get(CONFIG_SECTION, {})
    return _flatten_section(section) if isinstance(section, dict) else {}


def load_user_settings(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeError, json.JSONDecodeError) as exc:
        logger.warning(f"Ignoring unreadable settings file {path}: {exc}")
        return {}
    if not isinstance(payload, Mapping):
        return {}
    return _flatten_section(payload)


def write_user_settings(path: Path, payload: Mapping[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(dict(payload), indent=2, sort_keys=True) + "\n"
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def merge_payload(payload: Mapping[str, object], defaults: Mapping[str, object]) -> dict[str, object]:
    merged = dict(defaults)
    for key, value in payload.items():
        if value is None:
            continue
        merged[key] = value
    return merged


def _canonical_keys(payload: Mapping[str, object]) -> dict[str, object]:
    """Map field names and aliases onto aliases so layers merge key-for-key."""
    by_name = {name: field.alias or name for name, field in TraverseSettings.model_fields.items()}
    return {by_name.get(key, key): value for key, value in payload.items()}


def _env_overrides() -> dict[str, object]:
    server_path = os.getenv(SERVER_PATH_ENV, "").strip()
    return {"serverPath": server_path} if server_path else {}


class SettingsStore:
    """Layered settings: defaults, project ``traverse.toml``, user JSON, overrides."""

    def __init__(
        self,
        storage: StoragePaths,
        *,
        project_root: Path | None = None,
        overrides: Mapping[str, object] | None = None,
    ) -> None:
        self.storage = storage
        self.project_root = project_root
        self.overrides = _canonical_keys(dict(overrides or {}))

    def load(self) -> TraverseSettings:
        merged: dict[str, object] = {}
        for layer in (
            project_defaults(root=self.project_root),
            load_user_settings(self.storage.settings_path),
            _env_overrides(),
            self.overrides,
        ):
            merged = merge_payload(_canonical_keys(layer), merged)
        try:
            return TraverseSettings.model_validate(merged)
        except ValidationError as exc:
            logger.warning(f"Invalid settings, falling back to defaults: {exc}")
            return TraverseSettings()

    def update_user_setting(self, key: str, value: object) -> None:
        path = self.storage.settings_path
        current = _canonical_keys(load_user_settings(path))
        current.update(_canonical_keys({key: value}))
        write_user_settings(path, current)

    def toggle_chunking(self) -> bool:
        enabled = not self.load().enable_chunking
        self.update_user_setting("enableChunking", enabled)
        logger.info(f"Chunking {'enabled' if enabled else 'disabled'}")
        return enabled

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import re

from traverse_client.platform_identity import PlatformTag

STORAGE_HOME_ENV = "TRAVERSE_HOME"
DEFAULT_STORAGE_DIRNAME = ".traverse"
BINARY_PREFIX = "traverse-lsp"
PARTIAL_SUFFIX = ".part"
SETTINGS_FILENAME = "settings.json"
OUTPUT_DIRNAME = "traverse-output"

_VERSION_SAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def default_storage_dir() -> Path:
    override = os.getenv(STORAGE_HOME_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / DEFAULT_STORAGE_DIRNAME


def safe_version(version: str) -> str:
    cleaned = _VERSION_SAFE_RE.sub("_", version.strip())
    return cleaned or "unversioned"


@dataclass(frozen=True)
class StoragePaths:
    """Layout of the private storage directory shared by every session."""

    root: Path

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def log_dir(self) -> Path:
        return self.root / "logs"

    @property
    def settings_path(self) -> Path:
        return self.root / SETTINGS_FILENAME

    def binary_name(self, version: str, tag: PlatformTag) -> str:
        return f"{BINARY_PREFIX}-{safe_version(version)}-{tag}{tag.executable_suffix}"

    def binary_path(self, version: str, tag: PlatformTag) -> Path:
        return self.bin_dir / self.binary_name(version, tag)

    def installed_binaries(self, tag: PlatformTag) -> list[Path]:
        """Installed binaries for ``tag``, most recently installed first."""
        if not self.bin_dir.is_dir():
            return []
        suffix = f"-{tag}{tag.executable_suffix}"
        candidates: list[tuple[int, str, Path]] = []
        for entry in self.bin_dir.iterdir():
            name = entry.name
            if not name.startswith(f"{BINARY_PREFIX}-") or not name.endswith(suffix):
                continue
            try:
                if not entry.is_file():
                    continue
                mtime_ns = entry.stat().st_mtime_ns
            except OSError:
                continue
            candidates.append((mtime_ns, name, entry))
        candidates.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [path for _, _, path in candidates]


def output_root(workspace_root: Path) -> Path:
    return workspace_root / OUTPUT_DIRNAME

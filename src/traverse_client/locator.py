from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
import os
import stat

from loguru import logger

from traverse_client.exceptions import InstallFailed
from traverse_client.paths import StoragePaths
from traverse_client.platform_identity import PlatformTag


class BinarySource(str, Enum):
    CONFIGURED = "configured"
    INSTALLED = "installed"


@dataclass(frozen=True)
class BinaryLocation:
    path: Path
    source: BinarySource


def ensure_executable(path: Path, tag: PlatformTag) -> None:
    """Add owner-execute to ``path``; a no-op on Windows and when already set."""
    if tag.is_windows:
        return
    try:
        mode = path.stat().st_mode
        if mode & stat.S_IXUSR:
            return
        os.chmod(path, mode | stat.S_IXUSR)
    except OSError as exc:
        raise InstallFailed(
            "Unable to mark server binary executable",
            platform_tag=str(tag),
            detail=f"{path}: {exc}",
        ) from exc


class BinaryLocator:
    def __init__(self, storage: StoragePaths, platform_tag: PlatformTag) -> None:
        self.storage = storage
        self.platform_tag = platform_tag

    def locate(self, configured_path: str | None = None) -> BinaryLocation | None:
        override = (configured_path or "").strip()
        if override:
            candidate = Path(override).expanduser()
            if candidate.is_file():
                logger.debug(f"Using configured server binary {candidate}")
                return BinaryLocation(candidate, BinarySource.CONFIGURED)
            logger.warning(
                f"Configured server path {candidate} does not exist; "
                "falling back to installed binaries"
            )
        installed = self.storage.installed_binaries(self.platform_tag)
        if installed:
            logger.debug(f"Using installed server binary {installed[0]}")
            return BinaryLocation(installed[0], BinarySource.INSTALLED)
        return None

    def prepare(self, location: BinaryLocation) -> Path:
        """Make an installed binary runnable; configured paths are left untouched."""
        if location.source is BinarySource.INSTALLED:
            ensure_executable(location.path, self.platform_tag)
        return location.path

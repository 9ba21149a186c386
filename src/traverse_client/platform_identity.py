from __future__ import annotations

from dataclasses import dataclass
import platform

_OS_ALIASES = {
    "darwin": "macos",
    "macos": "macos",
    "linux": "linux",
    "windows": "windows",
    "win32": "windows",
}
_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "armv8": "arm64",
}

SUPPORTED_TAGS: frozenset[str] = frozenset(
    {
        "macos-x64",
        "macos-arm64",
        "linux-x64",
        "linux-arm64",
        "windows-x64",
    }
)


@dataclass(frozen=True)
class PlatformTag:
    os: str
    arch: str

    def __str__(self) -> str:
        return f"{self.os}-{self.arch}"

    @property
    def is_windows(self) -> bool:
        return self.os == "windows"

    @property
    def executable_suffix(self) -> str:
        return ".exe" if self.is_windows else ""


def normalize(system: str, machine: str) -> PlatformTag:
    system_key = system.strip().lower()
    machine_key = machine.strip().lower()
    return PlatformTag(
        os=_OS_ALIASES.get(system_key, system_key or "unknown"),
        arch=_ARCH_ALIASES.get(machine_key, machine_key or "unknown"),
    )


def identify(
    *,
    system_fn=platform.system,
    machine_fn=platform.machine,
) -> PlatformTag:
    """Return the canonical tag for the running host."""
    return normalize(system_fn(), machine_fn())


def is_supported(tag: PlatformTag) -> bool:
    return str(tag) in SUPPORTED_TAGS

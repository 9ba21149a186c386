from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable
import hashlib
import http.client
import json
import os
import tempfile
import threading
import urllib.error
import urllib.parse
import urllib.request

from loguru import logger
from pydantic import ValidationError

from traverse_client.config import DEFAULT_RELEASE_REPO
from traverse_client.exceptions import (
    DownloadCancelled,
    DownloadFailed,
    DownloadInProgress,
    InstallFailed,
    UnsupportedPlatform,
)
from traverse_client.locator import ensure_executable
from traverse_client.paths import PARTIAL_SUFFIX, StoragePaths
from traverse_client.platform_identity import PlatformTag, is_supported
from traverse_client.schema import ReleaseAssetDTO, ReleaseDTO

GITHUB_API_URL = "https://api.github.com"
_API_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
    "User-Agent": "traverse-client",
}
_ASSET_HEADERS = {
    "Accept": "application/octet-stream",
    "User-Agent": "traverse-client",
}
_CHUNK_SIZE = 64 * 1024
_NON_BINARY_SUFFIXES = (".sha256", ".sha512", ".asc", ".sig", ".txt", ".json", ".md")

# One transfer per process, whichever downloader instance starts it.
_PROCESS_DOWNLOAD_LOCK = threading.Lock()

ProgressFn = Callable[[int, int | None], None]


@dataclass(frozen=True)
class ReleaseAsset:
    version: str
    platform_tag: PlatformTag
    download_url: str
    name: str
    size: int | None = None
    digest: str | None = None


@dataclass(frozen=True)
class InstalledBinaryRecord:
    path: Path
    version: str
    platform_tag: PlatformTag


def release_feed_url(repo: str, version: str = "", *, api_url: str = GITHUB_API_URL) -> str:
    repo_path = repo.strip().strip("/")
    pinned = version.strip()
    if pinned:
        return f"{api_url}/repos/{repo_path}/releases/tags/{urllib.parse.quote(pinned, safe='')}"
    return f"{api_url}/repos/{repo_path}/releases/latest"


def _pick_release(payload: object) -> object:
    if not isinstance(payload, list):
        return payload
    published = [item for item in payload if isinstance(item, dict) and not item.get("draft")]
    stable = [item for item in published if not item.get("prerelease")]
    if stable:
        return stable[0]
    if published:
        return published[0]
    return None


def _asset_rank(asset: ReleaseAssetDTO, tag: PlatformTag) -> int:
    lowered = asset.name.lower()
    if lowered.endswith(f"{tag}{tag.executable_suffix}"):
        return 0
    if tag.is_windows and lowered.endswith(".exe"):
        return 1
    return 2


class ReleaseDownloader:
    """Resolve, fetch and atomically install server binaries from the release feed."""

    def __init__(
        self,
        storage: StoragePaths,
        platform_tag: PlatformTag,
        *,
        repo: str = DEFAULT_RELEASE_REPO,
        version: str = "",
        feed_url: str | None = None,
        token: str = "",
        urlopen_fn: Callable[..., object] = urllib.request.urlopen,
        timeout: float = 60.0,
        lock: threading.Lock | None = None,
    ) -> None:
        self.storage = storage
        self.platform_tag = platform_tag
        self.feed_url = feed_url or release_feed_url(repo, version)
        self.token = token.strip()
        self.urlopen_fn = urlopen_fn
        self.timeout = timeout
        self._lock = lock or _PROCESS_DOWNLOAD_LOCK

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def fetch_release(self) -> ReleaseDTO:
        headers = dict(_API_HEADERS)
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        request = urllib.request.Request(self.feed_url, headers=headers)
        tag = str(self.platform_tag)
        try:
            with self.urlopen_fn(request, timeout=self.timeout) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise DownloadFailed(
                "Release feed request failed",
                platform_tag=tag,
                status=exc.code,
                url=self.feed_url,
                detail=str(exc.reason),
            ) from exc
        except urllib.error.URLError as exc:
            raise DownloadFailed(
                "Release feed unreachable", platform_tag=tag, url=self.feed_url, detail=str(exc.reason)
            ) from exc
        except (OSError, http.client.HTTPException, UnicodeError, ValueError) as exc:
            raise DownloadFailed(
                "Release feed response unreadable", platform_tag=tag, url=self.feed_url, detail=str(exc)
            ) from exc
        release = _pick_release(payload)
        if release is None:
            raise DownloadFailed("Release feed lists no published release", platform_tag=tag, url=self.feed_url)
        try:
            return ReleaseDTO.model_validate(release)
        except ValidationError as exc:
            raise DownloadFailed(
                "Release feed payload is malformed",
                platform_tag=tag,
                url=self.feed_url,
                detail=f"{exc.error_count()} validation error(s)",
            ) from exc

    def select_asset(self, release: ReleaseDTO) -> ReleaseAsset:
        tag = self.platform_tag
        needle = str(tag)
        matches = [
            asset
            for asset in release.assets
            if needle in asset.name.lower() and not asset.name.lower().endswith(_NON_BINARY_SUFFIXES)
        ]
        if not matches:
            raise UnsupportedPlatform(
                f"Release {release.tag_name} has no asset for this platform",
                platform_tag=needle,
                detail="assets: " + ", ".join(asset.name for asset in release.assets) if release.assets else "no assets",
            )
        best = min(matches, key=lambda asset: _asset_rank(asset, tag))
        return ReleaseAsset(
            version=release.tag_name,
            platform_tag=tag,
            download_url=best.browser_download_url,
            name=best.name,
            size=best.size,
            digest=best.digest,
        )

    def download_latest(
        self,
        *,
        progress_fn: ProgressFn | None = None,
        cancel_event: threading.Event | None = None,
    ) -> InstalledBinaryRecord:
        if not self._lock.acquire(blocking=False):
            raise DownloadInProgress("A server download is already running", platform_tag=str(self.platform_tag))
        try:
            if not is_supported(self.platform_tag):
                raise UnsupportedPlatform("No server build is published for this platform", platform_tag=str(self.platform_tag))
            release = self.fetch_release()
            asset = self.select_asset(release)
            logger.info(f"Downloading {asset.name} ({asset.version}) from {asset.download_url}")
            record = self._install(asset, progress_fn=progress_fn, cancel_event=cancel_event)
            self._evict_stale(record.path)
            logger.info(f"Installed server {record.version} at {record.path}")
            return record
        finally:
            self._lock.release()

    def _install(
        self,
        asset: ReleaseAsset,
        *,
        progress_fn: ProgressFn | None,
        cancel_event: threading.Event | None,
    ) -> InstalledBinaryRecord:
        tag = str(self.platform_tag)
        if urllib.parse.urlparse(asset.download_url).scheme != "https":
            raise DownloadFailed("Refusing non-https asset download", platform_tag=tag, url=asset.download_url)
        final_path = self.storage.binary_path(asset.version, self.platform_tag)
        try:
            self.storage.bin_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.storage.bin_dir, prefix=f".{final_path.name}.", suffix=PARTIAL_SUFFIX
            )
        except OSError as exc:
            raise InstallFailed(
                "Unable to prepare storage directory", platform_tag=tag, detail=f"{self.storage.bin_dir}: {exc}"
            ) from exc
        tmp_path = Path(tmp_name)
        committed = False
        try:
            with os.fdopen(fd, "wb") as handle:
                written, sha256 = self._transfer(asset, handle, progress_fn, cancel_event)
            self._verify(asset, written, sha256)
            ensure_executable(tmp_path, self.platform_tag)
            try:
                os.replace(tmp_path, final_path)
            except OSError as exc:
                raise InstallFailed(
                    "Unable to move downloaded binary into place", platform_tag=tag, detail=f"{final_path}: {exc}"
                ) from exc
            committed = True
        finally:
            if not committed:
                tmp_path.unlink(missing_ok=True)
        return InstalledBinaryRecord(path=final_path, version=asset.version, platform_tag=self.platform_tag)

    def _transfer(
        self,
        asset: ReleaseAsset,
        handle,
        progress_fn: ProgressFn | None,
        cancel_event: threading.Event | None,
    ) -> tuple[int, str]:
        tag = str(self.platform_tag)
        request = urllib.request.Request(asset.download_url, headers=dict(_ASSET_HEADERS))
        digest = hashlib.sha256()
        written = 0
        try:
            with self.urlopen_fn(request, timeout=self.timeout) as response:
                status = int(getattr(response, "status", 200) or 200)
                if not 200 <= status < 300:
                    raise DownloadFailed("Asset download rejected", platform_tag=tag, status=status, url=asset.download_url)
                total = asset.size
                if total is None:
                    header = getattr(response, "headers", {}).get("Content-Length")
                    total = int(header) if header and str(header).isdigit() else None
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        raise DownloadCancelled("Download cancelled", platform_tag=tag, url=asset.download_url)
                    chunk = response.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    handle.write(chunk)
                    digest.update(chunk)
                    written += len(chunk)
                    if progress_fn is not None:
                        progress_fn(written, total)
                handle.flush()
                os.fsync(handle.fileno())
        except urllib.error.HTTPError as exc:
            raise DownloadFailed(
                "Asset download failed", platform_tag=tag, status=exc.code, url=asset.download_url, detail=str(exc.reason)
            ) from exc
        except urllib.error.URLError as exc:
            raise DownloadFailed(
                "Asset host unreachable", platform_tag=tag, url=asset.download_url, detail=str(exc.reason)
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise DownloadFailed(
                "Asset transfer interrupted", platform_tag=tag, url=asset.download_url, detail=str(exc)
            ) from exc
        return written, digest.hexdigest()

    def _verify(self, asset: ReleaseAsset, written: int, sha256: str) -> None:
        tag = str(self.platform_tag)
        if written == 0:
            raise DownloadFailed("Downloaded asset is empty", platform_tag=tag, url=asset.download_url)
        if asset.size is not None and written != asset.size:
            raise DownloadFailed(
                "Downloaded asset is truncated",
                platform_tag=tag,
                url=asset.download_url,
                detail=f"expected {asset.size} bytes, received {written}",
            )
        if asset.digest and asset.digest.lower().startswith("sha256:"):
            expected = asset.digest.split(":", 1)[1].strip().lower()
            if expected != sha256:
                raise DownloadFailed(
                    "Downloaded asset failed checksum verification",
                    platform_tag=tag,
                    url=asset.download_url,
                    detail=f"expected sha256 {expected}, got {sha256}",
                )

    def _evict_stale(self, keep: Path) -> None:
        for path in self.storage.installed_binaries(self.platform_tag):
            if path == keep:
                continue
            try:
                path.unlink()
                logger.info(f"Removed superseded server binary {path}")
            except OSError as exc:
                logger.warning(f"Unable to remove superseded server binary {path}: {exc}")

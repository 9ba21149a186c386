from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator
import io
import json
import os
import subprocess
import sys
import threading
import time

STUB_SERVER = Path(__file__).with_name("stub_server.py")
PYGLS_STUB_SERVER = Path(__file__).with_name("pygls_stub_server.py")


def script_process_factory(script: Path) -> Callable[..., subprocess.Popen]:
    """Run ``script`` with this interpreter in place of the requested executable."""

    def _factory(args, **kwargs):
        return subprocess.Popen([sys.executable, str(script), *list(args)[1:]], **kwargs)

    return _factory


def stub_env(mode: str = "ok", *, record: Path | None = None, fail: str | None = None) -> dict[str, str]:
    env = dict(os.environ)
    env["TRAVERSE_STUB_MODE"] = mode
    if record is not None:
        env["TRAVERSE_STUB_RECORD"] = str(record)
    if fail is not None:
        env["TRAVERSE_STUB_FAIL"] = fail
    return env


def recorded_commands(path: Path) -> list[dict]:
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@contextmanager
def env_scope(values: dict[str, str | None]) -> Iterator[None]:
    saved = {key: os.environ.get(key) for key in values}
    try:
        for key, value in values.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        yield
    finally:
        for key, value in saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


class FakeResponse:
    """Minimal stand-in for the object returned by ``urllib.request.urlopen``."""

    def __init__(
        self,
        body: bytes,
        *,
        status: int = 200,
        headers: dict[str, str] | None = None,
        fail_after: int | None = None,
        gate: threading.Event | None = None,
        entered: threading.Event | None = None,
    ) -> None:
        self._stream = io.BytesIO(body)
        self.status = status
        self.headers = headers or {}
        self._fail_after = fail_after
        self._served = 0
        self._gate = gate
        self._entered = entered

    def read(self, size: int = -1) -> bytes:
        if self._entered is not None:
            self._entered.set()
        if self._gate is not None:
            self._gate.wait(timeout=10)
        if self._fail_after is not None:
            if self._served >= self._fail_after:
                raise ConnectionResetError("connection reset by peer")
            remaining = self._fail_after - self._served
            size = remaining if size is None or size < 0 else min(size, remaining)
        chunk = self._stream.read(size)
        self._served += len(chunk)
        return chunk

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *_exc) -> None:
        return None


class FakeUrlopen:
    """Route requests by URL to response factories and record what was asked for."""

    def __init__(self, routes: dict[str, Callable[[], FakeResponse]]) -> None:
        self.routes = routes
        self.requests: list = []

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        handler = self.routes.get(request.full_url)
        if handler is None:
            raise AssertionError(f"unexpected request for {request.full_url}")
        return handler()

    @property
    def urls(self) -> list[str]:
        return [request.full_url for request in self.requests]


def release_payload(tag: str, assets: list[tuple[str, bytes]], *, base: str = "https://downloads.example.test") -> dict:
    return {
        "tag_name": tag,
        "name": f"Traverse {tag}",
        "draft": False,
        "prerelease": False,
        "assets": [
            {
                "name": name,
                "browser_download_url": f"{base}/{tag}/{name}",
                "size": len(body),
            }
            for name, body in assets
        ],
    }


def release_routes(
    feed_url: str,
    tag: str,
    assets: list[tuple[str, bytes]],
    **response_kwargs,
) -> dict[str, Callable[[], FakeResponse]]:
    payload = release_payload(tag, assets)
    routes: dict[str, Callable[[], FakeResponse]] = {
        feed_url: lambda: FakeResponse(json.dumps(payload).encode("utf-8")),
    }
    for name, body in assets:
        url = f"https://downloads.example.test/{tag}/{name}"
        routes[url] = lambda body=body: FakeResponse(body, **response_kwargs)
    return routes


class RecordingNotifier:
    def __init__(self) -> None:
        self.infos: list[str] = []
        self.warnings: list[str] = []
        self.errors: list[str] = []

    def info(self, message: str) -> None:
        self.infos.append(message)

    def warning(self, message: str) -> None:
        self.warnings.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)

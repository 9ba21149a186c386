from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT, ROOT / "src"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest
from loguru import logger

from traverse_client.paths import StoragePaths
from traverse_client.platform_identity import PlatformTag
from traverse_client.session import ServerSession
from tests.helpers import STUB_SERVER, script_process_factory


@pytest.fixture
def storage(tmp_path: Path) -> StoragePaths:
    return StoragePaths(tmp_path / "storage")


@pytest.fixture
def linux_x64() -> PlatformTag:
    return PlatformTag("linux", "x64")


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "proj"
    root.mkdir()
    return root


@pytest.fixture
def log_records():
    records: list[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


@pytest.fixture
def make_session():
    created: list[ServerSession] = []

    def _make(**kwargs) -> ServerSession:
        kwargs.setdefault("process_factory", script_process_factory(STUB_SERVER))
        kwargs.setdefault("handshake_timeout", 10.0)
        kwargs.setdefault("stop_grace", 2.0)
        session = ServerSession(**kwargs)
        created.append(session)
        return session

    yield _make
    for session in created:
        session.stop()

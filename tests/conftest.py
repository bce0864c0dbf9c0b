from __future__ import annotations

import logging
import queue
from pathlib import Path

import pytest

import tail_mirror


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("tests.tail_mirror")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def records() -> queue.Queue:
    return queue.Queue(maxsize=1)


@pytest.fixture
def source(tmp_path: Path) -> Path:
    path = tmp_path / "src" / "capture.tiff"
    path.parent.mkdir()
    path.write_bytes(b"")
    return path


@pytest.fixture
def replica(tmp_path: Path) -> Path:
    return tmp_path / "out" / "capture.tiff"


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    app_dir = tmp_path / "home" / ".tail_mirror"
    monkeypatch.setattr(tail_mirror, "APP_DIR", app_dir)
    monkeypatch.setattr(tail_mirror, "CONFIG_PATH", app_dir / "config.json")
    return app_dir / "config.json"

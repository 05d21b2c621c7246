"""Shared fakes and fixtures for dotengine tests."""

import os
import stat
import threading
import time
from pathlib import Path

import pytest

from dotengine import release_engine
from dotengine.engines.base import Engine
from dotengine.engines.command import executable_names
from dotengine.formats import Format
from dotengine.models import EngineResult

FIXTURES = Path(__file__).parent / "fixtures"
STANDALONE_SVG_HEADER = '<?xml version="1.0" encoding="UTF-8" standalone="no"?>'


class EchoEngine(Engine):
    """Engine that wraps the source in <svg> and records overlapping use."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.overlapped = False
        self.closed = False
        self._lock = threading.Lock()

    def render(self, request):
        with self._lock:
            self.active += 1
            self.calls += 1
            if self.active > 1:
                self.overlapped = True
        try:
            time.sleep(self.delay)
            return EngineResult(
                data=f"<svg>{request.source}</svg>".encode("utf-8"), format=request.format
            )
        finally:
            with self._lock:
                self.active -= 1

    def close(self):
        self.closed = True


class FailingEngine(Engine):
    """Engine that always raises the given error."""

    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0
        self.closed = False

    def render(self, request):
        self.calls += 1
        raise self.error

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _release_default_engine():
    yield
    release_engine()


@pytest.fixture
def fake_dot(tmp_path) -> Path:
    """An empty executable named like the platform's ``dot``."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    dot = bin_dir / executable_names("dot")[0]
    dot.write_text("")
    dot.chmod(dot.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return dot


@pytest.fixture
def svg_request():
    from dotengine.models import RenderRequest

    return RenderRequest("graph g {a--b}", format=Format.SVG_STANDALONE)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove DOTENGINE_* variables so settings use their defaults."""
    for key in list(os.environ):
        if key.startswith("DOTENGINE_"):
            monkeypatch.delenv(key)
    return monkeypatch

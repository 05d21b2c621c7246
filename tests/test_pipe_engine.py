"""Tests for PipeEngine, with graphviz.pipe patched."""

import shutil

import pytest

graphviz = pytest.importorskip("graphviz")

from dotengine.engines.pipe import PipeEngine  # noqa: E402
from dotengine.exceptions import ExecutionError, MissingDependencyError  # noqa: E402
from dotengine.formats import Format, Layout, Rasterizer  # noqa: E402
from dotengine.models import RenderRequest  # noqa: E402


@pytest.fixture
def calls(monkeypatch):
    recorded = []

    def fake_pipe(engine, format, data, renderer=None, formatter=None, quiet=False):
        recorded.append(
            {"engine": engine, "format": format, "data": data, "renderer": renderer, "formatter": formatter}
        )
        return b'<?xml version="1.0"?>\n<svg>' + data + b"</svg>"

    monkeypatch.setattr(graphviz, "pipe", fake_pipe)
    return recorded


def test_render_passes_layout_and_format(calls):
    engine = PipeEngine(layout=Layout.NEATO)
    result = engine.render(RenderRequest("graph g {a--b}", format=Format.SVG))

    assert result.text == "<svg>graph g {a--b}</svg>"
    assert calls == [
        {"engine": "neato", "format": "svg", "data": b"graph g {a--b}", "renderer": None, "formatter": None}
    ]


def test_request_layout_wins(calls):
    PipeEngine(layout=Layout.NEATO).render(RenderRequest("graph g {}", layout="circo"))
    assert calls[0]["engine"] == "circo"


def test_rasterizer_is_split_into_renderer_and_formatter(calls):
    request = RenderRequest("graph g {}", rasterizer=Rasterizer.builtin("png", "cairo", "gd"))
    PipeEngine().render(request)
    assert calls[0]["format"] == "png"
    assert calls[0]["renderer"] == "cairo"
    assert calls[0]["formatter"] == "gd"


def test_rasterized_png_result_format(monkeypatch):
    monkeypatch.setattr(graphviz, "pipe", lambda *args, **kwargs: b"\x89PNG\r\n\x1a\n")
    request = RenderRequest("graph g {}", rasterizer=Rasterizer.builtin("png", "cairo"))

    result = PipeEngine().render(request)
    assert result.format is Format.PNG
    assert result.data == b"\x89PNG\r\n\x1a\n"


def test_failed_process_becomes_execution_error(monkeypatch):
    def failing_pipe(*args, **kwargs):
        raise graphviz.CalledProcessError(1, ["dot", "-Tsvg"], output=b"", stderr=b"syntax error in line 1")

    monkeypatch.setattr(graphviz, "pipe", failing_pipe)
    with pytest.raises(ExecutionError) as info:
        PipeEngine().render(RenderRequest("graph g {"))
    assert "syntax error" in info.value.diagnostics
    assert info.value.context == "dot -Tsvg"


def test_missing_executable_is_missing_dependency(monkeypatch):
    def missing_pipe(*args, **kwargs):
        raise graphviz.ExecutableNotFound(["dot"])

    monkeypatch.setattr(graphviz, "pipe", missing_pipe)
    with pytest.raises(MissingDependencyError) as info:
        PipeEngine().render(RenderRequest("graph g {}"))
    assert info.value.artifact == "dot"


def test_rejected_arguments_become_execution_error(monkeypatch):
    def rejecting_pipe(*args, **kwargs):
        raise ValueError("unknown format: 'nope'")

    monkeypatch.setattr(graphviz, "pipe", rejecting_pipe)
    with pytest.raises(ExecutionError, match="rejected"):
        PipeEngine().render(RenderRequest("graph g {}"))


@pytest.mark.skipif(shutil.which("dot") is None, reason="Graphviz not installed")
def test_real_pipe():
    result = PipeEngine().render(RenderRequest("graph g {alpha--beta}", format=Format.SVG))
    assert result.text.startswith("<svg")

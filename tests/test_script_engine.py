"""Tests for the script engine adapters with a scripted fake interpreter."""

import json
import logging
import threading
import time

import pytest

from dotengine.engines import script as script_module
from dotengine.engines.script import (
    CallbackScriptEngine,
    DirectScriptEngine,
    ScriptEngine,
)
from dotengine.exceptions import (
    ConfigurationError,
    EngineTimeoutError,
    ExecutionError,
    MissingDependencyError,
)
from dotengine.formats import Format, Layout, Rasterizer
from dotengine.models import RenderRequest
from dotengine.settings import EngineSettings


def parse_render_call(script):
    """Extract (source, options) from a generated ``render(...)`` call."""
    decoder = json.JSONDecoder()
    start = script.index("render(") + len("render(")
    source, end = decoder.raw_decode(script, start)
    options, _ = decoder.raw_decode(script, end + len(", "))
    return source, options


class FakeInterpreter:
    """Stands in for QuickJS.

    Evaluating a render call either returns ``<svg>source</svg>`` (direct
    style) or queues a job that reports through the installed callables
    (callback style, when the script is a promise chain).
    """

    def __init__(self, delay=0.0):
        self.delay = delay
        self.respond = True
        self.fail_with = None
        self.value_override = None
        self.callables = {}
        self.jobs = []
        self.scripts = []
        self.options = []
        self.threads = set()
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._lock = threading.Lock()

    def eval(self, script):
        self.threads.add(threading.get_ident())
        self.scripts.append(script)
        if "throw new Error" in script:
            raise RuntimeError("Error: library is broken")
        if "render(" not in script or not script.startswith(("render(", "Promise")):
            return None

        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay)
            source, options = parse_render_call(script)
            self.options.append(options)
            if script.startswith("Promise"):
                self.jobs.append(lambda: self._report(source))
                return None
            if self.fail_with is not None:
                raise RuntimeError(self.fail_with)
            if self.value_override is not None:
                return self.value_override
            return f"<svg>{source}</svg>"
        finally:
            with self._lock:
                self.active -= 1

    def _report(self, source):
        if not self.respond:
            return
        self.callables["log"]("laying out")
        if self.fail_with is not None:
            self.callables["error"](self.fail_with)
        else:
            self.callables["result"](f"<svg>{source}</svg>")

    def set_callable(self, name, fn):
        self.callables[name] = fn

    def run_pending_jobs(self):
        while self.jobs:
            self.jobs.pop(0)()

    def close(self):
        self.closed = True


@pytest.fixture
def library(tmp_path):
    path = tmp_path / "viz.js"
    path.write_text("// layout library\n", encoding="utf-8")
    return path


@pytest.fixture
def interpreter():
    return FakeInterpreter()


def make_engine(cls, library, interpreter, **kwargs):
    return cls(library_path=library, interpreter_factory=lambda: interpreter, **kwargs)


class TestLibraryResolution:
    def test_no_library_configured(self, clean_env, interpreter):
        with pytest.raises(MissingDependencyError) as info:
            DirectScriptEngine(interpreter_factory=lambda: interpreter)
        assert info.value.artifact == "viz.js"

    def test_library_from_settings(self, library, interpreter):
        engine = DirectScriptEngine(
            interpreter_factory=lambda: interpreter,
            settings=EngineSettings(script_library=str(library)),
        )
        assert engine.library_path == library
        engine.close()

    def test_missing_library_file(self, tmp_path, interpreter):
        with pytest.raises(MissingDependencyError) as info:
            make_engine(DirectScriptEngine, tmp_path / "nope.js", interpreter)
        assert "nope.js" in info.value.artifact

    def test_broken_library_is_execution_error(self, tmp_path, interpreter):
        broken = tmp_path / "broken.js"
        broken.write_text("throw new Error('no');", encoding="utf-8")
        with pytest.raises(ExecutionError, match="Problem loading layout library") as info:
            make_engine(DirectScriptEngine, broken, interpreter)
        assert "library is broken" in info.value.diagnostics

    def test_library_then_prelude_loaded(self, library, interpreter):
        engine = make_engine(DirectScriptEngine, library, interpreter, prelude="var ready = 1;")
        assert interpreter.scripts == ["// layout library\n", "var ready = 1;"]
        engine.close()


class TestDirectScriptEngine:
    def test_render_returns_evaluation_value(self, library, interpreter):
        with make_engine(DirectScriptEngine, library, interpreter) as engine:
            result = engine.render(RenderRequest("graph g {a--b}", format=Format.SVG))
        assert result.text == "<svg>graph g {a--b}</svg>"

    def test_render_options(self, library, interpreter):
        with make_engine(DirectScriptEngine, library, interpreter) as engine:
            engine.render(
                RenderRequest("graph g {}", layout=Layout.NEATO, y_invert=True, total_memory=1 << 24)
            )
            engine.render(RenderRequest("graph g {}", format=Format.PLAIN))

        assert interpreter.options == [
            {"format": "svg", "engine": "neato", "yInvert": True, "totalMemory": 1 << 24},
            {"format": "plain", "engine": "dot", "yInvert": False},
        ]

    def test_source_is_escaped_into_script(self, library, interpreter):
        source = 'digraph { "quote\\"d" -> "line\nbreak" }'
        with make_engine(DirectScriptEngine, library, interpreter) as engine:
            result = engine.render(RenderRequest(source))
        assert result.text == f"<svg>{source}</svg>"

    def test_script_exception_becomes_execution_error(self, library, interpreter):
        interpreter.fail_with = "syntax error in line 1 near '--'"
        with make_engine(DirectScriptEngine, library, interpreter) as engine:
            with pytest.raises(ExecutionError) as info:
                engine.render(RenderRequest("graph g {a--"))
        assert "syntax error in line 1" in info.value.diagnostics
        assert info.value.context.startswith("render(")

    def test_non_text_value_rejected(self, library, interpreter):
        interpreter.value_override = 42
        with make_engine(DirectScriptEngine, library, interpreter) as engine:
            with pytest.raises(ExecutionError, match="expected text"):
                engine.render(RenderRequest("graph g {}"))

    def test_slow_evaluation_times_out(self, library):
        slow = FakeInterpreter(delay=0.5)
        engine = make_engine(DirectScriptEngine, library, slow, timeout=0.1)
        start = time.monotonic()
        with pytest.raises(EngineTimeoutError):
            engine.render(RenderRequest("graph g {}"))
        assert time.monotonic() - start < 0.5
        engine.close()

    def test_writes_output_path(self, library, interpreter, tmp_path):
        target = tmp_path / "out" / "g.svg"
        with make_engine(DirectScriptEngine, library, interpreter) as engine:
            result = engine.render(RenderRequest("graph g {}", output_path=target))
        assert result.path == target
        assert target.read_text(encoding="utf-8") == "<svg>graph g {}</svg>"


class TestCallbackScriptEngine:
    def test_result_callback_completes_render(self, library, interpreter):
        with make_engine(CallbackScriptEngine, library, interpreter) as engine:
            result = engine.render(RenderRequest("graph g {a--b}"))
        assert result.text == "<svg>graph g {a--b}</svg>"
        assert set(interpreter.callables) == {"result", "error", "log"}

    def test_log_callback_goes_to_logger(self, library, interpreter, caplog):
        with caplog.at_level(logging.INFO, logger="dotengine.script"):
            with make_engine(CallbackScriptEngine, library, interpreter) as engine:
                engine.render(RenderRequest("graph g {}"))
        assert "laying out" in [r.getMessage() for r in caplog.records if r.name == "dotengine.script"]

    def test_error_callback_carries_logs(self, library, interpreter):
        interpreter.fail_with = "syntax error in line 1"
        with make_engine(CallbackScriptEngine, library, interpreter) as engine:
            with pytest.raises(ExecutionError) as info:
                engine.render(RenderRequest("graph g {a--"))
        assert "syntax error in line 1" in info.value.diagnostics
        assert "laying out" in info.value.diagnostics

    def test_silent_library_times_out_then_recovers(self, library, interpreter):
        """A render with no terminal callback times out; the next one still works."""
        engine = make_engine(CallbackScriptEngine, library, interpreter, timeout=0.2)
        interpreter.respond = False
        with pytest.raises(EngineTimeoutError):
            engine.render(RenderRequest("graph first {}"))

        interpreter.respond = True
        assert engine.render(RenderRequest("graph second {}")).text == "<svg>graph second {}</svg>"
        engine.close()

    def test_late_callback_from_timed_out_render_is_dropped(self, library, interpreter):
        engine = make_engine(CallbackScriptEngine, library, interpreter, timeout=0.2)
        interpreter.respond = False
        with pytest.raises(EngineTimeoutError):
            engine.render(RenderRequest("graph first {}"))
        stale_result = interpreter.callables["result"]

        interpreter.respond = True
        engine.render(RenderRequest("graph second {}"))
        stale_result("<svg>late</svg>")
        assert engine.render(RenderRequest("graph third {}")).text == "<svg>graph third {}</svg>"
        engine.close()


class TestConcurrency:
    @pytest.mark.parametrize("cls", [DirectScriptEngine, CallbackScriptEngine])
    def test_concurrent_renders_are_serialized(self, cls, library):
        """Renders from many threads never overlap and all run on one worker thread."""
        interpreter = FakeInterpreter(delay=0.02)
        engine = make_engine(cls, library, interpreter)
        results = {}
        errors = []

        def worker(i):
            try:
                results[i] = engine.render(RenderRequest(f"graph g{i} {{}}")).text
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        engine.close()

        assert not errors
        assert results == {i: f"<svg>graph g{i} {{}}</svg>" for i in range(6)}
        assert interpreter.max_active == 1
        assert len(interpreter.threads) == 1


class TestUnsupportedAndLifecycle:
    def test_binary_format_rejected(self, library, interpreter):
        with make_engine(DirectScriptEngine, library, interpreter) as engine:
            with pytest.raises(ExecutionError, match="PNG"):
                engine.render(RenderRequest("graph g {}", format=Format.PNG))

    def test_rasterizer_rejected(self, library, interpreter):
        request = RenderRequest("graph g {}", rasterizer=Rasterizer.builtin("svg", "cairo"))
        with make_engine(DirectScriptEngine, library, interpreter) as engine:
            with pytest.raises(ExecutionError, match="rasterizer"):
                engine.render(request)

    def test_render_after_close(self, library, interpreter):
        engine = make_engine(DirectScriptEngine, library, interpreter)
        engine.close()
        engine.close()
        with pytest.raises(ConfigurationError):
            engine.render(RenderRequest("graph g {}"))

    def test_base_class_is_abstract_over_execute(self, library, interpreter):
        with pytest.raises(TypeError):
            make_engine(ScriptEngine, library, interpreter)


class TestDefaultInterpreter:
    @pytest.fixture
    def built(self, monkeypatch):
        """Replace QuickJsInterpreter and record the keyword arguments it gets."""
        calls = []

        class RecordingInterpreter(FakeInterpreter):
            def __init__(self, **kwargs):
                super().__init__()
                calls.append(kwargs)

        monkeypatch.setattr(script_module, "QuickJsInterpreter", RecordingInterpreter)
        return calls

    def test_direct_engine_sets_time_limit(self, library, built):
        with DirectScriptEngine(library_path=library, timeout=7) as engine:
            assert engine.render(RenderRequest("graph g {}")).text == "<svg>graph g {}</svg>"
        assert built == [{"time_limit": 7.0}]

    def test_callback_engine_runs_without_time_limit(self, library, built):
        with CallbackScriptEngine(library_path=library, timeout=7) as engine:
            assert engine.render(RenderRequest("graph g {}")).text == "<svg>graph g {}</svg>"
        assert built == [{}]


JS_LIBRARY = "function render(src, opts) { return '<svg>' + opts.engine + ':' + src + '</svg>'; }"


@pytest.mark.parametrize("cls", [DirectScriptEngine, CallbackScriptEngine])
def test_quickjs_end_to_end(cls, tmp_path):
    pytest.importorskip("quickjs")
    library = tmp_path / "tiny.js"
    library.write_text(JS_LIBRARY, encoding="utf-8")

    with cls(library_path=library, timeout=10) as engine:
        result = engine.render(RenderRequest("graph g {a--b}", layout="circo"))

    assert result.text == "<svg>circo:graph g {a--b}</svg>"


def test_quickjs_error_callback(tmp_path):
    pytest.importorskip("quickjs")
    library = tmp_path / "failing.js"
    library.write_text("function render(src, opts) { throw new Error('bad graph'); }", encoding="utf-8")

    with CallbackScriptEngine(library_path=library, timeout=10) as engine:
        with pytest.raises(ExecutionError) as info:
            engine.render(RenderRequest("graph g {"))
    assert "bad graph" in info.value.diagnostics


def test_quickjs_log_callback_reaches_logger(tmp_path, caplog):
    pytest.importorskip("quickjs")
    library = tmp_path / "chatty.js"
    library.write_text(
        "function render(src, opts) { log('laying out ' + opts.engine); return '<svg>' + src + '</svg>'; }",
        encoding="utf-8",
    )

    with caplog.at_level(logging.INFO, logger="dotengine.script"):
        with CallbackScriptEngine(library_path=library, timeout=10) as engine:
            result = engine.render(RenderRequest("graph g {a--b}"))

    assert result.text == "<svg>graph g {a--b}</svg>"
    assert "laying out dot" in [r.getMessage() for r in caplog.records if r.name == "dotengine.script"]

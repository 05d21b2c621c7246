"""Script engines: render by evaluating a JavaScript layout library.

The layout library (a viz.js-compatible build of Graphviz) is loaded into
an embedded interpreter once per engine. It must define a global
``render(source, options)`` function, either itself or through the
``prelude`` passed to the engine. Two adapters drive it:

- DirectScriptEngine: ``render(...)`` returns the output synchronously and
  the evaluation value is the result.
- CallbackScriptEngine: the library reports through the global ``result``,
  ``error`` and ``log`` callables, installed before every evaluation and
  bridged to a blocking wait by a ResultBridge.

Embedded interpreters are thread-affine and their global namespace is not
reentrant, so every engine owns one worker thread that performs all
interpreter calls, and a per-instance lock serializes renders. Concurrent
callers queue; they never interleave.

Example:
    >>> engine = CallbackScriptEngine(library_path="viz.js", prelude=VIZ_JS_PRELUDE)
    >>> engine.render(RenderRequest("graph g {a--b}")).text[:4]
    '<svg'
"""

import json
import logging
import threading
import time
from abc import abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Union

from ..bridge import ResultBridge
from ..exceptions import (
    ConfigurationError,
    DotEngineError,
    EngineTimeoutError,
    ExecutionError,
    MissingDependencyError,
)
from ..formats import Layout
from ..models import EngineResult, RenderRequest
from ..settings import EngineSettings, get_settings
from .base import Engine

logger = logging.getLogger(__name__)
script_logger = logging.getLogger("dotengine.script")

# Adapts viz.js 1.x (global Viz(src, options)) to the render() contract
VIZ_JS_PRELUDE = "function render(src, options) { return Viz(src, options); }"

# Routes console output of the library to the log callback
CONSOLE_SHIM = (
    "var console = { log: function () {"
    " log(Array.prototype.join.call(arguments, ' ')); } };"
    " console.warn = console.log; console.error = console.log;"
)


class Interpreter(Protocol):
    """Embedded interpreter used by script engines.

    Implementations are only ever called from the engine's worker thread.
    """

    def eval(self, script: str) -> Any:
        """Evaluate script text in the global namespace and return its value."""
        ...

    def set_callable(self, name: str, fn: Callable[..., Any]) -> None:
        """Install a native callable as a global function."""
        ...

    def run_pending_jobs(self) -> None:
        """Run queued jobs (promise reactions) until none remain."""
        ...

    def close(self) -> None:
        ...


class QuickJsInterpreter:
    """Interpreter backed by the ``quickjs`` package.

    Args:
        time_limit: Seconds a single evaluation may run before QuickJS
            interrupts it
        memory_limit: Interpreter heap limit in bytes

    Raises:
        MissingDependencyError: If ``quickjs`` is not installed
    """

    def __init__(self, time_limit: Optional[float] = None, memory_limit: Optional[int] = None):
        try:
            import quickjs
        except ImportError as e:
            raise MissingDependencyError(
                "QuickJS interpreter is not available", "quickjs"
            ) from e

        self._quickjs = quickjs
        self._context = quickjs.Context()
        if time_limit is not None:
            self._context.set_time_limit(time_limit)
        if memory_limit is not None:
            self._context.set_memory_limit(memory_limit)

    def eval(self, script: str) -> Any:
        value = self._context.eval(script)
        if isinstance(value, self._quickjs.Object):
            return value.json()
        return value

    def set_callable(self, name: str, fn: Callable[..., Any]) -> None:
        self._context.add_callable(name, fn)

    def run_pending_jobs(self) -> None:
        while self._context.execute_pending_job():
            pass

    def close(self) -> None:
        self._context = None


InterpreterFactory = Callable[[], Interpreter]


class ScriptEngine(Engine):
    """Shared machinery of the script engine adapters.

    Args:
        library_path: Path to the JavaScript layout library. Defaults to
            ``settings.script_library`` (``DOTENGINE_SCRIPT_LIBRARY``)
        prelude: Script evaluated after the library, e.g. VIZ_JS_PRELUDE
        interpreter_factory: Zero-argument callable creating the
            interpreter. Defaults to QuickJsInterpreter
        timeout: Seconds allowed per render
        settings: Settings to take defaults from

    Raises:
        MissingDependencyError: If the interpreter or the library is absent
        ExecutionError: If the library fails to evaluate
    """

    def __init__(
        self,
        library_path: Union[str, Path, None] = None,
        prelude: Optional[str] = None,
        interpreter_factory: Optional[InterpreterFactory] = None,
        timeout: Optional[float] = None,
        settings: Optional[EngineSettings] = None,
    ):
        settings = (settings or get_settings()).merge(timeout=timeout)
        self.timeout = settings.timeout
        self.library_path = _resolve_library(library_path or settings.script_library)
        self.prelude = prelude

        if interpreter_factory is None:
            interpreter_factory = self._default_interpreter_factory()

        self._lock = threading.Lock()
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"dotengine-{type(self).__name__}"
        )
        try:
            self._interpreter = self._call(
                time.monotonic() + self.timeout, self._create_interpreter, interpreter_factory
            )
        except BaseException:
            self._executor.shutdown(wait=False)
            raise
        logger.info(f"{self.name} loaded layout library {self.library_path}")

    def _create_interpreter(self, factory: InterpreterFactory) -> Interpreter:
        # Runs on the worker thread so the interpreter stays on one thread
        interpreter = factory()
        self._setup(interpreter)
        library = self.library_path.read_text(encoding="utf-8")
        for label, script in (("layout library", library), ("prelude", self.prelude)):
            if not script:
                continue
            try:
                interpreter.eval(script)
            except Exception as e:
                raise ExecutionError(
                    f"Problem loading {label}", diagnostics=str(e), context=str(self.library_path)
                ) from e
        return interpreter

    def _default_interpreter_factory(self) -> InterpreterFactory:
        return partial(QuickJsInterpreter, time_limit=self.timeout)

    def _setup(self, interpreter: Interpreter) -> None:
        """Hook for variants to prepare the interpreter before the library loads."""
        pass

    def _call(self, deadline: float, fn: Callable[..., Any], *args: Any) -> Any:
        """Run ``fn(*args)`` on the worker thread, waiting until ``deadline``."""
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=max(deadline - time.monotonic(), 0))
        except FutureTimeoutError as e:
            raise EngineTimeoutError(
                f"{self.name} did not finish within {self.timeout}s"
            ) from e

    def render_script(self, request: RenderRequest) -> str:
        """JavaScript expression calling ``render`` for this request."""
        return f"render({json.dumps(request.source)}, {json.dumps(self.render_options(request))})"

    @staticmethod
    def render_options(request: RenderRequest) -> dict:
        options = {
            "format": request.format.graphviz_name,
            "engine": (request.layout or Layout.DOT).value,
            "yInvert": request.y_invert,
        }
        if request.total_memory is not None:
            options["totalMemory"] = request.total_memory
        return options

    def render(self, request: RenderRequest) -> EngineResult:
        self._check_supported(request)
        script = self.render_script(request)
        deadline = time.monotonic() + self.timeout
        with self._lock:
            if self._closed:
                raise ConfigurationError(f"{self.name} is closed")
            value = self._execute(script, deadline)
        return self._to_result(value, request, script)

    @abstractmethod
    def _execute(self, script: str, deadline: float) -> Any:
        """Run ``script`` on the worker and return its output value."""
        pass

    def _evaluate(self, script: str) -> Any:
        try:
            return self._interpreter.eval(script)
        except DotEngineError:
            raise
        except Exception as e:
            raise ExecutionError(
                "Problem executing script", diagnostics=str(e), context=script
            ) from e

    def _check_supported(self, request: RenderRequest) -> None:
        if request.rasterizer is not None:
            raise ExecutionError(
                f"{self.name} does not support built-in rasterizers",
                context=request.rasterizer.graphviz_format(),
            )
        if request.format.is_binary:
            raise ExecutionError(f"{self.name} cannot produce {request.format.name} output")

    def _to_result(self, value: Any, request: RenderRequest, script: str) -> EngineResult:
        if not isinstance(value, str):
            raise ExecutionError(
                f"Script returned {type(value).__name__}, expected text", context=script
            )
        result = EngineResult(
            data=request.format.postprocess(value.encode("utf-8")), format=request.format
        )
        if request.output_path is not None:
            return replace(result, path=result.to_file(request.output_path))
        return result

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            interpreter = getattr(self, "_interpreter", None)
            if interpreter is not None:
                self._executor.submit(interpreter.close)
            self._executor.shutdown(wait=False)
        logger.info(f"{self.name} closed")


class DirectScriptEngine(ScriptEngine):
    """Script engine whose evaluation value is the rendered output."""

    def _execute(self, script: str, deadline: float) -> Any:
        return self._call(deadline, self._evaluate, script)


class CallbackScriptEngine(ScriptEngine):
    """Script engine completed through ``result``/``error``/``log`` callbacks.

    The render call is wrapped in a promise, so libraries returning either
    a value or a promise settle the same way; exactly one of ``result`` or
    ``error`` fires per render.

    The default QuickJS interpreter runs without a time limit here, since
    QuickJS refuses calls into native callables while one is set. Renders
    stay bounded by the worker and bridge deadlines.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        self._bridge = ResultBridge()
        super().__init__(*args, **kwargs)

    def _default_interpreter_factory(self) -> InterpreterFactory:
        return QuickJsInterpreter

    def _setup(self, interpreter: Interpreter) -> None:
        self._install_callbacks(interpreter, cycle=0)
        interpreter.eval(CONSOLE_SHIM)

    def render_script(self, request: RenderRequest) -> str:
        call = super().render_script(request)
        return (
            f"Promise.resolve().then(function () {{ return {call}; }})"
            ".then(function (r) { result(r); },"
            " function (e) { error(String((e && e.message) || e)); });"
        )

    def _execute(self, script: str, deadline: float) -> Any:
        cycle = self._bridge.submit()
        self._call(deadline, self._evaluate_with_callbacks, script, cycle)
        return self._bridge.wait_for(max(deadline - time.monotonic(), 0))

    def _evaluate_with_callbacks(self, script: str, cycle: int) -> None:
        self._install_callbacks(self._interpreter, cycle)
        self._evaluate(script)
        self._interpreter.run_pending_jobs()

    def _install_callbacks(self, interpreter: Interpreter, cycle: int) -> None:
        bridge = self._bridge

        def on_log(message: Any) -> None:
            script_logger.info(str(message))
            bridge.log(message, cycle)

        interpreter.set_callable("result", lambda value: bridge.set_result(value, cycle))
        interpreter.set_callable("error", lambda message: bridge.set_error(message, cycle))
        interpreter.set_callable("log", on_log)


def _resolve_library(path: Union[str, Path, None]) -> Path:
    if path is None:
        raise MissingDependencyError(
            "No layout library configured; pass library_path or set DOTENGINE_SCRIPT_LIBRARY",
            "viz.js",
        )
    resolved = Path(path).expanduser()
    if not resolved.is_file():
        raise MissingDependencyError("Layout library script not found", str(resolved))
    return resolved

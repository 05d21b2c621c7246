"""Engine selection and the render entry point.

An EngineSelector holds the active binding: one engine or an ordered
fallback list. ``render`` tries the bound engines in order and moves on
when one fails with a recoverable error (ExecutionError,
EngineTimeoutError, MissingDependencyError). ConfigurationError is fatal.

The binding is a single process-wide slot per selector, not per thread:
``use_engine`` from any thread replaces it for everyone (last bind wins).
Code that needs a thread- or task-local choice uses ``using_engine``,
which overrides the slot for the current context only.

Rebinding while renders are in flight is allowed but those renders may
finish on the old engine; callers relying on one backend must not rebind
concurrently.

Example:
    >>> from dotengine import use_engine, render, release_engine
    >>> use_engine(CommandLineEngine, PipeEngine)
    >>> render("graph g {a--b}", format="svg").text[:4]
    '<svg'
    >>> release_engine()
"""

import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Iterator, List, Optional, Sequence, Union

from .engines.base import Engine
from .exceptions import RECOVERABLE_ERRORS, ConfigurationError
from .models import EngineResult, RenderRequest

logger = logging.getLogger(__name__)

EngineSpec = Union[Engine, Callable[[], Engine]]


class EngineBinding:
    """Ordered engines of one binding, constructed lazily.

    Entries are Engine instances or zero-argument factories. A factory is
    called on first use and its engine cached; a factory failing with a
    recoverable error is retried on the next render.
    """

    def __init__(self, specs: Sequence[EngineSpec]):
        if not specs:
            raise ConfigurationError("use_engine() needs at least one engine")
        for spec in specs:
            if not (isinstance(spec, Engine) or callable(spec)):
                raise ConfigurationError(f"Not an engine or engine factory: {spec!r}")
        self._specs = list(specs)
        self._engines: List[Optional[Engine]] = [
            spec if isinstance(spec, Engine) else None for spec in specs
        ]
        self._lock = threading.Lock()
        self._closed = False

    def __len__(self) -> int:
        return len(self._specs)

    @property
    def engines(self) -> List[Optional[Engine]]:
        """Engines constructed so far (None for factories not yet used)."""
        with self._lock:
            return list(self._engines)

    def engine_at(self, index: int) -> Engine:
        with self._lock:
            if self._closed:
                raise ConfigurationError("Engine binding was released")
            engine = self._engines[index]
            if engine is None:
                engine = self._specs[index]()
                if not isinstance(engine, Engine):
                    raise ConfigurationError(
                        f"Factory {self._specs[index]!r} returned {type(engine).__name__}, not an Engine"
                    )
                self._engines[index] = engine
                logger.info(f"Initialized {engine.name}")
            return engine

    def render(self, request: RenderRequest) -> EngineResult:
        # Every engine but the last may fail over; the last one's error propagates
        last = len(self._specs) - 1
        for index in range(last):
            try:
                return self.engine_at(index).render(request)
            except RECOVERABLE_ERRORS as e:
                logger.warning(
                    f"Engine {self._describe(index)} failed ({type(e).__name__}: "
                    f"{e.args[0] if e.args else e}), trying next engine"
                )
        return self.engine_at(last).render(request)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            engines = [e for e in self._engines if e is not None]
        for engine in engines:
            logger.debug(f"Closing {engine.name}")
            engine.close()

    def _describe(self, index: int) -> str:
        engine = self._engines[index]
        if engine is not None:
            return engine.name
        spec = self._specs[index]
        return getattr(spec, "__name__", repr(spec))


class EngineSelector:
    """Process-wide engine binding plus render dispatch."""

    def __init__(self):
        self._lock = threading.Lock()
        self._binding: Optional[EngineBinding] = None
        self._scoped: ContextVar[Optional[EngineBinding]] = ContextVar(
            f"dotengine_scoped_binding_{id(self)}", default=None
        )

    @property
    def binding(self) -> Optional[EngineBinding]:
        """Binding ``render`` would use from the current context."""
        scoped = self._scoped.get()
        if scoped is not None:
            return scoped
        with self._lock:
            return self._binding

    def use_engine(self, engine: EngineSpec, *fallbacks: EngineSpec) -> "EngineSelector":
        """Bind an engine, optionally followed by fallbacks tried in order.

        Replaces the previous binding, which is released (its engines closed).
        """
        binding = EngineBinding([engine, *fallbacks])
        with self._lock:
            previous, self._binding = self._binding, binding
        if previous is not None:
            previous.close()
        return self

    def release_engine(self) -> None:
        """Clear the binding and close its engines."""
        with self._lock:
            previous, self._binding = self._binding, None
        if previous is not None:
            previous.close()

    @contextmanager
    def using_engine(self, engine: EngineSpec, *fallbacks: EngineSpec) -> Iterator[EngineBinding]:
        """Bind engines for the current thread/context only.

        The engines are closed when the block exits.
        """
        binding = EngineBinding([engine, *fallbacks])
        token = self._scoped.set(binding)
        try:
            yield binding
        finally:
            self._scoped.reset(token)
            binding.close()

    def render(self, request: Union[RenderRequest, str], **kwargs: Any) -> EngineResult:
        """Render with the bound engine(s).

        Args:
            request: A RenderRequest, or DOT source text
            **kwargs: RenderRequest fields when ``request`` is source text

        Raises:
            ConfigurationError: If no engine is bound
        """
        if isinstance(request, str):
            request = RenderRequest(request, **kwargs)
        elif kwargs:
            raise TypeError("Keyword arguments are only accepted with source text")
        binding = self.binding
        if binding is None:
            raise ConfigurationError("No engine bound; call use_engine() first")
        return binding.render(request)


# Process-wide default selector behind the module-level helpers
default_selector = EngineSelector()


def use_engine(engine: EngineSpec, *fallbacks: EngineSpec) -> EngineSelector:
    return default_selector.use_engine(engine, *fallbacks)


def release_engine() -> None:
    default_selector.release_engine()


def using_engine(engine: EngineSpec, *fallbacks: EngineSpec):
    return default_selector.using_engine(engine, *fallbacks)


def render(request: Union[RenderRequest, str], **kwargs: Any) -> EngineResult:
    return default_selector.render(request, **kwargs)

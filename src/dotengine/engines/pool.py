"""Engine pool: concurrent throughput over non-reentrant engines.

The pool owns N independent engine instances. Each render acquires an idle
instance (strict FIFO among waiting callers), delegates to it and hands it
back whatever the outcome, so one instance never serves two callers at
overlapping times.

Example:
    >>> pool = EnginePool(lambda: CallbackScriptEngine(library_path="viz.js"), size=4)
    >>> pool.start()
    >>> with ThreadPoolExecutor(8) as executor:
    ...     results = list(executor.map(pool.render, requests))
    >>> pool.stop()
"""

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional

from ..exceptions import ConfigurationError, PoolExhaustionError
from ..models import EngineResult, RenderRequest
from ..settings import EngineSettings, get_settings
from .base import Engine

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], Engine]


@dataclass(eq=False)
class PoolEntry:
    """One engine instance and its status.

    Attributes:
        engine: The owned engine
        index: Position in the pool, for logging
        busy: True while a caller holds the entry
        served: Number of renders completed by this entry
    """

    engine: Engine
    index: int
    busy: bool = False
    served: int = field(default=0)


class EnginePool:
    """Fixed set of engines dispatched to concurrent callers.

    Args:
        factory: Zero-argument callable creating one engine
        size: Number of engines (default from settings)
        fail_fast: Raise PoolExhaustionError instead of waiting when every
            entry is busy
        acquire_timeout: Seconds to wait for an idle entry before raising
            PoolExhaustionError (None waits indefinitely)
        stop_grace: Seconds ``stop`` waits for in-flight renders
        settings: Settings to take defaults from
    """

    def __init__(
        self,
        factory: EngineFactory,
        size: Optional[int] = None,
        fail_fast: bool = False,
        acquire_timeout: Optional[float] = None,
        stop_grace: Optional[float] = None,
        settings: Optional[EngineSettings] = None,
    ):
        settings = (settings or get_settings()).merge(pool_size=size, stop_grace=stop_grace)
        self.factory = factory
        self.size = settings.pool_size
        self.fail_fast = fail_fast
        self.acquire_timeout = acquire_timeout
        self.stop_grace = settings.stop_grace

        self._cond = threading.Condition()
        self._entries: List[PoolEntry] = []
        self._idle: Deque[PoolEntry] = deque()
        self._waiters: Deque[int] = deque()
        self._tickets = itertools.count()
        self._running = False
        self._starting = False
        self._peak_busy = 0

    @property
    def running(self) -> bool:
        with self._cond:
            return self._running

    @property
    def busy_count(self) -> int:
        with self._cond:
            return len(self._entries) - len(self._idle)

    @property
    def peak_busy(self) -> int:
        """Highest number of simultaneously busy entries seen so far."""
        with self._cond:
            return self._peak_busy

    @property
    def entries(self) -> List[PoolEntry]:
        with self._cond:
            return list(self._entries)

    def start(self, size: Optional[int] = None) -> "EnginePool":
        """Create the engine instances.

        Args:
            size: Override the configured pool size

        Raises:
            ConfigurationError: If the pool is already running or starting,
                or size < 1
        """
        size = self.size if size is None else size
        if size < 1:
            raise ConfigurationError(f"Pool size must be at least 1, got {size}")

        with self._cond:
            if self._running or self._starting:
                raise ConfigurationError("Pool is already running")
            self._starting = True

        entries: List[PoolEntry] = []
        try:
            for index in range(size):
                entries.append(PoolEntry(engine=self.factory(), index=index))
        except BaseException:
            for entry in entries:
                _close_quietly(entry)
            with self._cond:
                self._starting = False
            raise

        with self._cond:
            self.size = size
            self._entries = entries
            self._idle = deque(entries)
            self._peak_busy = 0
            self._starting = False
            self._running = True
        logger.info(f"Started engine pool with {size} instance(s)")
        return self

    def render(self, request: RenderRequest) -> EngineResult:
        """Render on an idle engine, waiting for one if all are busy.

        Raises:
            ConfigurationError: If the pool is not running
            PoolExhaustionError: If fail-fast or the acquire timeout applies
        """
        entry = self._acquire()
        try:
            return entry.engine.render(request)
        finally:
            self._release(entry)

    def _acquire(self) -> PoolEntry:
        with self._cond:
            if not self._running:
                raise ConfigurationError("Engine pool is not started")
            if self.fail_fast and (not self._idle or self._waiters):
                raise PoolExhaustionError(f"All {len(self._entries)} pool engines are busy")

            ticket = next(self._tickets)
            self._waiters.append(ticket)
            deadline = None if self.acquire_timeout is None else time.monotonic() + self.acquire_timeout
            try:
                while not (self._running and self._idle and self._waiters[0] == ticket):
                    if not self._running:
                        raise ConfigurationError("Engine pool was stopped")
                    if deadline is None:
                        self._cond.wait()
                        continue
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise PoolExhaustionError(
                            f"No idle pool engine within {self.acquire_timeout}s"
                        )
                    self._cond.wait(remaining)
            finally:
                self._waiters.remove(ticket)
                # The next ticket may now be at the head
                self._cond.notify_all()

            entry = self._idle.popleft()
            entry.busy = True
            busy = len(self._entries) - len(self._idle)
            self._peak_busy = max(self._peak_busy, busy)
            logger.debug(f"Acquired pool entry {entry.index} ({busy} busy)")
            return entry

    def _release(self, entry: PoolEntry) -> None:
        with self._cond:
            entry.busy = False
            entry.served += 1
            if entry in self._entries:
                self._idle.append(entry)
            logger.debug(f"Released pool entry {entry.index}")
            self._cond.notify_all()

    def stop(self, grace: Optional[float] = None) -> None:
        """Stop the pool; idempotent.

        Waits up to ``grace`` seconds for in-flight renders, then closes
        every engine, busy or not. Callers still waiting for an entry get
        ConfigurationError.
        """
        grace = self.stop_grace if grace is None else grace
        deadline = time.monotonic() + grace
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._cond.notify_all()
            while len(self._idle) < len(self._entries):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(
                        f"Forcibly reclaiming {len(self._entries) - len(self._idle)} busy pool engine(s)"
                    )
                    break
                self._cond.wait(remaining)
            entries = self._entries
            self._entries = []
            self._idle = deque()

        for entry in entries:
            _close_quietly(entry)
        logger.info(f"Stopped engine pool ({len(entries)} instance(s))")

    close = stop

    def __enter__(self) -> "EnginePool":
        if not self.running:
            self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


class PooledEngine(Engine):
    """Expose an EnginePool through the Engine interface.

    The pool is started on construction and stopped by ``close``, so
    releasing a PooledEngine from the selector shuts the pool down.
    """

    def __init__(self, factory: EngineFactory, size: Optional[int] = None, **pool_kwargs):
        self.pool = EnginePool(factory, size=size, **pool_kwargs).start()

    def render(self, request: RenderRequest) -> EngineResult:
        return self.pool.render(request)

    def close(self) -> None:
        self.pool.stop()


def _close_quietly(entry: PoolEntry) -> None:
    try:
        entry.engine.close()
    except Exception as e:
        logger.warning(f"Closing pool engine {entry.index} failed: {e}")

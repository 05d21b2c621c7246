"""One-shot bridge from callback completion to a blocking wait.

A script engine that reports its outcome through callbacks (``result``,
``error``, ``log``) hands those callbacks to a ResultBridge and then blocks
on ``wait_for``. Each ``submit`` opens a new cycle; callbacks tagged with an
older cycle are stale and dropped, so a late answer to a timed-out request
can never complete the next one.

Example:
    >>> bridge = ResultBridge()
    >>> cycle = bridge.submit()
    >>> bridge.set_result("<svg/>", cycle)
    >>> bridge.wait_for(timeout=1.0)
    '<svg/>'
"""

import logging
import threading
import time
from typing import Any, List, Optional

from .exceptions import EngineTimeoutError, ExecutionError

logger = logging.getLogger(__name__)


class ResultBridge:
    """Single-slot synchronization primitive, reset per request cycle.

    A bridge carries at most one outstanding request. Callers must not
    ``submit`` again until the previous ``wait_for`` has returned; engines
    guarantee this with their own lock.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._cycle = 0
        self._pending = False
        self._done = False
        self._value: Any = None
        self._error: Optional[str] = None
        self._logs: List[str] = []

    @property
    def cycle(self) -> int:
        """Token of the current (or last) cycle."""
        with self._cond:
            return self._cycle

    @property
    def logs(self) -> List[str]:
        """Diagnostic lines collected during the current cycle."""
        with self._cond:
            return list(self._logs)

    def submit(self) -> int:
        """Start a new cycle, discarding any prior state.

        Returns:
            Token identifying the new cycle
        """
        with self._cond:
            self._cycle += 1
            self._pending = True
            self._done = False
            self._value = None
            self._error = None
            self._logs = []
            logger.debug(f"Bridge cycle {self._cycle} submitted")
            return self._cycle

    def set_result(self, value: Any, cycle: Optional[int] = None) -> None:
        """Complete the cycle successfully."""
        self._complete(cycle, value=value, error=None)

    def set_error(self, message: Any, cycle: Optional[int] = None) -> None:
        """Complete the cycle with a failure message."""
        self._complete(cycle, value=None, error="" if message is None else str(message))

    def log(self, message: Any, cycle: Optional[int] = None) -> None:
        """Record a diagnostic line; never completes the cycle."""
        with self._cond:
            if not self._accepts(cycle, "log"):
                return
            self._logs.append(str(message))

    def wait_for(self, timeout: float) -> Any:
        """Block until the current cycle completes or ``timeout`` expires.

        Args:
            timeout: Seconds to wait

        Returns:
            The value passed to ``set_result``

        Raises:
            ExecutionError: If ``set_error`` completed the cycle
            EngineTimeoutError: If neither terminal callback fired in time;
                the cycle is abandoned and ``submit`` is required before reuse
            RuntimeError: If no cycle is outstanding
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            if not self._pending:
                raise RuntimeError("ResultBridge.wait_for called without a submitted request")
            while not self._done:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._pending = False
                    logger.debug(f"Bridge cycle {self._cycle} timed out after {timeout}s")
                    raise EngineTimeoutError(
                        f"No result within {timeout}s (cycle {self._cycle})"
                    )
                self._cond.wait(remaining)

            self._pending = False
            if self._error is not None:
                raise ExecutionError(
                    "Script reported an error",
                    diagnostics="\n".join([self._error] + self._logs),
                )
            return self._value

    def _complete(self, cycle: Optional[int], value: Any, error: Optional[str]) -> None:
        with self._cond:
            if not self._accepts(cycle, "result" if error is None else "error"):
                return
            if self._done:
                logger.warning(
                    f"Ignoring second completion of bridge cycle {self._cycle}"
                )
                return
            self._value = value
            self._error = error
            self._done = True
            self._cond.notify_all()

    def _accepts(self, cycle: Optional[int], kind: str) -> bool:
        # Caller holds self._cond
        if cycle is not None and cycle != self._cycle:
            logger.warning(f"Ignoring stale {kind} callback for cycle {cycle}")
            return False
        if not self._pending:
            logger.warning(f"Ignoring {kind} callback with no outstanding request")
            return False
        return True

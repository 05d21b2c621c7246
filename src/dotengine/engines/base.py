"""Base class for rendering engines.

Every backend, whatever its execution model, implements the same contract:
``render(request) -> EngineResult`` or a typed DotEngineError.

- Script engines evaluate a JavaScript layout library in an embedded
  interpreter (direct return value or callback completion)
- Command-line engines run a Graphviz executable in a subprocess
- Pooled and server engines dispatch to several independent instances
"""

from abc import ABC, abstractmethod

from ..models import EngineResult, RenderRequest


class Engine(ABC):
    """Abstract base class for rendering engines.

    Engines that hold resources (interpreters, worker threads, pools,
    listeners) override ``close``. ``close`` must be idempotent.
    """

    @abstractmethod
    def render(self, request: RenderRequest) -> EngineResult:
        """Render one graph.

        Args:
            request: Source text, format and engine options

        Returns:
            Rendered output and its resolved format
        """
        pass

    def close(self) -> None:
        """Release resources held by the engine."""
        pass

    @property
    def name(self) -> str:
        return type(self).__name__

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<{self.name}>"

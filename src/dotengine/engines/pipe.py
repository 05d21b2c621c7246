"""Engine backed by the ``graphviz`` package's ``pipe`` function.

Useful as a fallback behind CommandLineEngine: it needs no configuration
beyond an installed Graphviz, and lets the ``graphviz`` package resolve
the layout executable itself. ``graphviz.pipe`` has no deadline, so this
engine does not enforce one; use CommandLineEngine when renders must be
bounded.
"""

import logging
from dataclasses import replace
from typing import Optional

from ..exceptions import ExecutionError, MissingDependencyError
from ..formats import Layout
from ..models import EngineResult, RenderRequest
from .base import Engine

logger = logging.getLogger(__name__)


class PipeEngine(Engine):
    """Render through ``graphviz.pipe``.

    Args:
        layout: Default layout when the request does not name one

    Raises:
        MissingDependencyError: If the ``graphviz`` package is not installed
    """

    def __init__(self, layout: Optional[Layout] = None):
        try:
            import graphviz
        except ImportError as e:
            raise MissingDependencyError("graphviz package is not available", "graphviz") from e
        self._graphviz = graphviz
        self.layout = Layout(layout) if layout is not None else Layout.DOT

    def render(self, request: RenderRequest) -> EngineResult:
        graphviz = self._graphviz
        layout = (request.layout or self.layout).value
        rasterizer = request.rasterizer
        fmt = rasterizer.format if rasterizer is not None else request.format.graphviz_name
        try:
            data = graphviz.pipe(
                engine=layout,
                format=fmt,
                data=request.source.encode("utf-8"),
                renderer=rasterizer.renderer if rasterizer is not None else None,
                formatter=rasterizer.formatter if rasterizer is not None else None,
                quiet=True,
            )
        except graphviz.ExecutableNotFound as e:
            raise MissingDependencyError("Graphviz executable not found", layout) from e
        except graphviz.CalledProcessError as e:
            stderr = e.stderr.decode("utf-8", errors="replace") if isinstance(e.stderr, bytes) else e.stderr
            raise ExecutionError(
                f"{layout} exited with code {e.returncode}",
                diagnostics=stderr,
                context=" ".join(str(part) for part in e.cmd),
            ) from e
        except ValueError as e:
            raise ExecutionError(
                "graphviz rejected the request", diagnostics=str(e), context=f"{layout} -T{fmt}"
            ) from e

        logger.debug(f"Rendered {len(data)} bytes with {layout} -T{fmt}")
        result_format = request.result_format
        result = EngineResult(data=result_format.postprocess(data), format=result_format)
        if request.output_path is not None:
            return replace(result, path=result.to_file(request.output_path))
        return result

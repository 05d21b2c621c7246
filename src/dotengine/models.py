"""Request and result types shared by all engines."""

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional, Union

from .exceptions import ConfigurationError
from .formats import Format, Layout, Rasterizer

# Control characters Graphviz rejects in labels (tab, newline and CR are kept)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def sanitize_source(source: str) -> str:
    """Replace control characters in DOT source with spaces."""
    return _CONTROL_CHARS.sub(" ", source)


@dataclass(frozen=True)
class RenderRequest:
    """Everything an engine needs to render one graph.

    Attributes:
        source: Graph description in the DOT language
        format: Target output format
        rasterizer: Optional built-in rasterizer; overrides the format's
            Graphviz name and file extension for command-line engines
        output_path: Optional file the rendered output is also written to
        layout: Optional layout algorithm (``-K`` on the command line)
        total_memory: Memory for script engines' layout library, in bytes
        y_invert: Invert y coordinates in the output (script engines)
    """

    source: str
    format: Format = Format.SVG
    rasterizer: Optional[Rasterizer] = None
    output_path: Optional[Path] = None
    layout: Optional[Layout] = None
    total_memory: Optional[int] = None
    y_invert: bool = False

    def __post_init__(self):
        if not isinstance(self.source, str):
            raise TypeError(f"source must be str, got {type(self.source).__name__}")
        object.__setattr__(self, "source", sanitize_source(self.source))
        try:
            object.__setattr__(self, "format", Format.parse(self.format))
            if self.layout is not None and not isinstance(self.layout, Layout):
                object.__setattr__(self, "layout", Layout(self.layout))
            if self.rasterizer is not None:
                Format.parse(self.rasterizer.format)
        except ValueError as e:
            raise ConfigurationError(f"Invalid render request: {e}") from e
        if self.output_path is not None:
            object.__setattr__(self, "output_path", Path(self.output_path))
        if self.total_memory is not None and self.total_memory <= 0:
            raise ConfigurationError(f"total_memory must be positive, got {self.total_memory}")

    @classmethod
    def from_graph(cls, graph: Any, **kwargs: Any) -> "RenderRequest":
        """Build a request from a graph model exposing DOT text as ``.source``.

        Works with ``graphviz.Graph``, ``graphviz.Digraph`` and
        ``graphviz.Source`` as well as any object with a ``source`` string.

        Example:
            >>> import graphviz
            >>> g = graphviz.Graph("g")
            >>> g.edge("a", "b")
            >>> request = RenderRequest.from_graph(g, format=Format.SVG)
        """
        source = getattr(graph, "source", None)
        if not isinstance(source, str):
            raise TypeError(
                f"{type(graph).__name__} does not expose DOT text as .source"
            )
        return cls(source=source, **kwargs)

    def with_source(self, source: str) -> "RenderRequest":
        return replace(self, source=source)

    def with_format(self, format: Union[str, Format]) -> "RenderRequest":
        return replace(self, format=format)

    @property
    def graphviz_format(self) -> str:
        """Full ``-T`` value, honouring the rasterizer if one is set."""
        if self.rasterizer is not None:
            return self.rasterizer.graphviz_format()
        return self.format.graphviz_name

    @property
    def output_extension(self) -> str:
        if self.rasterizer is not None:
            return self.rasterizer.extension
        return self.format.extension

    @property
    def result_format(self) -> Format:
        """Format of the bytes an engine produces for this request.

        A rasterizer decides the output on its own; rasterized SVG keeps
        its prolog, so it resolves to SVG_STANDALONE.
        """
        if self.rasterizer is None:
            return self.format
        fmt = Format.parse(self.rasterizer.format)
        return Format.SVG_STANDALONE if fmt is Format.SVG else fmt


@dataclass(frozen=True)
class EngineResult:
    """Rendered output plus the format it was resolved to.

    Attributes:
        data: Raw rendered bytes
        format: Resolved output format
        path: File the output was written to, if any
    """

    data: bytes
    format: Format
    path: Optional[Path] = field(default=None, compare=False)

    @property
    def text(self) -> str:
        if self.format.is_binary:
            raise ValueError(f"{self.format.name} output is binary, use .data")
        return self.data.decode("utf-8")

    def to_file(self, path: Union[str, Path]) -> Path:
        """Write the rendered bytes to ``path``, creating parent directories."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.data)
        return target

    def __str__(self) -> str:
        if self.format.is_binary:
            return f"<EngineResult {self.format.name} {len(self.data)} bytes>"
        return self.text

"""Output formats, layout algorithms and rasterizer selection."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, NamedTuple, Optional, Union


class _FormatInfo(NamedTuple):
    graphviz_name: str
    extension: str
    binary: bool


class Format(str, Enum):
    """Output formats understood by Graphviz backends.

    SVG and SVG_STANDALONE share the same Graphviz renderer; SVG drops the
    XML prolog and doctype so it can be embedded directly in HTML.
    """

    PNG = "png"
    JPG = "jpg"
    GIF = "gif"
    PDF = "pdf"
    WEBP = "webp"
    SVG = "svg"
    SVG_STANDALONE = "svg_standalone"
    DOT = "dot"
    XDOT = "xdot"
    PLAIN = "plain"
    PLAIN_EXT = "plain_ext"
    PS = "ps"
    PS2 = "ps2"
    JSON = "json"
    JSON0 = "json0"
    IMAGE_MAP = "image_map"
    CMAPX_NP = "cmapx_np"

    @property
    def graphviz_name(self) -> str:
        """Name passed to Graphviz with ``-T``."""
        return _FORMATS[self].graphviz_name

    @property
    def extension(self) -> str:
        return _FORMATS[self].extension

    @property
    def is_binary(self) -> bool:
        return _FORMATS[self].binary

    def postprocess(self, data: bytes) -> bytes:
        """Normalize raw backend output for this format."""
        if self is Format.SVG:
            start = data.find(b"<svg")
            if start > 0:
                return data[start:]
        return data

    @classmethod
    def parse(cls, value: Union[str, "Format"]) -> "Format":
        """Resolve a format from its enum value or Graphviz name (case-insensitive).

        Enum values win, so "svg" is SVG rather than SVG_STANDALONE.
        """
        if isinstance(value, Format):
            return value
        key = value.strip().lower()
        for fmt in cls:
            if fmt.value == key:
                return fmt
        for fmt in cls:
            if fmt.graphviz_name == key:
                return fmt
        raise ValueError(
            f"Unknown format: {value!r}. Must be one of {[f.value for f in cls]}"
        )


_FORMATS: Dict[Format, _FormatInfo] = {
    Format.PNG: _FormatInfo("png", "png", True),
    Format.JPG: _FormatInfo("jpg", "jpg", True),
    Format.GIF: _FormatInfo("gif", "gif", True),
    Format.PDF: _FormatInfo("pdf", "pdf", True),
    Format.WEBP: _FormatInfo("webp", "webp", True),
    Format.SVG: _FormatInfo("svg", "svg", False),
    Format.SVG_STANDALONE: _FormatInfo("svg", "svg", False),
    Format.DOT: _FormatInfo("dot", "dot", False),
    Format.XDOT: _FormatInfo("xdot", "xdot", False),
    Format.PLAIN: _FormatInfo("plain", "txt", False),
    Format.PLAIN_EXT: _FormatInfo("plain-ext", "txt", False),
    Format.PS: _FormatInfo("ps", "ps", False),
    Format.PS2: _FormatInfo("ps2", "ps", False),
    Format.JSON: _FormatInfo("json", "json", False),
    Format.JSON0: _FormatInfo("json0", "json", False),
    Format.IMAGE_MAP: _FormatInfo("imap", "imap", False),
    Format.CMAPX_NP: _FormatInfo("cmapx_np", "cmapx", False),
}


class Layout(str, Enum):
    """Graphviz layout algorithms, selected with ``-K``."""

    DOT = "dot"
    NEATO = "neato"
    FDP = "fdp"
    SFDP = "sfdp"
    TWOPI = "twopi"
    CIRCO = "circo"
    OSAGE = "osage"
    PATCHWORK = "patchwork"


@dataclass(frozen=True)
class Rasterizer:
    """Graphviz built-in renderer selection.

    Only the selection is modelled here; converting between formats
    after rendering is left to the consumer of the result.

    Attributes:
        format: Graphviz output format name, e.g. "png" or "svg"
        renderer: Optional renderer, e.g. "cairo"
        formatter: Optional formatter, e.g. "gd"
    """

    format: str
    renderer: Optional[str] = None
    formatter: Optional[str] = None

    def __post_init__(self):
        if not self.format:
            raise ValueError("Rasterizer format must not be empty")
        if self.formatter is not None and self.renderer is None:
            raise ValueError("A rasterizer formatter requires a renderer")

    @classmethod
    def builtin(
        cls,
        format: str,
        renderer: Optional[str] = None,
        formatter: Optional[str] = None,
    ) -> "Rasterizer":
        return cls(format=format, renderer=renderer, formatter=formatter)

    @property
    def extension(self) -> str:
        return self.format

    def graphviz_format(self) -> str:
        """Return ``<format>[:<renderer>[:<formatter>]]``."""
        parts = [self.format]
        if self.renderer is not None:
            parts.append(self.renderer)
            if self.formatter is not None:
                parts.append(self.formatter)
        return ":".join(parts)

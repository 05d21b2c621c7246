"""Per-algorithm command-line options for Graphviz executables.

Each option belongs to one algorithm family and maps purely to the flag
tokens it contributes to a command line. Combinations are checked once,
when an engine is constructed, so rendering never sees an invalid set.

Example:
    >>> FdpOption.temperature(42).flags()
    ['-LT42.0']
    >>> option_flags([NeatoOption.NO_LAYOUT_ALLOW_OVERLAP, NeatoOption.REDUCE_GRAPH])
    ['-n2', '-x']
"""

from dataclasses import dataclass
from typing import ClassVar, Iterable, List, Optional, Tuple, Union

from .exceptions import ConfigurationError

Number = Union[int, float]


def format_decimal(value: Number) -> str:
    """Format a numeric option with exactly one decimal place."""
    return f"{float(value):.1f}"


@dataclass(frozen=True)
class EngineOption:
    """One option value of an algorithm family.

    Attributes:
        key: Options sharing a key are mutually exclusive
        flag: Flag token, or prefix when the option carries a value
        value: Numeric value appended to the flag, if any
        integral: Render the value as an integer instead of one decimal
    """

    family: ClassVar[str] = ""

    key: str
    flag: str
    value: Optional[Number] = None
    integral: bool = False

    def flags(self) -> List[str]:
        if self.value is None:
            return [self.flag]
        if self.integral:
            return [f"{self.flag}{int(self.value)}"]
        return [f"{self.flag}{format_decimal(self.value)}"]


@dataclass(frozen=True)
class NeatoOption(EngineOption):
    """Options for neato (``-n``, ``-n2``, ``-x``)."""

    family: ClassVar[str] = "neato"

    NO_LAYOUT: ClassVar["NeatoOption"]
    NO_LAYOUT_ALLOW_OVERLAP: ClassVar["NeatoOption"]
    REDUCE_GRAPH: ClassVar["NeatoOption"]


NeatoOption.NO_LAYOUT = NeatoOption("no_layout", "-n")
NeatoOption.NO_LAYOUT_ALLOW_OVERLAP = NeatoOption("no_layout", "-n2")
NeatoOption.REDUCE_GRAPH = NeatoOption("reduce_graph", "-x")


@dataclass(frozen=True)
class FdpOption(EngineOption):
    """Options for fdp (``-L`` flags)."""

    family: ClassVar[str] = "fdp"

    NO_GRID: ClassVar["FdpOption"]
    OLD_FORCE: ClassVar["FdpOption"]

    @classmethod
    def overlap_expansion_factor(cls, value: Number) -> "FdpOption":
        return cls("overlap_expansion_factor", "-LC", _non_negative("overlap_expansion_factor", value))

    @classmethod
    def iterations(cls, value: int) -> "FdpOption":
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigurationError(f"iterations must be a positive integer, got {value!r}")
        return cls("iterations", "-Ln", value, integral=True)

    @classmethod
    def unscaled_factor(cls, value: Number) -> "FdpOption":
        return cls("unscaled_factor", "-LU", _non_negative("unscaled_factor", value))

    @classmethod
    def temperature(cls, value: Number) -> "FdpOption":
        return cls("temperature", "-LT", _non_negative("temperature", value))


FdpOption.NO_GRID = FdpOption("no_grid", "-Lg")
FdpOption.OLD_FORCE = FdpOption("old_force", "-LO")


def _non_negative(name: str, value: Number) -> Number:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value!r}")
    return value


def validate_options(options: Iterable[EngineOption]) -> Tuple[EngineOption, ...]:
    """Check an option set and return it as a tuple in its original order.

    Raises:
        ConfigurationError: If an entry is not an option, options mix
            algorithm families, or two options share a key
    """
    checked = tuple(options)
    for option in checked:
        if not isinstance(option, EngineOption):
            raise ConfigurationError(f"Not an engine option: {option!r}")

    families = {type(option).family for option in checked}
    if len(families) > 1:
        raise ConfigurationError(
            f"Options from different algorithms cannot be combined: {sorted(families)}"
        )

    seen = {}
    for option in checked:
        if option.key in seen:
            raise ConfigurationError(
                f"Conflicting {type(option).family} options: "
                f"{' '.join(seen[option.key].flags())} and {' '.join(option.flags())}"
            )
        seen[option.key] = option
    return checked


def option_flags(options: Iterable[EngineOption]) -> List[str]:
    """Flatten options to flag tokens, preserving order."""
    return [token for option in options for token in option.flags()]

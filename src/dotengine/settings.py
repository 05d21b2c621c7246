"""Engine settings.

This module provides the EngineSettings dataclass holding defaults shared
by all engines. Values come from keyword arguments or from ``DOTENGINE_*``
environment variables; explicit engine arguments always take precedence.
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .exceptions import ConfigurationError

ENV_PREFIX = "DOTENGINE_"


@dataclass(frozen=True)
class EngineSettings:
    """Defaults for engine construction.

    Attributes:
        timeout: Deadline in seconds for one render (bridge wait, evaluation
            or subprocess)
        pool_size: Number of engine instances in a pool
        server_port: Port of the local render server
        server_host: Interface the render server binds to
        stop_grace: Seconds a stopping pool waits for in-flight renders
        executable: Base name of the Graphviz executable
        script_library: Path to the JavaScript layout library
    """

    timeout: float = 60.0
    pool_size: int = 2
    server_port: int = 10234
    server_host: str = "127.0.0.1"
    stop_grace: float = 5.0
    executable: str = "dot"
    script_library: Optional[Path] = None

    def __post_init__(self):
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")
        if self.pool_size < 1:
            raise ConfigurationError(f"pool_size must be at least 1, got {self.pool_size}")
        if not 0 < self.server_port < 65536:
            raise ConfigurationError(f"server_port out of range: {self.server_port}")
        if self.stop_grace < 0:
            raise ConfigurationError(f"stop_grace must not be negative, got {self.stop_grace}")
        if not self.executable:
            raise ConfigurationError("executable must not be empty")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """Build settings from ``DOTENGINE_*`` environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``

        Raises:
            ConfigurationError: If a variable cannot be converted
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            try:
                values[f.name] = _CONVERTERS[f.name](raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid {ENV_PREFIX}{f.name.upper()}={raw!r}: {e}"
                ) from e
        return cls(**values)

    def merge(self, **overrides: Any) -> "EngineSettings":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


_CONVERTERS: Dict[str, Callable[[str], Any]] = {
    "timeout": float,
    "pool_size": int,
    "server_port": int,
    "server_host": str,
    "stop_grace": float,
    "executable": str,
    "script_library": Path,
}


def get_settings() -> EngineSettings:
    """Get effective settings from the current environment."""
    return EngineSettings.from_env()

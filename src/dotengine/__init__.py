"""dotengine: interchangeable Graphviz rendering engines.

Renders DOT graph descriptions through one synchronous contract,
whatever the backend:
- Embedded JavaScript layout library (direct return or callbacks)
- Graphviz executable in a subprocess
- Pools of engine instances for concurrent callers
- A local render server shared between processes
- Ordered fallback between engines

Example:
    >>> from dotengine import CommandLineEngine, Format, render, use_engine
    >>>
    >>> use_engine(CommandLineEngine)
    >>> result = render("graph g {a--b}", format=Format.SVG)
    >>> result.text[:4]
    '<svg'
"""

from .bridge import ResultBridge
from .engines import (
    CallbackScriptEngine,
    CommandLineEngine,
    DirectScriptEngine,
    Engine,
    EnginePool,
    EngineServer,
    PipeEngine,
    PooledEngine,
    ServerEngine,
    stop_server,
)
from .exceptions import (
    ConfigurationError,
    DotEngineError,
    EngineTimeoutError,
    ExecutableNotFoundError,
    ExecutionError,
    MissingDependencyError,
    PoolExhaustionError,
)
from .formats import Format, Layout, Rasterizer
from .models import EngineResult, RenderRequest
from .options import FdpOption, NeatoOption
from .selector import (
    EngineSelector,
    release_engine,
    render,
    use_engine,
    using_engine,
)
from .settings import EngineSettings

__version__ = "0.1.0"

__all__ = [
    # Requests & results
    "RenderRequest",
    "EngineResult",
    "Format",
    "Layout",
    "Rasterizer",
    "NeatoOption",
    "FdpOption",
    # Engines
    "Engine",
    "CommandLineEngine",
    "PipeEngine",
    "DirectScriptEngine",
    "CallbackScriptEngine",
    "EnginePool",
    "PooledEngine",
    "EngineServer",
    "ServerEngine",
    "stop_server",
    "ResultBridge",
    # Selection
    "EngineSelector",
    "use_engine",
    "release_engine",
    "using_engine",
    "render",
    # Configuration
    "EngineSettings",
    # Exceptions
    "DotEngineError",
    "ConfigurationError",
    "MissingDependencyError",
    "ExecutionError",
    "ExecutableNotFoundError",
    "EngineTimeoutError",
    "PoolExhaustionError",
]

"""Rendering engines.

This package contains the engine implementations behind the selector:
- Engine: Abstract base class for all engines
- DirectScriptEngine / CallbackScriptEngine: embedded JavaScript layout library
- CommandLineEngine: Graphviz executable in a subprocess
- PipeEngine: the graphviz package's pipe()
- EnginePool / PooledEngine: several instances behind one engine
- EngineServer / ServerEngine: a pool shared over a local HTTP port

Script engines need the optional ``quickjs`` package; they raise
MissingDependencyError on construction when it is absent.
"""

from .base import Engine
from .command import (
    CommandExecutor,
    CommandLineEngine,
    CommandResult,
    SubprocessExecutor,
    build_arguments,
    executable_names,
    find_executable,
)
from .pipe import PipeEngine
from .pool import EnginePool, PooledEngine, PoolEntry
from .script import (
    CallbackScriptEngine,
    DirectScriptEngine,
    Interpreter,
    QuickJsInterpreter,
    ScriptEngine,
    VIZ_JS_PRELUDE,
)
from .server import EngineServer, ServerEngine, server_is_running, stop_server

__all__ = [
    "Engine",
    # Command line
    "CommandExecutor",
    "CommandLineEngine",
    "CommandResult",
    "SubprocessExecutor",
    "build_arguments",
    "executable_names",
    "find_executable",
    "PipeEngine",
    # Script
    "ScriptEngine",
    "DirectScriptEngine",
    "CallbackScriptEngine",
    "Interpreter",
    "QuickJsInterpreter",
    "VIZ_JS_PRELUDE",
    # Pool & server
    "EnginePool",
    "PooledEngine",
    "PoolEntry",
    "EngineServer",
    "ServerEngine",
    "server_is_running",
    "stop_server",
]

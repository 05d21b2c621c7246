"""Command-line engine: render by running a Graphviz executable.

Responsibilities:
- Discover the executable (pure candidate listing, separate probing)
- Build a deterministic argument list from the request and options
- Run it through a replaceable CommandExecutor with a bounded timeout
- Turn exit codes and missing output into typed errors

Command line shape:
    <tool> [-K<layout>] [option flags] -T<format>[:<renderer>[:<formatter>]] -o<outfile> <infile>
"""

import logging
import os
import subprocess
import sys
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Union

from ..exceptions import EngineTimeoutError, ExecutableNotFoundError, ExecutionError
from ..models import EngineResult, RenderRequest
from ..options import EngineOption, option_flags, validate_options
from ..settings import EngineSettings, get_settings
from .base import Engine

logger = logging.getLogger(__name__)

INPUT_FILENAME = "dotfile.dot"
OUTPUT_BASENAME = "outfile"

SearchPath = Union[str, Path, Sequence[Union[str, Path]], None]


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of one executable run."""

    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def diagnostics(self) -> str:
        text = self.stderr or self.stdout
        return text.decode("utf-8", errors="replace")


class CommandExecutor(Protocol):
    """Runs an argument list in a working directory.

    Implementations may return None when they have nothing to report;
    the engine then only checks for the expected output file.
    """

    def execute(
        self, args: List[str], working_dir: Path, timeout: float
    ) -> Optional[CommandResult]:
        ...


class SubprocessExecutor:
    """CommandExecutor backed by ``subprocess.run``.

    A process still running at the deadline is killed and reported as
    EngineTimeoutError.
    """

    def execute(self, args: List[str], working_dir: Path, timeout: float) -> CommandResult:
        try:
            completed = subprocess.run(
                args,
                cwd=working_dir,
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise EngineTimeoutError(
                f"{Path(args[0]).name} did not finish within {timeout}s"
            ) from e
        except OSError as e:
            raise ExecutionError(
                f"Could not start {args[0]}", diagnostics=str(e), context=" ".join(args)
            ) from e
        return CommandResult(completed.returncode, completed.stdout, completed.stderr)


def executable_names(name: str, platform: Optional[str] = None) -> List[str]:
    """Ordered candidate filenames for an executable on a platform.

    Args:
        name: Base executable name, e.g. "dot"
        platform: ``sys.platform``-style identifier (default: current)

    Example:
        >>> executable_names("dot", "win32")
        ['dot.exe', 'dot.bat', 'dot.cmd']
        >>> executable_names("dot", "linux")
        ['dot']
    """
    platform = sys.platform if platform is None else platform
    if platform.startswith("win"):
        return [f"{name}.exe", f"{name}.bat", f"{name}.cmd"]
    return [name]


def search_directories(search_path: SearchPath = None) -> List[Path]:
    """Directories to probe, in order; defaults to ``PATH``."""
    if search_path is None:
        search_path = os.environ.get("PATH", "")
    if isinstance(search_path, (str, Path)):
        parts = str(search_path).split(os.pathsep)
    else:
        parts = [str(p) for p in search_path]
    return [Path(p) for p in parts if p]


def candidate_paths(
    name: str, search_path: SearchPath = None, platform: Optional[str] = None
) -> List[Path]:
    """Every path probed for ``name``, directory by directory."""
    names = executable_names(name, platform)
    return [directory / n for directory in search_directories(search_path) for n in names]


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def find_executable(
    name: str,
    search_path: SearchPath = None,
    platform: Optional[str] = None,
    probe: Callable[[Path], bool] = _is_executable,
) -> Path:
    """Resolve the first candidate path that ``probe`` accepts.

    Raises:
        ExecutableNotFoundError: If no candidate resolves
    """
    candidates = candidate_paths(name, search_path, platform)
    for candidate in candidates:
        if probe(candidate):
            return candidate
    raise ExecutableNotFoundError(
        f"Graphviz executable {name!r} not found",
        diagnostics=f"searched {len(candidates)} candidate(s)",
        context=os.pathsep.join(str(d) for d in search_directories(search_path)),
    )


def build_arguments(
    executable: Union[str, Path],
    request: RenderRequest,
    options: Iterable[EngineOption] = (),
    input_file: str = INPUT_FILENAME,
) -> List[str]:
    """Build the argument list for one render.

    Pure and deterministic: layout and algorithm flags first, then the
    format flag, then the output flag and the input file.
    """
    args = [str(executable)]
    if request.layout is not None:
        args.append(f"-K{request.layout.value}")
    args.extend(option_flags(options))
    args.append(f"-T{request.graphviz_format}")
    args.append(f"-o{output_filename(request)}")
    args.append(input_file)
    return args


def output_filename(request: RenderRequest) -> str:
    return f"{OUTPUT_BASENAME}.{request.output_extension}"


class CommandLineEngine(Engine):
    """Engine running a Graphviz executable once per render.

    Each render uses a fresh temporary working directory, so the engine is
    safe to share between threads.

    Args:
        executable: Base name of the executable (default from settings, "dot")
        options: Algorithm options, validated now
        search_path: Directories to search instead of ``PATH``
        executor: CommandExecutor replacing the subprocess runner
        timeout: Seconds allowed per render
        dot_output_dir: Directory to persist each generated source file in
        dot_output_name: File name (without ``.dot``) for the persisted source
        settings: Settings to take defaults from

    Raises:
        ExecutableNotFoundError: If the executable cannot be found
        ConfigurationError: If the options are invalid together

    Example:
        >>> engine = CommandLineEngine("dot", options=[FdpOption.NO_GRID])
        >>> engine.render(RenderRequest("graph g {a--b}", format=Format.SVG)).text
    """

    def __init__(
        self,
        executable: Optional[str] = None,
        options: Iterable[EngineOption] = (),
        search_path: SearchPath = None,
        executor: Optional[CommandExecutor] = None,
        timeout: Optional[float] = None,
        dot_output_dir: Union[str, Path, None] = None,
        dot_output_name: Optional[str] = None,
        settings: Optional[EngineSettings] = None,
    ):
        settings = (settings or get_settings()).merge(timeout=timeout, executable=executable)
        self.options = validate_options(options)
        self.timeout = settings.timeout
        self.executor: CommandExecutor = executor or SubprocessExecutor()
        self.executable = find_executable(settings.executable, search_path)
        self.dot_output_dir: Optional[Path] = None
        self.dot_output_name: Optional[str] = None
        if dot_output_dir is not None:
            self.set_dot_output_file(dot_output_dir, dot_output_name or "dotfile")
        logger.info(f"{self.name} using {self.executable}")

    def set_dot_output_file(self, directory: Union[str, Path], name: str) -> None:
        """Also persist every generated source as ``<directory>/<name>.dot``."""
        self.dot_output_dir = Path(directory)
        self.dot_output_name = name

    def build_arguments(self, request: RenderRequest) -> List[str]:
        return build_arguments(self.executable, request, self.options)

    def render(self, request: RenderRequest) -> EngineResult:
        args = self.build_arguments(request)
        command = " ".join(args)
        with tempfile.TemporaryDirectory(prefix="dotengine-") as tmp:
            working_dir = Path(tmp)
            (working_dir / INPUT_FILENAME).write_text(request.source, encoding="utf-8")
            self._persist_source(request.source)

            logger.debug(f"Running {command} in {working_dir}")
            outcome = self.executor.execute(args, working_dir, self.timeout)
            if outcome is not None and outcome.returncode != 0:
                raise ExecutionError(
                    f"{self.executable.name} exited with code {outcome.returncode}",
                    diagnostics=outcome.diagnostics,
                    context=command,
                )

            output = working_dir / output_filename(request)
            if not output.is_file():
                raise ExecutionError(
                    f"{self.executable.name} produced no output file {output.name}",
                    diagnostics=outcome.diagnostics if outcome is not None else None,
                    context=command,
                )
            data = output.read_bytes()

        fmt = request.result_format
        result = EngineResult(data=fmt.postprocess(data), format=fmt)
        if request.output_path is not None:
            return replace(result, path=result.to_file(request.output_path))
        return result

    def _persist_source(self, source: str) -> None:
        if self.dot_output_dir is None:
            return
        self.dot_output_dir.mkdir(parents=True, exist_ok=True)
        target = self.dot_output_dir / f"{self.dot_output_name}.dot"
        target.write_text(source, encoding="utf-8")
        logger.debug(f"Persisted source to {target}")

"""Render server: expose an engine on a local HTTP port.

The server side is a threading ``http.server`` listener that proxies jobs
to an in-process engine (normally a PooledEngine). The client side,
ServerEngine, talks to it with ``requests``, so other processes can share
one set of warm engines.

Endpoints:
    GET  /health    liveness probe, identifies a dotengine listener
    POST /render    JSON-encoded RenderRequest -> JSON-encoded EngineResult
    POST /shutdown  stop the listener

Failures travel as ``{"error": <exception class>, "message": ...}`` and
are raised again on the client as the same exception type.
"""

import base64
import json
import logging
import threading
from dataclasses import replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional

import requests

from .. import exceptions
from ..exceptions import (
    ConfigurationError,
    DotEngineError,
    EngineTimeoutError,
    ExecutionError,
    MissingDependencyError,
)
from ..formats import Format, Layout, Rasterizer
from ..models import EngineResult, RenderRequest
from ..settings import EngineSettings, get_settings
from .base import Engine
from .pool import PooledEngine

logger = logging.getLogger(__name__)

SERVICE_NAME = "dotengine"
PROBE_TIMEOUT = 1.0


# ============================================================================
# Wire format
# ============================================================================


def encode_request(request: RenderRequest) -> Dict[str, Any]:
    """JSON-safe form of a request; the output path stays with the client."""
    rasterizer = request.rasterizer
    return {
        "source": request.source,
        "format": request.format.value,
        "rasterizer": None
        if rasterizer is None
        else {
            "format": rasterizer.format,
            "renderer": rasterizer.renderer,
            "formatter": rasterizer.formatter,
        },
        "layout": request.layout.value if request.layout is not None else None,
        "total_memory": request.total_memory,
        "y_invert": request.y_invert,
    }


def decode_request(payload: Dict[str, Any]) -> RenderRequest:
    rasterizer = payload.get("rasterizer")
    layout = payload.get("layout")
    return RenderRequest(
        source=payload["source"],
        format=Format.parse(payload.get("format", Format.SVG.value)),
        rasterizer=Rasterizer(**rasterizer) if rasterizer else None,
        layout=Layout(layout) if layout else None,
        total_memory=payload.get("total_memory"),
        y_invert=bool(payload.get("y_invert", False)),
    )


def encode_result(result: EngineResult) -> Dict[str, Any]:
    return {
        "format": result.format.value,
        "data": base64.b64encode(result.data).decode("ascii"),
    }


def decode_result(payload: Dict[str, Any]) -> EngineResult:
    return EngineResult(
        data=base64.b64decode(payload["data"]),
        format=Format.parse(payload["format"]),
    )


def encode_error(error: Exception) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "error": type(error).__name__,
        "message": str(error.args[0]) if error.args else str(error),
    }
    if isinstance(error, ExecutionError):
        payload["diagnostics"] = error.diagnostics
        payload["context"] = error.context
    if isinstance(error, MissingDependencyError):
        payload["artifact"] = error.artifact
    return payload


def decode_error(payload: Dict[str, Any]) -> DotEngineError:
    """Rebuild the exception a server reported."""
    error_type = getattr(exceptions, str(payload.get("error")), None)
    message = payload.get("message", "Render server failed")
    if not (isinstance(error_type, type) and issubclass(error_type, DotEngineError)):
        return ExecutionError(message, diagnostics=str(payload.get("error")))
    if issubclass(error_type, ExecutionError):
        return error_type(message, diagnostics=payload.get("diagnostics"), context=payload.get("context"))
    if issubclass(error_type, MissingDependencyError):
        return error_type(message, payload.get("artifact", "unknown"))
    return error_type(message)


# ============================================================================
# Server
# ============================================================================


class _RenderHandler(BaseHTTPRequestHandler):
    server: "_RenderHTTPServer"

    def do_GET(self):  # noqa: N802 - required by BaseHTTPRequestHandler
        if self.path == "/health":
            self._send_json(200, {"status": "ok", "service": SERVICE_NAME})
        else:
            self._send_json(404, {"error": "NotFound", "message": self.path})

    def do_POST(self):  # noqa: N802 - required by BaseHTTPRequestHandler
        if self.path == "/shutdown":
            self._send_json(200, {"status": "stopping"})
            threading.Thread(target=self.server.owner.stop, daemon=True).start()
            return
        if self.path != "/render":
            self._send_json(404, {"error": "NotFound", "message": self.path})
            return

        try:
            length = int(self.headers.get("Content-Length", 0))
            request = decode_request(json.loads(self.rfile.read(length)))
        except (ValueError, KeyError, TypeError, ConfigurationError) as e:
            self._send_json(400, {"error": "ConfigurationError", "message": f"Bad render request: {e}"})
            return

        try:
            result = self.server.owner.engine.render(request)
        except DotEngineError as e:
            logger.debug(f"Render failed on server: {e}")
            self._send_json(500, encode_error(e))
            return
        except Exception as e:
            logger.warning(f"Engine raised {type(e).__name__} on server: {e}")
            error = ExecutionError(
                "Render server engine failed", diagnostics=f"{type(e).__name__}: {e}"
            )
            self._send_json(500, encode_error(error))
            return
        self._send_json(200, encode_result(result))

    def _send_json(self, status: int, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args):  # noqa: A003 - match superclass
        logger.debug(f"{self.address_string()} {format % args}")


class _RenderHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    owner: "EngineServer"


class EngineServer:
    """Local HTTP listener proxying render jobs to an engine.

    Args:
        engine: Engine serving the jobs; closed when the server stops
        port: Port to listen on (default from settings)
        host: Interface to bind (default from settings, loopback)
    """

    def __init__(
        self,
        engine: Engine,
        port: Optional[int] = None,
        host: Optional[str] = None,
        settings: Optional[EngineSettings] = None,
    ):
        settings = (settings or get_settings()).merge(server_port=port, server_host=host)
        self.engine = engine
        self.port = settings.server_port
        self.host = settings.server_host
        self._httpd: Optional[_RenderHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._httpd is not None

    def start(self) -> "EngineServer":
        """Bind the port and serve in a background thread.

        Raises:
            ConfigurationError: If the port is already bound
        """
        with self._lock:
            if self._httpd is not None:
                return self
            try:
                httpd = _RenderHTTPServer((self.host, self.port), _RenderHandler)
            except OSError as e:
                raise ConfigurationError(f"Cannot listen on {self.host}:{self.port}: {e}") from e
            httpd.owner = self
            self._httpd = httpd
            self._thread = threading.Thread(
                target=httpd.serve_forever, name=f"dotengine-server-{self.port}", daemon=True
            )
            self._thread.start()
        logger.info(f"Render server listening on {self.host}:{self.port}")
        return self

    def stop(self) -> None:
        """Stop listening and close the engine; idempotent."""
        with self._lock:
            httpd, thread = self._httpd, self._thread
            self._httpd, self._thread = None, None
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)
        self.engine.close()
        logger.info(f"Render server on {self.host}:{self.port} stopped")


# ============================================================================
# Client
# ============================================================================


def _base_url(host: str, port: int) -> str:
    return f"http://{host}:{port}"


def server_is_running(port: int, host: str = "127.0.0.1") -> bool:
    """True if a dotengine render server answers on ``host:port``."""
    try:
        response = requests.get(f"{_base_url(host, port)}/health", timeout=PROBE_TIMEOUT)
    except requests.RequestException:
        return False
    try:
        return response.ok and response.json().get("service") == SERVICE_NAME
    except ValueError:
        return False


def stop_server(port: int, host: str = "127.0.0.1") -> bool:
    """Ask the render server on ``host:port`` to stop.

    A no-op unless a dotengine render server answers its health probe.

    Returns:
        True if a server acknowledged the request
    """
    if not server_is_running(port, host):
        logger.debug(f"No render server on {host}:{port}")
        return False
    try:
        response = requests.post(f"{_base_url(host, port)}/shutdown", timeout=PROBE_TIMEOUT)
    except requests.RequestException:
        logger.debug(f"No render server on {host}:{port}")
        return False
    return response.ok


class ServerEngine(Engine):
    """Engine that renders through a local render server.

    If a dotengine server already listens on the port it is reused (or
    rejected when ``reuse_existing`` is False). Otherwise a server backed
    by a pool of ``pool_size`` engines from ``engine_factory`` is started in
    this process and stopped again by ``close``.

    Args:
        engine_factory: Creates the engines behind a newly started server
        port: Server port (default from settings)
        host: Server host (default from settings)
        pool_size: Engines behind a newly started server
        reuse_existing: Accept a server that is already running
        timeout: Seconds allowed per render request
        settings: Settings to take defaults from

    Raises:
        ConfigurationError: If a server runs and reuse is disabled, if none
            runs and no factory is given, or if the port is taken

    Example:
        >>> engine = ServerEngine(CommandLineEngine, port=34567)
        >>> engine.render(RenderRequest("graph g {a--b}")).text
        >>> stop_server(34567)
    """

    def __init__(
        self,
        engine_factory: Optional[Callable[[], Engine]] = None,
        port: Optional[int] = None,
        host: Optional[str] = None,
        pool_size: Optional[int] = None,
        reuse_existing: bool = True,
        timeout: Optional[float] = None,
        settings: Optional[EngineSettings] = None,
    ):
        settings = (settings or get_settings()).merge(
            server_port=port, server_host=host, pool_size=pool_size, timeout=timeout
        )
        self.port = settings.server_port
        self.host = settings.server_host
        self.timeout = settings.timeout
        self.server: Optional[EngineServer] = None

        if server_is_running(self.port, self.host):
            if not reuse_existing:
                raise ConfigurationError(f"A render server already listens on {self.host}:{self.port}")
            logger.info(f"Reusing render server on {self.host}:{self.port}")
            return

        if engine_factory is None:
            raise ConfigurationError(
                f"No render server on {self.host}:{self.port} and no engine factory to start one"
            )
        pooled = PooledEngine(engine_factory, settings=settings)
        try:
            self.server = EngineServer(pooled, settings=settings).start()
        except BaseException:
            pooled.close()
            raise

    @property
    def url(self) -> str:
        return _base_url(self.host, self.port)

    def render(self, request: RenderRequest) -> EngineResult:
        try:
            response = requests.post(
                f"{self.url}/render", json=encode_request(request), timeout=self.timeout
            )
        except requests.Timeout as e:
            raise EngineTimeoutError(f"Render server did not answer within {self.timeout}s") from e
        except requests.RequestException as e:
            raise ExecutionError(
                "Render server unreachable", diagnostics=str(e), context=self.url
            ) from e

        try:
            payload = response.json()
        except ValueError as e:
            raise ExecutionError(
                f"Invalid response from render server (HTTP {response.status_code})",
                diagnostics=response.text,
                context=self.url,
            ) from e
        if response.status_code != 200:
            raise decode_error(payload)

        result = decode_result(payload)
        if request.output_path is not None:
            return replace(result, path=result.to_file(request.output_path))
        return result

    def close(self) -> None:
        if self.server is not None:
            self.server.stop()
            self.server = None

    stop_server = staticmethod(stop_server)

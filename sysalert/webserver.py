"""Embedded HTTP server exposing health and version endpoints."""

from __future__ import annotations

import json
import socket
import ssl
import threading
import urllib.parse
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Optional, Union

from .logger import Logger, LogLevel

_HEALTHZ_BODY = '{"status": "ok"}'


def _format_api_version(value: int) -> str:
    major = (value >> 44) & ((1 << 20) - 1)
    minor = (value >> 24) & ((1 << 20) - 1)
    patch = value & ((1 << 24) - 1)
    return f"{major}.{minor}.{patch}"


@dataclass
class VersionsInfo:
    """Versions of the components of a running instance.

    Driver API and schema versions may be given as packed integers; they
    are stored as ``major.minor.patch`` strings.
    """

    falco_version: str = ""
    engine_version: str = ""
    libs_version: str = ""
    plugin_api_version: str = ""
    driver_api_version: Union[str, int] = ""
    driver_schema_version: Union[str, int] = ""
    default_driver_version: str = ""
    plugin_versions: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.driver_api_version, int):
            self.driver_api_version = _format_api_version(self.driver_api_version)
        if isinstance(self.driver_schema_version, int):
            self.driver_schema_version = _format_api_version(self.driver_schema_version)

    def as_json(self) -> dict[str, Any]:
        """Encode as a JSON-ready mapping."""
        parts = self.engine_version.split(".")
        engine_minor = parts[1] if len(parts) > 1 else ""
        info: dict[str, Any] = {
            "falco_version": self.falco_version,
            "libs_version": self.libs_version,
            "plugin_api_version": self.plugin_api_version,
            "driver_api_version": self.driver_api_version,
            "driver_schema_version": self.driver_schema_version,
            "default_driver_version": self.default_driver_version,
            # Kept for tooling that still matches on the minor number alone.
            "engine_version": engine_minor,
            "engine_version_semver": self.engine_version,
        }
        if self.plugin_versions:
            info["plugin_versions"] = dict(self.plugin_versions)
        return info


class WebServerError(Exception):
    """Raised when the web server cannot be started."""


class _Handler(BaseHTTPRequestHandler):
    server: "_PooledHTTPServer"

    def do_GET(self) -> None:
        path = urllib.parse.urlsplit(self.path).path
        body = self.server.routes.get(path)
        if body is None:
            self.send_error(404)
            return
        data = body.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format: str, *args: Any) -> None:
        pass


class _PooledHTTPServer(HTTPServer):
    """HTTP server handling requests on a fixed-size thread pool."""

    def __init__(
        self,
        address: tuple[str, int],
        routes: dict[str, str],
        threadiness: int,
        ssl_context: Optional[ssl.SSLContext],
    ) -> None:
        if ":" in address[0]:
            self.address_family = socket.AF_INET6
        self.routes = routes
        super().__init__(address, _Handler, bind_and_activate=False)
        try:
            self.server_bind()
            self.server_activate()
        except BaseException:
            self.server_close()
            raise
        if ssl_context is not None:
            self.socket = ssl_context.wrap_socket(self.socket, server_side=True)
        self._pool = ThreadPoolExecutor(max_workers=max(1, threadiness))

    def process_request(self, request: Any, client_address: Any) -> None:
        self._pool.submit(self._handle, request, client_address)

    def _handle(self, request: Any, client_address: Any) -> None:
        try:
            self.finish_request(request, client_address)
        except Exception:
            self.handle_error(request, client_address)
        finally:
            self.shutdown_request(request)

    def server_close(self) -> None:
        super().server_close()
        pool = getattr(self, "_pool", None)
        if pool is not None:
            pool.shutdown(wait=True)


class WebServer:
    """Serves a health endpoint and ``/versions`` from a background thread."""

    def __init__(self, logger: Optional[Logger] = None) -> None:
        self.logger = logger if logger is not None else Logger()
        self._server: Optional[_PooledHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def port(self) -> Optional[int]:
        """Port actually bound, or None when not running."""
        return self._server.server_address[1] if self._server is not None else None

    def start(
        self,
        versions: VersionsInfo,
        threadiness: int,
        listen_port: int,
        listen_address: str,
        healthz_endpoint: str,
        ssl_certificate: str,
        ssl_enabled: bool,
    ) -> None:
        """Start serving; raises WebServerError on misconfiguration or bind failure."""
        if self._running:
            raise WebServerError("attempted restarting webserver without stopping it first")

        context: Optional[ssl.SSLContext] = None
        if ssl_enabled:
            try:
                context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
                context.load_cert_chain(ssl_certificate, ssl_certificate)
            except (OSError, ssl.SSLError) as exc:
                raise WebServerError("invalid webserver configuration") from exc

        versions_body = json.dumps(
            versions.as_json(), ensure_ascii=False, separators=(",", ":"), sort_keys=True
        )
        routes = {healthz_endpoint: _HEALTHZ_BODY, "/versions": versions_body}

        try:
            server = _PooledHTTPServer(
                (listen_address, listen_port), routes, threadiness, context
            )
        except (OSError, OverflowError, ValueError) as exc:
            self.logger.log(LogLevel.ERR, f"webserver: {exc}\n")
            raise WebServerError("an error occurred while starting webserver") from exc

        self._server = server
        self._thread = threading.Thread(
            target=self._serve, name="webserver", daemon=True
        )
        self._thread.start()
        self._running = True

    def _serve(self) -> None:
        assert self._server is not None
        try:
            self._server.serve_forever()
        except Exception as exc:
            self.logger.log(LogLevel.ERR, f"webserver: {exc}\n")

    def stop(self) -> None:
        """Stop serving and release the socket; does nothing when not running."""
        if not self._running:
            return
        if self._server is not None:
            self._server.shutdown()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._server is not None:
            self._server.server_close()
            self._server = None
        self._running = False

    def __enter__(self) -> "WebServer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
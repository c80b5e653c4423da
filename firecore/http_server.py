"""HTTP control interface of the operator."""

from __future__ import annotations

import logging
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Mapping

from firecore.operator import Command, Operator

logger = logging.getLogger(__name__)

RouteHandler = Callable[[Mapping[str, str]], "tuple[int, str]"]

_NOT_FOUND = (404, "404 page not found\n")
_METHOD_NOT_ALLOWED = (405, "")


def _first_values(query: str) -> dict[str, str]:
    return {
        key: values[0]
        for key, values in urllib.parse.parse_qs(query, keep_blank_values=True).items()
    }


def _split_listen_addr(listen_addr: str) -> tuple[str, int]:
    host, _, port = listen_addr.rpartition(":")
    if not port:
        raise ValueError(f"invalid listen address {listen_addr!r}")
    return host.strip("[]"), int(port)


def _request_params(params: Mapping[str, str], *terms: str) -> dict[str, str]:
    return {term: params[term] for term in terms if params.get(term)}


class _Server(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], app: OperatorHTTPServer) -> None:
        self.app = app
        super().__init__(address, _RequestHandler)


class _RequestHandler(BaseHTTPRequestHandler):
    server: _Server

    def _dispatch(self, method: str) -> None:
        parsed = urllib.parse.urlsplit(self.path)
        params = _first_values(parsed.query)
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        if method == "POST" and self.headers.get_content_type() == "application/x-www-form-urlencoded":
            # Values from the body take precedence over the query string
            params.update(_first_values(body.decode("utf-8", "replace")))

        status, text = self.server.app.handle(method, parsed.path, params)
        payload = text.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def do_GET(self) -> None:  # noqa: N802
        self._dispatch("GET")

    def do_POST(self) -> None:  # noqa: N802
        self._dispatch("POST")

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("http: " + format, *args)


class OperatorHTTPServer:
    """Routes HTTP requests to operator queries and commands."""

    def __init__(
        self,
        operator: Operator,
        listen_addr: str,
        extra_routes: Mapping[tuple[str, str], RouteHandler] | None = None,
    ) -> None:
        self.operator = operator
        self.listen_addr = listen_addr
        self._routes: dict[str, dict[str, RouteHandler]] = {}
        self._server: _Server | None = None
        self._thread: threading.Thread | None = None

        for method, path, handler in (
            ("GET", "/v1/ping", self._ping),
            ("GET", "/healthz", self._healthz),
            ("GET", "/v1/healthz", self._healthz),
            ("GET", "/v1/server_id", self._server_id),
            ("GET", "/v1/is_running", self._is_running),
            ("GET", "/v1/start_command", self._start_command),
            ("POST", "/v1/maintenance", self._simple("maintenance")),
            ("POST", "/v1/resume", self._resume),
            ("POST", "/v1/backup", self._simple("backup")),
            ("POST", "/v1/restore", self._restore),
            ("GET", "/v1/list_backups", self._list_backups),
            ("POST", "/v1/reload", self._simple("reload")),
            ("POST", "/v1/safely_reload", self._simple("safely_reload")),
            ("POST", "/v1/safely_pause_production", self._simple("safely_pause_production")),
            ("POST", "/v1/safely_resume_production", self._simple("safely_resume_production")),
        ):
            self._add_route(method, path, handler)

        for (method, path), handler in (extra_routes or {}).items():
            self._add_route(method, path, handler)

    def _add_route(self, method: str, path: str, handler: RouteHandler) -> None:
        self._routes.setdefault(path, {})[method.upper()] = handler
        logger.debug("registered route %s %s", method.upper(), path)

    def handle(self, method: str, path: str, params: Mapping[str, str] | None = None) -> tuple[int, str]:
        """Serve one request and return its status code and body."""
        methods = self._routes.get(path)
        if methods is None:
            return _NOT_FOUND
        handler = methods.get(method.upper())
        if handler is None:
            return _METHOD_NOT_ALLOWED
        return handler(dict(params or {}))

    @property
    def address(self) -> tuple[str, int] | None:
        """The bound address once started."""
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    def start(self) -> None:
        """Listen in the background; a failure to listen shuts the operator down."""
        logger.info("starting webserver on %s", self.listen_addr)
        try:
            self._server = _Server(_split_listen_addr(self.listen_addr), self)
        except (OSError, ValueError) as err:
            logger.info("http server did not start correctly: %s", err)
            self.operator.shutdown(err)
            return

        server = self._server

        def _serve() -> None:
            try:
                server.serve_forever()
            except Exception as err:
                logger.info("http server did not close correctly: %s", err)
                self.operator.shutdown(err)

        self._thread = threading.Thread(target=_serve, name="operator-http", daemon=True)
        self._thread.start()

    def shutdown(self) -> None:
        """Stop serving and release the socket."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
        self._server = None
        self._thread = None

    def _ping(self, _params: Mapping[str, str]) -> tuple[int, str]:
        return 200, "pong\n"

    def _start_command(self, _params: Mapping[str, str]) -> tuple[int, str]:
        return 200, "Command:\n" + self.operator.superviser.command() + "\n"

    def _is_running(self, _params: Mapping[str, str]) -> tuple[int, str]:
        running = "true" if self.operator.superviser.is_running() else "false"
        return 200, f'{{"is_running":{running}}}'

    def _server_id(self, _params: Mapping[str, str]) -> tuple[int, str]:
        try:
            server_id = self.operator.superviser.server_id()
        except Exception:
            return 503, "not ready\n"
        return 200, server_id

    def _healthz(self, _params: Mapping[str, str]) -> tuple[int, str]:
        if not self.operator.superviser.is_running():
            return 503, "not ready: chain is not running\n"
        readiness = self.operator.chain_readiness
        if readiness is not None and not readiness.is_ready():
            return 503, "not ready: chain is not ready\n"
        if self.operator.about_to_stop or self.operator.is_terminating():
            return 503, "not ready: chain about to stop\n"
        return 200, "ready\n"

    def _simple(self, name: str) -> RouteHandler:
        return lambda params: self._trigger(name, None, params)

    def _restore(self, params: Mapping[str, str]) -> tuple[int, str]:
        command_params = _request_params(params, "backupName", "backupTag", "forceVerify")
        return self._trigger("restore", command_params, params)

    def _list_backups(self, params: Mapping[str, str]) -> tuple[int, str]:
        return self._trigger("list", _request_params(params, "offset", "limit"), params)

    def _resume(self, params: Mapping[str, str]) -> tuple[int, str]:
        command_params = {"debug-firehose-logs": params.get("debug-firehose-logs") or "false"}
        return self._trigger("resume", command_params, params)

    def _trigger(
        self, name: str, command_params: Mapping[str, str] | None, params: Mapping[str, str]
    ) -> tuple[int, str]:
        command = Command(name, dict(command_params or {}))
        if params.get("sync") == "true":
            try:
                self.operator.submit(command, wait=True)
            except Exception as err:
                return 500, f"ERROR: {name} failed: {err} \n"
            return 200, f"Success: {name} completed\n"

        self.operator.submit(command)
        return 201, f"{name} command submitted\n"
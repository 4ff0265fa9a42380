"""HTTP server utilities: a background WSGI server and middlewares."""

import collections
import io
import os
import socket
import ssl
import sys
import threading
import traceback
from http import HTTPStatus
from socketserver import ThreadingMixIn
from typing import Callable, Iterable
from urllib.parse import quote
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer

from .logger import Level

SERVER_NAME = "mediarelay"
_ERROR_LOG_SIZE = 100


def server_header_middleware(app: Callable) -> Callable:
    """Set the Server response header, unless the application sets its own."""

    def wrapped(environ, start_response):
        def with_header(status, headers, exc_info=None):
            if not any(name.lower() == "server" for name, _ in headers):
                headers = [("Server", SERVER_NAME)] + list(headers)
            return start_response(status, headers, exc_info)

        return app(environ, with_header)

    return wrapped


def _remote_addr(environ: dict) -> str:
    addr = environ.get("REMOTE_ADDR", "")
    port = environ.get("REMOTE_PORT")
    return f"{addr}:{port}" if port else addr


def _read_body(environ: dict) -> bytes:
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    if length <= 0:
        return b""
    return environ["wsgi.input"].read(length)


def _dump_request(environ: dict, body: bytes) -> str:
    uri = quote(environ.get("PATH_INFO", "/") or "/")
    query = environ.get("QUERY_STRING")
    if query:
        uri += "?" + query
    proto = environ.get("SERVER_PROTOCOL", "HTTP/1.1")
    lines = [f"{environ.get('REQUEST_METHOD', 'GET')} {uri} {proto}"]

    host = environ.get("HTTP_HOST") or (
        f"{environ.get('SERVER_NAME', '')}:{environ.get('SERVER_PORT', '')}"
    )
    lines.append(f"Host: {host}")

    headers = []
    for key, value in environ.items():
        if key.startswith("HTTP_") and key != "HTTP_HOST":
            headers.append((key[5:].replace("_", "-").title(), value))
    for key in ("CONTENT_TYPE", "CONTENT_LENGTH"):
        if environ.get(key):
            headers.append((key.replace("_", "-").title(), environ[key]))
    lines.extend(f"{name}: {value}" for name, value in sorted(headers))

    return "\r\n".join(lines) + "\r\n\r\n" + body.decode("utf-8", "replace")


def _dump_response(status: str, headers: list, body_size: int) -> str:
    try:
        code = int(status.split(" ", 1)[0])
    except ValueError:
        code = 200
    try:
        text = HTTPStatus(code).phrase
    except ValueError:
        text = ""

    out = [f"HTTP/1.1 {code} {text}\n"]
    out.extend(f"{name}: {value}\r\n" for name, value in sorted(headers))
    out.append("\n")
    if body_size > 0:
        out.append(f"(body of {body_size} bytes)")
    return "".join(out)


def logger_middleware(app: Callable, log) -> Callable:
    """Log every request and response at debug level."""

    def wrapped(environ, start_response):
        remote = _remote_addr(environ)
        log.log(
            Level.DEBUG,
            "[conn %s] %s %s",
            remote,
            environ.get("REQUEST_METHOD", "GET"),
            environ.get("PATH_INFO", "/"),
        )

        body = _read_body(environ)
        environ["wsgi.input"] = io.BytesIO(body)
        log.log(Level.DEBUG, "[conn %s] [c->s] %s", remote, _dump_request(environ, body))

        response = {"status": "200 OK", "headers": []}
        written = bytearray()

        def capture(status, headers, exc_info=None):
            response["status"] = status
            response["headers"] = list(headers)
            write = start_response(status, headers, exc_info)

            def logged_write(data):
                written.extend(data)
                return write(data)

            return logged_write

        result = app(environ, capture)
        try:
            chunks = list(result)
        finally:
            close = getattr(result, "close", None)
            if close is not None:
                close()
        for chunk in chunks:
            written.extend(chunk)

        log.log(
            Level.DEBUG,
            "[conn %s] [s->c] %s",
            remote,
            _dump_response(response["status"], response["headers"], len(written)),
        )
        return chunks

    return wrapped


def _exit_on_panic(app: Callable) -> Callable:
    """Terminate the process when the application raises."""

    def wrapped(environ, start_response) -> Iterable[bytes]:
        try:
            result = app(environ, start_response)
            try:
                yield from result
            finally:
                close = getattr(result, "close", None)
                if close is not None:
                    close()
        except Exception:  # noqa: BLE001 - any failure is fatal
            sys.stderr.write("panic: ")
            traceback.print_exc(file=sys.stderr)
            sys.stderr.flush()
            os._exit(1)

    return wrapped


class _Handler(WSGIRequestHandler):
    def setup(self) -> None:
        self.timeout = self.server.read_timeout
        super().setup()

    def get_environ(self) -> dict:
        env = super().get_environ()
        env["REMOTE_PORT"] = str(self.client_address[1])
        return env

    def log_message(self, format, *args) -> None:
        # kept off the terminal; recent messages stay available on the server
        self.server.error_log.append(format % args)


class _Server(ThreadingMixIn, WSGIServer):
    daemon_threads = False

    def __init__(self, host: str, port: int, read_timeout: float | None) -> None:
        if ":" in host:
            self.address_family = socket.AF_INET6
        self.read_timeout = read_timeout
        self.tls_context: ssl.SSLContext | None = None
        self.error_log: collections.deque = collections.deque(maxlen=_ERROR_LOG_SIZE)
        super().__init__((host, port), _Handler)

    def finish_request(self, request, client_address) -> None:
        if self.tls_context is None:
            super().finish_request(request, client_address)
            return
        request.settimeout(self.read_timeout)
        wrapped = self.tls_context.wrap_socket(request, server_side=True)
        try:
            super().finish_request(wrapped, client_address)
        finally:
            wrapped.close()

    def handle_error(self, request, client_address) -> None:
        self.error_log.append(f"{client_address}: {traceback.format_exc()}")


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address '{address}'")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


class WrappedServer:
    """A WSGI server running in the background.

    It owns its listening socket, optionally serves TLS and terminates the
    process when the application raises.
    """

    def __init__(
        self,
        address: str,
        read_timeout: float,
        server_cert: str,
        server_key: str,
        app: Callable,
    ) -> None:
        host, port = _split_address(address)
        self._server = _Server(host, port, read_timeout or None)

        if server_cert:
            try:
                context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
                context.load_cert_chain(server_cert, server_key)
            except BaseException:
                self._server.server_close()
                raise
            self._server.tls_context = context

        self._server.set_app(_exit_on_panic(app))
        self.address = self._server.server_address[:2]

        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def close(self) -> None:
        """Stop serving, close the listener and wait for open requests."""
        self._server.shutdown()
        self._server.server_close()
        self._thread.join()
"""Threaded HTTP server exposing the gateway."""

from __future__ import annotations

from http.server import BaseHTTPRequestHandler

from managerkit.app.events.web import ThreadedHTTPServer
from managerkit.app.gateway.service import GatewayRequest, GatewayResponse, GatewayService


class GatewayWebApp:
    def __init__(self, service: GatewayService, host: str, port: int) -> None:
        self._service = service
        self._host = host
        self._port = port

    @property
    def service(self) -> GatewayService:
        return self._service

    def create_server(self) -> ThreadedHTTPServer:
        service = self._service

        class Handler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"

            def log_message(self, format: str, *args: object) -> None:  # noqa: A003 - silence default logging
                return

            def _dispatch(self) -> None:
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length) if length else b""
                request = GatewayRequest(
                    method=self.command,
                    path=self.path,
                    headers={key: value for key, value in self.headers.items()},
                    body=body,
                    client=self.client_address[0],
                )
                self._write(service.handle(request))

            def _write(self, response: GatewayResponse) -> None:
                self.send_response(response.status)
                for key, value in response.headers.items():
                    self.send_header(key, value)
                self.send_header("Content-Length", str(len(response.body)))
                self.end_headers()
                if self.command != "HEAD" and response.body:
                    self.wfile.write(response.body)

            do_GET = _dispatch  # noqa: N815
            do_POST = _dispatch  # noqa: N815
            do_PUT = _dispatch  # noqa: N815
            do_PATCH = _dispatch  # noqa: N815
            do_DELETE = _dispatch  # noqa: N815
            do_HEAD = _dispatch  # noqa: N815
            do_OPTIONS = _dispatch  # noqa: N815

        return ThreadedHTTPServer((self._host, self._port), Handler)


__all__ = ["GatewayWebApp"]

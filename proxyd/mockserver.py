"""A JSON-RPC server answering with canned responses chosen by method and block."""

from __future__ import annotations

import json
import logging
import os
import posixpath
import sys
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml

from .rpc import is_batch, parse_rpc_res

logger = logging.getLogger(__name__)

_BLOCK_METHODS = ("eth_getBlockByNumber", "debug_getRawReceipts")
_HTML_ESCAPES = {"<": "\\u003c", ">": "\\u003e", "&": "\\u0026", "\u2028": "\\u2028", "\u2029": "\\u2029"}


def _encode(value: Any) -> str:
    text = json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    for char, escape in _HTML_ESCAPES.items():
        text = text.replace(char, escape)
    return text


def _scalar_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass
class MethodTemplate:
    """A canned response for a method, optionally for one block parameter."""

    method: str = ""
    block: str = ""
    response: str = ""
    response_code: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MethodTemplate:
        code = data.get("response_code")
        return cls(
            method=_scalar_text(data.get("method")),
            block=_scalar_text(data.get("block")),
            response=_scalar_text(data.get("response")),
            response_code=int(code) if code is not None else 0,
        )


@dataclass
class MockedHandler:
    """Matches incoming requests against templates from a file and from overrides."""

    overrides: list[MethodTemplate] = field(default_factory=list)
    autoload: bool = False
    autoload_file: str = ""

    def _templates(self) -> list[MethodTemplate]:
        templates: list[MethodTemplate] = []
        if self.autoload:
            templates.extend(self.load_from_file(self.autoload_file))
        templates.extend(self.overrides)
        return templates

    @staticmethod
    def _requests(body: bytes | str, batched: bool) -> list[dict[str, Any]]:
        try:
            decoded = json.loads(body)
        except ValueError as exc:
            print(f"error reading request: {exc}")
            return [] if batched else [{}]
        if batched:
            if not isinstance(decoded, list):
                print("error reading request: expected an array")
                return []
            if any(item is not None and not isinstance(item, dict) for item in decoded):
                print("error reading request: expected an array of objects")
            return [item if isinstance(item, dict) else {} for item in decoded]
        if decoded is not None and not isinstance(decoded, dict):
            print("error reading request: expected an object")
        return [decoded if isinstance(decoded, dict) else {}]

    def handle(self, body: bytes | str) -> tuple[int, str]:
        """Answer a request body, returning the HTTP status and the response body."""
        templates = self._templates()
        batched = is_batch(body)
        status: int | None = None
        responses: list[str] = []

        for request in self._requests(body, batched):
            method = request.get("method")
            block = ""
            if method in _BLOCK_METHODS:
                block = request["params"][0]
                if not isinstance(block, str):
                    raise TypeError("block parameter must be a string")

            selected = ""
            for template in templates:
                if template.method == method and template.block == block:
                    selected = template.response
                    if template.response_code and status is None:
                        status = template.response_code
            if not selected:
                continue

            res = parse_rpc_res(selected)
            error = None if res.error is None else res.error.to_dict()
            # field names as this server has always written them; readers match them case-insensitively
            responses.append(
                f'{{"JSONRPC":{_encode(res.jsonrpc)},"Result":{_encode(res.result)},'
                f'"Error":{_encode(error)},"ID":{_encode(request.get("id"))}}}'
            )

        if batched:
            payload = "[" + ",".join(responses) + "]"
        else:
            payload = responses[0] if responses else ""
        return status or 200, payload

    def load_from_file(self, file: str | os.PathLike[str]) -> list[MethodTemplate]:
        """Read templates from a YAML list; problems are reported and yield no templates."""
        try:
            contents = Path(file).read_text(encoding="utf-8")
        except OSError as exc:
            print(f"error reading MockedResponsesFile: {exc}")
            contents = ""
        try:
            data = yaml.safe_load(contents) if contents else None
        except yaml.YAMLError as exc:
            print(f"error reading MockedResponsesFile: {exc}")
            return []
        if data is None:
            return []
        if not isinstance(data, list):
            print("error reading MockedResponsesFile: expected a list of templates")
            return []
        return [MethodTemplate.from_dict(item) for item in data if isinstance(item, dict)]

    def add_override(self, template: MethodTemplate) -> None:
        self.overrides.append(template)

    def reset_overrides(self) -> None:
        self.overrides = []

    def serve(self, port: int) -> None:
        """Serve on all interfaces at port until interrupted."""
        print(f"starting server up on :{port} serving MockedResponsesFile {self.autoload_file}")
        try:
            server = ThreadingHTTPServer(("", port), _make_request_handler(self))
        except OSError as exc:
            print(f"error starting server: {exc}")
            raise
        with server:
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                print("server closed")


def _make_request_handler(mocked: MockedHandler) -> type[BaseHTTPRequestHandler]:
    class _RequestHandler(BaseHTTPRequestHandler):
        def _dispatch(self) -> None:
            if urlsplit(self.path).path != "/":
                self.send_error(404, "page not found")
                return
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length)
            status, payload = mocked.handle(body)
            data = payload.encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = _dispatch

        def log_message(self, format: str, *args: Any) -> None:
            # access lines go to the module logger rather than stderr
            message = format % args if args else format
            logger.debug("%s - %s", self.address_string(), message)

    return _RequestHandler


def _parse_port(text: str) -> int:
    try:
        port = int(text, 10)
    except ValueError:
        return 0
    return max(-(1 << 31), min(port, (1 << 31) - 1))


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) < 2:
        print("simply mock a response based on an external text MockedResponsesFile")
        print("usage: mockserver <port> <MockedResponsesFile.yml>")
        return 1
    port = _parse_port(args[0])
    responses_file = posixpath.normpath(posixpath.join(os.getcwd(), args[1].lstrip("/")))
    handler = MockedHandler(autoload=True, autoload_file=responses_file)
    try:
        handler.serve(port)
    except OSError as exc:
        print(f"error starting mockserver: {exc}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
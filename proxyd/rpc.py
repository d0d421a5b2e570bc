"""JSON-RPC request and response types, parsing and validation."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

JSONRPC_VERSION = "2.0"
JSONRPC_ERROR_PARSE = -32700
JSONRPC_ERROR_INVALID_REQUEST = -32600
JSONRPC_ERROR_INTERNAL = -32603

_INSIGNIFICANT_WHITESPACE = frozenset(b" \t\n\r")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON literal {name}")


def _loads(data: str | bytes | bytearray) -> Any:
    return json.loads(data, parse_constant=_reject_constant)


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def _text(raw: str | bytes | bytearray | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw).decode("utf-8")
    return raw


def _fields(obj: dict, names: set[str]) -> dict[str, Any]:
    """Pick object members by case-insensitive name; later members win."""
    found: dict[str, Any] = {}
    for key, value in obj.items():
        lowered = key.lower()
        if lowered in names:
            found[lowered] = value
    return found


class RPCErr(Exception):
    """A JSON-RPC error object, raisable as an exception."""

    def __init__(self, code: int, message: str, data: str = "", http_error_code: int = 0):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data
        self.http_error_code = http_error_code

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"RPCErr(code={self.code!r}, message={self.message!r}, data={self.data!r})"

    def clone(self) -> RPCErr:
        """Copy code, message and HTTP status; the data field is not carried over."""
        return RPCErr(self.code, self.message, http_error_code=self.http_error_code)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            out["data"] = self.data
        return out

    @classmethod
    def _from_json(cls, obj: Any) -> RPCErr:
        if not isinstance(obj, dict):
            raise ValueError("error member must be an object")
        fields = _fields(obj, {"code", "message", "data"})
        code = fields.get("code")
        message = fields.get("message")
        data = fields.get("data")
        if code is None:
            code = 0
        elif isinstance(code, bool) or not isinstance(code, int):
            raise ValueError("error code must be an integer")
        if message is None:
            message = ""
        elif not isinstance(message, str):
            raise ValueError("error message must be a string")
        if data is None:
            data = ""
        elif not isinstance(data, str):
            raise ValueError("error data must be a string")
        return cls(code, message, data)


ERR_PARSE = RPCErr(JSONRPC_ERROR_PARSE, "parse error", http_error_code=400)
ERR_INTERNAL = RPCErr(JSONRPC_ERROR_INTERNAL, "internal error", http_error_code=500)


def invalid_request(message: str) -> RPCErr:
    """Build an invalid-request error carrying the given message."""
    return RPCErr(JSONRPC_ERROR_INVALID_REQUEST, message, http_error_code=400)


@dataclass
class RPCReq:
    """A JSON-RPC request; params and id hold raw JSON text ("" when absent)."""

    jsonrpc: str = ""
    method: str = ""
    params: str = ""
    id: str = ""


@dataclass
class RPCRes:
    """A JSON-RPC response; id holds raw JSON text."""

    jsonrpc: str = ""
    result: Any = None
    error: RPCErr | None = None
    id: str = ""

    def is_error(self) -> bool:
        return self.error is not None

    def to_json(self) -> str:
        raw_id = _text(self.id) or "null"
        version = _dumps(self.jsonrpc)
        if self.result is None and self.error is None:
            return f'{{"jsonrpc":{version},"result":null,"id":{raw_id}}}'
        parts = [f'"jsonrpc":{version}']
        if self.result is not None:
            parts.append(f'"result":{_dumps(self.result)}')
        if self.error is not None:
            parts.append(f'"error":{_dumps(self.error.to_dict())}')
        parts.append(f'"id":{raw_id}')
        return "{" + ",".join(parts) + "}"


def is_valid_id(raw_id: str | bytes | None) -> bool:
    """Check a raw JSON id: a non-empty string, or any non-object, non-array value."""
    text = _text(raw_id)
    if text.startswith('"') and text.endswith('"'):
        return len(text) > 2
    return len(text) > 0 and text[0] not in "{["


def parse_rpc_req(body: str | bytes) -> RPCReq:
    """Parse a single request, raising the parse error RPCErr on malformed input."""
    try:
        obj = _loads(body)
    except ValueError as exc:
        raise ERR_PARSE.clone() from exc
    if obj is None:
        return RPCReq()
    if not isinstance(obj, dict):
        raise ERR_PARSE.clone()
    fields = _fields(obj, {"jsonrpc", "method", "params", "id"})
    jsonrpc = fields.get("jsonrpc")
    method = fields.get("method")
    for value in (jsonrpc, method):
        if value is not None and not isinstance(value, str):
            raise ERR_PARSE.clone()
    return RPCReq(
        jsonrpc=jsonrpc or "",
        method=method or "",
        params=_dumps(fields["params"]) if "params" in fields else "",
        id=_dumps(fields["id"]) if "id" in fields else "",
    )


def parse_batch_rpc_req(body: str | bytes) -> list[str]:
    """Split a batch body into the raw JSON text of each element."""
    batch = _loads(body)
    if batch is None:
        return []
    if not isinstance(batch, list):
        raise ValueError("batch request must be a JSON array")
    return [_dumps(element) for element in batch]


def parse_rpc_res(data: Any) -> RPCRes:
    """Parse a response from bytes, text or a readable object."""
    if hasattr(data, "read"):
        try:
            body = data.read()
        except OSError as exc:
            raise OSError(f"error reading RPC response {exc}") from exc
    else:
        body = data
    try:
        obj = _loads(body)
        if obj is None:
            return RPCRes()
        if not isinstance(obj, dict):
            raise ValueError("RPC response must be a JSON object")
        fields = _fields(obj, {"jsonrpc", "result", "error", "id"})
        jsonrpc = fields.get("jsonrpc")
        if jsonrpc is not None and not isinstance(jsonrpc, str):
            raise ValueError("jsonrpc must be a string")
        error = fields.get("error")
        return RPCRes(
            jsonrpc=jsonrpc or "",
            result=fields.get("result"),
            error=None if error is None else RPCErr._from_json(error),
            id=_dumps(fields["id"]) if "id" in fields else "",
        )
    except ValueError as exc:
        raise ValueError(f"error unmarshalling RPC response {exc}") from exc


def validate_rpc_req(req: RPCReq) -> None:
    """Raise an invalid-request RPCErr if the request is not acceptable."""
    if req.jsonrpc != JSONRPC_VERSION:
        raise invalid_request("invalid JSON-RPC version")
    if req.method == "":
        raise invalid_request("no method specified")
    if not is_valid_id(req.id):
        raise invalid_request("invalid ID")


def new_rpc_error_res(raw_id: str | None, err: BaseException) -> RPCRes:
    """Wrap an error in a response; non-RPC errors become internal errors."""
    if isinstance(err, RPCErr):
        rpc_err = err
    else:
        rpc_err = RPCErr(JSONRPC_ERROR_INTERNAL, str(err))
    return RPCRes(jsonrpc=JSONRPC_VERSION, error=rpc_err, id=_text(raw_id))


def new_rpc_res(raw_id: str | None, result: Any) -> RPCRes:
    return RPCRes(jsonrpc=JSONRPC_VERSION, result=result, id=_text(raw_id))


def is_batch(raw: str | bytes) -> bool:
    """Tell whether the first significant character of a body opens an array."""
    data = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
    for char in data:
        if char in _INSIGNIFICANT_WHITESPACE:
            continue
        return char == ord("[")
    return False
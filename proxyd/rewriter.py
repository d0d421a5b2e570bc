"""Rewrites block tags in requests and responses to the consensus block numbers."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .rpc import RPCReq, RPCRes

SAFE_BLOCK_NUMBER = -4
FINALIZED_BLOCK_NUMBER = -3
LATEST_BLOCK_NUMBER = -2
PENDING_BLOCK_NUMBER = -1
EARLIEST_BLOCK_NUMBER = 0

_TAGS = {
    "earliest": EARLIEST_BLOCK_NUMBER,
    "latest": LATEST_BLOCK_NUMBER,
    "pending": PENDING_BLOCK_NUMBER,
    "finalized": FINALIZED_BLOCK_NUMBER,
    "safe": SAFE_BLOCK_NUMBER,
}
_TAG_NAMES = {number: name for name, number in _TAGS.items()}
_MAX_INT64 = (1 << 63) - 1
_UINT64_MOD = 1 << 64
_HEX_DIGITS = re.compile(r"[0-9a-fA-F]+")
_HASH_HEX_LEN = 64


class RewriteError(Exception):
    """Raised when a request cannot be rewritten."""


class RewriteBlockOutOfRangeError(RewriteError):
    def __init__(self, message: str = "block is out of range"):
        super().__init__(message)


class RewriteRangeTooLargeError(RewriteError):
    def __init__(self, message: str = "block range is too large"):
        super().__init__(message)


class RewriteResult(Enum):
    NONE = 0
    """Forward the request as it is."""
    OVERRIDE_ERROR = 1
    """The rewrite failed; recorded by callers that catch a RewriteError."""
    OVERRIDE_REQUEST = 2
    """Forward the modified request to the backend."""
    OVERRIDE_RESPONSE = 3
    """Skip the backend and serve the overridden response."""


@dataclass(frozen=True)
class RewriteContext:
    latest: int = 0
    safe: int = 0
    finalized: int = 0
    max_block_range: int = 0


def _hex(number: int) -> str:
    return f"0x{number:x}"


def _decode_uint64(text: str) -> int:
    if not text:
        raise ValueError("empty hex string")
    if not (len(text) >= 2 and text[0] == "0" and text[1] in "xX"):
        raise ValueError("hex string without 0x prefix")
    digits = text[2:]
    if not digits:
        raise ValueError('hex string "0x"')
    if len(digits) > 1 and digits[0] == "0":
        raise ValueError("hex number with leading zero digits")
    if not _HEX_DIGITS.fullmatch(digits):
        raise ValueError("invalid hex string")
    if len(digits) > 16:
        raise ValueError("hex number > 64 bits")
    return int(digits, 16)


def _parse_hash(text: str) -> str:
    if not (len(text) >= 2 and text[0] == "0" and text[1] in "xX"):
        raise ValueError("hex string without 0x prefix")
    digits = text[2:]
    if len(digits) % 2:
        raise ValueError("hex string of odd length")
    if len(digits) != _HASH_HEX_LEN:
        raise ValueError(f"hex string has length {len(digits)}, want {_HASH_HEX_LEN} for hash")
    if not _HEX_DIGITS.fullmatch(digits):
        raise ValueError("invalid hex string")
    return "0x" + digits.lower()


def _parse_block_number(text: str) -> int:
    if text in _TAGS:
        return _TAGS[text]
    number = _decode_uint64(text)
    if number > _MAX_INT64:
        raise ValueError("block number larger than int64")
    return number


def _format_block_number(number: int) -> str:
    if number in _TAG_NAMES:
        return _TAG_NAMES[number]
    if number < 0:
        return f"<invalid {number}>"
    return _hex(number)


@dataclass(frozen=True)
class BlockNumberOrHash:
    """A block selector: a number (or tag), or a hash with an optional canonical flag."""

    block_number: int | None = None
    block_hash: str | None = None
    require_canonical: bool = False

    @classmethod
    def with_number(cls, number: int) -> BlockNumberOrHash:
        return cls(block_number=number)

    @classmethod
    def with_hash(cls, block_hash: str, require_canonical: bool = False) -> BlockNumberOrHash:
        return cls(block_hash=_parse_hash(block_hash), require_canonical=require_canonical)

    def to_json(self) -> dict[str, Any]:
        """The JSON object form, omitting unset members."""
        out: dict[str, Any] = {}
        if self.block_number is not None:
            out["blockNumber"] = _format_block_number(self.block_number)
        if self.block_hash is not None:
            out["blockHash"] = self.block_hash
        if self.require_canonical:
            out["requireCanonical"] = True
        return out


def _from_object(obj: dict) -> BlockNumberOrHash:
    picked: dict[str, Any] = {}
    for key, value in obj.items():
        lowered = key.lower()
        if lowered in ("blocknumber", "blockhash", "requirecanonical"):
            picked[lowered] = value

    number = picked.get("blocknumber")
    if number is not None:
        if not isinstance(number, str):
            raise ValueError("block number must be a string")
        number = _parse_block_number(number)

    block_hash = picked.get("blockhash")
    if block_hash is not None:
        if not isinstance(block_hash, str):
            raise ValueError("block hash must be a string")
        block_hash = _parse_hash(block_hash)

    canonical = picked.get("requirecanonical")
    if canonical is None:
        canonical = False
    elif not isinstance(canonical, bool):
        raise ValueError("requireCanonical must be a boolean")

    if number is not None and block_hash is not None:
        raise ValueError("cannot specify both BlockHash and BlockNumber, choose one or the other")
    return BlockNumberOrHash(number, block_hash, canonical)


def _from_string(text: str) -> BlockNumberOrHash:
    if text in _TAGS:
        return BlockNumberOrHash.with_number(_TAGS[text])
    if len(text) == _HASH_HEX_LEN + 2:
        return BlockNumberOrHash(block_hash=_parse_hash(text))
    number = _decode_uint64(text)
    if number > _MAX_INT64:
        raise ValueError("blocknumber too high")
    return BlockNumberOrHash.with_number(number)


def parse_block_number_or_hash(value: Any) -> BlockNumberOrHash:
    """Interpret a decoded JSON value as a block selector; raise ValueError if it is not one."""
    if value is None:
        return BlockNumberOrHash()
    if isinstance(value, dict):
        return _from_object(value)
    if isinstance(value, str):
        return _from_string(value)
    raise ValueError("expected a block number, block hash or block selector object")


def _load_params(req: RPCReq) -> Any:
    try:
        return json.loads(req.params)
    except ValueError as exc:
        raise RewriteError(str(exc)) from exc


def _dump_params(params: Any) -> str:
    return json.dumps(params, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def _check_number(rctx: RewriteContext, number: int) -> int | None:
    """The replacement number for a tag, or None when the number stays as it is."""
    if number in (PENDING_BLOCK_NUMBER, EARLIEST_BLOCK_NUMBER):
        return None
    if number == FINALIZED_BLOCK_NUMBER:
        return rctx.finalized
    if number == SAFE_BLOCK_NUMBER:
        return rctx.safe
    if number == LATEST_BLOCK_NUMBER:
        return rctx.latest
    if number > rctx.latest:
        raise RewriteBlockOutOfRangeError()
    return None


def _rewrite_tag(rctx: RewriteContext, current: str) -> tuple[str, bool]:
    try:
        selector = parse_block_number_or_hash(current)
    except ValueError as exc:
        raise RewriteError(str(exc)) from exc
    if selector.block_number is None:
        return current, False
    replacement = _check_number(rctx, selector.block_number)
    if replacement is None:
        return current, False
    return _hex(replacement), True


def _rewrite_selector(
    rctx: RewriteContext, current: BlockNumberOrHash
) -> tuple[BlockNumberOrHash, bool]:
    if current.block_number is None:
        return current, False
    replacement = _check_number(rctx, current.block_number)
    if replacement is None:
        return current, False
    return BlockNumberOrHash.with_number(replacement), True


def _rewrite_param(
    rctx: RewriteContext, req: RPCReq, pos: int, required: bool, block_nr_or_hash: bool
) -> RewriteResult:
    params = _load_params(req)
    if params is None:
        params = []
    if not isinstance(params, list):
        raise RewriteError("params must be an array")

    # A missing block parameter means latest; too few parameters are left alone.
    if len(params) == pos and not required:
        params.append("latest")
    elif len(params) <= pos:
        return RewriteResult.NONE

    current = params[pos]
    if block_nr_or_hash:
        try:
            selector = parse_block_number_or_hash(current)
        except ValueError:
            if not isinstance(current, str):
                raise RewriteError("expected BlockNumberOrHash or string") from None
            value, rewritten = _rewrite_tag(rctx, current)
        else:
            new_selector, rewritten = _rewrite_selector(rctx, selector)
            value = new_selector.to_json()
    else:
        if not isinstance(current, str):
            raise RewriteError("expected string")
        value, rewritten = _rewrite_tag(rctx, current)

    if rewritten:
        params[pos] = value
        req.params = _dump_params(params)
        return RewriteResult.OVERRIDE_REQUEST
    return RewriteResult.NONE


def _rewrite_tag_map(rctx: RewriteContext, filt: dict, key: str) -> bool:
    current = filt.get(key)
    if current is None or current == "":
        return False
    if not isinstance(current, str):
        raise RewriteError("expected string")
    value, rewritten = _rewrite_tag(rctx, current)
    if rewritten:
        filt[key] = value
    return rewritten


def _block_number(filt: dict, key: str, latest: int) -> int:
    current = filt.get(key)
    if not isinstance(current, str):
        raise RewriteError("expected string")
    # latest, safe and finalized have already been replaced
    if current == "earliest":
        return 0
    if current == "pending":
        return (latest + 1) % _UINT64_MOD
    try:
        return _decode_uint64(current)
    except ValueError as exc:
        raise RewriteError(str(exc)) from exc


def _rewrite_range(rctx: RewriteContext, req: RPCReq, pos: int) -> RewriteResult:
    params = _load_params(req)
    if not isinstance(params, list) or not all(item is None or isinstance(item, dict) for item in params):
        raise RewriteError("expected an array of filter objects")
    if len(params) <= pos:
        raise RewriteError("missing filter parameter")
    filt = params[pos] if params[pos] is not None else {}

    # when only one end of the range is given, the other defaults to latest
    has_from = "fromBlock" in filt
    has_to = "toBlock" in filt
    if has_from and not has_to:
        filt["toBlock"] = "latest"
    elif has_to and not has_from:
        filt["fromBlock"] = "latest"

    modified_from = _rewrite_tag_map(rctx, filt, "fromBlock")
    modified_to = _rewrite_tag_map(rctx, filt, "toBlock")

    if rctx.max_block_range > 0 and (has_from or has_to):
        start = _block_number(filt, "fromBlock", rctx.latest)
        end = _block_number(filt, "toBlock", rctx.latest)
        if (end - start) % _UINT64_MOD > rctx.max_block_range:
            raise RewriteRangeTooLargeError()

    if modified_from or modified_to:
        req.params = _dump_params(params)
        return RewriteResult.OVERRIDE_REQUEST
    return RewriteResult.NONE


def rewrite_tags(rctx: RewriteContext, req: RPCReq, res: RPCRes | None) -> RewriteResult:
    """Override the response if the method allows it, otherwise rewrite the request."""
    result = rewrite_response(rctx, req, res)
    if result is RewriteResult.OVERRIDE_RESPONSE:
        return result
    return rewrite_request(rctx, req, res)


def rewrite_response(rctx: RewriteContext, req: RPCReq, res: RPCRes | None) -> RewriteResult:
    """Replace the response of methods answered from the consensus state."""
    if req.method == "eth_blockNumber":
        res.result = _hex(rctx.latest)
        return RewriteResult.OVERRIDE_RESPONSE
    return RewriteResult.NONE


def rewrite_request(rctx: RewriteContext, req: RPCReq, res: RPCRes | None) -> RewriteResult:
    """Replace block tags in the request parameters; raise RewriteError when it cannot be served."""
    match req.method:
        case "eth_getLogs" | "eth_newFilter":
            return _rewrite_range(rctx, req, 0)
        case "debug_getRawReceipts" | "consensus_getReceipts":
            return _rewrite_param(rctx, req, 0, True, False)
        case "eth_getBalance" | "eth_getCode" | "eth_getTransactionCount" | "eth_call":
            return _rewrite_param(rctx, req, 1, False, True)
        case "eth_getStorageAt" | "eth_getProof":
            return _rewrite_param(rctx, req, 2, False, True)
        case (
            "eth_getBlockTransactionCountByNumber"
            | "eth_getUncleCountByBlockNumber"
            | "eth_getBlockByNumber"
            | "eth_getTransactionByBlockNumberAndIndex"
            | "eth_getUncleByBlockNumberAndIndex"
        ):
            return _rewrite_param(rctx, req, 0, False, False)
    return RewriteResult.NONE
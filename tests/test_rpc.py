import io

import pytest

from proxyd.rpc import (
    JSONRPC_ERROR_INTERNAL,
    JSONRPC_ERROR_INVALID_REQUEST,
    JSONRPC_ERROR_PARSE,
    JSONRPC_VERSION,
    RPCErr,
    RPCReq,
    RPCRes,
    is_batch,
    is_valid_id,
    new_rpc_error_res,
    new_rpc_res,
    parse_batch_rpc_req,
    parse_rpc_req,
    parse_rpc_res,
    validate_rpc_req,
)


@pytest.mark.parametrize(
    "res, expected",
    [
        (
            RPCRes(jsonrpc=JSONRPC_VERSION, result="foobar", id="123"),
            '{"jsonrpc":"2.0","result":"foobar","id":123}',
        ),
        (
            RPCRes(jsonrpc=JSONRPC_VERSION, result={"str": "test"}, id="123"),
            '{"jsonrpc":"2.0","result":{"str":"test"},"id":123}',
        ),
        (
            RPCRes(jsonrpc=JSONRPC_VERSION, result=None, id="123"),
            '{"jsonrpc":"2.0","result":null,"id":123}',
        ),
        (
            RPCRes(jsonrpc=JSONRPC_VERSION, error=RPCErr(1234, "test err"), id="123"),
            '{"jsonrpc":"2.0","error":{"code":1234,"message":"test err"},"id":123}',
        ),
        (
            RPCRes(jsonrpc=JSONRPC_VERSION, error=RPCErr(1234, "test err", data="revert"), id="123"),
            '{"jsonrpc":"2.0","error":{"code":1234,"message":"test err","data":"revert"},"id":123}',
        ),
        (
            RPCRes(jsonrpc=JSONRPC_VERSION, result="foobar", id='"123"'),
            '{"jsonrpc":"2.0","result":"foobar","id":"123"}',
        ),
    ],
    ids=["string result", "object result", "nil result", "error without data",
         "error with data", "string ID"],
)
def test_rpc_res_json(res, expected):
    assert res.to_json() == expected


def test_is_error():
    assert RPCRes(error=RPCErr(1, "x")).is_error() is True
    assert RPCRes(result="ok").is_error() is False


def test_err_clone_drops_data():
    err = RPCErr(1234, "test err", data="revert", http_error_code=429)
    copy = err.clone()
    assert (copy.code, copy.message, copy.http_error_code, copy.data) == (1234, "test err", 429, "")
    assert copy is not err
    assert str(err) == "test err"


@pytest.mark.parametrize(
    "raw, valid",
    [('"123"', True), ('""', False), ("123", True), ("{}", False), ("[1]", False),
     ("", False), ("null", True), (b'"a"', True)],
)
def test_is_valid_id(raw, valid):
    assert is_valid_id(raw) is valid


def test_parse_rpc_req():
    req = parse_rpc_req(b'{"jsonrpc":"2.0","method":"eth_chainId","params":[],"id":1}')
    assert req == RPCReq(jsonrpc="2.0", method="eth_chainId", params="[]", id="1")


def test_parse_rpc_req_missing_fields_are_empty():
    req = parse_rpc_req('{"method":"eth_chainId"}')
    assert req.params == ""
    assert req.id == ""


@pytest.mark.parametrize("body", [b"not json", b"[1,2]", b'{"method":5}', b'"x"'])
def test_parse_rpc_req_errors(body):
    with pytest.raises(RPCErr) as info:
        parse_rpc_req(body)
    assert info.value.code == JSONRPC_ERROR_PARSE


def test_parse_batch_rpc_req():
    batch = parse_batch_rpc_req(b' [{"id":1}, {"id":2}] ')
    assert batch == ['{"id":1}', '{"id":2}']
    assert parse_batch_rpc_req(b"null") == []
    with pytest.raises(ValueError):
        parse_batch_rpc_req(b'{"id":1}')


def test_parse_rpc_res_from_reader():
    res = parse_rpc_res(io.BytesIO(b'{"jsonrpc":"2.0","result":"0x1","id":"abc"}'))
    assert res.result == "0x1"
    assert res.id == '"abc"'
    assert res.error is None


def test_parse_rpc_res_error():
    res = parse_rpc_res(b'{"jsonrpc":"2.0","error":{"code":-32000,"message":"boom","data":"revert"},"id":7}')
    assert res.is_error()
    assert (res.error.code, res.error.message, res.error.data) == (-32000, "boom", "revert")


def test_parse_rpc_res_rejects_bad_body():
    with pytest.raises(ValueError, match="error unmarshalling RPC response"):
        parse_rpc_res(b"garbage")


@pytest.mark.parametrize(
    "req, message",
    [
        (RPCReq(jsonrpc="1.0", method="m", id="1"), "invalid JSON-RPC version"),
        (RPCReq(jsonrpc="2.0", method="", id="1"), "no method specified"),
        (RPCReq(jsonrpc="2.0", method="m", id="{}"), "invalid ID"),
    ],
)
def test_validate_rpc_req_errors(req, message):
    with pytest.raises(RPCErr) as info:
        validate_rpc_req(req)
    assert info.value.message == message
    assert info.value.code == JSONRPC_ERROR_INVALID_REQUEST


def test_validate_rpc_req_accepts_valid():
    req = RPCReq(jsonrpc="2.0", method="eth_chainId", id="1")
    assert validate_rpc_req(req) is None


def test_new_rpc_error_res_wraps_plain_errors():
    res = new_rpc_error_res("1", RuntimeError("kaput"))
    assert res.error.code == JSONRPC_ERROR_INTERNAL
    assert res.error.message == "kaput"
    assert res.to_json() == '{"jsonrpc":"2.0","error":{"code":-32603,"message":"kaput"},"id":1}'


def test_new_rpc_error_res_keeps_rpc_err():
    err = RPCErr(1234, "test err")
    res = new_rpc_error_res(None, err)
    assert res.error is err
    assert res.to_json() == '{"jsonrpc":"2.0","error":{"code":1234,"message":"test err"},"id":null}'


def test_new_rpc_res():
    res = new_rpc_res("123", "foobar")
    assert res.to_json() == '{"jsonrpc":"2.0","result":"foobar","id":123}'


@pytest.mark.parametrize(
    "raw, expected",
    [(b"[]", True), (b" \t\r\n[{}]", True), (b"{}", False), (b"", False), ("  [1]", True), (b"  ", False)],
)
def test_is_batch(raw, expected):
    assert is_batch(raw) is expected
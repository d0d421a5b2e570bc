import json

from proxyd.mockserver import MethodTemplate, MockedHandler, main
from proxyd.rpc import parse_rpc_res

CHAIN_ID_RESPONSE = '{"jsonrpc":"2.0","result":"0xa","id":67}'


def _handler(*templates):
    handler = MockedHandler()
    for template in templates:
        handler.add_override(template)
    return handler


def test_single_request_matched():
    handler = _handler(MethodTemplate("eth_chainId", "", CHAIN_ID_RESPONSE))
    status, body = handler.handle(b'{"jsonrpc":"2.0","method":"eth_chainId","id":1}')
    assert status == 200
    res = parse_rpc_res(body)
    assert res.result == "0xa"
    assert res.id == "1"
    assert res.jsonrpc == "2.0"


def test_wire_format():
    handler = _handler(MethodTemplate("eth_chainId", "", CHAIN_ID_RESPONSE))
    _, body = handler.handle('{"jsonrpc":"2.0","method":"eth_chainId","id":1}')
    assert body == '{"JSONRPC":"2.0","Result":"0xa","Error":null,"ID":1}'


def test_missing_id_becomes_null():
    handler = _handler(MethodTemplate("eth_chainId", "", CHAIN_ID_RESPONSE))
    _, body = handler.handle('{"jsonrpc":"2.0","method":"eth_chainId"}')
    assert parse_rpc_res(body).id == "null"


def test_block_selects_template():
    handler = _handler(
        MethodTemplate("eth_getBlockByNumber", "latest", '{"result":{"number":"0x2"}}'),
        MethodTemplate("eth_getBlockByNumber", "0x1", '{"result":{"number":"0x1"}}'),
    )
    request = {"jsonrpc": "2.0", "method": "eth_getBlockByNumber", "params": ["0x1", False], "id": 3}
    _, body = handler.handle(json.dumps(request))
    assert parse_rpc_res(body).result == {"number": "0x1"}


def test_last_matching_template_wins():
    handler = _handler(
        MethodTemplate("eth_chainId", "", '{"result":"0x1"}'),
        MethodTemplate("eth_chainId", "", '{"result":"0x2"}'),
    )
    _, body = handler.handle('{"method":"eth_chainId","id":1}')
    assert parse_rpc_res(body).result == "0x2"


def test_response_code_is_used():
    handler = _handler(MethodTemplate("eth_chainId", "", '{"result":"0x1"}', 503))
    status, _ = handler.handle('{"method":"eth_chainId","id":1}')
    assert status == 503


def test_error_response_is_carried():
    handler = _handler(
        MethodTemplate("eth_call", "", '{"jsonrpc":"2.0","error":{"code":-32000,"message":"execution reverted"}}')
    )
    _, body = handler.handle('{"method":"eth_call","id":"a"}')
    res = parse_rpc_res(body)
    assert res.error.code == -32000
    assert res.error.message == "execution reverted"
    assert res.id == '"a"'


def test_unmatched_single_request_is_empty():
    handler = _handler(MethodTemplate("eth_chainId", "", CHAIN_ID_RESPONSE))
    status, body = handler.handle('{"method":"net_version","id":1}')
    assert (status, body) == (200, "")


def test_batch_skips_unmatched():
    handler = _handler(MethodTemplate("eth_chainId", "", CHAIN_ID_RESPONSE))
    batch = [{"method": "eth_chainId", "id": 1}, {"method": "net_version", "id": 2}]
    _, body = handler.handle(json.dumps(batch))
    items = json.loads(body)
    assert len(items) == 1
    assert items[0]["ID"] == 1
    assert items[0]["Result"] == "0xa"


def test_empty_batch_body_gives_empty_array():
    handler = _handler(MethodTemplate("eth_chainId", "", CHAIN_ID_RESPONSE))
    _, body = handler.handle("[]")
    assert json.loads(body) == []


def test_load_from_file_and_autoload(tmp_path):
    mocked = tmp_path / "responses.yml"
    mocked.write_text(
        "- method: eth_getBlockByNumber\n"
        "  block: latest\n"
        "  response: >\n"
        '    {"jsonrpc":"2.0","id":67,"result":{"hash":"0xabc","number":"0x64"}}\n'
        "- method: net_peerCount\n"
        "  response_code: 429\n"
        "  response: >\n"
        '    {"jsonrpc":"2.0","id":67,"result":"0x10"}\n'
    )
    handler = MockedHandler(autoload=True, autoload_file=str(mocked))
    templates = handler.load_from_file(mocked)
    assert [t.method for t in templates] == ["eth_getBlockByNumber", "net_peerCount"]
    assert templates[0].block == "latest"
    assert templates[1].response_code == 429

    request = {"method": "eth_getBlockByNumber", "params": ["latest", False], "id": 9}
    status, body = handler.handle(json.dumps(request))
    assert status == 200
    assert parse_rpc_res(body).result == {"hash": "0xabc", "number": "0x64"}


def test_load_from_missing_file_reports(tmp_path, capsys):
    handler = MockedHandler()
    assert handler.load_from_file(tmp_path / "absent.yml") == []
    assert "error reading MockedResponsesFile" in capsys.readouterr().out


def test_reset_overrides():
    handler = _handler(MethodTemplate("eth_chainId", "", CHAIN_ID_RESPONSE))
    handler.reset_overrides()
    assert handler.overrides == []
    _, body = handler.handle('{"method":"eth_chainId","id":1}')
    assert body == ""


def test_main_without_arguments_prints_usage(capsys):
    assert main([]) == 1
    assert "usage: mockserver <port> <MockedResponsesFile.yml>" in capsys.readouterr().out
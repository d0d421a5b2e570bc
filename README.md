# proxyd

Components for building a JSON-RPC proxy in front of Ethereum nodes.
Requires Python 3.11 or later.

## What is inside

- `proxyd.rpc`: JSON-RPC request and response types (`RPCReq`, `RPCRes`,
  `RPCErr`). It provides parsing (`parse_rpc_req`, `parse_batch_rpc_req`,
  `parse_rpc_res`), validation (`validate_rpc_req`, `is_valid_id`), response
  builders (`new_rpc_res`, `new_rpc_error_res`) and batch detection
  (`is_batch`). `RPCRes.to_json()` serialises a response. `RPCErr` is an
  exception and can be raised.
- `proxyd.sliding_window`: `AvgSlidingWindow`, a moving average kept in
  fixed-size time buckets. It takes a pluggable clock (`DefaultClock`,
  `AdjustableClock`).
- `proxyd.config`: configuration dataclasses (`Config`, `ServerConfig`,
  `BackendConfig`, `BackendGroupConfig`, …).
  - `load_config(path)` reads a TOML file.
  - `config_from_dict(data)` builds a `Config` from already-decoded data.
  - `parse_duration` reads durations such as `"300ms"` or `"2h45m"`.
  - `read_from_env_or_config` resolves `$NAME` values from the environment and removes a leading backslash escape.
  - Malformed values raise `ConfigError`.
- `proxyd.rate_limiter`: per-key frontend rate limiting.
  - `MemoryFrontendRateLimiter` keeps its counts in memory.
  - `RedisFrontendRateLimiter` keeps its counts in Redis.
  - `NoopFrontendRateLimiter` never limits.
  - `new_redis_client(url)` connects to Redis and pings the server.
- `proxyd.tls`: TLS helpers for backends.
  - `create_tls_client(ca)` builds a client `ssl.SSLContext` that trusts a PEM bundle.
  - `parse_key_pair(context, crt, key)` loads a client certificate into a context.
- `proxyd.rewriter`: `rewrite_request`, `rewrite_response` and `rewrite_tags`.
  - They replace the `latest`, `safe` and `finalized` block tags with the block numbers held in a `RewriteContext`.
  - A block beyond `latest` raises `RewriteBlockOutOfRangeError`.
  - A log range wider than `max_block_range` raises `RewriteRangeTooLargeError`.
- `proxyd.consensus_tracker`: storage for the agreed block numbers.
  - `InMemoryConsensusTracker` keeps them in memory.
  - `RedisConsensusTracker` shares them through Redis. One elected leader publishes its state and the other instances follow it. Call `heartbeat()` to run one round, or `start()` and `stop()` for a background thread.
- `proxyd.consensus_poller`: `ConsensusPoller` polls a
  `ConsensusBackendGroup`.
  - It bans misbehaving backends and tracks the highest block whose hash every candidate agrees on.
  - Backends are subclasses of `ConsensusBackend`. They implement `is_healthy()` and `forward_rpc(method, *params)`.
  - Pass `NoopAsyncHandler()` as `async_handler` to drive updates yourself with `update_backend` and `update_backend_group_consensus`.
- `proxyd.mockserver`: `MockedHandler`, a JSON-RPC server that answers with canned responses. It comes with a command.

## Installing

```
pip install .
pip install ".[test]"   # with the test dependencies
```

## Example: rewriting block tags

```python
from proxyd.rpc import parse_rpc_req
from proxyd.rewriter import RewriteContext, RewriteResult, rewrite_request

req = parse_rpc_req(b'{"jsonrpc":"2.0","id":1,"method":"eth_getBlockByNumber","params":["latest"]}')
result = rewrite_request(RewriteContext(latest=100), req, None)
assert result is RewriteResult.OVERRIDE_REQUEST
assert req.params == '["0x64"]'
```

## Example: rate limiting

```python
from datetime import timedelta

from proxyd.rate_limiter import MemoryFrontendRateLimiter

limiter = MemoryFrontendRateLimiter(timedelta(seconds=2), 2)
assert limiter.take("10.0.0.1")
assert limiter.take("10.0.0.1")
```

The third `take` for the same key within the same two-second slot returns
`False`.

## Mock server

Describe the canned responses in a YAML list. Each entry has:

- `method`
- `block`: matched against the first parameter of `eth_getBlockByNumber` and `debug_getRawReceipts`; leave it empty for other methods.
- `response`: a JSON-RPC response.
- an optional `response_code`.

```yaml
- method: eth_getBlockByNumber
  block: latest
  response: '{"jsonrpc":"2.0","id":67,"result":{"number":"0x1","hash":"0xabc"}}'
```

Run it with a port and the file path, which is taken relative to the working
directory:

```
proxyd-mockserver 8545 responses.yml
```

The server answers on `/` and reloads the file on every request. Each answer
carries the id of the request it matches. Requests that match no entry are
left out of the reply. The same handler can be used in-process:
`MockedHandler.handle(body)` returns the HTTP status and the body, and
`add_override` adds templates that take effect without a file.

## What this package does not do

These are building blocks. The package does not include:

- an HTTP or WebSocket proxy server that accepts client requests and forwards them to backends, or a command that runs one;
- a client that sends requests to backend nodes; `ConsensusBackend.forward_rpc` is left for you to implement;
- caching of method results;
- limits on the size of request bodies;
- metrics export.

## Tests

```
pytest
```
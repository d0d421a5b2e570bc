"""Configuration model, TOML loading and value helpers."""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from datetime import timedelta
from enum import StrEnum
from fractions import Fraction
from typing import Any, Callable

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when configuration is malformed or cannot be resolved."""


class RoutingStrategy(StrEnum):
    CONSENSUS_AWARE = "consensus_aware"
    MULTICALL = "multicall"
    FALLBACK = "fallback"


_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d*)(?:(\.)(\d*))?([^\d.]*)")
_MAX_DURATION_NS = (1 << 63) - 1


def _ns_to_timedelta(ns: int) -> timedelta:
    micros = ns // 1000 if ns >= 0 else -((-ns) // 1000)
    return timedelta(microseconds=micros)


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as "300ms", "-1.5h" or "2h45m"."""
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ConfigError(f'invalid duration "{text}"')
    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _DURATION_PART.match(rest, pos)
        whole, _dot, frac, unit = match.groups()
        if not whole and not frac:
            raise ConfigError(f'invalid duration "{text}"')
        if not unit:
            raise ConfigError(f'missing unit in duration "{text}"')
        if unit not in _DURATION_UNITS:
            raise ConfigError(f'unknown unit "{unit}" in duration "{text}"')
        value = Fraction(int(whole or "0"))
        if frac:
            value += Fraction(int(frac), 10 ** len(frac))
        total += value * _DURATION_UNITS[unit]
        pos = match.end()
    ns = int(total)
    if ns > _MAX_DURATION_NS + (1 if negative else 0):
        raise ConfigError(f'invalid duration "{text}"')
    return _ns_to_timedelta(-ns if negative else ns)


def read_from_env_or_config(value: str) -> str:
    """Resolve "$NAME" from the environment and strip a leading backslash escape."""
    if value.startswith("$"):
        env_value = os.environ.get(value[1:], "")
        if env_value == "":
            raise ConfigError(f"config env var {value} not found")
        return env_value
    if value.startswith("\\"):
        return value[1:]
    return value


# --- value converters -------------------------------------------------------

Converter = Callable[[Any, str], Any]


def _string(value: Any, path: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{path}: expected a string")
    return value


def _integer(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{path}: expected an integer")
    return value


def _unsigned(value: Any, path: str) -> int:
    number = _integer(value, path)
    if number < 0:
        raise ConfigError(f"{path}: expected a non-negative integer")
    return number


def _boolean(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{path}: expected a boolean")
    return value


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{path}: expected a number")
    return float(value)


def _duration(value: Any, path: str) -> timedelta:
    if isinstance(value, str):
        try:
            return parse_duration(value)
        except ConfigError as exc:
            raise ConfigError(f"{path}: {exc}") from exc
    if isinstance(value, int) and not isinstance(value, bool):
        return _ns_to_timedelta(value)
    raise ConfigError(f"{path}: expected a duration")


def _string_list(value: Any, path: str) -> list[str]:
    if not isinstance(value, list):
        raise ConfigError(f"{path}: expected an array")
    return [_string(item, f"{path}[{index}]") for index, item in enumerate(value)]


def _string_map(value: Any, path: str) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ConfigError(f"{path}: expected a table")
    return {key: _string(item, f"{path}.{key}") for key, item in value.items()}


def _chain_ids(value: Any, path: str) -> list[int]:
    if not isinstance(value, list):
        raise ConfigError(f"{path}: expected an array")
    ids = []
    for index, item in enumerate(value):
        if isinstance(item, str):
            try:
                ids.append(int(item, 0))
            except ValueError as exc:
                raise ConfigError(f"{path}[{index}]: invalid chain id") from exc
        else:
            ids.append(_integer(item, f"{path}[{index}]"))
    return ids


def _section(cls: type) -> Converter:
    return lambda value, path: _build(cls, value, path)


def _section_map(cls: type) -> Converter:
    def convert(value: Any, path: str) -> dict[str, Any]:
        if not isinstance(value, dict):
            raise ConfigError(f"{path}: expected a table")
        return {name: _build(cls, item, f"{path}.{name}") for name, item in value.items()}

    return convert


def _opt(key: str, conv: Converter, default: Any = None, factory: Callable[[], Any] | None = None):
    meta = {"key": key, "conv": conv}
    if factory is not None:
        return field(default_factory=factory, metadata=meta)
    return field(default=default, metadata=meta)


def _build(cls: type, data: Any, path: str) -> Any:
    if not isinstance(data, dict):
        raise ConfigError(f"{path or 'config'}: expected a table")
    lowered = {key.lower(): value for key, value in data.items() if isinstance(key, str)}
    kwargs = {}
    for spec in fields(cls):
        key = spec.metadata["key"]
        if key in data:
            value = data[key]
        elif key.lower() in lowered:
            value = lowered[key.lower()]
        else:
            continue
        kwargs[spec.name] = spec.metadata["conv"](value, f"{path}.{key}" if path else key)
    return cls(**kwargs)


# --- configuration sections -------------------------------------------------


@dataclass
class ServerConfig:
    rpc_host: str = _opt("rpc_host", _string, "")
    rpc_port: int = _opt("rpc_port", _integer, 0)
    ws_host: str = _opt("ws_host", _string, "")
    ws_port: int = _opt("ws_port", _integer, 0)
    max_body_size_bytes: int = _opt("max_body_size_bytes", _integer, 0)
    max_concurrent_rpcs: int = _opt("max_concurrent_rpcs", _integer, 0)
    log_level: str = _opt("log_level", _string, "")
    timeout_seconds: int = _opt("timeout_seconds", _integer, 0)
    max_upstream_batch_size: int = _opt("max_upstream_batch_size", _integer, 0)
    enable_request_log: bool = _opt("enable_request_log", _boolean, False)
    max_request_body_log_len: int = _opt("max_request_body_log_len", _integer, 0)
    enable_pprof: bool = _opt("enable_pprof", _boolean, False)
    enable_served_by_header: bool = _opt("enable_served_by_header", _boolean, False)
    allow_all_origins: bool = _opt("allow_all_origins", _boolean, False)


@dataclass
class CacheConfig:
    enabled: bool = _opt("enabled", _boolean, False)
    ttl: timedelta = _opt("ttl", _duration, timedelta(0))


@dataclass
class RedisConfig:
    url: str = _opt("url", _string, "")
    namespace: str = _opt("namespace", _string, "")
    read_url: str = _opt("read_url", _string, "")


@dataclass
class MetricsConfig:
    enabled: bool = _opt("enabled", _boolean, False)
    host: str = _opt("host", _string, "")
    port: int = _opt("port", _integer, 0)


@dataclass
class RateLimitMethodOverride:
    limit: int = _opt("limit", _integer, 0)
    interval: timedelta = _opt("interval", _duration, timedelta(0))
    global_: bool = _opt("global", _boolean, False)


@dataclass
class RateLimitConfig:
    use_redis: bool = _opt("use_redis", _boolean, False)
    base_rate: int = _opt("base_rate", _integer, 0)
    base_interval: timedelta = _opt("base_interval", _duration, timedelta(0))
    exempt_origins: list[str] = _opt("exempt_origins", _string_list, factory=list)
    exempt_user_agents: list[str] = _opt("exempt_user_agents", _string_list, factory=list)
    error_message: str = _opt("error_message", _string, "")
    method_overrides: dict[str, RateLimitMethodOverride] = _opt(
        "method_overrides", _section_map(RateLimitMethodOverride), factory=dict
    )
    ip_header_override: str = _opt("ip_header_override", _string, "")


@dataclass
class BackendOptions:
    response_timeout_seconds: int = _opt("response_timeout_seconds", _integer, 0)
    max_response_size_bytes: int = _opt("max_response_size_bytes", _integer, 0)
    max_retries: int = _opt("max_retries", _integer, 0)
    out_of_service_seconds: int = _opt("out_of_service_seconds", _integer, 0)
    max_degraded_latency_threshold: timedelta = _opt(
        "max_degraded_latency_threshold", _duration, timedelta(0)
    )
    max_latency_threshold: timedelta = _opt("max_latency_threshold", _duration, timedelta(0))
    max_error_rate_threshold: float = _opt("max_error_rate_threshold", _number, 0.0)


@dataclass
class BackendConfig:
    username: str = _opt("username", _string, "")
    password: str = _opt("password", _string, "")
    rpc_url: str = _opt("rpc_url", _string, "")
    ws_url: str = _opt("ws_url", _string, "")
    ws_port: int = _opt("ws_port", _integer, 0)
    max_rps: int = _opt("max_rps", _integer, 0)
    max_ws_conns: int = _opt("max_ws_conns", _integer, 0)
    ca_file: str = _opt("ca_file", _string, "")
    client_cert_file: str = _opt("client_cert_file", _string, "")
    client_key_file: str = _opt("client_key_file", _string, "")
    strip_trailing_xff: bool = _opt("strip_trailing_xff", _boolean, False)
    headers: dict[str, str] = _opt("headers", _string_map, factory=dict)
    weight: int = _opt("weight", _integer, 0)
    consensus_skip_peer_count_check: bool = _opt("consensus_skip_peer_count", _boolean, False)
    consensus_forced_candidate: bool = _opt("consensus_forced_candidate", _boolean, False)
    consensus_receipts_target: str = _opt("consensus_receipts_target", _string, "")


@dataclass
class BackendGroupConfig:
    backends: list[str] = _opt("backends", _string_list, factory=list)
    weighted_routing: bool = _opt("weighted_routing", _boolean, False)
    routing_strategy: str = _opt("routing_strategy", _string, "")
    # Deprecated: use routing_strategy = "consensus_aware".
    consensus_aware: bool = _opt("consensus_aware", _boolean, False)
    consensus_async_handler: str = _opt("consensus_handler", _string, "")
    consensus_poller_interval: timedelta = _opt("consensus_poller_interval", _duration, timedelta(0))
    consensus_ban_period: timedelta = _opt("consensus_ban_period", _duration, timedelta(0))
    consensus_max_update_threshold: timedelta = _opt(
        "consensus_max_update_threshold", _duration, timedelta(0)
    )
    consensus_max_block_lag: int = _opt("consensus_max_block_lag", _unsigned, 0)
    consensus_max_block_range: int = _opt("consensus_max_block_range", _unsigned, 0)
    consensus_min_peer_count: int = _opt("consensus_min_peer_count", _integer, 0)
    consensus_ha: bool = _opt("consensus_ha", _boolean, False)
    consensus_ha_heartbeat_interval: timedelta = _opt(
        "consensus_ha_heartbeat_interval", _duration, timedelta(0)
    )
    consensus_ha_lock_period: timedelta = _opt("consensus_ha_lock_period", _duration, timedelta(0))
    consensus_ha_redis: RedisConfig = _opt("consensus_ha_redis", _section(RedisConfig), factory=RedisConfig)
    fallbacks: list[str] = _opt("fallbacks", _string_list, factory=list)

    def validate_routing_strategy(self, bg_name: str) -> bool:
        """Resolve the deprecated flag and defaults; tell whether the strategy is known."""
        if self.consensus_aware and self.routing_strategy != "":
            logger.warning("consensus_aware is now deprecated, please use routing_strategy = consensus_aware")
            raise ConfigError(
                "consensus_aware and routing strategy are mutually exclusive, they cannot both be defined"
            )
        if self.consensus_aware:
            self.routing_strategy = RoutingStrategy.CONSENSUS_AWARE
            logger.info("consensus_aware is now deprecated, please use routing_strategy = consensus_aware")
        if self.routing_strategy == "":
            logger.info("empty routing strategy provided for backend_group %s, using fallback strategy", bg_name)
            self.routing_strategy = RoutingStrategy.FALLBACK
            return True
        return self.routing_strategy in {strategy.value for strategy in RoutingStrategy}


@dataclass
class BatchConfig:
    max_size: int = _opt("max_size", _integer, 0)
    error_message: str = _opt("error_message", _string, "")


@dataclass
class SenderRateLimitConfig:
    """Sender-based limits for eth_sendRawTransaction; chain id 0 allows pre-EIP-155 transactions."""

    enabled: bool = _opt("enabled", _boolean, False)
    interval: timedelta = _opt("interval", _duration, timedelta(0))
    limit: int = _opt("limit", _integer, 0)
    allowed_chain_ids: list[int] = _opt("allowed_chain_ids", _chain_ids, factory=list)


@dataclass
class Config:
    ws_backend_group: str = _opt("ws_backend_group", _string, "")
    server: ServerConfig = _opt("server", _section(ServerConfig), factory=ServerConfig)
    cache: CacheConfig = _opt("cache", _section(CacheConfig), factory=CacheConfig)
    redis: RedisConfig = _opt("redis", _section(RedisConfig), factory=RedisConfig)
    metrics: MetricsConfig = _opt("metrics", _section(MetricsConfig), factory=MetricsConfig)
    rate_limit: RateLimitConfig = _opt("rate_limit", _section(RateLimitConfig), factory=RateLimitConfig)
    backend_options: BackendOptions = _opt("backend", _section(BackendOptions), factory=BackendOptions)
    backends: dict[str, BackendConfig] = _opt("backends", _section_map(BackendConfig), factory=dict)
    batch: BatchConfig = _opt("batch", _section(BatchConfig), factory=BatchConfig)
    authentication: dict[str, str] | None = _opt("authentication", _string_map, None)
    backend_groups: dict[str, BackendGroupConfig] = _opt(
        "backend_groups", _section_map(BackendGroupConfig), factory=dict
    )
    rpc_method_mappings: dict[str, str] = _opt("rpc_method_mappings", _string_map, factory=dict)
    ws_method_whitelist: list[str] = _opt("ws_method_whitelist", _string_list, factory=list)
    whitelist_error_message: str = _opt("whitelist_error_message", _string, "")
    sender_rate_limit: SenderRateLimitConfig = _opt(
        "sender_rate_limit", _section(SenderRateLimitConfig), factory=SenderRateLimitConfig
    )


def config_from_dict(data: dict[str, Any]) -> Config:
    """Build a Config from decoded TOML data; unknown keys are ignored."""
    return _build(Config, data, "")


def load_config(path: str | os.PathLike[str]) -> Config:
    """Read and decode a TOML configuration file."""
    with open(path, "rb") as handle:
        try:
            data = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"error reading config file: {exc}") from exc
    return config_from_dict(data)
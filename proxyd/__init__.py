"""Building blocks for an Ethereum JSON-RPC proxy: JSON-RPC types, configuration,
rate limiting, TLS helpers, block-tag rewriting, consensus tracking and polling,
and a canned-response mock server."""

__version__ = "0.1.0"
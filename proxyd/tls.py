"""TLS client contexts for connecting to backends."""

from __future__ import annotations

import os
import ssl


def create_tls_client(ca: str | os.PathLike[str]) -> ssl.SSLContext:
    """Build a client context that trusts the certificates in the PEM file ca."""
    try:
        with open(ca, "rb") as handle:
            pem = handle.read()
    except OSError as exc:
        raise OSError(f"error reading CA {exc}") from exc

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    try:
        context.load_verify_locations(cadata=pem.decode("latin-1"))
    except (ssl.SSLError, ValueError) as exc:
        raise ValueError("error parsing TLS client cert") from exc
    if context.cert_store_stats().get("x509", 0) == 0:
        raise ValueError("error parsing TLS client cert")
    return context


def parse_key_pair(
    context: ssl.SSLContext, crt: str | os.PathLike[str], key: str | os.PathLike[str]
) -> ssl.SSLContext:
    """Load a client certificate and its key into context and return it."""
    try:
        context.load_cert_chain(crt, key)
    except (OSError, ValueError) as exc:
        raise ValueError(f"error loading x509 key pair {exc}") from exc
    return context
import ssl

import pytest

from proxyd.tls import create_tls_client, parse_key_pair


def test_create_tls_client_missing_file(tmp_path):
    with pytest.raises(OSError, match="error reading CA"):
        create_tls_client(tmp_path / "missing.pem")


@pytest.mark.parametrize("content", ["not a certificate", ""])
def test_create_tls_client_rejects_non_pem(tmp_path, content):
    path = tmp_path / "ca.pem"
    path.write_text(content)
    with pytest.raises(ValueError, match="error parsing TLS client cert"):
        create_tls_client(path)


def test_parse_key_pair_missing_files(tmp_path):
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    with pytest.raises(ValueError, match="error loading x509 key pair"):
        parse_key_pair(context, tmp_path / "client.crt", tmp_path / "client.key")


def test_parse_key_pair_garbage_files(tmp_path):
    crt = tmp_path / "client.crt"
    key = tmp_path / "client.key"
    crt.write_text("not a certificate")
    key.write_text("not a key")
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    with pytest.raises(ValueError, match="error loading x509 key pair"):
        parse_key_pair(context, crt, key)
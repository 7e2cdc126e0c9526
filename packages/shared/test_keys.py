"""Unit tests for shared keys module."""

import paramiko
import pytest

from shared.keys import (
    KeyLoadError,
    PassphraseRequiredError,
    load_host_key,
    load_private_key,
    parse_public_key,
)


@pytest.fixture(scope="module")
def rsa_key():
    return paramiko.RSAKey.generate(1024)


class TestLoadPrivateKey:
    """Tests for identity key loading."""

    def test_plain_key(self, tmp_path, rsa_key):
        path = tmp_path / "cpu_rsa"
        rsa_key.write_private_key_file(str(path))
        key = load_private_key(path)
        assert key.asbytes() == rsa_key.asbytes()

    def test_encrypted_key_needs_passphrase(self, tmp_path, rsa_key):
        path = tmp_path / "cpu_rsa"
        rsa_key.write_private_key_file(str(path), password="sekrit")
        with pytest.raises(PassphraseRequiredError):
            load_private_key(path)

    def test_encrypted_key_with_passphrase(self, tmp_path, rsa_key):
        path = tmp_path / "cpu_rsa"
        rsa_key.write_private_key_file(str(path), password="sekrit")
        key = load_private_key(path, passphrase="sekrit")
        assert key.asbytes() == rsa_key.asbytes()

    def test_missing_file(self, tmp_path):
        with pytest.raises(KeyLoadError) as exc_info:
            load_private_key(tmp_path / "nope")
        assert exc_info.value.path.endswith("nope")

    def test_garbage(self, tmp_path):
        path = tmp_path / "cpu_rsa"
        path.write_text("not a key\n")
        with pytest.raises(KeyLoadError):
            load_private_key(path)


class TestParsePublicKey:
    """Tests for host key parsing."""

    def test_raw_blob(self, rsa_key):
        assert parse_public_key(rsa_key.asbytes()) == rsa_key

    def test_authorized_key_line(self, rsa_key):
        line = f"{rsa_key.get_name()} {rsa_key.get_base64()} root@cpu\n"
        assert parse_public_key(line.encode()) == rsa_key

    def test_line_with_options(self, rsa_key):
        line = f"restrict,no-pty {rsa_key.get_name()} {rsa_key.get_base64()}"
        assert parse_public_key(line.encode()) == rsa_key

    def test_known_hosts_line(self, rsa_key):
        data = f"# pinned\n\nmyhost {rsa_key.get_name()} {rsa_key.get_base64()}\n"
        assert parse_public_key(data.encode()) == rsa_key

    def test_no_key(self):
        with pytest.raises(ValueError):
            parse_public_key(b"ssh-rsa not-base64!\n")


class TestLoadHostKey:
    """Tests for reading a pinned host key file."""

    def test_reads_file(self, tmp_path, rsa_key):
        path = tmp_path / "host.pub"
        path.write_text(f"{rsa_key.get_name()} {rsa_key.get_base64()}\n")
        assert load_host_key(path) == rsa_key

    def test_missing(self, tmp_path):
        with pytest.raises(KeyLoadError):
            load_host_key(tmp_path / "missing.pub")

    def test_empty(self, tmp_path):
        path = tmp_path / "host.pub"
        path.write_text("")
        with pytest.raises(KeyLoadError):
            load_host_key(path)

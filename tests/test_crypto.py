"""Tests for AES-256-CBC backup encryption."""

import stat
from pathlib import Path

import pytest

from db_tools.crypto import (
    IV_SIZE,
    KEY_SIZE,
    decrypt,
    encrypt,
    encrypt_file,
    generate_key,
    key_path_for,
    read_key,
    write_private,
)
from db_tools.errors import DecryptionError


class TestEncryptDecrypt:
    def test_round_trip(self) -> None:
        key = generate_key()
        plaintext = b"-- PostgreSQL database dump\nCREATE TABLE users (id int);\n"
        assert decrypt(encrypt(plaintext, key), key) == plaintext

    def test_empty_plaintext(self) -> None:
        key = generate_key()
        blob = encrypt(b"", key)
        assert len(blob) == IV_SIZE + 16
        assert decrypt(blob, key) == b""

    def test_random_iv_per_call(self) -> None:
        key = generate_key()
        assert encrypt(b"same", key) != encrypt(b"same", key)

    def test_wrong_key_fails(self) -> None:
        blob = encrypt(b"secret rows" * 10, generate_key())
        with pytest.raises(DecryptionError):
            # A wrong key can produce valid padding by chance
            for _ in range(4):
                decrypt(blob, generate_key())

    def test_truncated_blob(self) -> None:
        key = generate_key()
        blob = encrypt(b"data", key)
        with pytest.raises(DecryptionError, match="truncated"):
            decrypt(blob[:-3], key)

    def test_key_size_checked(self) -> None:
        with pytest.raises(ValueError):
            encrypt(b"x", b"short")
        with pytest.raises(DecryptionError):
            decrypt(b"\0" * 32, b"short")


class TestKeyFiles:
    def test_write_private_mode(self, tmp_path: Path) -> None:
        path = write_private(tmp_path / "k.key", generate_key())
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_read_key_checks_size(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.key"
        path.write_bytes(b"123")
        with pytest.raises(DecryptionError):
            read_key(path)

    def test_encrypt_file_replaces_plaintext(self, tmp_path: Path) -> None:
        dump = tmp_path / "shop.sql"
        dump.write_bytes(b"INSERT INTO users VALUES (1);")
        enc_path, key_path = encrypt_file(dump)

        assert not dump.exists()
        assert enc_path.name == "shop.sql.enc"
        assert key_path.name == "shop.sql.key"
        assert len(key_path.read_bytes()) == KEY_SIZE
        assert decrypt(enc_path.read_bytes(), read_key(key_path)) == b"INSERT INTO users VALUES (1);"

    def test_key_path_for(self) -> None:
        assert key_path_for(Path("/b/shop.sql.enc")) == Path("/b/shop.sql.key")
        assert key_path_for(Path("/b/archive")) == Path("/b/archive.key")

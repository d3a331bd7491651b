"""AES-256-CBC encryption for backups.

Ciphertext layout: 16-byte random IV followed by the PKCS7-padded CBC
ciphertext.  Keys are 32 random bytes stored raw in a sibling file with
mode ``0600``.

Usage:
    from db_tools.crypto import decrypt, encrypt, generate_key

    key = generate_key()
    blob = encrypt(b"db_tools", key)
    assert decrypt(blob, key) == b"db_tools"
"""

import os
from pathlib import Path

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from db_tools.errors import DecryptionError

KEY_SIZE = 32
IV_SIZE = 16
BLOCK_BITS = 128


def generate_key() -> bytes:
    """Return a fresh 256-bit key."""
    return os.urandom(KEY_SIZE)


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """Encrypt *plaintext* with AES-256-CBC and a random IV.

    Args:
        plaintext: Bytes to encrypt.
        key: 32-byte key.

    Returns:
        ``iv + ciphertext``.

    Raises:
        ValueError: If the key is not 32 bytes.
    """
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")

    iv = os.urandom(IV_SIZE)
    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return iv + encryptor.update(padded) + encryptor.finalize()


def decrypt(blob: bytes, key: bytes) -> bytes:
    """Decrypt a blob produced by ``encrypt``.

    Raises:
        DecryptionError: On a wrong key size, truncated blob or bad padding.
    """
    if len(key) != KEY_SIZE:
        raise DecryptionError(f"Key must be {KEY_SIZE} bytes, got {len(key)}")
    if len(blob) < IV_SIZE + BLOCK_BITS // 8 or (len(blob) - IV_SIZE) % (BLOCK_BITS // 8):
        raise DecryptionError("Ciphertext is truncated or not block aligned")

    iv, ciphertext = blob[:IV_SIZE], blob[IV_SIZE:]
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError(
            "Decryption failed: wrong key or corrupted file",
            suggestions=["Make sure the .key file belongs to this backup"],
        ) from e


def write_private(path: Path, data: bytes) -> Path:
    """Write *data* to *path* with mode ``0600``."""
    path = Path(path)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, 0o600)
    return path


def read_key(path: Path) -> bytes:
    """Read a raw key file, checking its size."""
    key = Path(path).read_bytes()
    if len(key) != KEY_SIZE:
        raise DecryptionError(f"Key file {path} does not hold a {KEY_SIZE}-byte key")
    return key


def encrypt_file(path: Path) -> tuple[Path, Path]:
    """Encrypt *path* into ``<path>.enc`` with a new key in ``<path>.key``.

    The plaintext file is removed once the ciphertext is written.

    Returns:
        Tuple of (encrypted path, key path).
    """
    path = Path(path)
    key = generate_key()
    key_path = write_private(path.with_name(path.name + ".key"), key)
    enc_path = write_private(path.with_name(path.name + ".enc"), encrypt(path.read_bytes(), key))
    path.unlink()
    return enc_path, key_path


def key_path_for(enc_path: Path) -> Path:
    """Sibling key path for an ``.enc`` file (``dump.sql.enc`` → ``dump.sql.key``)."""
    enc_path = Path(enc_path)
    name = enc_path.name[: -len(".enc")] if enc_path.name.endswith(".enc") else enc_path.name
    return enc_path.with_name(name + ".key")

"""AES-256-GCM encrypted store for broker credentials and other secrets.

File format::

    [8 bytes:  magic "ALSSECRT"]
    [1 byte:   version = 0x01]
    [16 bytes: salt, bound to the ciphertext as associated data]
    [12 bytes: nonce]
    [N bytes:  ciphertext + 16-byte GCM tag]

The key is a raw 32-byte file, created with mode 0600 on first use.  Values
are referenced from ``config.json`` as ``${NAME}`` placeholders.
"""

from __future__ import annotations

import os
from pathlib import Path

import orjson
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"ALSSECRT"
VERSION = 0x01
KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12
_HEADER_LEN = len(MAGIC) + 1 + SALT_LEN + NONCE_LEN


class SecretsError(ValueError):
    """The secrets file or key is unusable."""


def create_key_file(key_file: str | Path) -> bytes:
    """Return the key in *key_file*, generating it first if missing."""
    kf = Path(key_file)
    if not kf.exists():
        kf.parent.mkdir(parents=True, exist_ok=True)
        kf.write_bytes(os.urandom(KEY_LEN))
        os.chmod(kf, 0o600)
    return read_key_file(kf)


def read_key_file(key_file: str | Path) -> bytes:
    kf = Path(key_file)
    if not kf.exists():
        raise FileNotFoundError(f"Key file not found: {kf}")
    key = kf.read_bytes()
    if len(key) != KEY_LEN:
        raise SecretsError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key


class SecretsFile:
    """An encrypted ``name → value`` store on disk.

    Every mutation re-encrypts the whole store with a fresh salt and nonce.
    """

    def __init__(self, path: str | Path, key: bytes) -> None:
        if len(key) != KEY_LEN:
            raise SecretsError(f"Key must be {KEY_LEN} bytes, got {len(key)}")
        self.path = Path(path)
        self._key = key

    @classmethod
    def open(cls, path: str | Path, key_file: str | Path) -> "SecretsFile":
        return cls(path, read_key_file(key_file))

    def load(self) -> dict[str, str]:
        """Decrypt and return the full store."""
        data = self.path.read_bytes()
        if data[: len(MAGIC)] != MAGIC:
            raise SecretsError("Invalid secrets file (bad magic)")
        if len(data) < _HEADER_LEN or data[len(MAGIC)] != VERSION:
            raise SecretsError("Unsupported or truncated secrets file")

        offset = len(MAGIC) + 1
        salt = data[offset: offset + SALT_LEN]
        nonce = data[offset + SALT_LEN: _HEADER_LEN]
        plaintext = AESGCM(self._key).decrypt(nonce, data[_HEADER_LEN:], salt)
        return orjson.loads(plaintext)

    def save(self, store: dict[str, str]) -> None:
        salt = os.urandom(SALT_LEN)
        nonce = os.urandom(NONCE_LEN)
        ciphertext = AESGCM(self._key).encrypt(nonce, orjson.dumps(store), salt)

        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "wb") as fh:
            fh.write(MAGIC + bytes([VERSION]) + salt + nonce + ciphertext)
        os.chmod(tmp, 0o600)
        os.replace(tmp, self.path)

    def set(self, name: str, value: str) -> None:
        store = self.load()
        store[name] = value
        self.save(store)

    def unset(self, name: str) -> bool:
        """Remove *name*; returns False if it was not stored."""
        store = self.load()
        if name not in store:
            return False
        del store[name]
        self.save(store)
        return True

    def names(self) -> list[str]:
        return sorted(self.load())

    def rekey(self, new_key: bytes) -> "SecretsFile":
        """Re-encrypt under *new_key* and return the re-keyed handle."""
        store = self.load()
        rekeyed = SecretsFile(self.path, new_key)
        rekeyed.save(store)
        return rekeyed


def init_secrets(path: str | Path, key_file: str | Path) -> SecretsFile:
    """Create an empty store (and the key file if needed)."""
    secrets_file = SecretsFile(path, create_key_file(key_file))
    secrets_file.path.parent.mkdir(parents=True, exist_ok=True)
    secrets_file.save({})
    return secrets_file


def load_secrets(path: str | Path, key_file: str | Path) -> dict[str, str]:
    """Decrypt and return every secret in *path*."""
    return SecretsFile.open(path, key_file).load()

from __future__ import annotations

import base64
import os
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from msgguard.core.errors import ConfigError


class ContentKeyMissingError(RuntimeError):
    pass


class ContentDecryptError(RuntimeError):
    pass


def key_id_from_key_bytes(key: bytes) -> str:
    import hashlib

    return hashlib.sha256(key).hexdigest()[:16]


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii")


def _b64d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s.encode("ascii"))


def generate_content_key_bytes() -> bytes:
    # AES-256 key
    return secrets.token_bytes(32)


def write_content_key(path: str, key_bytes: bytes) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(key_bytes)
    best_effort_restrict_permissions(path)


def read_content_key(path: str) -> bytes:
    if not os.path.exists(path):
        raise ContentKeyMissingError(f"Content key not found at {path!r}")
    with open(path, "rb") as f:
        b = f.read()
    if len(b) != 32:
        raise ConfigError("Content key must be 32 bytes (AES-256).", path=path)
    return b


def best_effort_restrict_permissions(path: str) -> None:
    """
    Best-effort permissions tightening (0o600 on POSIX).
    """
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass


@dataclass(frozen=True)
class Sealed:
    key_id: str
    nonce_b64: str
    ct_b64: str

    def encode(self) -> str:
        return f"v1:{self.key_id}:{self.nonce_b64}:{self.ct_b64}"

    @classmethod
    def decode(cls, token: str) -> "Sealed":
        parts = str(token or "").split(":")
        if len(parts) != 4 or parts[0] != "v1":
            raise ContentDecryptError("Not a sealed content token.")
        return cls(key_id=parts[1], nonce_b64=parts[2], ct_b64=parts[3])


class ContentCipher:
    """
    AES-GCM sealing for message content at rest.

    The associated data binds a ciphertext to its message id, so a sealed body
    copied onto another row fails to open.
    """

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ConfigError("Content key must be 32 bytes (AES-256).")
        self._aes = AESGCM(key)
        self.key_id = key_id_from_key_bytes(key)

    @classmethod
    def from_key_file(cls, path: str, *, create_if_missing: bool = True) -> "ContentCipher":
        if not os.path.exists(path):
            if not create_if_missing:
                raise ContentKeyMissingError(f"Content key not found at {path!r}")
            write_content_key(path, generate_content_key_bytes())
        return cls(read_content_key(path))

    def seal(self, plaintext: str, *, aad: Optional[str] = None) -> str:
        nonce = secrets.token_bytes(12)
        ct = self._aes.encrypt(nonce, str(plaintext).encode("utf-8"), (aad or "").encode("utf-8"))
        return Sealed(key_id=self.key_id, nonce_b64=_b64e(nonce), ct_b64=_b64e(ct)).encode()

    def open(self, token: str, *, aad: Optional[str] = None) -> str:
        sealed = Sealed.decode(token)
        if sealed.key_id != self.key_id:
            raise ContentDecryptError("Sealed with a different content key.")
        try:
            pt = self._aes.decrypt(_b64d(sealed.nonce_b64), _b64d(sealed.ct_b64), (aad or "").encode("utf-8"))
        except InvalidTag as e:
            raise ContentDecryptError("Content integrity check failed.") from e
        return pt.decode("utf-8")

    @staticmethod
    def is_sealed(value: str) -> bool:
        return str(value or "").startswith("v1:")

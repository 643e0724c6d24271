from __future__ import annotations

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..settings import settings

_VERSION = "v1"
# Only reachable outside production (require_in_production enforces TOKEN_ENC_KEY).
_DEV_FALLBACK_KEY = "noorah-development-only-key"


def _get_key() -> bytes:
    raw = settings.token_enc_key or _DEV_FALLBACK_KEY
    return hashlib.sha256(str(raw).encode("utf-8")).digest()  # 32 bytes


def encrypt_string(plain_text: str, *, aad: str | None = None) -> str:
    """
    AES-256-GCM encrypt. `aad` binds the ciphertext to its owner (e.g. user id)
    so a stored value cannot be swapped onto another record.
    """
    iv = os.urandom(12)  # 12 bytes for GCM
    ct_with_tag = AESGCM(_get_key()).encrypt(
        iv, str(plain_text).encode("utf-8"), aad.encode("utf-8") if aad else None
    )
    ciphertext, tag = ct_with_tag[:-16], ct_with_tag[-16:]

    return ":".join(
        [
            _VERSION,
            base64.b64encode(iv).decode("ascii"),
            base64.b64encode(tag).decode("ascii"),
            base64.b64encode(ciphertext).decode("ascii"),
        ]
    )


def decrypt_string(cipher_text: str | None, *, aad: str | None = None) -> str | None:
    if not cipher_text:
        return None

    parts = str(cipher_text).split(":")
    if len(parts) != 4 or parts[0] != _VERSION:
        return None

    _, iv_b64, tag_b64, data_b64 = parts
    try:
        iv = base64.b64decode(iv_b64)
        tag = base64.b64decode(tag_b64)
        data = base64.b64decode(data_b64)
    except ValueError:
        return None
    if len(iv) != 12 or len(tag) != 16:
        return None

    try:
        pt = AESGCM(_get_key()).decrypt(iv, data + tag, aad.encode("utf-8") if aad else None)
    except InvalidTag:
        return None
    return pt.decode("utf-8")

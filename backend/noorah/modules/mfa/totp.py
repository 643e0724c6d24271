"""
TOTP primitives (RFC 4226 HOTP, RFC 6238 TOTP) and backup codes.

Pure functions; persistence and lockout live in `mfa_service`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import struct
from urllib.parse import quote

from ...errors import InvalidSecret

B32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"

DEFAULT_DIGITS = 6
DEFAULT_PERIOD = 30
DEFAULT_WINDOW = 1
MIN_SECRET_BYTES = 16
BACKUP_CODE_LENGTH = 8

_B32_CHARS = frozenset(B32_ALPHABET)
# Unpadded Base32 lengths (mod 8) that no byte string can produce.
_IMPOSSIBLE_REMAINDERS = {1, 3, 6}


def b32encode(data: bytes) -> str:
    """RFC 4648 Base32, upper case, without `=` padding."""
    return base64.b32encode(bytes(data)).decode("ascii").rstrip("=")


def b32decode(text: str) -> bytes:
    """
    Decode Base32 as typed by a human or shown by an authenticator app.

    Case-insensitive; spaces, hyphens and trailing padding are ignored.
    Anything else outside the alphabet raises InvalidSecret.
    """
    cleaned = "".join(str(text or "").split()).replace("-", "").upper().rstrip("=")
    bad = sorted({c for c in cleaned if c not in _B32_CHARS})
    if bad:
        raise InvalidSecret("Secret contains non-Base32 characters", extensions={"characters": bad})
    if len(cleaned) % 8 in _IMPOSSIBLE_REMAINDERS:
        raise InvalidSecret("Secret has an invalid Base32 length")
    padded = cleaned + "=" * (-len(cleaned) % 8)
    try:
        return base64.b32decode(padded)
    except binascii.Error as e:
        raise InvalidSecret("Secret is not valid Base32") from e


def generate_secret(num_bytes: int = 20) -> str:
    """Random shared secret, Base32 encoded (20 bytes = 160 bits, RFC 4226)."""
    if int(num_bytes) < MIN_SECRET_BYTES:
        raise ValueError(f"TOTP secrets need at least {MIN_SECRET_BYTES} bytes")
    return b32encode(secrets.token_bytes(int(num_bytes)))


def hotp(key: bytes, counter: int, digits: int = DEFAULT_DIGITS) -> str:
    if digits not in (6, 7, 8):
        raise ValueError("digits must be 6, 7 or 8")
    if counter < 0:
        raise ValueError("counter must be non-negative")

    mac = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    # Dynamic truncation (RFC 4226 section 5.3).
    offset = mac[-1] & 0x0F
    value = struct.unpack(">I", mac[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(value % (10**digits)).zfill(digits)


def time_step(at: float, period: int = DEFAULT_PERIOD) -> int:
    return int(at // period)


def totp(secret: str, at: float, digits: int = DEFAULT_DIGITS, period: int = DEFAULT_PERIOD) -> str:
    return hotp(b32decode(secret), time_step(at, period), digits)


def normalize_code(code: str) -> str:
    return "".join(str(code or "").split()).replace("-", "")


def verify_totp(
    secret: str,
    code: str,
    at: float,
    *,
    window: int = DEFAULT_WINDOW,
    last_used_step: int | None = None,
    digits: int = DEFAULT_DIGITS,
    period: int = DEFAULT_PERIOD,
) -> int | None:
    """
    Check `code` against the steps around `at`.

    Returns the matched time step, or None. Steps at or before
    `last_used_step` are skipped so a code can only be used once.
    """
    candidate = normalize_code(code)
    if len(candidate) != digits or not candidate.isascii() or not candidate.isdigit():
        return None

    key = b32decode(secret)
    current = time_step(at, period)

    # Current step first, then the nearest neighbours outward.
    offsets = [0]
    for distance in range(1, max(0, int(window)) + 1):
        offsets.extend((-distance, distance))

    for offset in offsets:
        step = current + offset
        if step < 0:
            continue
        if last_used_step is not None and step <= last_used_step:
            continue
        if hmac.compare_digest(candidate, hotp(key, step, digits)):
            return step
    return None


def provisioning_uri(
    secret: str,
    account: str,
    *,
    issuer: str,
    digits: int = DEFAULT_DIGITS,
    period: int = DEFAULT_PERIOD,
) -> str:
    """otpauth:// URI for authenticator apps (rendered as a QR code client-side)."""
    label = f"{quote(issuer, safe='')}:{quote(account, safe='@')}"
    return (
        f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer, safe='')}"
        f"&algorithm=SHA1&digits={digits}&period={period}"
    )


def generate_backup_codes(count: int = 10) -> list[str]:
    codes: set[str] = set()
    out: list[str] = []
    while len(out) < int(count):
        raw = "".join(secrets.choice(B32_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        if raw in codes:
            continue
        codes.add(raw)
        out.append(f"{raw[:4]}-{raw[4:]}")
    return out


def normalize_backup_code(code: str) -> str:
    return normalize_code(code).upper()


def hash_backup_code(code: str) -> str:
    """SHA-256 of the normalized code. Raises ValueError on non-ASCII input."""
    normalized = normalize_backup_code(code)
    if not normalized.isascii():
        raise ValueError("backup codes are ASCII only")
    return hashlib.sha256(normalized.encode("ascii")).hexdigest()

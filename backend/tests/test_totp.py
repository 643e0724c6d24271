from __future__ import annotations

import pytest

from noorah.errors import InvalidSecret
from noorah.modules.mfa import totp

RFC_SECRET = b"12345678901234567890"
RFC_SECRET_B32 = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.mark.parametrize(
    "raw, encoded",
    [
        (b"", ""),
        (b"f", "MY"),
        (b"fo", "MZXQ"),
        (b"foo", "MZXW6"),
        (b"foob", "MZXW6YQ"),
        (b"fooba", "MZXW6YTB"),
        (b"foobar", "MZXW6YTBOI"),
    ],
)
def test_base32_rfc4648_vectors(raw, encoded):
    assert totp.b32encode(raw) == encoded
    assert totp.b32decode(encoded) == raw


def test_base32_decode_is_forgiving_about_formatting():
    assert totp.b32decode("mzxw 6ytb-oi==") == b"foobar"
    assert totp.b32decode(RFC_SECRET_B32.lower()) == RFC_SECRET


def test_base32_rejects_foreign_characters():
    with pytest.raises(InvalidSecret) as ei:
        totp.b32decode("MZXW1")
    assert ei.value.extensions["characters"] == ["1"]


@pytest.mark.parametrize("text", ["A", "ABC", "ABCDEF"])
def test_base32_rejects_impossible_lengths(text):
    with pytest.raises(InvalidSecret):
        totp.b32decode(text)


def test_hotp_rfc4226_vectors():
    expected = ["755224", "287082", "359152", "969429", "338314", "254676", "287922", "162583", "399871", "520489"]
    assert [totp.hotp(RFC_SECRET, i) for i in range(10)] == expected


@pytest.mark.parametrize(
    "at, code",
    [
        (59, "94287082"),
        (1111111109, "07081804"),
        (1111111111, "14050471"),
        (1234567890, "89005924"),
        (2000000000, "69279037"),
        (20000000000, "65353130"),
    ],
)
def test_totp_rfc6238_sha1_vectors(at, code):
    assert totp.totp(RFC_SECRET_B32, at, digits=8) == code


def test_hotp_rejects_bad_digits():
    with pytest.raises(ValueError):
        totp.hotp(RFC_SECRET, 0, digits=5)


def test_generate_secret_has_enough_entropy():
    s = totp.generate_secret(20)
    assert len(totp.b32decode(s)) == 20
    assert s != totp.generate_secret(20)
    with pytest.raises(ValueError):
        totp.generate_secret(10)


def test_verify_totp_accepts_adjacent_steps_only():
    at = 1111111111
    prev_code = totp.totp(RFC_SECRET_B32, at - 30)
    next_code = totp.totp(RFC_SECRET_B32, at + 30)
    far_code = totp.totp(RFC_SECRET_B32, at - 90)

    step = totp.time_step(at)
    assert totp.verify_totp(RFC_SECRET_B32, totp.totp(RFC_SECRET_B32, at), at) == step
    assert totp.verify_totp(RFC_SECRET_B32, prev_code, at) == step - 1
    assert totp.verify_totp(RFC_SECRET_B32, next_code, at) == step + 1
    assert totp.verify_totp(RFC_SECRET_B32, far_code, at) is None
    assert totp.verify_totp(RFC_SECRET_B32, prev_code, at, window=0) is None


def test_verify_totp_blocks_replay_of_used_steps():
    at = 1234567890
    code = totp.totp(RFC_SECRET_B32, at)
    step = totp.verify_totp(RFC_SECRET_B32, code, at)
    assert step is not None
    assert totp.verify_totp(RFC_SECRET_B32, code, at, last_used_step=step) is None


@pytest.mark.parametrize("code", ["", "12345", "1234567", "12a456", "١٢٣٤٥٦"])
def test_verify_totp_rejects_malformed_codes(code):
    assert totp.verify_totp(RFC_SECRET_B32, code, 59) is None


def test_verify_totp_ignores_spaces_in_code():
    at = 59
    code = totp.totp(RFC_SECRET_B32, at)
    assert totp.verify_totp(RFC_SECRET_B32, f"{code[:3]} {code[3:]}", at) is not None


def test_provisioning_uri_shape():
    uri = totp.provisioning_uri(RFC_SECRET_B32, "sam@example.com", issuer="NannyRadar")
    assert uri.startswith("otpauth://totp/NannyRadar:sam@example.com?")
    assert f"secret={RFC_SECRET_B32}" in uri
    assert "issuer=NannyRadar" in uri
    assert "digits=6" in uri and "period=30" in uri


def test_backup_codes_format_and_hashing():
    codes = totp.generate_backup_codes(10)
    assert len(set(codes)) == 10
    for c in codes:
        assert len(c) == 9 and c[4] == "-"
        assert set(c.replace("-", "")) <= set(totp.B32_ALPHABET)
    c = codes[0]
    assert totp.hash_backup_code(c) == totp.hash_backup_code(c.lower().replace("-", " "))
    assert totp.hash_backup_code(c) != totp.hash_backup_code(codes[1])


def test_backup_code_hash_rejects_non_ascii():
    with pytest.raises(ValueError):
        totp.hash_backup_code("ABCD-EFGHé")

from __future__ import annotations

import time

from fastapi.testclient import TestClient

from noorah.main import create_app
from noorah.modules.mfa import totp
from noorah.settings import settings

USER = "user_parent_1"


def _setup_and_enable(client, headers):
    r = client.post("/api/mfa/setup", json={"accountName": "pat@example.com"}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    r2 = client.post("/api/mfa/enable", json={"code": totp.totp(body["secret"], time.time())}, headers=headers)
    assert r2.status_code == 200
    assert r2.json()["mfa"]["enabled"] is True
    return body


def test_status_without_enrollment(fake_table, auth):
    client = TestClient(create_app())
    r = client.get("/api/mfa/status", headers=auth(USER))
    assert r.status_code == 200
    assert r.json()["mfa"] == {"enabled": False, "pending": False, "backupCodesRemaining": 0, "lockedUntil": None}


def test_full_enrollment_flow(fake_table, auth):
    client = TestClient(create_app())
    headers = auth(USER)

    setup = _setup_and_enable(client, headers)
    assert setup["provisioningUri"].startswith("otpauth://totp/NannyRadar:pat@example.com")
    assert len(setup["backupCodes"]) == 10

    r = client.post("/api/mfa/verify", json={"code": setup["backupCodes"][0]}, headers=headers)
    assert r.status_code == 200
    assert r.json() == {"ok": True, "method": "backup_code", "backupCodesRemaining": 9}

    status = client.get("/api/mfa/status", headers=headers).json()["mfa"]
    assert status["enabled"] is True and status["backupCodesRemaining"] == 9

    r = client.post("/api/mfa/backup-codes/regenerate", json={"code": setup["backupCodes"][1]}, headers=headers)
    # Regeneration needs the authenticator, not a backup code.
    assert r.status_code == 401

    r = client.post("/api/mfa/disable", json={"code": setup["backupCodes"][2]}, headers=headers)
    assert r.status_code == 200
    assert r.json()["mfa"]["enabled"] is False


def test_setup_twice_when_enabled_is_conflict(fake_table, auth):
    client = TestClient(create_app())
    headers = auth(USER)
    _setup_and_enable(client, headers)

    r = client.post("/api/mfa/setup", json={}, headers=headers)
    assert r.status_code == 409
    assert r.headers["content-type"].startswith("application/problem+json")
    assert r.json()["extensions"]["code"] == "MfaConflict"


def test_verify_when_not_enabled_is_conflict(fake_table, auth):
    client = TestClient(create_app())
    r = client.post("/api/mfa/verify", json={"code": "123456"}, headers=auth(USER))
    assert r.status_code == 409
    assert r.json()["extensions"]["code"] == "MfaNotEnabled"


def test_lockout_returns_429_with_retry_after(fake_table, auth):
    client = TestClient(create_app())
    headers = auth(USER)
    _setup_and_enable(client, headers)

    statuses = [
        client.post("/api/mfa/verify", json={"code": "000000"}, headers=headers).status_code for _ in range(4)
    ]
    assert statuses == [401, 401, 401, 401]

    r = client.post("/api/mfa/verify", json={"code": "000000"}, headers=headers)
    assert r.status_code == 429
    assert r.headers["Retry-After"] == "900"
    body = r.json()
    assert body["title"] == "Too Many Attempts"
    assert body["extensions"]["retryAfterSeconds"] == 900


def test_code_endpoints_are_rate_limited(fake_table, auth, monkeypatch):
    monkeypatch.setattr(settings, "mfa_rate_limit_rpm", 2)
    client = TestClient(create_app())
    headers = auth(USER)

    codes = [client.post("/api/mfa/verify", json={"code": "123456"}, headers=headers).status_code for _ in range(3)]
    assert codes[:2] == [409, 409]
    assert codes[2] == 429

    r = client.post("/api/mfa/verify", json={"code": "123456"}, headers=headers)
    assert r.headers["content-type"].startswith("application/problem+json")
    assert int(r.headers["Retry-After"]) >= 1
    assert r.json()["extensions"]["code"] == "RateLimited"

    # Reads are not limited.
    assert client.get("/api/mfa/status", headers=headers).status_code == 200

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx

from noorah.modules.guardian import state_machine
from noorah.modules.guardian.models import EmergencyContact, GuardianConfig, Party
from noorah.notifications.fanout import fan_out
from noorah.notifications.templates import render
from noorah.services import push_expo, slack_web
from noorah.settings import settings

T0 = datetime(2025, 3, 1, 18, 0, tzinfo=timezone.utc)


def _session():
    return state_machine.start(
        parent=Party(user_id="p1", name="Pat", email="pat@example.com", push_token="ExponentPushToken[p]"),
        sitter=Party(user_id="s1", name="Sam"),
        config=GuardianConfig(
            emergency_contacts=[
                EmergencyContact(contact_id="ec_a", name="Aunt Ana", email="ana@example.com"),
                EmergencyContact(contact_id="ec_b", name="Uncle Bo", phone="+15550002222"),
            ]
        ),
        now=T0,
    ).session


def _events(table):
    return [it for (pk, _), it in table.items.items() if pk.startswith("OUTBOX#")]


def test_render_signs_messages_and_respects_silent_mode():
    s = _session()
    t, _ = state_machine.check_in(s, now=T0 + timedelta(minutes=5), note="reading stories")
    msg = render(t.effects[0], t.session)
    assert msg.subject == "NannyRadar: Check-in received"
    assert "reading stories" in msg.body
    assert msg.body.endswith("- NannyRadar")

    quiet = t.session.model_copy(deep=True)
    quiet.config.silent_mode = True
    t2, _ = state_machine.check_in(quiet, now=T0 + timedelta(minutes=10), note="secret")
    assert "secret" not in render(t2.effects[0], t2.session).body


def test_fan_out_one_event_per_recipient_and_channel(fake_table, monkeypatch):
    monkeypatch.setattr(settings, "ses_from_email", "alerts@nannyradar.example")
    monkeypatch.setattr(settings, "slack_enabled", True)
    monkeypatch.setattr(settings, "slack_bot_token", "xoxb-test")
    monkeypatch.setattr(settings, "slack_support_channel", "#safety-ops")

    s = _session()
    t = state_machine.advance(s, T0 + timedelta(minutes=60))
    out = fan_out(t.session, t.effects)

    events = _events(fake_table)
    keys = sorted(ev["eventId"].split(":", 2)[2] for ev in events)
    # sitter: no channels; parent: push + email; contacts: ana email, bo phone only; support: slack
    assert keys == sorted(["p1:push", "p1:email", "ec_a:email", "support:slack"])
    assert out == {"enqueued": 4, "duplicates": 0, "unreachable": 2}

    again = fan_out(t.session, t.effects)
    assert again["enqueued"] == 0 and again["duplicates"] == 4
    assert len(_events(fake_table)) == 4


def test_fan_out_skips_unconfigured_channels(fake_table, monkeypatch):
    monkeypatch.setattr(settings, "ses_from_email", None)
    monkeypatch.setattr(settings, "slack_enabled", False)

    s = _session()
    t = state_machine.advance(s, T0 + timedelta(minutes=60))
    out = fan_out(t.session, t.effects)
    assert out["enqueued"] == 1  # parent push only
    assert [ev["eventType"] for ev in _events(fake_table)] == ["notify.push"]


class _Resp:
    def __init__(self, status_code: int, payload):
        self.status_code = status_code
        self._payload = payload
        self.content = b"x"

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("bad", request=None, response=None)


def test_send_push_parses_expo_tickets(monkeypatch):
    seen = {}

    def fake_post(url, headers=None, json=None, timeout=None):
        seen.update(url=url, json=json)
        return _Resp(200, {"data": [{"status": "ok", "id": "tkt-1"}]})

    monkeypatch.setattr(push_expo.httpx, "post", fake_post)
    res = push_expo.send_push(to_token="ExponentPushToken[x]", title="t", body="b", priority="urgent")
    assert res == {"ok": True, "ticketId": "tkt-1"}
    assert seen["url"] == settings.expo_push_url
    assert seen["json"][0]["priority"] == "high"


def test_send_push_flags_unregistered_devices_as_permanent(monkeypatch):
    monkeypatch.setattr(
        push_expo.httpx,
        "post",
        lambda *a, **kw: _Resp(200, {"data": [{"status": "error", "details": {"error": "DeviceNotRegistered"}}]}),
    )
    res = push_expo.send_push(to_token="ExponentPushToken[x]", title="t", body="b")
    assert res["ok"] is False and res["permanent"] is True


def test_send_push_rejects_non_expo_tokens():
    res = push_expo.send_push(to_token="not-a-token", title="t", body="b")
    assert res["ok"] is False and res["error"] == "invalid_push_token"


def test_slack_post_message_reports_slack_errors(monkeypatch):
    monkeypatch.setattr(settings, "slack_enabled", True)
    monkeypatch.setattr(settings, "slack_bot_token", "xoxb-test")
    monkeypatch.setattr(settings, "slack_support_channel", "#safety-ops")
    monkeypatch.setattr(slack_web.httpx, "post", lambda *a, **kw: _Resp(200, {"ok": False, "error": "not_in_channel"}))
    assert slack_web.post_message(text="hi") == {"ok": False, "error": "not_in_channel"}


def test_slack_not_configured(monkeypatch):
    monkeypatch.setattr(settings, "slack_enabled", False)
    assert slack_web.post_message(text="hi")["error"] == "slack_not_configured"

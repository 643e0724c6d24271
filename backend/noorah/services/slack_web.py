from __future__ import annotations

from typing import Any

import httpx

from ..observability.logging import get_logger
from ..settings import settings

log = get_logger("slack")


def get_bot_token() -> str | None:
    if not bool(settings.slack_enabled):
        return None
    return str(settings.slack_bot_token or "").strip() or None


def is_slack_configured() -> bool:
    """Enabled, with a bot token and a support channel to post into."""
    return bool(get_bot_token()) and bool(str(settings.slack_support_channel or "").strip())


def post_message(*, text: str, channel: str | None = None) -> dict[str, Any]:
    """
    Post to Slack via chat.postMessage.

    Returns Slack's verdict as {"ok": bool, "error"?: str}; transport errors
    are raised so the caller can retry.
    """
    token = get_bot_token()
    ch = str(channel or "").strip() or str(settings.slack_support_channel or "").strip()
    if not token or not ch:
        return {"ok": False, "error": "slack_not_configured"}

    resp = httpx.post(
        "https://slack.com/api/chat.postMessage",
        headers={"Authorization": f"Bearer {token}"},
        json={
            "channel": ch,
            "text": str(text or "").strip() or "(no text)",
            "unfurl_links": False,
            "unfurl_media": False,
        },
        timeout=10.0,
    )
    data = resp.json() if resp.content else {}
    if bool(data.get("ok")):
        return {"ok": True, "ts": data.get("ts"), "channel": data.get("channel") or ch}

    err = str(data.get("error") or "").strip() or f"http_{resp.status_code}"
    log.warning("slack_post_message_failed", status_code=int(resp.status_code), error=err, channel=ch)
    return {"ok": False, "error": err}

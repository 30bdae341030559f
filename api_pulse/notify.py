from __future__ import annotations

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Any, Iterable

import httpx
import structlog

from api_pulse.models import Alert, AlertHistory
from api_pulse.settings import Settings


logger = structlog.get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LEN = 3900
NOTIFY_TIMEOUT_SECONDS = 15.0


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        parts.append(s[:cut].rstrip())
        s = s[cut:].lstrip()
    return parts


def build_alert_message(alert: Alert, entry: AlertHistory) -> str:
    lines = [f"[{alert.severity.value}] API Pulse alert: {alert.name}", entry.message]
    scope = f"connection {alert.connection_id}" if alert.connection_id else "all connections"
    lines.append(f"Scope: {scope}")
    lines.append(f"Window: {alert.time_window_minutes}m")
    return "\n".join(lines).strip()


def build_alert_payload(alert: Alert, entry: AlertHistory) -> dict[str, Any]:
    return {
        "alertId": alert.id,
        "name": alert.name,
        "condition": alert.condition,
        "operator": alert.operator,
        "threshold": alert.threshold,
        "unit": alert.unit,
        "connectionId": alert.connection_id,
        "history": entry.to_dict(),
    }


class Notifier:
    """
    Delivers fired alerts to the channels each alert lists. Delivery problems
    are logged per channel and never raised to the evaluator.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient) -> None:
        self.settings = settings
        self._client = client

    async def _post_json(self, url: str, payload: dict[str, Any]) -> tuple[bool, str | None]:
        try:
            resp = await self._client.post(url, json=payload, timeout=NOTIFY_TIMEOUT_SECONDS)
        except httpx.RequestError as e:
            return False, f"{type(e).__name__}: {e}"
        if resp.status_code >= 400:
            return False, f"HTTP {resp.status_code}"
        return True, None

    async def send_webhook(self, alert: Alert, entry: AlertHistory) -> tuple[bool, str | None]:
        if not self.settings.webhook_url:
            return False, "webhook_not_configured"
        return await self._post_json(self.settings.webhook_url, build_alert_payload(alert, entry))

    async def send_slack(self, alert: Alert, entry: AlertHistory) -> tuple[bool, str | None]:
        if not self.settings.slack_webhook_url:
            return False, "slack_not_configured"
        return await self._post_json(self.settings.slack_webhook_url, {"text": build_alert_message(alert, entry)})

    async def send_telegram(self, alert: Alert, entry: AlertHistory) -> tuple[bool, str | None]:
        token = self.settings.telegram_bot_token
        chat_id = self.settings.telegram_chat_id
        if not token or not chat_id:
            return False, "telegram_not_configured"
        url = f"https://api.telegram.org/bot{token}/sendMessage"
        for part in split_telegram_message(build_alert_message(alert, entry)):
            try:
                resp = await self._client.post(url, json={"chat_id": chat_id, "text": part}, timeout=NOTIFY_TIMEOUT_SECONDS)
                data = resp.json()
            except Exception as e:
                return False, f"{type(e).__name__}: {e}".replace(token, "<redacted>")
            if not bool(data.get("ok")):
                return False, str(data.get("description") or "telegram_not_ok")[:300]
        return True, None

    def _send_email_sync(self, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.settings.smtp_sender
        msg["To"] = self.settings.alert_email_to
        msg.set_content(body)
        with smtplib.SMTP(self.settings.smtp_host, int(self.settings.smtp_port), timeout=NOTIFY_TIMEOUT_SECONDS) as smtp:
            if self.settings.smtp_username:
                smtp.starttls()
                smtp.login(self.settings.smtp_username, self.settings.smtp_password)
            smtp.send_message(msg)

    async def send_email(self, alert: Alert, entry: AlertHistory) -> tuple[bool, str | None]:
        if not self.settings.smtp_host or not self.settings.alert_email_to:
            return False, "email_not_configured"
        subject = f"[{alert.severity.value}] {alert.name}"
        try:
            await asyncio.to_thread(self._send_email_sync, subject, build_alert_message(alert, entry))
        except (OSError, smtplib.SMTPException) as e:
            return False, f"{type(e).__name__}: {e}"
        return True, None

    async def notify(self, alert: Alert, entry: AlertHistory, channels: Iterable[str] | None = None) -> dict[str, bool]:
        senders = {
            "webhook": self.send_webhook,
            "slack": self.send_slack,
            "telegram": self.send_telegram,
            "email": self.send_email,
        }
        delivered: dict[str, bool] = {}
        for channel in channels if channels is not None else alert.channels:
            send = senders.get(str(channel))
            if send is None:
                logger.warning("notify_unknown_channel", alert_id=alert.id, channel=channel)
                delivered[str(channel)] = False
                continue
            ok, err = await send(alert, entry)
            delivered[str(channel)] = ok
            if ok:
                logger.info("notify_sent", alert_id=alert.id, channel=channel)
            else:
                logger.warning("notify_failed", alert_id=alert.id, channel=channel, error=err)
        return delivered

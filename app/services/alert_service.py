"""Operator alerts posted to a Telegram chat."""

from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = settings.alert_bot_token
ALERT_CHAT_ID = settings.alert_chat_id
TELEGRAM_API_URL = "https://api.telegram.org"
ALERT_TIMEOUT_SECONDS = 10

LEVEL_MARKERS = {"INFO": "[i]", "WARNING": "[!]", "ERROR": "[x]", "CRITICAL": "[!!!]"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    """Markdown body: level header, message, then non-empty context fields in a code block."""
    lines = [f"{LEVEL_MARKERS.get(level, '[?]')} *{level}*", "", message]
    fields = {key: value for key, value in (context or {}).items() if value is not None}
    if fields:
        lines += ["", "```", *(f"  {key}: {value}" for key, value in fields.items()), "```"]
    return "\n".join(lines)


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Post an alert. Returns True only when Telegram accepted it.

    Alerting never raises: an unconfigured bot or a network failure is logged.
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}", extra={"context": context or {}})
        return False

    payload = {"chat_id": ALERT_CHAT_ID, "text": format_alert(level, message, context), "parse_mode": "Markdown"}
    try:
        with httpx.Client(timeout=ALERT_TIMEOUT_SECONDS) as client:
            response = client.post(f"{TELEGRAM_API_URL}/bot{ALERT_BOT_TOKEN}/sendMessage", json=payload)
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}", extra={"context": {"level": level}})
        return False

    if response.status_code != 200:
        logger.error(f"Telegram rejected alert: {response.status_code}", extra={"context": {"level": level}})
        return False
    return True


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)

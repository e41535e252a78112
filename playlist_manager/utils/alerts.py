"""Discord webhook alerts for quota budget thresholds.

Sends structured alerts to a Discord channel via the webhook URL configured
in the DISCORD_WEBHOOK_URL environment variable. Alerts never raise: a
missing webhook or an HTTP failure is logged and swallowed so that quota
bookkeeping is not affected by the alerting path.
"""

import os
from typing import Any

import httpx

from playlist_manager.utils.logging import get_logger

log = get_logger(__name__)

ALERT_TIMEOUT_SECONDS = 5.0

# Discord limits: 2000 chars per message, 1024 per embed field value
MAX_MESSAGE_CHARS = 2000
MAX_FIELD_CHARS = 1024

ALERT_COLORS = {
    "CRITICAL": 0xFF0000,
    "WARNING": 0xFFA500,
    "INFO": 0x0000FF,
}


def build_alert_payload(
    level: str, message: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Build the Discord webhook body for an alert.

    Args:
        level: Alert level ("CRITICAL", "WARNING", "INFO")
        message: Alert message, truncated to the Discord limit
        details: Optional key/value pairs rendered as inline embed fields

    Returns:
        JSON-serializable webhook payload.
    """
    text = message[:MAX_MESSAGE_CHARS]
    return {
        "content": f"**{level}**: {text}",
        "embeds": [
            {
                "title": f"{level} Alert",
                "description": text,
                "fields": [
                    {"name": key, "value": str(value)[:MAX_FIELD_CHARS], "inline": True}
                    for key, value in (details or {}).items()
                ],
                "color": ALERT_COLORS.get(level, 0x808080),
            }
        ],
    }


async def send_alert(level: str, message: str, details: dict[str, Any] | None = None) -> bool:
    """Send alert to Discord webhook.

    Args:
        level: Alert level ("CRITICAL", "WARNING", "INFO")
        message: Alert message (max 2000 chars, will be truncated)
        details: Optional structured details

    Returns:
        True if the webhook accepted the alert, False otherwise.

    Example:
        >>> await send_alert(
        ...     level="WARNING",
        ...     message="YouTube quota at 85%",
        ...     details={"used": 8500, "budget": 10000},
        ... )
    """
    webhook_url = os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        log.warning("discord_webhook_not_configured", level=level)
        return False

    payload = build_alert_payload(level, message, details)

    try:
        async with httpx.AsyncClient(timeout=ALERT_TIMEOUT_SECONDS) as client:
            response = await client.post(webhook_url, json=payload)
            response.raise_for_status()
    except httpx.TimeoutException:
        log.error("discord_webhook_timeout", level=level)
        return False
    except httpx.HTTPStatusError as e:
        log.error(
            "discord_webhook_http_error",
            status_code=e.response.status_code,
            response=e.response.text[:500],
        )
        return False
    except httpx.HTTPError as e:
        log.error("discord_webhook_failed", error=str(e))
        return False

    log.info("discord_alert_sent", level=level, message=message[:100])
    return True

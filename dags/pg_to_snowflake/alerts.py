import logging
from typing import Any, Dict, Optional

import requests

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000  # Discord message hard limit (approx)
ERROR_PREVIEW = 180


def _truncate_for_discord(text: str, limit: int = DISCORD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    # Keep a small suffix to show truncation
    return text[: limit - 20] + "\n… (truncated)"


def format_run_summary(summary: Dict[str, Any]) -> str:
    """Discord-ready text for a RunSummary.as_dict(); failed tables are listed with stage and error."""
    failed = int(summary.get("failed", 0))
    icon = "❗️" if failed else "✅"
    lines = [
        f"{icon} **PostgreSQL → Snowflake migration** `{summary.get('run_id', '?')}`",
        f"- Tables attempted: {summary.get('tables_attempted', 0)}",
        f"- Succeeded: {summary.get('succeeded', 0)}",
        f"- Failed: {failed}",
    ]
    for r in summary.get("results", []):
        if r.get("state") == "DONE":
            continue
        err = (r.get("error") or "")[:ERROR_PREVIEW]
        lines.append(f"  • `{r.get('table')}` at {r.get('stage') or '?'}: {err}")
    return "\n".join(lines)


def send_discord_alert(message: str, webhook_url: str, username: Optional[str] = "Snowflake Migration Alert",
                       avatar_url: Optional[str] = None) -> bool:
    """
    Sends a simple Discord webhook message. Returns True when Discord accepted it.
    If you want a JSON response (200), append '?wait=true' to your webhook URL; otherwise Discord returns 204.
    """
    if not webhook_url:
        log.warning("No Discord webhook URL configured (DISCORD_WEBHOOK), skipping alert.")
        return False

    payload = {
        "content": _truncate_for_discord(message),
        "username": username,
    }
    if avatar_url:
        payload["avatar_url"] = avatar_url

    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        log.exception("Exception while sending Discord alert: %s", e)
        return False

    # Discord returns 204 No Content for non-waiting calls; 200 OK if '?wait=true'
    if response.status_code in (200, 204):
        log.info("Discord alert sent successfully (status %s).", response.status_code)
        return True
    log.error("Failed to send Discord alert: status=%s body=%s", response.status_code, response.text)
    return False

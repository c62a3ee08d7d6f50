import logging
import threading
from typing import List, Optional, Sequence, Tuple

import requests

logger = logging.getLogger(__name__)

DISCORD_CONTENT_LIMIT = 2000
WEBHOOK_TIMEOUT = 10


def is_chat_webhook(url: str) -> bool:
    return "discord.com" in url.lower()


def truncate_content(content: str, limit: int = DISCORD_CONTENT_LIMIT) -> str:
    if len(content) > limit:
        return f"{content[:limit - 3]}…"
    return content


def _outcome_lines(validated: Sequence[str], failed: Sequence[Tuple[str, str]]) -> List[str]:
    lines = []
    if validated:
        lines.append(f"✅ **Validated:** {', '.join(validated)}.")
    if failed:
        failed_list = " ; ".join(f"{username} ({message})" for username, message in failed)
        lines.append(f"❌ **Failed:** {failed_list}.")
    return lines


def _failed_json(failed: Sequence[Tuple[str, str]]) -> List[dict]:
    return [{"username": username, "message": message} for username, message in failed]


def build_validation_summary(
    webhook_url: str,
    global_success: bool,
    validated: Sequence[str],
    failed: Sequence[Tuple[str, str]],
    validated_codes: Sequence[str],
    initiated_by: str,
) -> dict:
    """
    Discord gets one readable message (2000 chars max), anything else gets
    a structured JSON object.
    """
    if is_chat_webhook(webhook_url):
        parts: List[str] = ["**EDSquare report**", f"**Started by:** {initiated_by}"]
        if validated_codes:
            parts.append(f"**Validated code(s):** {', '.join(validated_codes)}")
        parts.extend(_outcome_lines(validated, failed))
        return {"content": truncate_content("\n".join(parts))}

    return {
        "event": "edsquare_validation_multi",
        "initiated_by": initiated_by,
        "global_success": global_success,
        "validated": list(validated),
        "validated_codes": list(validated_codes),
        "failed": _failed_json(failed),
    }


def build_sign_summary(
    webhook_url: str,
    validated: Sequence[str],
    failed: Sequence[Tuple[str, str]],
    url: str,
    initiated_by: str,
) -> dict:
    """Same two shapes as build_validation_summary, for an intra signing batch."""
    if is_chat_webhook(webhook_url):
        parts = ["**Signing report**", f"**Started by:** {initiated_by}", f"**URL:** {url}"]
        parts.extend(_outcome_lines(validated, failed))
        return {"content": truncate_content("\n".join(parts))}

    return {
        "event": "sign_multi",
        "initiated_by": initiated_by,
        "url": url,
        "validated": list(validated),
        "failed": _failed_json(failed),
    }


class WebhookNotifier:
    def __init__(self, webhook_url: Optional[str] = None, timeout: float = WEBHOOK_TIMEOUT):
        self.webhook_url = webhook_url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def send(self, payload: dict) -> bool:
        """Posts the payload. Never raises: delivery problems are only logged."""
        if not self.webhook_url:
            logger.info(f"[Mock webhook] {payload}")
            return False
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Webhook delivery to {self.webhook_url} failed: {e}")
            if getattr(e, "response", None) is not None:
                logger.warning(f"Details: {e.response.text[:200]}")
            return False
        logger.info("Webhook report sent")
        return True

    def send_async(self, payload: dict) -> threading.Thread:
        """Fire-and-forget: the caller does not wait for the webhook."""
        thread = threading.Thread(target=self.send, args=(payload,), name="webhook-notifier", daemon=True)
        thread.start()
        return thread

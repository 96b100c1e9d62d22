from __future__ import annotations

import logging

import requests

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 1900


def notify_webhook(url: str, msg: str, dry_run: bool = False) -> bool:
    """Post a run summary to a chat webhook. Returns True when delivered."""
    if not url:
        return False
    prefix = "[DRY-RUN] " if dry_run else ""
    content = f"{prefix}{msg}"
    if len(content) > MAX_MESSAGE_CHARS:
        content = content[: MAX_MESSAGE_CHARS - 3] + "..."
    try:
        response = requests.post(url, json={"content": content}, timeout=5)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning(f"Webhook notify failed: {e}")
        return False
    return True

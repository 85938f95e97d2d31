"""Operator alerts via ntfy."""

import base64
import logging

import httpx

from .config import Config

logger = logging.getLogger("nudgeflow.notifications")


def send_operator_alert(
    config: Config,
    title: str,
    message: str,
    *,
    priority: int | None = None,
    tags: str | None = None,
) -> bool:
    """Push an alert to the operator's ntfy topic. Returns True on success."""
    ntfy = config.ntfy
    if not ntfy.enabled or not ntfy.topic:
        return False

    url = f"{ntfy.server_url.rstrip('/')}/{ntfy.topic}"
    headers = {}
    if ntfy.token:
        headers["Authorization"] = f"Bearer {ntfy.token}"
    elif ntfy.username:
        credentials = base64.b64encode(
            f"{ntfy.username}:{ntfy.password}".encode()
        ).decode()
        headers["Authorization"] = f"Basic {credentials}"
    headers["Title"] = title
    headers["Priority"] = str(priority if priority is not None else ntfy.priority)
    if tags:
        headers["Tags"] = tags

    try:
        response = httpx.post(url, content=message, headers=headers, timeout=10)
        response.raise_for_status()
        return True
    except Exception as e:
        logger.error("Failed to send ntfy alert %r: %s", title, e)
        return False

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from typing import Any

logger = logging.getLogger(__name__)

_WEBHOOK_TIMEOUT_SECONDS = 15
_HISTORY_TAIL = 10


def _http_post_json(url: str, payload: dict[str, Any], *, timeout: float = _WEBHOOK_TIMEOUT_SECONDS) -> int:
    """POST *payload* as JSON and return the HTTP status code.

    Raises:
        RuntimeError: On HTTP or transport errors.
    """
    request = urllib.request.Request(
        url,
        method="POST",
        headers={"Content-Type": "application/json"},
        data=json.dumps(payload).encode("utf-8"),
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return int(response.status)
    except urllib.error.HTTPError as exc:
        body = ""
        try:
            body = exc.read().decode("utf-8", errors="replace")[:500]
        except OSError:
            pass
        logger.error("HTTP %d from webhook: %s", exc.code, body)
        raise RuntimeError(f"Webhook request failed with HTTP {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise RuntimeError(f"Webhook request failed: {exc.reason}") from exc


class LogNotifier:
    """Notifier that only writes to the log."""

    def notify_stuck(self, *, thread_id: str, error_message: str, action_history: list[str]) -> None:
        logger.warning("AGENT STUCK - thread %s", thread_id)
        logger.warning("Error: %s", error_message)
        logger.warning("Recent actions: %s", " | ".join(action_history[-_HISTORY_TAIL:]))

    def notify_published(self, *, package_name: str, thread_id: str) -> None:
        logger.info("Package published successfully: %s (thread %s)", package_name, thread_id)


class WebhookNotifier(LogNotifier):
    """Posts escalation and publish messages to a chat webhook (Slack-compatible ``text`` payload)."""

    def __init__(self, url: str, *, timeout: float = _WEBHOOK_TIMEOUT_SECONDS) -> None:
        if not url.strip():
            raise ValueError("webhook url must be non-empty")
        self.url = url.strip()
        self.timeout = timeout

    def notify_stuck(self, *, thread_id: str, error_message: str, action_history: list[str]) -> None:
        super().notify_stuck(thread_id=thread_id, error_message=error_message, action_history=action_history)
        recent = "\n".join(f"- {entry}" for entry in action_history[-_HISTORY_TAIL:])
        _http_post_json(
            self.url,
            {
                "text": (
                    f":rotating_light: Build agent stuck on thread `{thread_id}`\n"
                    f"*Error:* {error_message[:1_000]}\n"
                    f"*Recent actions:*\n{recent}\n"
                    f"Reply with `turn-loop resume {thread_id} --hint \"...\"`."
                ),
            },
            timeout=self.timeout,
        )

    def notify_published(self, *, package_name: str, thread_id: str) -> None:
        super().notify_published(package_name=package_name, thread_id=thread_id)
        _http_post_json(
            self.url,
            {"text": f":package: Published `{package_name}` (thread `{thread_id}`)"},
            timeout=self.timeout,
        )


def build_notifier(webhook_url: str) -> LogNotifier:
    return WebhookNotifier(webhook_url) if webhook_url.strip() else LogNotifier()

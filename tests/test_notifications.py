import json
import logging
from typing import Any

import pytest

from turn_loop_agent import notifications
from turn_loop_agent.notifications import LogNotifier, WebhookNotifier, build_notifier


def test_build_notifier_picks_webhook_only_when_configured() -> None:
    assert type(build_notifier("")) is LogNotifier
    assert isinstance(build_notifier("https://hooks.example.com/T000"), WebhookNotifier)


def test_log_notifier_logs_stuck_agent(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="turn_loop_agent.notifications"):
        LogNotifier().notify_stuck(thread_id="t-1", error_message="lint keeps failing", action_history=["a", "b"])
    assert "AGENT STUCK - thread t-1" in caplog.text
    assert "lint keeps failing" in caplog.text


def test_webhook_notifier_posts_json(monkeypatch: pytest.MonkeyPatch) -> None:
    posted: list[tuple[str, dict[str, Any]]] = []

    def _capture(url: str, payload: dict[str, Any], *, timeout: float) -> int:
        posted.append((url, json.loads(json.dumps(payload))))
        return 200

    monkeypatch.setattr(notifications, "_http_post_json", _capture)
    notifier = WebhookNotifier("https://hooks.example.com/T000")

    notifier.notify_stuck(thread_id="t-1", error_message="boom", action_history=["Workflow started."])
    notifier.notify_published(package_name="@acme/widgets", thread_id="t-1")

    assert [url for url, _ in posted] == ["https://hooks.example.com/T000"] * 2
    assert "t-1" in posted[0][1]["text"]
    assert "boom" in posted[0][1]["text"]
    assert "@acme/widgets" in posted[1][1]["text"]


def test_webhook_notifier_requires_url() -> None:
    with pytest.raises(ValueError):
        WebhookNotifier("  ")

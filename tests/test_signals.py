import logging
import threading
import time

import pytest

from turn_loop_agent.signals import SignalInbox


def test_drain_returns_and_clears_pending_signals() -> None:
    inbox = SignalInbox()
    inbox.post_hint("first")
    inbox.post_hint("  second  ")
    inbox.post_pause()

    assert inbox.pause_pending
    drained = inbox.drain()

    assert drained.hint == "  second  "
    assert drained.pause is True
    assert inbox.drain().hint is None
    assert not inbox.pause_pending


def test_blank_hint_is_ignored(caplog: pytest.LogCaptureFixture) -> None:
    inbox = SignalInbox()
    inbox.post_hint("keep this one")
    with caplog.at_level(logging.WARNING, logger="turn_loop_agent.signals"):
        inbox.post_hint("   ")
        inbox.post_hint("")

    assert inbox.drain().hint == "keep this one"
    assert "Ignoring blank human intervention hint" in caplog.text


def test_wait_times_out_without_signals() -> None:
    started = time.monotonic()
    drained = SignalInbox().wait(0.05)
    assert drained.hint is None
    assert drained.pause is False
    assert time.monotonic() - started >= 0.04


def test_wait_wakes_on_hint_from_another_thread() -> None:
    inbox = SignalInbox()
    timer = threading.Timer(0.05, inbox.post_hint, args=("look at src/index.ts",))
    timer.start()
    try:
        drained = inbox.wait(5)
    finally:
        timer.cancel()
    assert drained.hint == "look at src/index.ts"


def test_wait_returns_immediately_when_signal_already_queued() -> None:
    inbox = SignalInbox()
    inbox.post_pause()
    assert inbox.wait(0).pause is True

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DrainedSignals:
    hint: str | None
    pause: bool


class SignalInbox:
    """Thread-safe inbox for operator signals, owned by one controller.

    Signals arrive asynchronously but are only applied to loop state when the
    controller drains the inbox at a turn boundary. The inbox holds at most one
    hint (a newer hint replaces an undrained one) and a sticky pause flag.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._hint: str | None = None
        self._pause = False

    def post_hint(self, hint: str) -> None:
        if not hint or not hint.strip():
            logger.warning("Ignoring blank human intervention hint")
            return
        with self._condition:
            if self._hint is not None:
                logger.info("Replacing undelivered human hint with a newer one")
            self._hint = hint
            self._condition.notify_all()

    def post_pause(self) -> None:
        with self._condition:
            self._pause = True
            self._condition.notify_all()

    @property
    def pause_pending(self) -> bool:
        with self._condition:
            return self._pause

    def drain(self) -> DrainedSignals:
        with self._condition:
            drained = DrainedSignals(hint=self._hint, pause=self._pause)
            self._hint = None
            self._pause = False
            return drained

    def wait(self, timeout: float) -> DrainedSignals:
        """Block until a hint or pause arrives or ``timeout`` seconds pass, then drain."""
        deadline = time.monotonic() + max(timeout, 0.0)
        with self._condition:
            while self._hint is None and not self._pause:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._condition.wait(remaining)
            drained = DrainedSignals(hint=self._hint, pause=self._pause)
            self._hint = None
            self._pause = False
            return drained

"""Coarse error fingerprints used to decide whether two failures are "the same".

The key is the first 50 characters of the normalized message plus its length.
Messages that differ only in case or whitespace collide on purpose so that
near-identical tool output groups together. Two different errors that share a
50-character prefix and a normalized length also collide; meta-correction
cadence depends on this behavior.
"""

from __future__ import annotations

import re

FINGERPRINT_PREFIX_CHARS = 50

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_error(message: str) -> str:
    return _WHITESPACE_RE.sub(" ", message.lower()).strip()


def fingerprint(message: str | None) -> str:
    normalized = normalize_error(message or "")
    return f"{normalized[:FINGERPRINT_PREFIX_CHARS]}_{len(normalized)}"

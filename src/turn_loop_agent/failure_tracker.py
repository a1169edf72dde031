from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Any, Iterable

from .fingerprint import fingerprint
from .models import AgentCommand, FailureVerdict, FileFailureEntry, TurnResult
from .settings import MAX_FILE_MODIFICATIONS_BEFORE_META, MAX_META_CORRECTION_ATTEMPTS

logger = logging.getLogger(__name__)

_EXPECTED_FORMAT_BY_SUFFIX = {
    ".json": "Valid JSON only. Do NOT wrap the file in markdown code fences (```json ... ```).",
    ".ts": "Valid TypeScript that compiles in strict mode, with correct imports and exports.",
    ".tsx": "Valid TypeScript/TSX that compiles in strict mode, with correct imports and exports.",
    ".js": "Valid JavaScript module syntax with correct imports and exports.",
    ".mjs": "Valid ES module syntax with correct imports and exports.",
    ".md": "Plain Markdown text.",
}

_FAILURE_LABELS = {
    AgentCommand.APPLY_CODE_CHANGES: "file operation",
    AgentCommand.AWAIT_DEPENDENCY: "dependency",
    AgentCommand.GATHER_CONTEXT_FOR_DEPENDENCY: "dependency",
    AgentCommand.VALIDATE_PACKAGE_JSON: "package.json validation",
    AgentCommand.CHECK_LICENSE_HEADERS: "license header",
    AgentCommand.RUN_BUILD: "build",
    AgentCommand.RUN_LINT_CHECK: "lint",
    AgentCommand.RUN_UNIT_TESTS: "unit test",
    AgentCommand.PUBLISH_PACKAGE: "publish",
}


def expected_format_for(file_path: str) -> str:
    suffix = PurePosixPath(file_path).suffix.lower()
    return _EXPECTED_FORMAT_BY_SUFFIX.get(suffix, "Valid file content at the expected path.")


class FileFailureTracker:
    """Per-file failure history used to detect an agent stuck on one file.

    A file gets an entry on its first failure and loses it the moment a
    modification of that file succeeds. Consecutive failures that share an error
    fingerprint count towards a meta-correction; once a meta-correction has been
    issued, every further failure on that file spends one of the remaining
    attempts, and exhausting them asks the controller to terminate.
    """

    def __init__(
        self,
        entries: dict[str, FileFailureEntry] | None = None,
        *,
        max_modifications_before_meta: int = MAX_FILE_MODIFICATIONS_BEFORE_META,
        max_meta_correction_attempts: int = MAX_META_CORRECTION_ATTEMPTS,
    ) -> None:
        self.entries: dict[str, FileFailureEntry] = dict(entries or {})
        self.max_modifications_before_meta = max_modifications_before_meta
        self.max_meta_correction_attempts = max_meta_correction_attempts

    @classmethod
    def from_state(cls, payload: dict[str, Any], **limits: int) -> "FileFailureTracker":
        entries = {path: FileFailureEntry.model_validate(entry) for path, entry in payload.items()}
        return cls(entries, **limits)

    def to_state(self) -> dict[str, dict[str, Any]]:
        return {path: entry.model_dump(mode="json") for path, entry in self.entries.items()}

    def get(self, file_path: str) -> FileFailureEntry | None:
        return self.entries.get(file_path)

    def __contains__(self, file_path: object) -> bool:
        return file_path in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def total_attempts_before_termination(self) -> int:
        return self.max_modifications_before_meta + self.max_meta_correction_attempts

    def record(self, file_path: str, result: TurnResult) -> FailureVerdict:
        details = result.details or ""
        error_hash = fingerprint(details)
        entry = self.entries.get(file_path)

        if entry is None:
            entry = FileFailureEntry(modification_count=1, errors=[details], last_error_hash=error_hash)
            self.entries[file_path] = entry
        elif entry.last_error_hash == error_hash:
            entry.modification_count += 1
            entry.errors.append(details)
        else:
            entry.modification_count = 1
            entry.last_error_hash = error_hash
            entry.errors.append(details)

        if entry.modification_count >= self.max_modifications_before_meta and not entry.meta_correction_sent:
            entry.meta_correction_sent = True
            logger.warning(
                "File %s stuck after %d attempts, sending meta-correction",
                file_path,
                entry.modification_count,
            )
            return FailureVerdict(meta_correction_message=self.meta_correction_message(file_path, result.command))

        if entry.meta_correction_sent:
            entry.meta_correction_attempts += 1
            if entry.meta_correction_attempts > self.max_meta_correction_attempts:
                logger.error("File %s still failing after meta-correction, terminating", file_path)
                return FailureVerdict(terminate=True)
            return FailureVerdict(meta_correction_message=self.meta_correction_message(file_path, result.command))

        return FailureVerdict()

    def clear(self, file_paths: Iterable[str]) -> list[str]:
        cleared: list[str] = []
        for file_path in file_paths:
            if self.entries.pop(file_path, None) is not None:
                logger.info("Cleared failure tracking for %s (successfully modified)", file_path)
                cleared.append(file_path)
        return cleared

    def meta_correction_message(self, file_path: str, command: AgentCommand) -> str:
        entry = self.entries[file_path]
        remaining = max(self.max_meta_correction_attempts - entry.meta_correction_attempts, 0)
        label = _FAILURE_LABELS[command]
        latest_error = entry.errors[-1] if entry.errors else "(no error output captured)"
        return (
            f"## STUCK ON FILE: {file_path}\n\n"
            f"You have attempted to modify {file_path} {entry.modification_count} times "
            "with the same or similar error.\n\n"
            "### Expected Format\n"
            f"{expected_format_for(file_path)}\n\n"
            "### Issue Observed\n"
            f"File {file_path} has failed {entry.modification_count} times with {label} errors.\n\n"
            "### Latest Error\n"
            f"{latest_error}\n\n"
            "### Instructions\n"
            "1. Review the error message carefully\n"
            "2. Check that your file content has the correct format\n"
            "3. Change your approach instead of resubmitting the same content\n\n"
            f"You have {remaining} attempt(s) remaining before this workflow terminates."
        )

    def termination_error(self, file_path: str) -> str:
        entry = self.entries.get(file_path)
        latest = entry.errors[-1][:500] if entry is not None and entry.errors else "unknown"
        return (
            f"Workflow terminated: unable to fix {file_path} after "
            f"{self.total_attempts_before_termination} attempts. The agent is stuck in a loop. "
            f"Last error: {latest}"
        )

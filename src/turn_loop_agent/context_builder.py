from __future__ import annotations

import logging
from typing import Any

from .collaborators import FileReader
from .models import AgentCommand, PackageAuditContext, TurnResult

logger = logging.getLogger(__name__)

MAX_CONTEXT_FILES = 3
_MAX_DETAIL_CHARS = 4_000
_SECTION_BREAK = "\n\n---\n\n"

HUMAN_HINT_HEADER = "## Human Hint"


def _bullets(values: list[str]) -> str:
    return "\n".join(f"- {value}" for value in values) or "- None"


def _clip(text: str) -> str:
    if len(text) <= _MAX_DETAIL_CHARS:
        return text
    return text[:_MAX_DETAIL_CHARS] + "\n... (output truncated)"


class ContextBuilder:
    """Renders the natural-language codebase context handed to the decision provider.

    Consuming a pending human hint is the only state mutation performed here:
    ``build`` clears ``pending_human_hint`` on the state it is given.
    """

    def __init__(self, file_reader: FileReader | None = None) -> None:
        self.file_reader = file_reader

    def build(self, state: dict[str, Any]) -> str:
        last_turn = TurnResult.model_validate(state["last_turn"]) if state.get("last_turn") else None
        sections: list[str] = []

        if last_turn is not None and last_turn.meta_correction:
            sections.append(last_turn.meta_correction)

        sections.append(self._baseline(state, last_turn))

        if last_turn is not None and not last_turn.success:
            sections.append(self._failure_section(last_turn))
        elif last_turn is not None and last_turn.surface_details and last_turn.details:
            sections.append(f"## Attention Required\n{_clip(last_turn.details)}")

        hint = state.get("pending_human_hint")
        if hint:
            sections.append(f"{HUMAN_HINT_HEADER}\n{hint}")
            state["pending_human_hint"] = None

        return _SECTION_BREAK.join(section.strip() for section in sections if section.strip())

    def _baseline(self, state: dict[str, Any], last_turn: TurnResult | None) -> str:
        files_modified = list(state.get("files_modified", []))
        if not files_modified:
            audit_payload = state.get("initial_context")
            if audit_payload:
                audit = PackageAuditContext.model_validate(audit_payload)
                if audit.status == "incomplete":
                    return self._audit_baseline(audit)
            return "No files have been created yet."

        lines: list[str] = []
        if (
            last_turn is not None
            and last_turn.success
            and last_turn.command == AgentCommand.APPLY_CODE_CHANGES
        ):
            lines.append("Code has been changed successfully. You should now run validation checks.\n")
        lines.append(f"## Files Modified So Far ({len(files_modified)})")
        lines.append(_bullets(files_modified))
        return "\n".join(lines)

    @staticmethod
    def _audit_baseline(audit: PackageAuditContext) -> str:
        return (
            "## CURRENT PACKAGE STATE (from pre-flight audit)\n\n"
            f"Package is {audit.completion_percentage}% complete.\n\n"
            "### Existing Files (DO NOT REGENERATE):\n"
            f"{_bullets(audit.existing_files)}\n\n"
            "### Missing Components (TO BE CREATED):\n"
            f"{_bullets(audit.missing_files)}\n\n"
            "### Your Tasks:\n"
            f"{_bullets(audit.next_steps)}\n\n"
            "IMPORTANT: Focus ONLY on missing components. "
            "Do not regenerate existing files unless they have errors."
        )

    def _failure_section(self, turn: TurnResult) -> str:
        details = _clip(turn.details or "No details were reported.")
        command = turn.command
        if command == AgentCommand.RUN_LINT_CHECK:
            body = (
                "**LINT CHECK FAILED - YOU MUST FIX THESE ERRORS NOW**\n\n"
                "Your next action MUST be APPLY_CODE_CHANGES to fix the lint errors below.\n"
                "DO NOT run RUN_LINT_CHECK again - that will just show the same errors.\n\n"
                f"Lint Errors:\n{details}"
            )
        elif command == AgentCommand.RUN_BUILD:
            body = f"BUILD FAILED. You must fix these errors:\n\n{details}"
        elif command == AgentCommand.RUN_UNIT_TESTS:
            body = f"UNIT TESTS FAILED. Fix the failing tests or the code under test:\n\n{details}"
        elif command == AgentCommand.VALIDATE_PACKAGE_JSON:
            body = f"package.json validation failed: {details}. Please fix the package.json file."
        elif command == AgentCommand.CHECK_LICENSE_HEADERS:
            body = (
                f"License header check failed: {details}. "
                "Please add the required header to the affected files."
            )
        elif command == AgentCommand.PUBLISH_PACKAGE:
            body = f"Publishing failed: {details}. Please fix the issues before retrying."
        elif command == AgentCommand.APPLY_CODE_CHANGES:
            body = (
                "APPLY_CODE_CHANGES FAILED! Your file changes could not be applied.\n\n"
                f"{details}\n\n"
                "Check the file paths and content, then use APPLY_CODE_CHANGES again."
            )
        else:
            body = f"{command.value} failed: {details}"

        if turn.affected_files:
            body += f"\n\nFiles with errors: {', '.join(turn.affected_files)}"
        file_blocks = self._file_blocks(turn.affected_files[:MAX_CONTEXT_FILES])
        if file_blocks:
            body += "\n\n" + file_blocks
        return body

    def _file_blocks(self, file_paths: list[str]) -> str:
        if self.file_reader is None:
            return ""
        blocks: list[str] = []
        for file_path in file_paths:
            try:
                content = self.file_reader.read(file_path)
            except Exception as exc:  # noqa: BLE001 - missing context must not abort the turn.
                logger.warning("Could not fetch file %s for context: %s", file_path, exc)
                continue
            blocks.append(f"=== FILE: {file_path} ===\n{content}\n=== END {file_path} ===")
        return "\n\n".join(blocks)

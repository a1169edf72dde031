from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

CURRENT_PHASE_MAX_CHARS = 50


class AgentCommand(str, Enum):
    """Closed vocabulary of actions the decision provider may choose."""

    APPLY_CODE_CHANGES = "APPLY_CODE_CHANGES"
    AWAIT_DEPENDENCY = "AWAIT_DEPENDENCY"
    GATHER_CONTEXT_FOR_DEPENDENCY = "GATHER_CONTEXT_FOR_DEPENDENCY"
    VALIDATE_PACKAGE_JSON = "VALIDATE_PACKAGE_JSON"
    CHECK_LICENSE_HEADERS = "CHECK_LICENSE_HEADERS"
    RUN_BUILD = "RUN_BUILD"
    RUN_LINT_CHECK = "RUN_LINT_CHECK"
    RUN_UNIT_TESTS = "RUN_UNIT_TESTS"
    PUBLISH_PACKAGE = "PUBLISH_PACKAGE"


class FileAction(str, Enum):
    CREATE_OR_OVERWRITE = "CREATE_OR_OVERWRITE"
    DELETE = "DELETE"


class FileChange(BaseModel):
    """One file operation; the applier rejects paths that leave the package root."""

    path: str
    action: FileAction = FileAction.CREATE_OR_OVERWRITE
    content: str = ""


class AgentDecision(BaseModel):
    """One decision returned by the decision provider for the next turn."""

    command: AgentCommand
    files: list[FileChange] = Field(default_factory=list)
    package_name: str | None = None
    reasoning: str = ""


class ExecutorOutput(BaseModel):
    """Raw shape returned by build/lint/test/publish/license/package.json executors."""

    success: bool
    details: str = ""
    error_file_paths: list[str] = Field(default_factory=list)
    coverage: float | None = None


class ApplyChangesOutput(BaseModel):
    success: bool
    files_modified: list[str] = Field(default_factory=list)
    commit_hash: str | None = None
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    error_file_paths: list[str] = Field(default_factory=list)


class TurnResult(BaseModel):
    """Normalized outcome of one dispatched command."""

    command: AgentCommand
    success: bool
    details: str | None = None
    affected_files: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    # Set when a successful turn still carries details the agent must act on.
    surface_details: bool = False
    history: list[str] = Field(default_factory=list)
    meta_correction: str | None = None

    @field_validator("affected_files")
    @classmethod
    def _dedupe_affected(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(path for path in value if path))


class FileFailureEntry(BaseModel):
    modification_count: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list)
    meta_correction_sent: bool = False
    meta_correction_attempts: int = Field(default=0, ge=0)
    last_error_hash: str = ""


class FailureVerdict(BaseModel):
    meta_correction_message: str | None = None
    terminate: bool = False


class PackageAuditContext(BaseModel):
    """Pre-flight audit of a partially generated package."""

    status: str = "incomplete"
    completion_percentage: int = Field(default=0, ge=0, le=100)
    existing_files: list[str] = Field(default_factory=list)
    missing_files: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)


class PersistedLoopState(BaseModel):
    """Checkpointable projection of the loop state handed to the persistence collaborator."""

    session_id: str
    loop_count: int = Field(default=0, ge=0)
    files_modified: list[str] = Field(default_factory=list)
    action_history: list[str] = Field(default_factory=list)
    file_failure_tracker: dict[str, FileFailureEntry] = Field(default_factory=dict)
    pause_requested: bool = False
    pending_human_hint: str | None = None


class LoopInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    package_name: str
    package_path: str = "."
    workspace_root: str = "."
    session_id: str | None = None
    initial_context: PackageAuditContext | None = None
    resume_from: PersistedLoopState | None = None

    @field_validator("package_name")
    @classmethod
    def _package_name_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("package_name must be non-empty")
        return value.strip()


class LoopResult(BaseModel):
    """Terminal outcome of one controller run."""

    model_config = ConfigDict(frozen=True)

    success: bool
    files_modified: list[str]
    action_history: list[str]
    total_iterations: int
    error: str | None = None
    thread_id: str | None = None


class StateSnapshot(BaseModel):
    """Read-only view of the loop state returned by the state query."""

    loop_count: int
    current_phase: str
    files_modified: list[str]
    action_history_length: int
    file_failure_tracker: dict[str, FileFailureEntry]
    pause_requested: bool

    @classmethod
    def from_state(cls, state: dict[str, Any], *, pause_pending: bool = False) -> "StateSnapshot":
        history = list(state.get("action_history", []))
        current_phase = history[-1][:CURRENT_PHASE_MAX_CHARS] if history else "Starting"
        return cls(
            loop_count=int(state.get("loop_count", 0)),
            current_phase=current_phase,
            files_modified=list(state.get("files_modified", [])),
            action_history_length=len(history),
            file_failure_tracker={
                path: FileFailureEntry.model_validate(entry)
                for path, entry in dict(state.get("file_failure_tracker", {})).items()
            },
            pause_requested=bool(state.get("pause_requested", False)) or pause_pending,
        )

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .models import AgentDecision, ApplyChangesOutput, ExecutorOutput, FileChange, PersistedLoopState


class DecisionProvider(Protocol):
    """The agent brain: picks the next command from context and history."""

    def choose_command(self, context: str, action_history: list[str]) -> AgentDecision:
        ...


class CodeChangeApplier(Protocol):
    def apply(self, changes: list[FileChange], *, commit_message: str) -> ApplyChangesOutput:
        ...


class FileReader(Protocol):
    def read(self, file_path: str) -> str:
        ...


class PackageExecutor(Protocol):
    """Build, validation and publish steps run against the target package."""

    def validate_package_json(self) -> ExecutorOutput:
        ...

    def check_license_headers(self) -> ExecutorOutput:
        ...

    def run_build(self) -> ExecutorOutput:
        ...

    def run_lint(self) -> ExecutorOutput:
        ...

    def run_unit_tests(self) -> ExecutorOutput:
        ...

    def publish(self) -> ExecutorOutput:
        ...


class DependencyResolver(Protocol):
    def await_dependency(self, package_name: str) -> ExecutorOutput:
        ...

    def gather_context(self, package_name: str) -> ExecutorOutput:
        ...


class Notifier(Protocol):
    """Fire-and-forget escalation sink (chat webhook, log, ...)."""

    def notify_stuck(self, *, thread_id: str, error_message: str, action_history: list[str]) -> None:
        ...

    def notify_published(self, *, package_name: str, thread_id: str) -> None:
        ...


class StatePersistence(Protocol):
    def save(self, state: PersistedLoopState) -> None:
        ...

    def load(self, session_id: str) -> PersistedLoopState:
        ...


@dataclass
class Collaborators:
    """Every external collaborator the controller talks to during a run."""

    decision_provider: DecisionProvider
    applier: CodeChangeApplier
    executor: PackageExecutor
    file_reader: FileReader
    dependencies: DependencyResolver
    notifier: Notifier
    persistence: StatePersistence | None = None

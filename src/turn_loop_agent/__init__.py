from importlib.metadata import version

from .activities import WorkspaceActivities, extract_error_file_paths
from .collaborators import (
    CodeChangeApplier,
    Collaborators,
    DecisionProvider,
    DependencyResolver,
    FileReader,
    Notifier,
    PackageExecutor,
    StatePersistence,
)
from .context_builder import ContextBuilder
from .decision import LLMDecisionProvider
from .dispatcher import CommandDispatcher
from .failure_tracker import FileFailureTracker
from .fingerprint import fingerprint, normalize_error
from .loop import LoopController
from .models import (
    AgentCommand,
    AgentDecision,
    ApplyChangesOutput,
    ExecutorOutput,
    FailureVerdict,
    FileAction,
    FileChange,
    FileFailureEntry,
    LoopInput,
    LoopResult,
    PackageAuditContext,
    PersistedLoopState,
    StateSnapshot,
    TurnResult,
)
from .notifications import LogNotifier, WebhookNotifier, build_notifier
from .settings import RuntimeSettings
from .signals import SignalInbox
from .state_store import LoopStateStore


def get_version() -> str:
    try:
        return version("turn-loop-agent")
    except Exception:
        return "0.0.0"


__all__ = [
    "AgentCommand",
    "AgentDecision",
    "ApplyChangesOutput",
    "CodeChangeApplier",
    "Collaborators",
    "CommandDispatcher",
    "ContextBuilder",
    "DecisionProvider",
    "DependencyResolver",
    "ExecutorOutput",
    "FailureVerdict",
    "FileAction",
    "FileChange",
    "FileFailureEntry",
    "FileFailureTracker",
    "FileReader",
    "LLMDecisionProvider",
    "LogNotifier",
    "LoopController",
    "LoopInput",
    "LoopResult",
    "LoopStateStore",
    "Notifier",
    "PackageAuditContext",
    "PackageExecutor",
    "PersistedLoopState",
    "RuntimeSettings",
    "SignalInbox",
    "StatePersistence",
    "StateSnapshot",
    "TurnResult",
    "WebhookNotifier",
    "WorkspaceActivities",
    "build_notifier",
    "extract_error_file_paths",
    "fingerprint",
    "get_version",
    "normalize_error",
]

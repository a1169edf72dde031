from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, TypedDict

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, interrupt
from pydantic import ValidationError

from .collaborators import Collaborators
from .context_builder import ContextBuilder
from .dispatcher import CommandDispatcher
from .failure_tracker import FileFailureTracker
from .fingerprint import fingerprint
from .models import (
    AgentCommand,
    AgentDecision,
    FileFailureEntry,
    LoopInput,
    LoopResult,
    PersistedLoopState,
    StateSnapshot,
    TurnResult,
)
from .settings import RuntimeSettings
from .signals import SignalInbox

logger = logging.getLogger(__name__)

_RUNNING = "running"
_PUBLISHED = "published"
_PAUSED = "paused"
_EXHAUSTED = "exhausted"
_TERMINATED = "terminated"
_ABORTED = "aborted"


class LoopGraphState(TypedDict, total=False):
    thread_id: str
    package_name: str
    initial_context: dict[str, Any] | None
    resumed: bool
    loop_count: int
    files_modified: list[str]
    action_history: list[str]
    file_failure_tracker: dict[str, dict[str, Any]]
    pause_requested: bool
    pending_human_hint: str | None
    current_context: str
    decision: dict[str, Any] | None
    last_turn: dict[str, Any] | None
    consecutive_lint_failures: int
    last_lint_fingerprint: str | None
    escalation_deadline: str | None
    escalation_reason: str | None
    status: str
    error: str | None
    result: dict[str, Any] | None


class LoopController:
    """Turn-based build loop implemented as a checkpointed LangGraph StateGraph.

    Each turn runs begin_turn -> build_context -> decide -> dispatch -> record.
    Operator signals land in the controller's inbox and are only applied in
    begin_turn, so an in-flight command is never interrupted. Repeated identical
    lint failures park the thread on a LangGraph interrupt until a human hint,
    a pause, or the escalation deadline.

    One controller drives one run at a time; its inbox belongs to that run.
    """

    def __init__(
        self,
        collaborators: Collaborators,
        *,
        settings: RuntimeSettings | None = None,
        checkpointer: BaseCheckpointSaver | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.collaborators = collaborators
        self.inbox = SignalInbox()
        self.context_builder = ContextBuilder(collaborators.file_reader)
        self.dispatcher = CommandDispatcher(
            applier=collaborators.applier,
            executor=collaborators.executor,
            dependencies=collaborators.dependencies,
            min_test_coverage=self.settings.min_test_coverage,
        )
        self._conn: sqlite3.Connection | None = None
        if checkpointer is None:
            checkpoint_path = Path(self.settings.checkpoint_db)
            checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(checkpoint_path, check_same_thread=False)
            checkpointer = SqliteSaver(self._conn)
        self._checkpointer = checkpointer
        self._current_thread_id: str | None = None
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(LoopGraphState)
        graph.add_node("init", self._init_node)
        graph.add_node("begin_turn", self._begin_turn_node)
        graph.add_node("build_context", self._build_context_node)
        graph.add_node("decide", self._decide_node)
        graph.add_node("dispatch", self._dispatch_node)
        graph.add_node("record", self._record_node)
        graph.add_node("escalate", self._escalate_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "init")
        graph.add_edge("init", "begin_turn")
        graph.add_conditional_edges(
            "begin_turn",
            self._status_route,
            {
                "continue": "build_context",
                "end": "finalize",
            },
        )
        graph.add_edge("build_context", "decide")
        graph.add_conditional_edges(
            "decide",
            self._status_route,
            {
                "continue": "dispatch",
                "end": "finalize",
            },
        )
        graph.add_edge("dispatch", "record")
        graph.add_conditional_edges(
            "record",
            self._record_route,
            {
                "begin_turn": "begin_turn",
                "escalate": "escalate",
                "end": "finalize",
            },
        )
        graph.add_conditional_edges(
            "escalate",
            self._status_route,
            {
                "continue": "begin_turn",
                "end": "finalize",
            },
        )
        graph.add_edge("finalize", END)
        return graph

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _tracker(self, state: LoopGraphState) -> FileFailureTracker:
        return FileFailureTracker.from_state(
            dict(state.get("file_failure_tracker", {})),
            max_modifications_before_meta=self.settings.max_file_modifications_before_meta,
            max_meta_correction_attempts=self.settings.max_meta_correction_attempts,
        )

    def _init_node(self, state: LoopGraphState) -> dict[str, Any]:
        history = list(state.get("action_history", []))
        if state.get("resumed"):
            history.append(f"Workflow resumed from saved state after {int(state.get('loop_count', 0))} iterations.")
        else:
            history.append("Workflow started.")
            audit = state.get("initial_context")
            if audit and audit.get("status") == "incomplete":
                history.append(
                    f"Pre-flight audit: {audit.get('completion_percentage', 0)}% complete, "
                    f"{len(audit.get('existing_files', []))} files exist, "
                    f"{len(audit.get('missing_files', []))} missing"
                )
        logger.info("Starting build loop for %s (thread %s)", state.get("package_name"), state.get("thread_id"))
        return {"action_history": history, "status": _RUNNING}

    def _begin_turn_node(self, state: LoopGraphState) -> dict[str, Any]:
        signals = self.inbox.drain()
        pause_requested = bool(state.get("pause_requested")) or signals.pause
        pending_hint = state.get("pending_human_hint")
        if signals.hint is not None:
            if pending_hint:
                logger.info("New human hint replaces an unconsumed one")
            pending_hint = signals.hint
            logger.info("Received human hint: %s", signals.hint)
        if signals.pause and not state.get("pause_requested"):
            logger.info("Graceful pause requested, stopping at this turn boundary")

        updates: dict[str, Any] = {
            "pause_requested": pause_requested,
            "pending_human_hint": pending_hint,
        }
        if pause_requested:
            updates["status"] = _PAUSED
        elif int(state.get("loop_count", 0)) >= self.settings.max_loop_iterations:
            updates["status"] = _EXHAUSTED
        return updates

    def _build_context_node(self, state: LoopGraphState) -> dict[str, Any]:
        working: dict[str, Any] = {
            "files_modified": list(state.get("files_modified", [])),
            "last_turn": state.get("last_turn"),
            "initial_context": state.get("initial_context"),
            "pending_human_hint": state.get("pending_human_hint"),
        }
        hint = working["pending_human_hint"]
        context = self.context_builder.build(working)

        history = list(state.get("action_history", []))
        if hint:
            history.append(f"Human provided a hint: {hint}")
        logger.info(
            "Iteration %d/%d%s",
            int(state.get("loop_count", 0)) + 1,
            self.settings.max_loop_iterations,
            " (with human hint)" if hint else "",
        )
        return {
            "current_context": context,
            "pending_human_hint": working["pending_human_hint"],
            "action_history": history,
        }

    def _decide_node(self, state: LoopGraphState) -> dict[str, Any]:
        raw = self.collaborators.decision_provider.choose_command(
            state.get("current_context", ""),
            list(state.get("action_history", [])),
        )
        try:
            decision = raw if isinstance(raw, AgentDecision) else AgentDecision.model_validate(raw)
        except ValidationError as exc:
            logger.error("Decision provider returned an unknown command: %s", raw)
            return {
                "status": _TERMINATED,
                "error": f"Decision provider returned an unknown command: {raw!r} ({exc.error_count()} validation errors)",
            }
        logger.info("Next command: %s", decision.command.value)
        return {"decision": decision.model_dump(mode="json")}

    def _dispatch_node(self, state: LoopGraphState) -> dict[str, Any]:
        decision = AgentDecision.model_validate(state["decision"])
        result = self.dispatcher.dispatch(decision, dict(state))
        return {"last_turn": result.model_dump(mode="json")}

    def _record_node(self, state: LoopGraphState) -> dict[str, Any]:
        result = TurnResult.model_validate(state["last_turn"])
        tracker = self._tracker(state)
        history = list(state.get("action_history", [])) + list(result.history)
        files_modified = list(state.get("files_modified", []))
        status = _RUNNING
        error: str | None = None

        if result.success:
            for path in result.files_modified:
                if path not in files_modified:
                    files_modified.append(path)
            tracker.clear(result.affected_files)
        else:
            meta_messages: list[str] = []
            for path in result.affected_files:
                verdict = tracker.record(path, result)
                if verdict.terminate:
                    status = _TERMINATED
                    error = tracker.termination_error(path)
                    break
                if verdict.meta_correction_message:
                    meta_messages.append(verdict.meta_correction_message)
            if meta_messages:
                result.meta_correction = "\n\n---\n\n".join(meta_messages)

        loop_count = int(state.get("loop_count", 0)) + 1
        thread_id = state.get("thread_id", "")

        if status == _RUNNING and result.success and result.command == AgentCommand.PUBLISH_PACKAGE:
            status = _PUBLISHED
            logger.info("Package %s published after %d iterations", state.get("package_name"), loop_count)

        consecutive = int(state.get("consecutive_lint_failures", 0))
        last_lint_fingerprint = state.get("last_lint_fingerprint")
        escalation_deadline: str | None = None
        escalation_reason: str | None = None
        stuck_history: list[str] | None = None
        if result.command == AgentCommand.RUN_LINT_CHECK and not result.success:
            lint_fingerprint = fingerprint(result.details)
            consecutive = consecutive + 1 if lint_fingerprint == last_lint_fingerprint else 1
            last_lint_fingerprint = lint_fingerprint
            if consecutive >= self.settings.max_lint_fix_attempts and status == _RUNNING:
                escalation_reason = (
                    f"Lint check failed {consecutive} consecutive times with the same error: "
                    f"{(result.details or '')[:500]}"
                )
                deadline = datetime.now(UTC) + timedelta(seconds=self.settings.escalation_timeout_seconds)
                escalation_deadline = deadline.isoformat()
                logger.warning("Agent is stuck on lint errors, escalating to a human (thread %s)", thread_id)
                stuck_history = list(history)
                history.append("Agent is stuck. Notified human for help. Awaiting signal...")
        elif result.success and result.command in {AgentCommand.RUN_LINT_CHECK, AgentCommand.APPLY_CODE_CHANGES}:
            consecutive = 0
            last_lint_fingerprint = None

        updates: dict[str, Any] = {
            "last_turn": result.model_dump(mode="json"),
            "loop_count": loop_count,
            "files_modified": files_modified,
            "action_history": history,
            "file_failure_tracker": tracker.to_state(),
            "consecutive_lint_failures": consecutive,
            "last_lint_fingerprint": last_lint_fingerprint,
            "escalation_deadline": escalation_deadline,
            "escalation_reason": escalation_reason,
            "status": status,
            "error": error,
        }
        self._persist({**state, **updates})
        if stuck_history is not None:
            self._notify_safely(
                self.collaborators.notifier.notify_stuck,
                thread_id=thread_id,
                error_message=result.details or "",
                action_history=stuck_history,
            )
        if status == _PUBLISHED:
            self._notify_safely(
                self.collaborators.notifier.notify_published,
                package_name=state.get("package_name", ""),
                thread_id=thread_id,
            )
        return updates

    def _escalate_node(self, state: LoopGraphState) -> dict[str, Any]:
        response = interrupt(
            {
                "thread_id": state.get("thread_id"),
                "reason": state.get("escalation_reason"),
                "deadline": state.get("escalation_deadline"),
                "options": ["hint", "pause", "abort"],
            }
        )
        payload = response if isinstance(response, dict) else {}
        action = payload.get("action")
        hint = payload.get("hint")
        reason = state.get("escalation_reason") or "agent stuck"
        history = list(state.get("action_history", []))
        cleared = {"escalation_deadline": None, "escalation_reason": None}

        if action == "hint" and hint:
            history.append("Human responded to escalation with a hint.")
            return {
                **cleared,
                "pending_human_hint": hint,
                "pause_requested": bool(state.get("pause_requested")) or bool(payload.get("pause")),
                "consecutive_lint_failures": 0,
                "last_lint_fingerprint": None,
                "action_history": history,
            }
        if action == "pause":
            history.append("Graceful pause requested while awaiting human response.")
            return {**cleared, "pause_requested": True, "action_history": history}
        if action == "abort":
            error = f"Human escalation aborted by operator. Escalation reason: {reason}"
        else:
            error = (
                f"Human escalation timed out after {self.settings.escalation_timeout_seconds:g}s "
                f"with no response; treating as abort. Escalation reason: {reason}"
            )
        logger.error(error)
        history.append(error)
        return {**cleared, "status": _ABORTED, "error": error, "action_history": history}

    def _finalize_node(self, state: LoopGraphState) -> dict[str, Any]:
        status = state.get("status", _RUNNING)
        loop_count = int(state.get("loop_count", 0))
        files_modified = list(state.get("files_modified", []))
        thread_id = state.get("thread_id")

        if status == _PUBLISHED:
            error = None
        elif status == _PAUSED:
            error = (
                f"Workflow paused by user request. {loop_count} iterations completed, "
                f"{len(files_modified)} files modified. The workflow is resumable from its "
                f"saved state (session {thread_id})."
            )
            logger.info("Workflow paused by user request after %d iterations", loop_count)
        elif status == _EXHAUSTED:
            error = (
                f"Exceeded maximum loop iterations ({self.settings.max_loop_iterations}) "
                "without publishing the package."
            )
        else:
            error = state.get("error") or f"Workflow ended with status {status}"

        if error is not None and status != _PAUSED:
            logger.error("Workflow failed: %s", error)

        result = LoopResult(
            success=status == _PUBLISHED,
            files_modified=files_modified,
            action_history=list(state.get("action_history", [])),
            total_iterations=loop_count,
            error=error,
            thread_id=thread_id,
        )
        return {"result": result.model_dump(mode="json")}

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    @staticmethod
    def _status_route(state: LoopGraphState) -> str:
        return "continue" if state.get("status", _RUNNING) == _RUNNING else "end"

    @staticmethod
    def _record_route(state: LoopGraphState) -> str:
        if state.get("status", _RUNNING) != _RUNNING:
            return "end"
        if state.get("escalation_deadline"):
            return "escalate"
        return "begin_turn"

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    @staticmethod
    def _notify_safely(notify: Callable[..., None], **kwargs: Any) -> None:
        try:
            notify(**kwargs)
        except Exception as exc:  # noqa: BLE001 - notifications are fire-and-forget.
            logger.warning("Notification %s failed: %s", getattr(notify, "__name__", notify), exc)

    def _persist(self, state: dict[str, Any]) -> None:
        persistence = self.collaborators.persistence
        if persistence is None:
            return
        persistence.save(
            PersistedLoopState(
                session_id=state.get("thread_id", ""),
                loop_count=int(state.get("loop_count", 0)),
                files_modified=list(state.get("files_modified", [])),
                action_history=list(state.get("action_history", [])),
                file_failure_tracker={
                    path: FileFailureEntry.model_validate(entry)
                    for path, entry in dict(state.get("file_failure_tracker", {})).items()
                },
                pause_requested=bool(state.get("pause_requested")),
                pending_human_hint=state.get("pending_human_hint"),
            )
        )

    # ------------------------------------------------------------------
    # Public surface: run / resume / signals / query
    # ------------------------------------------------------------------

    def _config(self, thread_id: str) -> dict[str, Any]:
        return {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": thread_id},
        }

    @staticmethod
    def _initial_state(loop_input: LoopInput, thread_id: str) -> LoopGraphState:
        seed = loop_input.resume_from
        return {
            "thread_id": thread_id,
            "package_name": loop_input.package_name,
            "initial_context": (
                loop_input.initial_context.model_dump(mode="json") if loop_input.initial_context else None
            ),
            "resumed": seed is not None,
            "loop_count": seed.loop_count if seed else 0,
            "files_modified": list(seed.files_modified) if seed else [],
            "action_history": list(seed.action_history) if seed else [],
            "file_failure_tracker": (
                {path: entry.model_dump(mode="json") for path, entry in seed.file_failure_tracker.items()}
                if seed
                else {}
            ),
            # A pause ends one execution; a resumed execution starts unpaused.
            "pause_requested": False,
            "pending_human_hint": seed.pending_human_hint if seed else None,
            "current_context": "",
            "decision": None,
            "last_turn": None,
            "consecutive_lint_failures": 0,
            "last_lint_fingerprint": None,
            "escalation_deadline": None,
            "escalation_reason": None,
            "status": _RUNNING,
            "error": None,
            "result": None,
        }

    def run(self, loop_input: LoopInput) -> LoopResult:
        thread_id = loop_input.session_id or f"build-loop-{uuid.uuid4().hex[:8]}"
        return self._drive(thread_id, self._initial_state(loop_input, thread_id))

    def resume(self, thread_id: str, *, hint: str | None = None) -> LoopResult:
        """Continue a checkpointed thread, answering a pending escalation with ``hint`` if given."""
        snapshot = self.graph.get_state(self._config(thread_id))
        if not snapshot.values:
            raise ValueError(f"No checkpoint found for thread {thread_id}")
        if not snapshot.next:
            return LoopResult.model_validate(snapshot.values["result"])
        if hint is not None:
            self.inbox.post_hint(hint)
        if self._is_interrupted(snapshot):
            return self._drive(thread_id, Command(resume=self._await_escalation(snapshot.values)))
        logger.info("Resuming thread %s at %s", thread_id, ", ".join(snapshot.next))
        return self._drive(thread_id, None)

    def result(self, thread_id: str) -> LoopResult | None:
        values = self.graph.get_state(self._config(thread_id)).values
        payload = values.get("result") if values else None
        return LoopResult.model_validate(payload) if payload else None

    def _drive(self, thread_id: str, graph_input: Any) -> LoopResult:
        config = self._config(thread_id)
        self._current_thread_id = thread_id
        pending = graph_input
        while True:
            self.graph.invoke(pending, config=config)
            snapshot = self.graph.get_state(config)
            if not snapshot.next:
                break
            if self._is_interrupted(snapshot):
                pending = Command(resume=self._await_escalation(snapshot.values))
            else:
                pending = None
        return LoopResult.model_validate(self.graph.get_state(config).values["result"])

    @staticmethod
    def _is_interrupted(snapshot: Any) -> bool:
        return any(task.interrupts for task in snapshot.tasks)

    def _await_escalation(self, values: dict[str, Any]) -> dict[str, Any]:
        deadline_raw = values.get("escalation_deadline")
        if deadline_raw:
            remaining = (datetime.fromisoformat(deadline_raw) - datetime.now(UTC)).total_seconds()
        else:
            remaining = 0.0
        logger.warning(
            "Thread %s awaiting human response (%.0fs remaining)",
            values.get("thread_id"),
            max(remaining, 0.0),
        )
        signals = self.inbox.wait(remaining)
        if signals.hint:
            return {"action": "hint", "hint": signals.hint, "pause": signals.pause}
        if signals.pause:
            return {"action": "pause"}
        return {"action": "timeout"}

    def human_intervention(self, hint: str) -> None:
        """Signal: deliver a hint that the next context build will surface."""
        self.inbox.post_hint(hint)
        logger.info("Human intervention signal queued")

    def graceful_pause(self) -> None:
        """Signal: stop at the next turn boundary without cancelling the in-flight command."""
        self.inbox.post_pause()
        logger.info("Graceful pause signal queued")

    def get_state(self, thread_id: str | None = None) -> StateSnapshot:
        """Query: read-only snapshot of the loop state as of the last completed node."""
        target = thread_id or self._current_thread_id
        if target is None:
            raise ValueError("No thread_id given and no run has been started by this controller")
        values = self.graph.get_state(self._config(target)).values
        if not values:
            raise ValueError(f"No checkpoint found for thread {target}")
        return StateSnapshot.from_state(dict(values), pause_pending=self.inbox.pause_pending)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

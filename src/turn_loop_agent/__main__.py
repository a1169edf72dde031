"""Entry point for `python -m turn_loop_agent` and the `turn-loop` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import sqlite3
from pathlib import Path

from langgraph.checkpoint.sqlite import SqliteSaver

from turn_loop_agent import (
    Collaborators,
    LLMDecisionProvider,
    LoopController,
    LoopInput,
    LoopResult,
    LoopStateStore,
    StateSnapshot,
    WorkspaceActivities,
    build_notifier,
)
from turn_loop_agent.settings import RuntimeSettings

LOG_LEVEL_CHOICES = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Turn-based build loop for an LLM package agent")
    parser.add_argument("--log-level", default="INFO", choices=LOG_LEVEL_CHOICES, help="Logging verbosity")
    subcommands = parser.add_subparsers(dest="command", required=True)

    workspace = argparse.ArgumentParser(add_help=False)
    workspace.add_argument("--plan-file", type=Path, required=True, help="Markdown plan describing the package")
    workspace.add_argument("--workspace-root", type=Path, default=Path("."), help="Monorepo root (default: cwd)")
    workspace.add_argument("--package-path", default=".", help="Package directory relative to the workspace root")
    workspace.add_argument("--git-commit", action="store_true", help="Commit every applied change set")

    run = subcommands.add_parser("run", parents=[workspace], help="Start a new build loop")
    run.add_argument("--package-name", required=True, help="npm name of the package being built")
    run.add_argument("--session-id", default=None, help="Thread id to use (default: generated)")
    run.add_argument(
        "--resume-from-session",
        default=None,
        help="Seed the run from a loop state saved by an earlier session",
    )

    resume = subcommands.add_parser("resume", parents=[workspace], help="Continue a checkpointed thread")
    resume.add_argument("--thread-id", required=True)
    resume.add_argument("--hint", default=None, help="Human hint answering a pending escalation")

    state = subcommands.add_parser("state", help="Print the state snapshot of a thread as JSON")
    state.add_argument("--thread-id", required=True)
    return parser.parse_args(argv)


def build_controller(args: argparse.Namespace, settings: RuntimeSettings) -> LoopController:
    plan_file: Path = args.plan_file
    if not plan_file.is_file():
        raise FileNotFoundError(f"Plan file does not exist: {plan_file}")
    workspace_root = args.workspace_root.resolve()
    package_root = workspace_root / args.package_path
    if not package_root.is_dir():
        raise FileNotFoundError(f"Package directory does not exist: {package_root}")

    activities = WorkspaceActivities(package_root, settings=settings, git_commit=args.git_commit)
    collaborators = Collaborators(
        decision_provider=LLMDecisionProvider(
            plan_file.read_text(encoding="utf-8"),
            model_name=settings.model_name,
            env_dir=workspace_root,
        ),
        applier=activities,
        executor=activities,
        file_reader=activities,
        dependencies=activities,
        notifier=build_notifier(settings.notify_webhook_url),
        persistence=LoopStateStore(settings.state_store_path(Path.cwd())),
    )
    return LoopController(collaborators, settings=settings)


def read_snapshot(settings: RuntimeSettings, thread_id: str) -> StateSnapshot:
    checkpoint_path = settings.checkpoint_path(Path.cwd())
    if not checkpoint_path.is_file():
        raise FileNotFoundError(f"Checkpoint database does not exist: {checkpoint_path}")
    conn = sqlite3.connect(checkpoint_path, check_same_thread=False)
    try:
        checkpoint = SqliteSaver(conn).get({"configurable": {"thread_id": thread_id}})
    finally:
        conn.close()
    if checkpoint is None:
        raise ValueError(f"No checkpoint found for thread {thread_id}")
    return StateSnapshot.from_state(dict(checkpoint["channel_values"]))


def print_result(result: LoopResult) -> None:
    print(f"success={result.success}")
    print(f"thread_id={result.thread_id}")
    print(json.dumps(result.model_dump(mode="json"), indent=2))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2

    if args.command == "state":
        try:
            snapshot = read_snapshot(settings, args.thread_id)
        except (OSError, ValueError) as exc:
            logging.error("Unable to read state: %s", exc)
            return 1
        print(json.dumps(snapshot.model_dump(mode="json"), indent=2))
        return 0

    try:
        controller = build_controller(args, settings)
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("Unable to start the build loop: %s", exc)
        return 1

    try:
        if args.command == "run":
            resume_from = None
            if args.resume_from_session:
                resume_from = LoopStateStore(settings.state_store_path(Path.cwd())).load(args.resume_from_session)
            result = controller.run(
                LoopInput(
                    package_name=args.package_name,
                    package_path=args.package_path,
                    workspace_root=str(args.workspace_root),
                    session_id=args.session_id,
                    resume_from=resume_from,
                )
            )
        else:
            result = controller.resume(args.thread_id, hint=args.hint)
    except KeyboardInterrupt:
        logging.warning("Interrupted; the thread can be continued with `turn-loop resume`")
        return 130
    except Exception as exc:  # noqa: BLE001
        logging.exception("Build loop failed: %s", exc)
        return 1
    finally:
        controller.close()

    print_result(result)
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())

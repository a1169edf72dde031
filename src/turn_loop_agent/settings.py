from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

MAX_LOOP_ITERATIONS = 40
MIN_TEST_COVERAGE = 90
MAX_FILE_MODIFICATIONS_BEFORE_META = 3
MAX_META_CORRECTION_ATTEMPTS = 2
# Consecutive identical lint failures before a human is asked for help.
MAX_LINT_FIX_ATTEMPTS = 3
ESCALATION_TIMEOUT_SECONDS = 24 * 60 * 60

# Nodes executed per turn: begin_turn, build_context, decide, dispatch, record.
NODES_PER_TURN = 5

DEFAULT_LICENSE_HEADER = "/*\nCopyright (c) 2025 Bernier LLC"


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_loop_iterations: int = MAX_LOOP_ITERATIONS
    min_test_coverage: int = MIN_TEST_COVERAGE
    max_file_modifications_before_meta: int = MAX_FILE_MODIFICATIONS_BEFORE_META
    max_meta_correction_attempts: int = MAX_META_CORRECTION_ATTEMPTS
    max_lint_fix_attempts: int = MAX_LINT_FIX_ATTEMPTS
    escalation_timeout_seconds: float = ESCALATION_TIMEOUT_SECONDS
    model_name: str = "gpt-4o"
    state_store_root: str = "state_store"
    checkpoint_db: str = "state_store/checkpoints/build_loop.sqlite"
    notify_webhook_url: str = ""
    build_command: str = "yarn build"
    lint_command: str = "yarn lint"
    test_command: str = "yarn test --coverage"
    publish_command: str = "npm publish --access public"
    license_header: str = DEFAULT_LICENSE_HEADER
    recursion_limit: int = 1_000

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            max_loop_iterations=_get_env_count("LOOP_MAX_ITERATIONS", default=MAX_LOOP_ITERATIONS, minimum=1),
            min_test_coverage=_get_env_count("LOOP_MIN_TEST_COVERAGE", default=MIN_TEST_COVERAGE, minimum=0, maximum=100),
            max_file_modifications_before_meta=_get_env_count(
                "LOOP_MAX_FILE_MODIFICATIONS_BEFORE_META",
                default=MAX_FILE_MODIFICATIONS_BEFORE_META,
                minimum=1,
            ),
            max_meta_correction_attempts=_get_env_count(
                "LOOP_MAX_META_CORRECTION_ATTEMPTS",
                default=MAX_META_CORRECTION_ATTEMPTS,
                minimum=0,
            ),
            max_lint_fix_attempts=_get_env_count("LOOP_MAX_LINT_FIX_ATTEMPTS", default=MAX_LINT_FIX_ATTEMPTS, minimum=1),
            escalation_timeout_seconds=_get_env_float(
                "LOOP_ESCALATION_TIMEOUT_SECONDS",
                default=float(ESCALATION_TIMEOUT_SECONDS),
                minimum=0.0,
            ),
            model_name=os.getenv("LOOP_MODEL_NAME", "gpt-4o"),
            state_store_root=os.getenv("LOOP_STATE_STORE_ROOT", "state_store"),
            checkpoint_db=os.getenv("LOOP_CHECKPOINT_DB", "state_store/checkpoints/build_loop.sqlite"),
            notify_webhook_url=os.getenv("LOOP_NOTIFY_WEBHOOK_URL", ""),
            build_command=os.getenv("LOOP_BUILD_COMMAND", "yarn build"),
            lint_command=os.getenv("LOOP_LINT_COMMAND", "yarn lint"),
            test_command=os.getenv("LOOP_TEST_COMMAND", "yarn test --coverage"),
            publish_command=os.getenv("LOOP_PUBLISH_COMMAND", "npm publish --access public"),
            license_header=os.getenv("LOOP_LICENSE_HEADER", DEFAULT_LICENSE_HEADER).replace("\\n", "\n"),
            recursion_limit=_get_env_count("LOOP_RECURSION_LIMIT", default=1_000, minimum=NODES_PER_TURN),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("LOOP_MODEL_NAME must be non-empty")

        # -- Command validation --
        commands = {
            "LOOP_BUILD_COMMAND": self.build_command.strip(),
            "LOOP_LINT_COMMAND": self.lint_command.strip(),
            "LOOP_TEST_COMMAND": self.test_command.strip(),
            "LOOP_PUBLISH_COMMAND": self.publish_command.strip(),
        }
        for env_name, value in commands.items():
            if not value:
                raise ValueError(f"{env_name} must be non-empty")

        # -- Path validation --
        if not self.state_store_root.strip():
            raise ValueError("LOOP_STATE_STORE_ROOT must be non-empty")
        if not self.checkpoint_db.strip():
            raise ValueError("LOOP_CHECKPOINT_DB must be non-empty")

        # -- Loop bounds --
        minimum_recursion = self.max_loop_iterations * NODES_PER_TURN + 10
        if self.recursion_limit < minimum_recursion:
            raise ValueError(
                f"LOOP_RECURSION_LIMIT must be >= {minimum_recursion} for "
                f"{self.max_loop_iterations} iterations, got: {self.recursion_limit}"
            )
        if not self.license_header.strip():
            raise ValueError("LOOP_LICENSE_HEADER must be non-empty")

        return RuntimeSettings(
            max_loop_iterations=self.max_loop_iterations,
            min_test_coverage=self.min_test_coverage,
            max_file_modifications_before_meta=self.max_file_modifications_before_meta,
            max_meta_correction_attempts=self.max_meta_correction_attempts,
            max_lint_fix_attempts=self.max_lint_fix_attempts,
            escalation_timeout_seconds=self.escalation_timeout_seconds,
            model_name=model_name,
            state_store_root=self.state_store_root,
            checkpoint_db=self.checkpoint_db,
            notify_webhook_url=self.notify_webhook_url.strip(),
            build_command=commands["LOOP_BUILD_COMMAND"],
            lint_command=commands["LOOP_LINT_COMMAND"],
            test_command=commands["LOOP_TEST_COMMAND"],
            publish_command=commands["LOOP_PUBLISH_COMMAND"],
            license_header=self.license_header,
            recursion_limit=self.recursion_limit,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def checkpoint_path(self, repo_root: Path) -> Path:
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else repo_root / path


def _get_env_count(name: str, default: int, minimum: int, maximum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if maximum is not None and parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    return parsed

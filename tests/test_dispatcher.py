import pytest

from turn_loop_agent.dispatcher import CommandDispatcher, coverage_too_low_message
from turn_loop_agent.failure_tracker import FileFailureTracker
from turn_loop_agent.models import (
    AgentCommand,
    AgentDecision,
    ApplyChangesOutput,
    ExecutorOutput,
    FileChange,
)


class RecordingApplier:
    def __init__(self, output: ApplyChangesOutput) -> None:
        self.output = output
        self.calls: list[tuple[list[FileChange], str]] = []

    def apply(self, changes, *, commit_message):
        self.calls.append((list(changes), commit_message))
        return self.output


class StubExecutor:
    def __init__(self, **outputs: ExecutorOutput) -> None:
        self.outputs = outputs

    def _output(self, name: str) -> ExecutorOutput:
        return self.outputs.get(name, ExecutorOutput(success=True, details=f"{name} ok"))

    def validate_package_json(self):
        return self._output("validate_package_json")

    def check_license_headers(self):
        return self._output("check_license_headers")

    def run_build(self):
        return self._output("run_build")

    def run_lint(self):
        return self._output("run_lint")

    def run_unit_tests(self):
        return self._output("run_unit_tests")

    def publish(self):
        return self._output("publish")


class StubDependencies:
    def __init__(self) -> None:
        self.awaited: list[str] = []

    def await_dependency(self, package_name):
        self.awaited.append(package_name)
        return ExecutorOutput(success=True, details=f"{package_name} available")

    def gather_context(self, package_name):
        return ExecutorOutput(success=True, details=f"Package: {package_name}\nVersion: 1.0.0")


def _dispatcher(applier=None, executor=None, dependencies=None) -> CommandDispatcher:
    return CommandDispatcher(
        applier=applier or RecordingApplier(ApplyChangesOutput(success=True)),
        executor=executor or StubExecutor(),
        dependencies=dependencies or StubDependencies(),
        min_test_coverage=90,
    )


def test_coverage_too_low_message_format() -> None:
    assert coverage_too_low_message(75, 90) == (
        "Test coverage too low (75%). Please add more tests to meet the 90% requirement."
    )


def test_apply_success_reports_modified_files_and_commit_message() -> None:
    applier = RecordingApplier(
        ApplyChangesOutput(success=True, files_modified=["src/a.ts", "package.json"], commit_hash="abcdef1234")
    )
    decision = AgentDecision(
        command=AgentCommand.APPLY_CODE_CHANGES,
        files=[FileChange(path="src/a.ts", content="x"), FileChange(path="package.json", content="{}")],
    )

    result = _dispatcher(applier=applier).dispatch(decision, {"loop_count": 4})

    assert result.success
    assert result.files_modified == ["src/a.ts", "package.json"]
    assert result.history[0] == "Action: Applying 2 file operations."
    assert "commit abcdef1" in result.history[1]
    assert applier.calls[0][1].startswith("feat: apply code changes (iteration 5)")


def test_apply_failure_blames_error_paths_or_attempted_paths() -> None:
    applier = RecordingApplier(ApplyChangesOutput(success=False, error="disk full"))
    decision = AgentDecision(
        command=AgentCommand.APPLY_CODE_CHANGES,
        files=[FileChange(path="src/a.ts", content="x")],
    )

    result = _dispatcher(applier=applier).dispatch(decision, {"loop_count": 0})

    assert not result.success
    assert result.affected_files == ["src/a.ts"]
    assert result.details == "disk full"


def test_apply_without_files_fails_without_calling_applier() -> None:
    applier = RecordingApplier(ApplyChangesOutput(success=True))
    result = _dispatcher(applier=applier).dispatch(
        AgentDecision(command=AgentCommand.APPLY_CODE_CHANGES), {"loop_count": 0}
    )
    assert not result.success
    assert applier.calls == []


def test_low_coverage_is_a_soft_failure_that_skips_the_tracker() -> None:
    executor = StubExecutor(run_unit_tests=ExecutorOutput(success=True, details="All tests passed.", coverage=75))
    tracker = FileFailureTracker()

    result = _dispatcher(executor=executor).dispatch(AgentDecision(command=AgentCommand.RUN_UNIT_TESTS), {})
    if not result.success:
        for path in result.affected_files:
            tracker.record(path, result)

    assert result.success is True
    assert result.surface_details is True
    assert result.details == "Test coverage too low (75%). Please add more tests to meet the 90% requirement."
    assert any("below the required 90%" in line for line in result.history)
    assert len(tracker) == 0


def test_sufficient_coverage_passes_plainly() -> None:
    executor = StubExecutor(run_unit_tests=ExecutorOutput(success=True, details="All tests passed.", coverage=95))
    result = _dispatcher(executor=executor).dispatch(AgentDecision(command=AgentCommand.RUN_UNIT_TESTS), {})
    assert result.success
    assert not result.surface_details


def test_lint_failure_carries_error_files() -> None:
    executor = StubExecutor(
        run_lint=ExecutorOutput(success=False, details="src/a.ts:1:1 error", error_file_paths=["src/a.ts", "src/a.ts"])
    )
    result = _dispatcher(executor=executor).dispatch(AgentDecision(command=AgentCommand.RUN_LINT_CHECK), {})
    assert not result.success
    assert result.affected_files == ["src/a.ts"]
    assert result.history[-1].startswith("Result: Lint check failed.")


def test_dependency_commands_require_package_name() -> None:
    dependencies = StubDependencies()
    dispatcher = _dispatcher(dependencies=dependencies)

    missing = dispatcher.dispatch(AgentDecision(command=AgentCommand.AWAIT_DEPENDENCY), {})
    awaited = dispatcher.dispatch(
        AgentDecision(command=AgentCommand.AWAIT_DEPENDENCY, package_name="@acme/core"), {}
    )
    gathered = dispatcher.dispatch(
        AgentDecision(command=AgentCommand.GATHER_CONTEXT_FOR_DEPENDENCY, package_name="@acme/core"), {}
    )

    assert not missing.success
    assert awaited.success and not awaited.surface_details
    assert dependencies.awaited == ["@acme/core"]
    assert gathered.surface_details
    assert "Version: 1.0.0" in gathered.details


@pytest.mark.parametrize(
    "command",
    [
        AgentCommand.VALIDATE_PACKAGE_JSON,
        AgentCommand.CHECK_LICENSE_HEADERS,
        AgentCommand.RUN_BUILD,
        AgentCommand.PUBLISH_PACKAGE,
    ],
)
def test_every_command_has_a_handler(command: AgentCommand) -> None:
    result = _dispatcher().dispatch(AgentDecision(command=command), {})
    assert result.command == command
    assert result.success
    assert result.history

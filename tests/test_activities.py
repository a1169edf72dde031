import json
import shlex
import sys
from pathlib import Path

import pytest

from turn_loop_agent.activities import (
    CommandFailed,
    WorkspaceActivities,
    extract_error_file_paths,
    sanitize_file_content,
)
from turn_loop_agent.models import FileAction, FileChange
from turn_loop_agent.settings import DEFAULT_LICENSE_HEADER, RuntimeSettings

PYTHON = shlex.quote(sys.executable)
COMPLETE_PACKAGE_JSON = {
    "name": "@acme/widgets",
    "version": "1.0.0",
    "description": "Widgets",
    "main": "dist/index.js",
    "types": "dist/index.d.ts",
    "author": "Acme",
    "license": "UNLICENSED",
    "files": ["dist"],
    "publishConfig": {"access": "restricted"},
}


def _script(code: str) -> str:
    return f"{PYTHON} -c {shlex.quote(code)}"


@pytest.fixture
def package_root(tmp_path: Path) -> Path:
    root = tmp_path / "pkg"
    root.mkdir()
    return root


def test_apply_writes_and_deletes_files(package_root: Path) -> None:
    (package_root / "old.ts").write_text("stale", encoding="utf-8")
    activities = WorkspaceActivities(package_root, settings=RuntimeSettings())

    output = activities.apply(
        [
            FileChange(path="src/index.ts", content="export const x = 1;\n"),
            FileChange(path="old.ts", action=FileAction.DELETE),
            FileChange(path="missing.ts", action=FileAction.DELETE),
        ],
        commit_message="feat: test",
    )

    assert output.success
    assert output.files_modified == ["src/index.ts", "old.ts", "missing.ts"]
    assert (package_root / "src" / "index.ts").read_text(encoding="utf-8") == "export const x = 1;\n"
    assert not (package_root / "old.ts").exists()
    assert output.warnings == ["missing.ts did not exist; nothing to delete"]
    assert activities.read("src/index.ts") == "export const x = 1;\n"


def test_apply_strips_code_fences_from_json(package_root: Path) -> None:
    activities = WorkspaceActivities(package_root, settings=RuntimeSettings())
    output = activities.apply(
        [FileChange(path="package.json", content='```json\n{"name": "x"}\n```')],
        commit_message="feat: test",
    )
    assert output.success
    assert json.loads((package_root / "package.json").read_text(encoding="utf-8")) == {"name": "x"}
    assert output.warnings == ["Stripped markdown code fence from package.json"]


def test_sanitize_leaves_non_json_alone() -> None:
    content = "```ts\nconst x = 1;\n```"
    assert sanitize_file_content("src/index.ts", content) == (content, None)


def test_validate_package_json_reports_missing_fields(package_root: Path) -> None:
    activities = WorkspaceActivities(package_root, settings=RuntimeSettings())

    absent = activities.validate_package_json()
    (package_root / "package.json").write_text(json.dumps({"name": "@acme/widgets", "version": "1.0.0"}))
    partial = activities.validate_package_json()
    (package_root / "package.json").write_text(json.dumps(COMPLETE_PACKAGE_JSON))
    complete = activities.validate_package_json()

    assert not absent.success
    assert absent.details.startswith("Failed to validate package.json")
    assert not partial.success
    assert partial.details == "Missing required fields: description, main, types, author, license, files, publishConfig"
    assert partial.error_file_paths == ["package.json"]
    assert complete.success
    assert complete.details == "package.json meets all requirements."


def test_license_headers(package_root: Path) -> None:
    activities = WorkspaceActivities(package_root, settings=RuntimeSettings())
    skipped = activities.check_license_headers()

    src = package_root / "src"
    src.mkdir()
    (src / "good.ts").write_text(DEFAULT_LICENSE_HEADER + "\n*/\nexport {};\n", encoding="utf-8")
    (src / "bad.ts").write_text("export {};\n", encoding="utf-8")
    (src / "notes.md").write_text("no header needed", encoding="utf-8")
    failing = activities.check_license_headers()

    assert skipped.success
    assert "skipped" in skipped.details
    assert not failing.success
    assert failing.details == "Files missing license header: src/bad.ts"
    assert failing.error_file_paths == ["src/bad.ts"]


def test_apply_rejects_paths_outside_the_package(package_root: Path) -> None:
    activities = WorkspaceActivities(package_root, settings=RuntimeSettings())

    for path in ("../outside.ts", str(package_root.parent / "absolute.ts")):
        output = activities.apply([FileChange(path=path, content="export {};\n")], commit_message="feat: test")
        assert not output.success
        assert output.error_file_paths == [path]
        assert "Path escapes the package root" in output.error

    assert not (package_root.parent / "outside.ts").exists()
    assert not (package_root.parent / "absolute.ts").exists()


def test_license_headers_flags_unreadable_files(package_root: Path) -> None:
    src = package_root / "src"
    src.mkdir()
    (src / "good.ts").write_text(DEFAULT_LICENSE_HEADER + "\n*/\nexport {};\n", encoding="utf-8")
    (src / "binary.ts").write_bytes(b"\xff\xfe\x00garbage")

    output = WorkspaceActivities(package_root, settings=RuntimeSettings()).check_license_headers()

    assert not output.success
    assert output.error_file_paths == ["src/binary.ts"]


def test_unit_tests_parse_coverage(package_root: Path) -> None:
    settings = RuntimeSettings(test_command=_script("print('Coverage: 87%')"))
    output = WorkspaceActivities(package_root, settings=settings).run_unit_tests()
    assert output.success
    assert output.coverage == 87


def test_unit_tests_default_and_failure_coverage(package_root: Path) -> None:
    passing = WorkspaceActivities(
        package_root, settings=RuntimeSettings(test_command=_script("print('ok')"))
    ).run_unit_tests()
    failing = WorkspaceActivities(
        package_root,
        settings=RuntimeSettings(test_command=_script("import sys; print('FAIL src/a.test.ts:4'); sys.exit(1)")),
    ).run_unit_tests()

    assert passing.coverage == 90
    assert not failing.success
    assert failing.coverage == 0
    assert failing.error_file_paths == ["src/a.test.ts"]


def test_lint_failure_extracts_files(package_root: Path) -> None:
    settings = RuntimeSettings(
        lint_command=_script("import sys; print('src/index.ts:3:7 error no-unused-vars'); sys.exit(1)")
    )
    output = WorkspaceActivities(package_root, settings=settings).run_lint()
    assert not output.success
    assert "no-unused-vars" in output.details
    assert output.error_file_paths == ["src/index.ts"]


def test_missing_executable_is_a_failed_build(package_root: Path) -> None:
    settings = RuntimeSettings(build_command="definitely-not-an-installed-binary --flag")
    output = WorkspaceActivities(package_root, settings=settings).run_build()
    assert not output.success
    assert "Executable not available" in output.details


def test_extract_error_file_paths_patterns() -> None:
    output = "\n".join(
        [
            "src/index.ts(3,5): error TS2304: Cannot find name 'foo'.",
            "/work/pkg/src/client.ts:1:1 Missing semicolon",
            "node_modules/dep/index.js:10:2 warning",
            "Error in lib/util.js",
        ]
    )
    assert extract_error_file_paths(output, Path("/work/pkg")) == [
        "src/client.ts",
        "src/index.ts",
        "lib/util.js",
    ]


def test_gather_context_formats_registry_metadata(package_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    activities = WorkspaceActivities(package_root, settings=RuntimeSettings())
    payload = {"name": "@acme/core", "version": "2.1.0", "description": "Core", "main": "index.js"}
    monkeypatch.setattr(activities, "_run", lambda command, cwd=None: json.dumps(payload))

    output = activities.gather_context("@acme/core")

    assert output.success
    assert output.details.splitlines() == [
        "Package: @acme/core",
        "Version: 2.1.0",
        "Description: Core",
        "Main: index.js",
        "Types: No types",
    ]


def test_await_dependency_gives_up_after_polls(package_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    activities = WorkspaceActivities(
        package_root,
        settings=RuntimeSettings(),
        dependency_poll_attempts=2,
        dependency_poll_interval_seconds=0,
    )
    calls: list[list[str]] = []

    def _missing(command, cwd=None):
        calls.append(list(command))
        raise CommandFailed("npm view", 1, "E404 Not Found")

    monkeypatch.setattr(activities, "_run", _missing)
    output = activities.await_dependency("@acme/core")

    assert not output.success
    assert "not found in npm registry after 2 checks" in output.details
    assert len(calls) == 2

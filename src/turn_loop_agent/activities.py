from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
import time
from pathlib import Path
from typing import Sequence

from .models import ApplyChangesOutput, ExecutorOutput, FileAction, FileChange
from .settings import RuntimeSettings
from .state_store import atomic_write_text

logger = logging.getLogger(__name__)

REQUIRED_PACKAGE_JSON_FIELDS = (
    "name",
    "version",
    "description",
    "main",
    "types",
    "author",
    "license",
    "files",
    "publishConfig",
)
DEFAULT_COVERAGE_WHEN_UNREPORTED = 90.0
NPM_REGISTRY = "https://registry.npmjs.org"

_COVERAGE_PATTERN = re.compile(r"Coverage: (\d+(?:\.\d+)?)%")
_CODE_SUFFIXES = r"(?:ts|tsx|js|jsx|json)"
_ERROR_PATH_PATTERNS = (
    re.compile(rf"([^\s:()]+\.{_CODE_SUFFIXES}):\d+"),
    re.compile(rf"([^\s:()]+\.{_CODE_SUFFIXES})\(\d+,\d+\)"),
    re.compile(rf"(?:\bin|File:?)\s+([^\s:()]+\.{_CODE_SUFFIXES})", re.IGNORECASE),
    re.compile(rf"((?:src|lib|test|tests)/[^\s:()]+\.{_CODE_SUFFIXES})"),
)
_JSON_FENCE = re.compile(r"^\s*```(?:json)?\s*\n(.*?)\n\s*```\s*$", re.DOTALL)


class CommandFailed(RuntimeError):
    """A package command exited non-zero; ``output`` holds what it printed."""

    def __init__(self, command: str, returncode: int, output: str) -> None:
        super().__init__(f"{command} exited with {returncode}")
        self.command = command
        self.returncode = returncode
        self.output = output


def extract_error_file_paths(output: str, package_root: Path | None = None) -> list[str]:
    """Pull package-relative source paths out of compiler, lint or test output."""
    found: dict[str, None] = {}
    for pattern in _ERROR_PATH_PATTERNS:
        for match in pattern.finditer(output):
            candidate = match.group(1).removeprefix("./")
            if package_root is not None and Path(candidate).is_absolute():
                try:
                    candidate = Path(candidate).resolve().relative_to(package_root.resolve()).as_posix()
                except ValueError:
                    continue
            if "node_modules/" in candidate:
                continue
            found[candidate] = None
    return list(found)


def sanitize_file_content(path: str, content: str) -> tuple[str, str | None]:
    """Strip a markdown fence wrapped around JSON content; returns (content, warning)."""
    if not path.endswith(".json"):
        return content, None
    match = _JSON_FENCE.match(content)
    if match is None:
        return content, None
    return match.group(1) + "\n", f"Stripped markdown code fence from {path}"


class WorkspaceActivities:
    """Local-filesystem implementation of the applier, file reader, executor and dependency roles."""

    def __init__(
        self,
        package_root: Path | str,
        *,
        settings: RuntimeSettings | None = None,
        git_commit: bool = False,
        command_timeout_seconds: float = 600.0,
        dependency_poll_attempts: int = 10,
        dependency_poll_interval_seconds: float = 30.0,
    ) -> None:
        self.package_root = Path(package_root).resolve()
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.git_commit = git_commit
        self.command_timeout_seconds = command_timeout_seconds
        self.dependency_poll_attempts = max(dependency_poll_attempts, 1)
        self.dependency_poll_interval_seconds = dependency_poll_interval_seconds

    # -- process helpers ----------------------------------------------------

    def _run(self, command: str | Sequence[str], *, cwd: Path | None = None) -> str:
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        display = " ".join(argv)
        logger.info("Running %s in %s", display, cwd or self.package_root)
        try:
            process = subprocess.run(  # noqa: S603 - commands come from runtime settings.
                argv,
                cwd=cwd or self.package_root,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.command_timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise CommandFailed(display, 127, f"Executable not available: {argv[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandFailed(display, -1, f"{display} timed out after {self.command_timeout_seconds:g}s") from exc
        output = "\n".join(part for part in (process.stdout.strip(), process.stderr.strip()) if part)
        if process.returncode != 0:
            raise CommandFailed(display, process.returncode, output or f"{display} failed")
        return output

    def _resolve(self, relative_path: str) -> Path:
        if not relative_path.strip():
            raise ValueError("File path must be non-empty")
        target = (self.package_root / relative_path).resolve()
        if target != self.package_root and self.package_root not in target.parents:
            raise ValueError(f"Path escapes the package root: {relative_path}")
        return target

    # -- CodeChangeApplier --------------------------------------------------

    def apply(self, changes: list[FileChange], *, commit_message: str) -> ApplyChangesOutput:
        modified: list[str] = []
        warnings: list[str] = []
        for change in changes:
            try:
                target = self._resolve(change.path)
                if change.action == FileAction.DELETE:
                    if target.exists():
                        target.unlink()
                    else:
                        warnings.append(f"{change.path} did not exist; nothing to delete")
                else:
                    content, warning = sanitize_file_content(change.path, change.content)
                    if warning:
                        logger.warning(warning)
                        warnings.append(warning)
                    atomic_write_text(target, content)
            except (OSError, ValueError) as exc:
                logger.error("Failed to apply %s to %s: %s", change.action.value, change.path, exc)
                return ApplyChangesOutput(
                    success=False,
                    files_modified=modified,
                    warnings=warnings,
                    error=f"Failed to apply {change.action.value} to {change.path}: {exc}",
                    error_file_paths=[change.path],
                )
            modified.append(change.path)

        commit_hash: str | None = None
        if self.git_commit and modified:
            try:
                commit_hash = self._commit(modified, commit_message)
            except CommandFailed as exc:
                error_files = extract_error_file_paths(exc.output, self.package_root)
                ours = [path for path in error_files if path in modified]
                return ApplyChangesOutput(
                    success=False,
                    files_modified=modified,
                    warnings=warnings,
                    error=f"Git commit failed: {exc.output}",
                    error_file_paths=ours or modified,
                )
        logger.info("Applied %d file operations", len(modified))
        return ApplyChangesOutput(success=True, files_modified=modified, commit_hash=commit_hash, warnings=warnings)

    def _commit(self, paths: list[str], message: str) -> str:
        self._run(["git", "add", "-A", "--", *paths])
        self._run(["git", "commit", "-m", message])
        return self._run(["git", "rev-parse", "HEAD"]).strip()

    # -- FileReader ---------------------------------------------------------

    def read(self, file_path: str) -> str:
        return self._resolve(file_path).read_text(encoding="utf-8")

    # -- PackageExecutor ----------------------------------------------------

    def validate_package_json(self) -> ExecutorOutput:
        path = self.package_root / "package.json"
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            return ExecutorOutput(
                success=False,
                details=f"Failed to validate package.json: {exc}",
                error_file_paths=["package.json"],
            )
        if not isinstance(payload, dict):
            return ExecutorOutput(
                success=False,
                details="package.json must contain a JSON object",
                error_file_paths=["package.json"],
            )
        missing = [name for name in REQUIRED_PACKAGE_JSON_FIELDS if not payload.get(name)]
        if missing:
            return ExecutorOutput(
                success=False,
                details=f"Missing required fields: {', '.join(missing)}",
                error_file_paths=["package.json"],
            )
        return ExecutorOutput(success=True, details="package.json meets all requirements.")

    def check_license_headers(self) -> ExecutorOutput:
        src = self.package_root / "src"
        if not src.is_dir():
            logger.warning("License header check skipped, %s not found", src)
            return ExecutorOutput(success=True, details="License header check skipped (src directory not found)")
        missing: list[str] = []
        for path in sorted(src.glob("*.ts")):
            relative = path.relative_to(self.package_root).as_posix()
            try:
                has_header = path.read_text(encoding="utf-8").startswith(self.settings.license_header)
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Could not read %s for the license header check: %s", relative, exc)
                has_header = False
            if not has_header:
                missing.append(relative)
        if missing:
            return ExecutorOutput(
                success=False,
                details=f"Files missing license header: {', '.join(missing)}",
                error_file_paths=missing,
            )
        return ExecutorOutput(success=True, details="All source files have the correct license header.")

    def _checked_command(self, command: str, *, passed: str) -> ExecutorOutput:
        try:
            output = self._run(command)
        except CommandFailed as exc:
            logger.warning("%s failed", exc.command)
            return ExecutorOutput(
                success=False,
                details=exc.output,
                error_file_paths=extract_error_file_paths(exc.output, self.package_root),
            )
        return ExecutorOutput(success=True, details=f"{passed}\n{output}".strip())

    def run_build(self) -> ExecutorOutput:
        return self._checked_command(self.settings.build_command, passed="Build passed.")

    def run_lint(self) -> ExecutorOutput:
        return self._checked_command(self.settings.lint_command, passed="Linting passed.")

    def run_unit_tests(self) -> ExecutorOutput:
        try:
            output = self._run(self.settings.test_command)
        except CommandFailed as exc:
            return ExecutorOutput(
                success=False,
                details=exc.output,
                coverage=0.0,
                error_file_paths=extract_error_file_paths(exc.output, self.package_root),
            )
        match = _COVERAGE_PATTERN.search(output)
        coverage = float(match.group(1)) if match else DEFAULT_COVERAGE_WHEN_UNREPORTED
        return ExecutorOutput(success=True, details="All tests passed.", coverage=coverage)

    def publish(self) -> ExecutorOutput:
        try:
            output = self._run(self.settings.publish_command)
        except CommandFailed as exc:
            return ExecutorOutput(success=False, details=exc.output)
        return ExecutorOutput(success=True, details=f"Package published successfully. {output}".strip())

    # -- DependencyResolver -------------------------------------------------

    def await_dependency(self, package_name: str) -> ExecutorOutput:
        command = ["npm", "view", package_name, "version", f"--registry={NPM_REGISTRY}"]
        last_error = ""
        for attempt in range(1, self.dependency_poll_attempts + 1):
            try:
                version = self._run(command).strip()
            except CommandFailed as exc:
                last_error = exc.output
                logger.info(
                    "Dependency %s not published yet (attempt %d/%d)",
                    package_name,
                    attempt,
                    self.dependency_poll_attempts,
                )
                if attempt < self.dependency_poll_attempts:
                    time.sleep(self.dependency_poll_interval_seconds)
                continue
            return ExecutorOutput(success=True, details=f"Dependency {package_name} is available (version {version}).")
        return ExecutorOutput(
            success=False,
            details=(
                f"Package {package_name} not found in npm registry after "
                f"{self.dependency_poll_attempts} checks. {last_error}"
            ).strip(),
        )

    def gather_context(self, package_name: str) -> ExecutorOutput:
        try:
            output = self._run(["npm", "view", package_name, f"--registry={NPM_REGISTRY}", "--json"])
            data = json.loads(output)
        except (CommandFailed, json.JSONDecodeError) as exc:
            return ExecutorOutput(success=False, details=f"Could not gather context for {package_name}: {exc}")
        context = "\n".join(
            [
                f"Package: {data.get('name', package_name)}",
                f"Version: {data.get('version', 'unknown')}",
                f"Description: {data.get('description') or 'No description'}",
                f"Main: {data.get('main') or 'No main file'}",
                f"Types: {data.get('types') or 'No types'}",
            ]
        )
        return ExecutorOutput(success=True, details=context)

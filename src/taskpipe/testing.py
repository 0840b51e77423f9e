"""Decide whether a change needs tests, find the project's test commands and run them.

Trigger detection is an ordered list of named predicates over
``(changed_files, diff)``; adding a trigger means appending a
:class:`TestTrigger`, not editing the decision logic.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from taskpipe.defaults import TIMEOUT_DEFAULTS
from taskpipe.models import (
    TEST_TYPES,
    CodeStyleProfile,
    TestCommands,
    TestFailure,
    TestRunResult,
    TestSummary,
)

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 5 * 1024 * 1024
_READ_CHUNK_BYTES = 64 * 1024
_READER_JOIN_SECONDS = 5
LOG_TAIL_LINES = 50
LOG_SNIPPET_MAX_CHARS = 3000
FAILURE_MESSAGE_MAX_CHARS = 200

# ── Triggers ─────────────────────────────────────────────────────────

_API_PATH_PATTERNS = [
    re.compile(r"route\.(ts|js)"),
    re.compile(r"routes?/"),
    re.compile(r"controller"),
    re.compile(r"api/"),
    re.compile(r"endpoint"),
    re.compile(r"handler"),
]
_API_DIFF_RE = re.compile(
    r"(@(Get|Post|Put|Delete|Patch)\b"
    r"|app\.(get|post|put|delete|patch)\s*\("
    r"|router\."
    r"|export\s+async\s+function\s+(GET|POST|PUT|DELETE|PATCH)\b"
    r"|@(app|router)\.(get|post|put|delete|patch)\s*\()"
)
_LOGIC_PATH_PATTERNS = [
    re.compile(r"service"),
    re.compile(r"util"),
    re.compile(r"helper"),
    re.compile(r"lib/"),
    re.compile(r"core/"),
    re.compile(r"domain/"),
]
_DB_DIFF_RE = re.compile(
    r"\.(query|execute|findMany|findFirst|insert|update|delete|select|from|where)\s*\("
)
_DB_PATH_RE = re.compile(r"(schema|migration|model|repository|dao)", re.IGNORECASE)
_BUGFIX_RE = re.compile(r"(fix|bug|patch|hotfix|issue)", re.IGNORECASE)


def has_api_changes(files: Sequence[str], diff: str) -> bool:
    if any(p.search(f.lower()) for f in files for p in _API_PATH_PATTERNS):
        return True
    return bool(_API_DIFF_RE.search(diff))


def has_logic_changes(files: Sequence[str], diff: str) -> bool:
    return any(p.search(f.lower()) for f in files for p in _LOGIC_PATH_PATTERNS)


def has_db_changes(files: Sequence[str], diff: str) -> bool:
    if _DB_DIFF_RE.search(diff):
        return True
    return any(_DB_PATH_RE.search(f) for f in files)


def is_bugfix(files: Sequence[str], diff: str) -> bool:
    return bool(_BUGFIX_RE.search(diff))


@dataclass(frozen=True)
class TestTrigger:
    """A named change detector tied to a ``test_required_when`` policy flag."""

    name: str
    description: str
    predicate: Callable[[Sequence[str], str], bool]
    heuristic_label: str | None = None

    __test__ = False


DEFAULT_TRIGGERS: tuple[TestTrigger, ...] = (
    TestTrigger("api_changed", "API endpoint changes detected", has_api_changes, "API changes"),
    TestTrigger(
        "business_logic_changed",
        "Business logic changes detected",
        has_logic_changes,
        "Service/logic changes",
    ),
    TestTrigger("db_query_changed", "Database query changes detected", has_db_changes),
    TestTrigger("bugfix", "Bugfix detected", is_bugfix),
)


@dataclass
class TestRequirement:
    required: bool
    reason: str
    types: list[str] = field(default_factory=list)

    __test__ = False


def determine_test_requirements(
    changed_files: Sequence[str],
    diff: str,
    profile: CodeStyleProfile | None = None,
    triggers: Sequence[TestTrigger] = DEFAULT_TRIGGERS,
) -> TestRequirement:
    policy = profile.testing_policy if profile is not None else None

    if policy is None:
        # Without a policy only triggers with a heuristic label count.
        fired = [
            t.heuristic_label
            for t in triggers
            if t.heuristic_label and t.predicate(changed_files, diff)
        ]
        if fired:
            return TestRequirement(
                required=True,
                reason=f"Heuristic: {', '.join(fired)} detected",
                types=["unit"],
            )
        return TestRequirement(False, "No significant logic changes detected")

    enabled = policy.test_required_when.model_dump()
    fired = [
        t.description
        for t in triggers
        if enabled.get(t.name, False) and t.predicate(changed_files, diff)
    ]
    if fired:
        return TestRequirement(
            required=True,
            reason="; ".join(fired),
            types=list(policy.test_types_required) or ["unit"],
        )
    return TestRequirement(
        False, "No test-triggering changes detected based on profile policy"
    )


# ── Output parsing ───────────────────────────────────────────────────


@dataclass
class ParsedOutput:
    total: int = 0
    passed: int = 0
    failed: int = 0
    failures: list[TestFailure] = field(default_factory=list)


Counts = tuple[int, int, int]

_JEST_TESTS_RE = re.compile(
    r"Tests:\s+(?:(\d+)\s+failed,\s*)?(?:\d+\s+skipped,\s*)?(?:(\d+)\s+passed,\s*)?(\d+)\s+total"
)
_JEST_SUITES_RE = re.compile(
    r"Test Suites:\s+(?:(\d+)\s+failed,\s*)?(?:\d+\s+skipped,\s*)?(?:(\d+)\s+passed,\s*)?(\d+)\s+total"
)
_VITEST_RE = re.compile(
    r"^\s*Tests\s+(?:(\d+)\s+failed\s*\|\s*)?(?:(\d+)\s+passed)?.*?\((\d+)\)", re.MULTILINE
)
_PYTEST_SUMMARY_RE = re.compile(r"^=+ (.*\bin [\d.]+s.*) =+$", re.MULTILINE)
_PYTEST_COUNT_RE = re.compile(r"(\d+) (passed|failed|errors?)\b")
_GO_OK_RE = re.compile(r"^ok\s", re.MULTILINE)
_GO_FAIL_RE = re.compile(r"^FAIL\s", re.MULTILINE)

_FAILED_FILE_RE = re.compile(r"FAIL\s+(\S+\.(?:test|spec)\.\w+)")
_FAILED_MARK_RE = re.compile(r"[✕×✖]\s+(.+)")
_PYTEST_FAILED_RE = re.compile(r"^(?:FAILED|ERROR) (\S+?)(?:::(\S+))?(?: - (.*))?$", re.MULTILINE)
_GO_FAILED_TEST_RE = re.compile(r"^--- FAIL: (\S+)", re.MULTILINE)


def _jest_counts(match: re.Match[str] | None) -> Counts | None:
    if match is None:
        return None
    failed = int(match.group(1) or 0)
    passed = int(match.group(2) or 0)
    return int(match.group(3) or 0), passed, failed


def _parse_jest(output: str) -> Counts | None:
    return _jest_counts(_JEST_TESTS_RE.search(output))


def _parse_jest_suites(output: str) -> Counts | None:
    return _jest_counts(_JEST_SUITES_RE.search(output))


def _parse_vitest(output: str) -> Counts | None:
    return _jest_counts(_VITEST_RE.search(output))


def _parse_pytest(output: str) -> Counts | None:
    summaries = _PYTEST_SUMMARY_RE.findall(output)
    if not summaries:
        return None
    passed = failed = 0
    for count, kind in _PYTEST_COUNT_RE.findall(summaries[-1]):
        if kind == "passed":
            passed += int(count)
        else:
            failed += int(count)
    return passed + failed, passed, failed


def _parse_go(output: str) -> Counts | None:
    passed = len(_GO_OK_RE.findall(output))
    failed = len(_GO_FAIL_RE.findall(output))
    return passed + failed, passed, failed


SUMMARY_PARSERS: tuple[Callable[[str], Counts | None], ...] = (
    _parse_jest,
    _parse_jest_suites,
    _parse_vitest,
    _parse_pytest,
    _parse_go,
)


def _extract_failures(output: str) -> list[TestFailure]:
    failures: list[TestFailure] = []
    seen: set[str] = set()

    def _add(name: str, file: str | None = None, message: str | None = None) -> None:
        name = name.strip()
        if not name or name in seen:
            return
        seen.add(name)
        failures.append(TestFailure(test_name=name, file=file, message=message))

    for match in _FAILED_FILE_RE.finditer(output):
        _add(match.group(1), file=match.group(1))
    for match in _FAILED_MARK_RE.finditer(output):
        _add(match.group(1))
    for match in _PYTEST_FAILED_RE.finditer(output):
        path, test, message = match.group(1), match.group(2), match.group(3)
        _add(f"{path}::{test}" if test else path, file=path, message=message)
    for match in _GO_FAILED_TEST_RE.finditer(output):
        _add(match.group(1))
    return failures


def parse_test_output(output: str) -> ParsedOutput:
    """Normalise heterogeneous runner output; first parser with a non-zero total wins."""
    parsed = ParsedOutput(failures=_extract_failures(output))
    for parser in SUMMARY_PARSERS:
        counts = parser(output)
        if counts and counts[0] > 0:
            parsed.total, parsed.passed, parsed.failed = counts
            break
    return parsed


def _tail(output: str, lines: int = LOG_TAIL_LINES) -> str:
    return "\n".join(output.strip().splitlines()[-lines:])


class _BoundedBuffer:
    """Byte sink that keeps only the last ``limit`` bytes written to it."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._chunks: deque[bytes] = deque()
        self._size = 0
        self._lock = threading.Lock()

    def write(self, chunk: bytes) -> None:
        with self._lock:
            self._chunks.append(chunk)
            self._size += len(chunk)
            while len(self._chunks) > 1 and self._size - len(self._chunks[0]) >= self._limit:
                self._size -= len(self._chunks.popleft())

    @property
    def size(self) -> int:
        with self._lock:
            return self._size

    def getvalue(self) -> str:
        with self._lock:
            data = b"".join(self._chunks)
        return data[-self._limit :].decode("utf-8", errors="replace")


def _drain(stream: IO[bytes], sink: _BoundedBuffer) -> None:
    for chunk in iter(lambda: stream.read(_READ_CHUNK_BYTES), b""):
        sink.write(chunk)


# ── Runner ───────────────────────────────────────────────────────────


@dataclass
class _CommandOutcome:
    output: str
    exit_ok: bool
    error: str | None = None


class TestRunner:
    """Detects and runs a project's test commands from its root directory."""

    __test__ = False

    def __init__(
        self,
        root: Path,
        *,
        configured_commands: dict[str, str] | None = None,
        timeout_seconds: float = TIMEOUT_DEFAULTS["tests"],
    ) -> None:
        self.root = root
        self.configured_commands = TestCommands.model_validate(configured_commands or {})
        self._timeout = timeout_seconds

    def detect_test_commands(self, profile: CodeStyleProfile | None = None) -> TestCommands:
        """Profile commands, then configured overrides, then project auto-detection."""
        policy = profile.testing_policy if profile is not None else None
        if policy is not None and policy.test_commands and not policy.test_commands.is_empty():
            return policy.test_commands

        if not self.configured_commands.is_empty():
            return self.configured_commands

        return self.auto_detect_test_commands()

    def auto_detect_test_commands(self) -> TestCommands:
        commands: dict[str, str] = {}
        try:
            package_json = self.root / "package.json"
            if package_json.is_file():
                commands.update(_node_commands(json.loads(package_json.read_text())))

            if any(
                (self.root / name).is_file()
                for name in ("pytest.ini", "pyproject.toml", "setup.cfg", "tox.ini")
            ):
                commands["unit"] = "pytest"

            if (self.root / "go.mod").is_file():
                commands["unit"] = "go test ./..."
        except (OSError, ValueError) as exc:
            logger.warning("Test command auto-detection failed: %s", exc)
        return TestCommands.model_validate(commands)

    def _run_command(self, command: str) -> _CommandOutcome:
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            return _CommandOutcome("", False, f"Invalid test command: {exc}")
        if not argv:
            return _CommandOutcome("", False, "Empty test command")

        try:
            proc = subprocess.Popen(
                argv,
                cwd=self.root,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            return _CommandOutcome("", False, f"Could not start {argv[0]}: {exc}")

        # stdout and stderr share one pipe; only the tail is kept in memory.
        sink = _BoundedBuffer(MAX_OUTPUT_BYTES)
        reader = threading.Thread(target=_drain, args=(proc.stdout, sink), daemon=True)
        reader.start()
        returncode: int | None = None
        try:
            returncode = proc.wait(timeout=self._timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        finally:
            reader.join(_READER_JOIN_SECONDS)
            if not reader.is_alive():
                proc.stdout.close()

        output = sink.getvalue()
        if returncode is None:
            return _CommandOutcome(output, False, f"Timed out after {self._timeout:g}s")
        if returncode != 0:
            return _CommandOutcome(output, False, f"Exited with code {returncode}")
        return _CommandOutcome(output, True)

    def run_tests(self, commands: TestCommands, types: Sequence[str]) -> TestRunResult:
        commands_run: list[str] = []
        summary = TestSummary()
        failures: list[TestFailure] = []
        snippets: list[str] = []
        missing: list[str] = []
        started = time.monotonic()

        for test_type in types:
            command = commands.get(test_type) if test_type in TEST_TYPES else None
            if not command:
                missing.append(test_type)
                continue

            commands_run.append(command)
            logger.info("Running %s tests: %s", test_type, command)
            outcome = self._run_command(command)
            parsed = parse_test_output(outcome.output)

            if outcome.exit_ok:
                summary.total += parsed.total
                summary.passed += parsed.passed
                summary.failed += parsed.failed
            else:
                summary.total += parsed.total or 1
                summary.failed += parsed.failed or 1
                summary.passed += parsed.passed
            failures.extend(parsed.failures)
            if not outcome.exit_ok and not parsed.failures:
                failures.append(
                    TestFailure(
                        test_name=f"{test_type} test suite",
                        message=(outcome.error or "Test command failed")[
                            :FAILURE_MESSAGE_MAX_CHARS
                        ],
                    )
                )
            snippets.append(_tail(outcome.output))

        if not commands_run:
            wanted = ", ".join(types) or "none"
            return TestRunResult(
                tests_required=True,
                reason=f"No test commands available for the required test types: {wanted}",
                commands_run=[],
                result="skipped",
                logs_snippet="No test commands configured or detected.",
                requirement_unmet=bool(types),
            )

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        reason = f"Ran {', '.join(t for t in types if t not in missing)} tests"
        if missing:
            reason += f"; no command for {', '.join(missing)}"
        return TestRunResult(
            tests_required=True,
            reason=reason,
            commands_run=commands_run,
            result="fail" if summary.failed > 0 else "pass",
            summary=summary,
            failures=failures,
            logs_snippet="\n".join(snippets)[:LOG_SNIPPET_MAX_CHARS],
        )


def _mapping(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _node_commands(pkg: object) -> dict[str, str]:
    """Map package.json scripts and dependencies to commands; odd shapes are ignored."""
    commands: dict[str, str] = {}
    pkg = _mapping(pkg)
    scripts = _mapping(pkg.get("scripts"))
    if scripts.get("test"):
        commands["unit"] = "npm test"
    if scripts.get("test:unit"):
        commands["unit"] = "npm run test:unit"
    if scripts.get("test:integration"):
        commands["integration"] = "npm run test:integration"
    if scripts.get("test:e2e"):
        commands["e2e"] = "npm run test:e2e"

    if "unit" not in commands:
        deps = {**_mapping(pkg.get("dependencies")), **_mapping(pkg.get("devDependencies"))}
        if "jest" in deps or "@jest/core" in deps:
            commands["unit"] = "npx jest --passWithNoTests"
        elif "vitest" in deps:
            commands["unit"] = "npx vitest run"
        elif "mocha" in deps:
            commands["unit"] = "npx mocha"
    return commands

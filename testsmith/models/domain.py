"""
Domain models for the test generation and execution orchestrator.

This module contains the data classes and enums for the entities the
orchestrator tracks: pull requests and their changed files, generated test
suites and cases, executions and their aggregated results, and the
transient generation job that groups one orchestration run.

Entities are plain dataclasses. Closed variants (test type, language,
statuses) are ``str`` enums so they serialize to their value and compare
equal to it.

Example:
    Creating a pull request from a diff::

        pr = PullRequest(
            number=42,
            title="Add payment retries",
            branch="feature/retries",
            author="jdoe",
            changed_files=[
                ChangedFile("src/payments/retry.py", additions=40, deletions=2),
                ChangedFile("README.md", additions=3, deletions=0),
            ],
        )
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import Any

from testsmith.exceptions import ValidationError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    """Generate a random entity identifier."""
    return str(uuid.uuid4())


def _duration_ms(start: datetime | None, end: datetime | None) -> int | None:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Enumerations
# =============================================================================


class PullRequestStatus(str, Enum):
    """Lifecycle state of a pull request."""

    OPEN = "open"
    IN_REVIEW = "in_review"
    MERGED = "merged"
    CLOSED = "closed"


class Priority(str, Enum):
    """Priority shared by pull requests and test cases."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: Any, default: "Priority | None" = None) -> "Priority":
        """Parse a priority leniently, falling back to ``default`` or MEDIUM."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default or cls.MEDIUM


class TestType(str, Enum):
    """Kind of test a suite contains."""

    __test__ = False

    UNIT = "unit"
    INTEGRATION = "integration"
    E2E = "e2e"


class Language(str, Enum):
    """Source languages the orchestrator can infer from a file path.

    UNKNOWN marks files whose extension is not recognized; such files are
    never turned into generation units.
    """

    JAVA = "java"
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    PYTHON = "python"
    CSHARP = "csharp"
    GO = "go"
    RUST = "rust"
    UNKNOWN = "unknown"

    @classmethod
    def from_path(cls, path: str) -> "Language":
        """Infer the language of a file from its extension."""
        return _EXTENSION_LANGUAGES.get(PurePosixPath(path).suffix.lower(), cls.UNKNOWN)


_EXTENSION_LANGUAGES: dict[str, Language] = {
    ".java": Language.JAVA,
    ".js": Language.JAVASCRIPT,
    ".jsx": Language.JAVASCRIPT,
    ".ts": Language.TYPESCRIPT,
    ".tsx": Language.TYPESCRIPT,
    ".py": Language.PYTHON,
    ".cs": Language.CSHARP,
    ".go": Language.GO,
    ".rs": Language.RUST,
}


class SuiteStatus(str, Enum):
    """Generation status of a test suite.

    The typical path is PENDING -> GENERATING -> READY. A READY suite
    becomes STALE when its source file changes or it is regenerated; STALE
    suites are kept for history but never executed.
    """

    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    STALE = "stale"
    FAILED = "failed"


class CaseStatus(str, Enum):
    """Execution status of a single test case."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (CaseStatus.PASSED, CaseStatus.FAILED, CaseStatus.SKIPPED)


class ExecutionType(str, Enum):
    """Scope of an execution: every suite of a PR, or one suite."""

    SUITE = "suite"
    SINGLE = "single"


class ExecutionStatus(str, Enum):
    """Lifecycle state of a test execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class JobState(str, Enum):
    """Lifecycle state of a generation job."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    PARTIALLY_FAILED = "partially_failed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# =============================================================================
# Pull requests
# =============================================================================


@dataclass(frozen=True)
class ChangedFile:
    """One file touched by a pull request, as reported by source control.

    Immutable: the partitioner reads it, nothing rewrites it.
    """

    filename: str
    additions: int = 0
    deletions: int = 0

    @property
    def fingerprint(self) -> str:
        """Stable identity of this version of the file change."""
        raw = f"{self.filename}\0{self.additions}\0{self.deletions}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        return {"filename": self.filename, "additions": self.additions, "deletions": self.deletions}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangedFile":
        return cls(
            filename=data["filename"],
            additions=int(data.get("additions", 0)),
            deletions=int(data.get("deletions", 0)),
        )


@dataclass
class PullRequest:
    """A pull request whose changed files drive test generation.

    The ``tests_*`` counters and ``coverage`` are derived values: only
    :class:`testsmith.engine.aggregator.ResultAggregator` writes them.
    """

    number: int
    title: str
    branch: str
    author: str = ""
    status: PullRequestStatus = PullRequestStatus.OPEN
    priority: Priority = Priority.MEDIUM
    changed_files: list[ChangedFile] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    merged_at: datetime | None = None
    tests_generated: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    coverage: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "branch": self.branch,
            "author": self.author,
            "status": self.status.value,
            "priority": self.priority.value,
            "changed_files": [f.to_dict() for f in self.changed_files],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "merged_at": _iso(self.merged_at),
            "tests_generated": self.tests_generated,
            "tests_passed": self.tests_passed,
            "tests_failed": self.tests_failed,
            "coverage": self.coverage,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PullRequest":
        return cls(
            number=int(data["number"]),
            title=data.get("title", ""),
            branch=data.get("branch", ""),
            author=data.get("author", ""),
            status=PullRequestStatus(data.get("status", PullRequestStatus.OPEN.value)),
            priority=Priority.parse(data.get("priority", "medium")),
            changed_files=[ChangedFile.from_dict(f) for f in data.get("changed_files", [])],
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
            merged_at=_parse_dt(data.get("merged_at")),
            tests_generated=int(data.get("tests_generated", 0)),
            tests_passed=int(data.get("tests_passed", 0)),
            tests_failed=int(data.get("tests_failed", 0)),
            coverage=data.get("coverage"),
        )


# =============================================================================
# Suites and cases
# =============================================================================


@dataclass
class TestCase:
    """A single generated test, owned by exactly one suite."""

    __test__ = False

    name: str
    code: str
    type: TestType = TestType.UNIT
    language: Language = Language.UNKNOWN
    file_path: str = ""
    description: str = ""
    priority: Priority = Priority.MEDIUM
    status: CaseStatus = CaseStatus.PENDING
    id: str = field(default_factory=new_id)
    executed_at: datetime | None = None
    execution_time: int | None = None
    """Wall-clock run time in milliseconds."""
    error_message: str | None = None

    def reset(self) -> None:
        """Clear the outcome of a previous run."""
        self.status = CaseStatus.PENDING
        self.executed_at = None
        self.execution_time = None
        self.error_message = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "type": self.type.value,
            "language": self.language.value,
            "file_path": self.file_path,
            "description": self.description,
            "priority": self.priority.value,
            "status": self.status.value,
            "executed_at": _iso(self.executed_at),
            "execution_time": self.execution_time,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestCase":
        return cls(
            id=data["id"],
            name=data["name"],
            code=data.get("code", ""),
            type=TestType(data.get("type", TestType.UNIT.value)),
            language=Language(data.get("language", Language.UNKNOWN.value)),
            file_path=data.get("file_path", ""),
            description=data.get("description", ""),
            priority=Priority.parse(data.get("priority", "medium")),
            status=CaseStatus(data.get("status", CaseStatus.PENDING.value)),
            executed_at=_parse_dt(data.get("executed_at")),
            execution_time=data.get("execution_time"),
            error_message=data.get("error_message"),
        )


@dataclass
class TestSuite:
    """Generated tests for one changed file.

    ``pr_number`` is None for ad hoc suites. ``source_fingerprint`` records
    which version of the file the suite was generated from.
    """

    __test__ = False

    name: str
    file_path: str
    test_type: TestType
    language: Language
    branch: str = ""
    pr_number: int | None = None
    status: SuiteStatus = SuiteStatus.PENDING
    test_cases: list[TestCase] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    source_fingerprint: str | None = None
    generated_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_run: datetime | None = None
    error_message: str | None = None
    claimed_by: str | None = None
    """Execution currently running this suite, if any."""

    def mark(self, status: SuiteStatus, error_message: str | None = None) -> None:
        """Transition to ``status`` and bump ``updated_at``."""
        self.status = status
        self.error_message = error_message
        self.updated_at = utc_now()

    @property
    def case_count(self) -> int:
        return len(self.test_cases)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "file_path": self.file_path,
            "test_type": self.test_type.value,
            "language": self.language.value,
            "branch": self.branch,
            "pr_number": self.pr_number,
            "status": self.status.value,
            "test_cases": [c.to_dict() for c in self.test_cases],
            "source_fingerprint": self.source_fingerprint,
            "generated_at": _iso(self.generated_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "last_run": _iso(self.last_run),
            "error_message": self.error_message,
            "claimed_by": self.claimed_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestSuite":
        return cls(
            id=data["id"],
            name=data["name"],
            file_path=data["file_path"],
            test_type=TestType(data["test_type"]),
            language=Language(data["language"]),
            branch=data.get("branch", ""),
            pr_number=data.get("pr_number"),
            status=SuiteStatus(data.get("status", SuiteStatus.PENDING.value)),
            test_cases=[TestCase.from_dict(c) for c in data.get("test_cases", [])],
            source_fingerprint=data.get("source_fingerprint"),
            generated_at=_parse_dt(data.get("generated_at")),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
            last_run=_parse_dt(data.get("last_run")),
            error_message=data.get("error_message"),
            claimed_by=data.get("claimed_by"),
        )


# =============================================================================
# Executions
# =============================================================================


@dataclass
class TestResults:
    """Aggregated outcome counts of one execution.

    ``coverage`` is whatever the case runner reported, passed through
    unchanged; None when nothing was reported.
    """

    __test__ = False

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    coverage: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "coverage": self.coverage,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestResults":
        return cls(
            total=int(data.get("total", 0)),
            passed=int(data.get("passed", 0)),
            failed=int(data.get("failed", 0)),
            skipped=int(data.get("skipped", 0)),
            coverage=data.get("coverage"),
        )


@dataclass
class TestExecution:
    """One run of either every suite of a PR branch or a single suite.

    The reference is mutually exclusive: a SUITE execution carries
    ``pr_number`` and ``branch``, a SINGLE execution carries ``suite_id``.
    Use :meth:`for_pull_request` and :meth:`for_suite` to build one.
    """

    __test__ = False

    type: ExecutionType
    pr_number: int | None = None
    branch: str | None = None
    suite_id: str | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    id: str = field(default_factory=new_id)
    start_time: datetime | None = None
    end_time: datetime | None = None
    results: TestResults = field(default_factory=TestResults)
    error_message: str | None = None

    def __post_init__(self) -> None:
        if self.type == ExecutionType.SUITE:
            if self.pr_number is None or self.suite_id is not None:
                raise ValidationError("A suite execution references a pull request, not a suite id")
        elif self.suite_id is None or self.pr_number is not None:
            raise ValidationError("A single execution references exactly one suite id")

    @classmethod
    def for_pull_request(cls, pr_number: int, branch: str | None = None) -> "TestExecution":
        return cls(type=ExecutionType.SUITE, pr_number=pr_number, branch=branch)

    @classmethod
    def for_suite(cls, suite_id: str) -> "TestExecution":
        return cls(type=ExecutionType.SINGLE, suite_id=suite_id)

    @property
    def duration(self) -> int | None:
        """Milliseconds between start and end; None until terminal."""
        if not self.status.is_terminal:
            return None
        return _duration_ms(self.start_time, self.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "pr_number": self.pr_number,
            "branch": self.branch,
            "suite_id": self.suite_id,
            "status": self.status.value,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration": self.duration,
            "results": self.results.to_dict(),
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestExecution":
        return cls(
            id=data["id"],
            type=ExecutionType(data["type"]),
            pr_number=data.get("pr_number"),
            branch=data.get("branch"),
            suite_id=data.get("suite_id"),
            status=ExecutionStatus(data.get("status", ExecutionStatus.PENDING.value)),
            start_time=_parse_dt(data.get("start_time")),
            end_time=_parse_dt(data.get("end_time")),
            results=TestResults.from_dict(data.get("results", {})),
            error_message=data.get("error_message"),
        )


# =============================================================================
# Generation
# =============================================================================


@dataclass(frozen=True)
class GenerationUnit:
    """One changed file selected for generation, with its inferred target."""

    file: ChangedFile
    language: Language
    test_type: TestType
    max_tests: int
    position: int
    """Index of the file in the PR's changed-file list."""

    @property
    def id(self) -> str:
        return f"{self.file.filename}#{self.test_type.value}"

    @property
    def file_path(self) -> str:
        return self.file.filename

    @property
    def fingerprint(self) -> str:
        return self.file.fingerprint


@dataclass(frozen=True)
class GeneratedCase:
    """A named test returned by the generation provider."""

    name: str
    code: str
    description: str = ""
    priority: Priority = Priority.MEDIUM


@dataclass
class GeneratedSuite:
    """Provider response for one unit, already validated."""

    unit: GenerationUnit
    cases: list[GeneratedCase]
    model: str | None = None
    tokens: int | None = None


@dataclass
class GenerationJob:
    """All units of one orchestration run. Not persisted."""

    pr_number: int | None
    units: list[GenerationUnit] = field(default_factory=list)
    state: JobState = JobState.QUEUED
    id: str = field(default_factory=new_id)
    suites: list[TestSuite] = field(default_factory=list)
    reused: list[TestSuite] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_failure(self) -> bool:
        """True only when the job produced no suite from a non-empty unit set."""
        return self.state == JobState.FAILED

    @property
    def duration(self) -> int | None:
        return _duration_ms(self.started_at, self.finished_at)

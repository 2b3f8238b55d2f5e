"""Pytest configuration and shared fixtures."""

import asyncio
from pathlib import Path

import pytest

from testsmith.config.settings import ExecutionConfig, TestGenerationConfig, TestsmithSettings
from testsmith.engine.execution import CaseOutcome, CaseRunner
from testsmith.models.domain import (
    ChangedFile,
    GeneratedCase,
    GeneratedSuite,
    GenerationUnit,
    Language,
    PullRequest,
    SuiteStatus,
    TestCase,
    TestSuite,
    TestType,
)
from testsmith.store import InMemoryStore, JsonStateStore


class FakeGenerator:
    """Generation client double returning ``cases_per_unit`` cases per unit.

    Units listed in ``failures`` raise the mapped exception instead.
    """

    def __init__(self, cases_per_unit: int = 3, failures: dict[str, Exception] | None = None, delay: float = 0.0):
        self.cases_per_unit = cases_per_unit
        self.failures = failures or {}
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0

    async def generate(self, unit: GenerationUnit, source: str) -> GeneratedSuite:
        self.calls.append(unit.id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if unit.file_path in self.failures:
                raise self.failures[unit.file_path]
            cases = [
                GeneratedCase(name=f"test {unit.file_path} {i}", code=f"assert {i} == {i}")
                for i in range(self.cases_per_unit)
            ]
            return GeneratedSuite(unit=unit, cases=cases[: unit.max_tests])
        finally:
            self.active -= 1


class FakeRunner(CaseRunner):
    """Case runner double.

    Outcomes are looked up by case name: ``"pass"`` (default), ``"fail"``,
    ``"hang"`` (sleeps past any test timeout) or ``"crash"`` (raises).
    """

    def __init__(self, outcomes: dict[str, str] | None = None, delay: float = 0.0, coverage: float | None = None):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.coverage = coverage
        self.started: list[str] = []

    async def run(self, case: TestCase, suite: TestSuite) -> CaseOutcome:
        self.started.append(case.name)
        outcome = self.outcomes.get(case.name, "pass")
        if outcome == "hang":
            await asyncio.sleep(10)
        await asyncio.sleep(self.delay)
        if outcome == "crash":
            raise RuntimeError("runner exploded")
        if outcome == "fail":
            return CaseOutcome(passed=False, error_message="assertion failed", coverage=self.coverage)
        return CaseOutcome(passed=True, coverage=self.coverage)


def make_suite(
    pr_number: int | None = 42,
    file_path: str = "src/Foo.java",
    case_names: list[str] | None = None,
    status: SuiteStatus = SuiteStatus.READY,
    branch: str = "feature/x",
    fingerprint: str | None = None,
) -> TestSuite:
    """Build a suite with named cases."""
    names = case_names if case_names is not None else ["a", "b"]
    return TestSuite(
        name=f"{file_path} unit tests",
        file_path=file_path,
        test_type=TestType.UNIT,
        language=Language.from_path(file_path),
        branch=branch,
        pr_number=pr_number,
        status=status,
        source_fingerprint=fingerprint,
        test_cases=[TestCase(name=n, code="pass", language=Language.from_path(file_path)) for n in names],
    )


@pytest.fixture
def generation_config() -> TestGenerationConfig:
    return TestGenerationConfig()


@pytest.fixture
def execution_config() -> ExecutionConfig:
    return ExecutionConfig(max_concurrent_cases=2)


@pytest.fixture
def settings(tmp_path: Path) -> TestsmithSettings:
    """Settings pointing state at a temp directory."""
    return TestsmithSettings(storage={"backend": "json", "state_directory": str(tmp_path / "state")})


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def json_store(tmp_path: Path) -> JsonStateStore:
    return JsonStateStore(tmp_path / "state")


@pytest.fixture
def sample_pr() -> PullRequest:
    """PR #42 with a Java file, a README and a TypeScript file."""
    return PullRequest(
        number=42,
        title="Add payment retries",
        branch="feature/x",
        author="jdoe",
        changed_files=[
            ChangedFile("src/Foo.java", additions=10, deletions=2),
            ChangedFile("README.md", additions=3),
            ChangedFile("web/bar.ts", additions=5, deletions=1),
        ],
    )



@pytest.fixture
def generator_factory() -> type[FakeGenerator]:
    """FakeGenerator class, for tests that need custom failures or delays."""
    return FakeGenerator


@pytest.fixture
def runner_factory() -> type[FakeRunner]:
    return FakeRunner


@pytest.fixture
def suite_factory():
    return make_suite

"""
Test execution engine.

Runs the cases of generated suites and records the outcome as a
TestExecution. An execution covers either every suite of a pull request
(optionally restricted to one branch) or a single suite.

Execution lifecycle::

    PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED

Selection:
    READY suites are claimed for the duration of the run by setting
    ``claimed_by`` on the stored suite, so engines in other processes that
    share the store see the claim. A suite claimed by another execution, or
    one that is STALE, GENERATING, PENDING or FAILED, is skipped and its
    cases are counted as skipped results without touching their recorded
    outcomes.

Ownership:
    The engine writes only case outcomes, ``last_run`` and ``claimed_by``,
    each through :meth:`EntityStore.update_suite`. Suite status belongs to
    the generation orchestrator, so a suite marked STALE mid-run stays STALE.
    A claim left behind by a killed process is not reclaimed automatically.

Cases:
    Cases run on a bounded worker pool. A case exceeding the timeout is
    FAILED with ``execution timeout``; a case whose runner raises is FAILED
    with the error. Neither affects sibling cases.

Cancellation:
    :meth:`ExecutionEngine.cancel` stops dispatch of further cases.
    Running cases finish and keep their outcome, cases never started become
    SKIPPED, and the execution ends CANCELLED.

FAILED is reserved for problems that stop the engine from running the
requested scope: unknown suite, a pull request without suites, or an
internal error.
"""

import asyncio
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import aiofiles
import aiofiles.os
import aiofiles.tempfile
import structlog

from testsmith.config.settings import ExecutionConfig
from testsmith.engine.aggregator import ResultAggregator, refresh_pull_request
from testsmith.engine.parallel_executor import ExecutionTask, ParallelExecutor
from testsmith.exceptions import EntityNotFoundError, ExecutionError, ExecutionTimeoutError
from testsmith.models.domain import (
    CaseStatus,
    ExecutionStatus,
    ExecutionType,
    Language,
    SuiteStatus,
    TestCase,
    TestExecution,
    TestResults,
    TestSuite,
    utc_now,
)
from testsmith.store.base import EntityStore
from testsmith.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

TIMEOUT_MESSAGE = "execution timeout"
CANCELLED_MESSAGE = "execution cancelled"


@dataclass
class CaseOutcome:
    """What a runner reports for one case.

    Attributes:
        passed: Whether the case passed.
        error_message: Failure detail for a failed case.
        coverage: Coverage percentage reported by the test tool, if any.
        output: Captured tool output.
    """

    passed: bool
    error_message: str | None = None
    coverage: float | None = None
    output: str = ""


class CaseRunner(ABC):
    """Runs one test case."""

    @abstractmethod
    async def run(self, case: TestCase, suite: TestSuite) -> CaseOutcome:
        """Run ``case`` and report the outcome.

        Raising is treated as a failed case; it never aborts the execution.
        """
        pass


_COVERAGE = re.compile(r"coverage:\s*([\d.]+)%", re.IGNORECASE)
_JAVA_CLASS = re.compile(r"\bclass\s+(\w+)")

_POM = """<project xmlns="http://maven.apache.org/POM/4.0.0">
  <modelVersion>4.0.0</modelVersion>
  <groupId>testsmith</groupId>
  <artifactId>generated-case</artifactId>
  <version>0</version>
  <properties>
    <maven.compiler.release>17</maven.compiler.release>
    <project.build.sourceEncoding>UTF-8</project.build.sourceEncoding>
  </properties>
  <dependencies>
    <dependency>
      <groupId>org.junit.jupiter</groupId>
      <artifactId>junit-jupiter</artifactId>
      <version>5.10.2</version>
      <scope>test</scope>
    </dependency>
    <dependency>
      <groupId>org.mockito</groupId>
      <artifactId>mockito-junit-jupiter</artifactId>
      <version>5.11.0</version>
      <scope>test</scope>
    </dependency>
  </dependencies>
  <build>
    <plugins>
      <plugin>
        <groupId>org.apache.maven.plugins</groupId>
        <artifactId>maven-surefire-plugin</artifactId>
        <version>3.2.5</version>
        <configuration>
          <includes>
            <include>**/*.java</include>
          </includes>
        </configuration>
      </plugin>
    </plugins>
  </build>
</project>
"""

_CSPROJ = """<Project Sdk="Microsoft.NET.Sdk">
  <PropertyGroup>
    <TargetFramework>net8.0</TargetFramework>
    <ImplicitUsings>enable</ImplicitUsings>
    <Nullable>enable</Nullable>
    <IsPackable>false</IsPackable>
  </PropertyGroup>
  <ItemGroup>
    <PackageReference Include="Microsoft.NET.Test.Sdk" Version="17.9.0" />
    <PackageReference Include="xunit" Version="2.7.0" />
    <PackageReference Include="xunit.runner.visualstudio" Version="2.5.7" />
    <PackageReference Include="Moq" Version="4.20.70" />
  </ItemGroup>
</Project>
"""

_GO_MOD = "module generatedcase\n\ngo 1.21\n"

_CARGO_TOML = """[package]
name = "generated_case"
version = "0.1.0"
edition = "2021"

[lib]
path = "case.rs"
"""


@dataclass
class CaseWorkspace:
    """Files a test tool needs in its scratch directory, and the command to run.

    Attributes:
        files: File contents keyed by path relative to the scratch directory.
        command: Test tool invocation, run inside the scratch directory.
    """

    files: dict[str, str]
    command: list[str]


def _java_workspace(case: TestCase) -> CaseWorkspace:
    # javac requires a public class to live in a file of the same name.
    match = _JAVA_CLASS.search(case.code)
    class_name = match.group(1) if match else "GeneratedTest"
    return CaseWorkspace(
        files={"pom.xml": _POM, f"src/test/java/{class_name}.java": case.code},
        command=["mvn", "-q", "-B", "test"],
    )


WORKSPACES: dict[Language, Callable[[TestCase], CaseWorkspace]] = {
    Language.PYTHON: lambda case: CaseWorkspace(
        files={"test_case.py": case.code},
        command=["python", "-m", "pytest", "-q", "test_case.py"],
    ),
    Language.JAVASCRIPT: lambda case: CaseWorkspace(
        files={"case.test.js": case.code},
        command=["npx", "jest", "case.test.js"],
    ),
    Language.TYPESCRIPT: lambda case: CaseWorkspace(
        files={"case.test.ts": case.code},
        command=["npx", "jest", "case.test.ts"],
    ),
    Language.JAVA: _java_workspace,
    Language.CSHARP: lambda case: CaseWorkspace(
        files={"GeneratedCase.csproj": _CSPROJ, "GeneratedCase.cs": case.code},
        command=["dotnet", "test", "--nologo"],
    ),
    Language.GO: lambda case: CaseWorkspace(
        files={"go.mod": _GO_MOD, "case_test.go": case.code},
        command=["go", "test", "-cover", "./..."],
    ),
    Language.RUST: lambda case: CaseWorkspace(
        files={"Cargo.toml": _CARGO_TOML, "case.rs": case.code},
        command=["cargo", "test", "--quiet"],
    ),
}
"""Scratch project layout per language."""


class SubprocessCaseRunner(CaseRunner):
    """Run a case by laying out a minimal project for the language's test
    tool in a scratch directory and invoking the tool there.

    Attributes:
        working_directory: Parent directory for scratch directories, or the
            system temp directory when None.
    """

    def __init__(self, working_directory: str | None = None) -> None:
        self.working_directory = working_directory

    async def run(self, case: TestCase, suite: TestSuite) -> CaseOutcome:
        build = WORKSPACES.get(case.language)
        if build is None:
            return CaseOutcome(passed=False, error_message=f"No runner for language {case.language.value}")

        workspace = build(case)
        async with aiofiles.tempfile.TemporaryDirectory(prefix="testsmith-", dir=self.working_directory) as tmp:
            workdir = Path(tmp)
            for relative, content in workspace.files.items():
                target = workdir / relative
                await aiofiles.os.makedirs(target.parent, exist_ok=True)
                async with aiofiles.open(target, "w", encoding="utf-8") as f:
                    await f.write(content)
            stdout, stderr, code = await run_command(*workspace.command, cwd=workdir, check=False)

        output = stdout + stderr
        match = _COVERAGE.search(output)
        coverage = float(match.group(1)) if match else None
        if code == 0:
            return CaseOutcome(passed=True, coverage=coverage, output=output)

        tail = output.strip().splitlines()[-1:] or [f"exit code {code}"]
        return CaseOutcome(passed=False, error_message=tail[0], coverage=coverage, output=output)


class ExecutionEngine:
    """Run test suites and track executions.

    Attributes:
        store: Entity store executions and suites are saved to.
        runner: Case runner.
        config: Pool size settings.
        case_timeout_ms: Per-case timeout.

    Example:
        >>> engine = ExecutionEngine(store, SubprocessCaseRunner(), ExecutionConfig())
        >>> execution = await engine.execute_pull_request(42, branch="feature/retries")
        >>> execution.results.passed
        3
    """

    def __init__(
        self,
        store: EntityStore,
        runner: CaseRunner,
        config: ExecutionConfig,
        case_timeout_ms: int = 30000,
        aggregator: ResultAggregator | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.config = config
        self.case_timeout_ms = case_timeout_ms
        self.aggregator = aggregator or ResultAggregator()
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task[TestExecution]] = {}
        self._active: dict[str, TestExecution] = {}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def execute_pull_request(self, pr_number: int, branch: str | None = None) -> TestExecution:
        """Run every READY suite of a pull request and wait for the result."""
        execution = TestExecution.for_pull_request(pr_number, branch)
        await self._register(execution)
        return await self._run(execution)

    async def execute_suite(self, suite_id: str) -> TestExecution:
        """Run one suite and wait for the result."""
        execution = TestExecution.for_suite(suite_id)
        await self._register(execution)
        return await self._run(execution)

    async def submit_pull_request(self, pr_number: int, branch: str | None = None) -> TestExecution:
        """Start a pull request execution in the background.

        Returns the PENDING execution; use :meth:`wait` for the result.
        """
        execution = TestExecution.for_pull_request(pr_number, branch)
        await self._register(execution)
        self._tasks[execution.id] = asyncio.create_task(self._run(execution))
        return execution

    async def submit_suite(self, suite_id: str) -> TestExecution:
        """Start a single-suite execution in the background."""
        execution = TestExecution.for_suite(suite_id)
        await self._register(execution)
        self._tasks[execution.id] = asyncio.create_task(self._run(execution))
        return execution

    def cancel(self, execution_id: str) -> bool:
        """Request cooperative cancellation.

        Returns:
            True if the execution is in flight and will end CANCELLED,
            False if it is unknown to this engine or already terminal.
        """
        execution = self._active.get(execution_id)
        if execution is None or execution.status.is_terminal:
            return False
        self._cancel_events[execution_id].set()
        log.info("execution_cancel_requested", execution_id=execution_id, status=execution.status.value)
        return True

    async def wait(self, execution_id: str) -> TestExecution:
        """Wait for a submitted execution and return its final state.

        Raises:
            EntityNotFoundError: If the execution is neither running here
                nor in the store.
        """
        task = self._tasks.get(execution_id)
        if task is not None:
            return await task
        return await self.store.get_execution(execution_id)

    def get(self, execution_id: str) -> TestExecution | None:
        """In-flight execution tracked by this engine, if any."""
        return self._active.get(execution_id)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _register(self, execution: TestExecution) -> None:
        self._active[execution.id] = execution
        self._cancel_events[execution.id] = asyncio.Event()
        await self.store.save_execution(execution)
        log.info(
            "execution_created",
            execution_id=execution.id,
            type=execution.type.value,
            pr_number=execution.pr_number,
            suite_id=execution.suite_id,
        )

    async def _run(self, execution: TestExecution) -> TestExecution:
        cancel_event = self._cancel_events[execution.id]
        execution.start_time = utc_now()
        claimed: list[TestSuite] = []

        try:
            if cancel_event.is_set():
                await self._finish(execution, ExecutionStatus.CANCELLED)
                return execution

            execution.status = ExecutionStatus.RUNNING
            await self.store.save_execution(execution)
            log.info("execution_started", execution_id=execution.id)

            try:
                suites = await self._select(execution)
            except ExecutionError as e:
                await self._finish(execution, ExecutionStatus.FAILED, e.message)
                return execution

            skipped = await self._claim(execution, suites, claimed)
            results = await self._run_cases(execution, claimed, cancel_event)
            results.skipped += sum(s.case_count for s in skipped)
            results.total = results.passed + results.failed + results.skipped
            execution.results = results

            run_at = utc_now()
            for suite in claimed:
                await self._record(suite, run_at)

            status = ExecutionStatus.CANCELLED if cancel_event.is_set() else ExecutionStatus.COMPLETED
            await self._finish(execution, status)
        except Exception as e:
            log.exception("execution_internal_error", execution_id=execution.id)
            await self._finish(execution, ExecutionStatus.FAILED, f"Internal error: {e}")
        finally:
            for suite in claimed:
                await self._release(execution, suite)
            self._active.pop(execution.id, None)
            self._cancel_events.pop(execution.id, None)
            self._tasks.pop(execution.id, None)

        await self._refresh(execution)
        return execution

    async def _select(self, execution: TestExecution) -> list[TestSuite]:
        """Resolve the execution's scope to suites.

        Raises:
            ExecutionError: If the scope resolves to nothing.
        """
        if execution.type == ExecutionType.SINGLE:
            try:
                return [await self.store.get_suite(str(execution.suite_id))]
            except EntityNotFoundError as e:
                raise ExecutionError(f"Test suite not found: {execution.suite_id}", execution.id) from e

        suites = await self.store.list_suites(execution.pr_number)
        if execution.branch:
            suites = [s for s in suites if not s.branch or s.branch == execution.branch]
        if not suites:
            raise ExecutionError(f"No test suites found for PR #{execution.pr_number}", execution.id)
        return suites

    async def _claim(
        self, execution: TestExecution, suites: list[TestSuite], claimed: list[TestSuite]
    ) -> list[TestSuite]:
        """Claim runnable suites in the store.

        Claimed suites, as stored at claim time, are appended to ``claimed``
        as they are taken so a failure midway still releases them. Returns
        the skipped suites.
        """

        def take(stored: TestSuite) -> bool:
            if stored.status != SuiteStatus.READY or stored.claimed_by is not None:
                return False
            stored.claimed_by = execution.id
            return True

        skipped: list[TestSuite] = []
        for suite in suites:
            try:
                current = await self.store.update_suite(suite.id, take)
            except EntityNotFoundError:
                log.info("suite_skipped", suite_id=suite.id, reason="deleted")
                continue

            if current.claimed_by == execution.id:
                claimed.append(current)
            else:
                skipped.append(current)
                log.info(
                    "suite_skipped",
                    suite_id=current.id,
                    status=current.status.value,
                    reason="claimed" if current.claimed_by else current.status.value,
                    claimed_by=current.claimed_by,
                )
        return skipped

    async def _record(self, suite: TestSuite, run_at: datetime) -> None:
        """Merge this run's case outcomes into the stored suite."""
        outcomes = {case.id: case for case in suite.test_cases}

        def merge(stored: TestSuite) -> bool:
            for case in stored.test_cases:
                ran = outcomes.get(case.id)
                if ran is not None:
                    case.status = ran.status
                    case.executed_at = ran.executed_at
                    case.execution_time = ran.execution_time
                    case.error_message = ran.error_message
            stored.last_run = run_at
            return True

        await self.store.update_suite(suite.id, merge)

    async def _release(self, execution: TestExecution, suite: TestSuite) -> None:
        def release(stored: TestSuite) -> bool:
            if stored.claimed_by != execution.id:
                return False
            stored.claimed_by = None
            return True

        try:
            await self.store.update_suite(suite.id, release)
        except EntityNotFoundError:
            log.warning("suite_release_missing", execution_id=execution.id, suite_id=suite.id)

    async def _run_cases(
        self,
        execution: TestExecution,
        suites: list[TestSuite],
        cancel_event: asyncio.Event,
    ) -> TestResults:
        tasks: list[ExecutionTask] = []
        cases: list[TestCase] = []
        for suite in suites:
            for case in suite.test_cases:
                case.reset()
                cases.append(case)
                tasks.append(ExecutionTask(id=case.id, func=self._run_case, args=(execution, case, suite)))

        coverages: list[float] = []
        if tasks:
            executor = ParallelExecutor(max_workers=self.config.max_concurrent_cases)
            task_results = await executor.execute_tasks(tasks, should_dispatch=lambda: not cancel_event.is_set())
            for case in cases:
                result = task_results[case.id]
                if not result.dispatched:
                    case.status = CaseStatus.SKIPPED
                    case.error_message = CANCELLED_MESSAGE
                elif result.success and result.result is not None:
                    coverages.append(result.result)

        return TestResults(
            passed=sum(1 for c in cases if c.status == CaseStatus.PASSED),
            failed=sum(1 for c in cases if c.status == CaseStatus.FAILED),
            skipped=sum(1 for c in cases if c.status == CaseStatus.SKIPPED),
            coverage=round(sum(coverages) / len(coverages), 2) if coverages else None,
        )

    async def _run_case(self, execution: TestExecution, case: TestCase, suite: TestSuite) -> float | None:
        """Run one case and record its outcome on the case.

        Returns the coverage the runner reported, if any. Never raises for
        a failing or timed-out case.
        """
        case.status = CaseStatus.RUNNING
        case.executed_at = utc_now()
        start = time.monotonic()
        coverage = None

        try:
            outcome = await self._invoke_runner(case, suite)
        except ExecutionTimeoutError as e:
            case.status = CaseStatus.FAILED
            case.error_message = TIMEOUT_MESSAGE
            log.warning("case_timeout", execution_id=execution.id, case_id=case.id, timeout_ms=e.timeout_ms)
        except Exception as e:
            case.status = CaseStatus.FAILED
            case.error_message = str(e) or type(e).__name__
            log.warning("case_runner_error", execution_id=execution.id, case_id=case.id, error=case.error_message)
        else:
            case.status = CaseStatus.PASSED if outcome.passed else CaseStatus.FAILED
            case.error_message = None if outcome.passed else outcome.error_message
            coverage = outcome.coverage

        case.execution_time = int((time.monotonic() - start) * 1000)
        log.debug(
            "case_finished",
            execution_id=execution.id,
            case_id=case.id,
            status=case.status.value,
            execution_time=case.execution_time,
        )
        return coverage

    async def _invoke_runner(self, case: TestCase, suite: TestSuite) -> CaseOutcome:
        """Run the case under the per-case timeout.

        Raises:
            ExecutionTimeoutError: If the runner does not finish in time.
        """
        try:
            return await asyncio.wait_for(self.runner.run(case, suite), timeout=self.case_timeout_ms / 1000)
        except TimeoutError as e:
            raise ExecutionTimeoutError(case.id, self.case_timeout_ms) from e

    async def _finish(self, execution: TestExecution, status: ExecutionStatus, error: str | None = None) -> None:
        execution.status = status
        execution.error_message = error
        execution.end_time = utc_now()
        if execution.start_time is None:
            execution.start_time = execution.end_time
        await self.store.save_execution(execution)

        log_method = log.error if status == ExecutionStatus.FAILED else log.info
        log_method(
            "execution_finished",
            execution_id=execution.id,
            status=status.value,
            total=execution.results.total,
            passed=execution.results.passed,
            failed=execution.results.failed,
            skipped=execution.results.skipped,
            duration_ms=execution.duration,
            error=error,
        )

    async def _refresh(self, execution: TestExecution) -> None:
        pr_number = execution.pr_number
        if pr_number is None and execution.suite_id is not None:
            try:
                pr_number = (await self.store.get_suite(execution.suite_id)).pr_number
            except EntityNotFoundError:
                return
        if pr_number is not None:
            await refresh_pull_request(self.store, pr_number, self.aggregator)

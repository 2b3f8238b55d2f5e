"""
Test generation orchestration.

The orchestrator turns a pull request into generated test suites. It
partitions the change set into units, fans the units out to the generation
provider on a bounded worker pool, and records one TestSuite per unit.

Job lifecycle::

    QUEUED -> IN_PROGRESS -> SUCCEEDED | PARTIALLY_FAILED | FAILED

A job with no units goes straight to SUCCEEDED. Units never affect each
other: a failing unit is recorded in ``job.failures`` and its suite is
marked FAILED while the rest keep going. The job only ends FAILED when no
unit produced (or reused) a suite.

Suite lifecycle per unit::

    GENERATING -> READY | FAILED

Before a replacement is created, any READY suite of the PR for the same file
is marked STALE. Stale suites are kept. Status changes of existing suites go
through :meth:`EntityStore.update_suite` and touch nothing else, so case
outcomes an execution records concurrently are never lost.

Interrupted runs:
    Suites of the PR left GENERATING by an interrupted run are marked FAILED
    at the start of every job, before the units are dispatched.

Resume:
    With ``resume=True`` a unit whose READY suite already carries the
    file's current fingerprint is reused instead of regenerated.

Example:
    >>> orchestrator = TestGenerationOrchestrator(config, client, store, sources)
    >>> job = await orchestrator.generate(pr)
    >>> job.state
    <JobState.SUCCEEDED: 'succeeded'>
"""

from pathlib import PurePosixPath
from typing import Protocol

import structlog

from testsmith.config.settings import TestGenerationConfig
from testsmith.engine.aggregator import ResultAggregator, refresh_pull_request
from testsmith.engine.parallel_executor import ExecutionTask, ParallelExecutor
from testsmith.engine.partitioner import ChangeSetPartitioner
from testsmith.exceptions import GenerationError
from testsmith.models.domain import (
    GeneratedSuite,
    GenerationJob,
    GenerationUnit,
    JobState,
    PullRequest,
    SuiteStatus,
    TestCase,
    TestSuite,
    utc_now,
)
from testsmith.providers.source import SourceProvider
from testsmith.store.base import EntityStore

log = structlog.get_logger(__name__)


class SuiteGenerator(Protocol):
    """Anything that can turn a unit and its source into generated cases."""

    async def generate(self, unit: GenerationUnit, source: str) -> GeneratedSuite: ...


class TestGenerationOrchestrator:
    """Drive test generation for pull requests.

    Attributes:
        config: Partitioning and concurrency settings.
        generator: Generation provider client.
        store: Entity store suites are saved to.
        sources: Reader for the changed files' contents.
        partitioner: Change-set partitioner.
    """

    __test__ = False

    def __init__(
        self,
        config: TestGenerationConfig,
        generator: SuiteGenerator,
        store: EntityStore,
        sources: SourceProvider,
        partitioner: ChangeSetPartitioner | None = None,
        aggregator: ResultAggregator | None = None,
    ) -> None:
        self.config = config
        self.generator = generator
        self.store = store
        self.sources = sources
        self.partitioner = partitioner or ChangeSetPartitioner(config)
        self.aggregator = aggregator or ResultAggregator()

    async def generate(self, pull_request: PullRequest, resume: bool = False) -> GenerationJob:
        """Generate suites for every eligible changed file of a PR.

        Args:
            pull_request: The pull request; it is saved to the store.
            resume: Reuse suites that are already up to date.

        Returns:
            The finished GenerationJob. Failure is reported through
            ``job.state``, never raised.
        """
        units = self.partitioner.partition(pull_request)
        job = GenerationJob(pr_number=pull_request.number, units=units)
        await self.store.save_pull_request(pull_request)

        log.info(
            "generation_job_started",
            job_id=job.id,
            pr_number=pull_request.number,
            units=len(units),
            resume=resume,
        )

        existing = await self.store.list_suites(pull_request.number)
        for suite in self.partitioner.detect_stale(pull_request, existing):
            await self._transition(suite, SuiteStatus.READY, SuiteStatus.STALE)

        await self._fail_interrupted(existing)

        pending: list[GenerationUnit] = []
        for unit in units:
            reusable = self._find_ready(existing, unit) if resume else None
            if reusable is not None and reusable.source_fingerprint == unit.fingerprint:
                job.reused.append(reusable)
                log.info("suite_reused", job_id=job.id, unit_id=unit.id, suite_id=reusable.id)
            else:
                pending.append(unit)

        if pending:
            tasks = [
                ExecutionTask(id=unit.id, func=self._generate_unit, args=(job, pull_request, unit, existing))
                for unit in pending
            ]
            executor = ParallelExecutor(max_workers=min(self.config.parallelism, len(pending)))
            results = await executor.execute_tasks(tasks)

            for unit in pending:
                result = results[unit.id]
                if result.success:
                    job.suites.append(result.result)
                else:
                    job.failures[unit.id] = self._describe(result.error)

        job.state = self._final_state(job)
        job.started_at = job.started_at or utc_now()
        job.finished_at = utc_now()

        await refresh_pull_request(self.store, pull_request.number, self.aggregator)

        log_method = log.warning if job.failures else log.info
        log_method(
            "generation_job_finished",
            job_id=job.id,
            pr_number=pull_request.number,
            state=job.state.value,
            suites=len(job.suites),
            reused=len(job.reused),
            failures=len(job.failures),
            duration_ms=job.duration,
        )
        return job

    async def _generate_unit(
        self,
        job: GenerationJob,
        pull_request: PullRequest,
        unit: GenerationUnit,
        existing: list[TestSuite],
    ) -> TestSuite:
        """Generate and persist the suite for one unit.

        Raises whatever made the unit fail, after marking its suite FAILED.
        """
        if job.state == JobState.QUEUED:
            job.state = JobState.IN_PROGRESS
            job.started_at = utc_now()

        for previous in existing:
            if previous.status == SuiteStatus.READY and previous.file_path == unit.file_path:
                previous.mark(SuiteStatus.STALE)
                await self._transition(previous, SuiteStatus.READY, SuiteStatus.STALE)
                log.info("suite_marked_stale", suite_id=previous.id, file=unit.file_path, reason="regenerated")

        suite = TestSuite(
            name=f"{PurePosixPath(unit.file_path).name} {unit.test_type.value} tests",
            file_path=unit.file_path,
            test_type=unit.test_type,
            language=unit.language,
            branch=pull_request.branch,
            pr_number=pull_request.number,
            status=SuiteStatus.GENERATING,
            source_fingerprint=unit.fingerprint,
        )
        await self.store.save_suite(suite)

        try:
            source = await self.sources.read(unit.file_path)
            generated = await self.generator.generate(unit, source)
        except Exception as e:
            suite.mark(SuiteStatus.FAILED, self._describe(e))
            await self.store.save_suite(suite)
            log.error("unit_generation_failed", job_id=job.id, unit_id=unit.id, error=self._describe(e))
            raise

        suite.test_cases = [
            TestCase(
                name=case.name,
                code=case.code,
                type=unit.test_type,
                language=unit.language,
                file_path=unit.file_path,
                description=case.description,
                priority=case.priority,
            )
            for case in generated.cases
        ]
        suite.generated_at = utc_now()
        suite.mark(SuiteStatus.READY)
        await self.store.save_suite(suite)

        log.info("unit_generated", job_id=job.id, unit_id=unit.id, suite_id=suite.id, cases=suite.case_count)
        return suite

    async def _transition(
        self,
        suite: TestSuite,
        expected: SuiteStatus,
        status: SuiteStatus,
        error_message: str | None = None,
    ) -> None:
        """Move the stored suite to ``status`` if it is still ``expected``."""

        def change(stored: TestSuite) -> bool:
            if stored.status != expected:
                return False
            stored.mark(status, error_message)
            return True

        await self.store.update_suite(suite.id, change)

    async def _fail_interrupted(self, suites: list[TestSuite]) -> None:
        for suite in suites:
            if suite.status == SuiteStatus.GENERATING:
                suite.mark(SuiteStatus.FAILED, "generation interrupted")
                await self._transition(suite, SuiteStatus.GENERATING, SuiteStatus.FAILED, suite.error_message)
                log.warning("interrupted_suite_failed", suite_id=suite.id, file=suite.file_path)

    @staticmethod
    def _find_ready(suites: list[TestSuite], unit: GenerationUnit) -> TestSuite | None:
        for suite in reversed(suites):
            if (
                suite.status == SuiteStatus.READY
                and suite.file_path == unit.file_path
                and suite.test_type == unit.test_type
            ):
                return suite
        return None

    @staticmethod
    def _final_state(job: GenerationJob) -> JobState:
        if not job.failures:
            return JobState.SUCCEEDED
        if job.suites or job.reused:
            return JobState.PARTIALLY_FAILED
        return JobState.FAILED

    @staticmethod
    def _describe(error: BaseException | None) -> str:
        if error is None:
            return "unknown error"
        if isinstance(error, GenerationError):
            return error.message
        if isinstance(error, FileNotFoundError):
            return f"Source file not found: {error.filename or error}"
        return str(error) or type(error).__name__

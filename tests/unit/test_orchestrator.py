"""Tests for testsmith/engine/orchestrator.py."""

import asyncio

import pytest

from testsmith.config.settings import TestGenerationConfig
from testsmith.engine.orchestrator import TestGenerationOrchestrator
from testsmith.exceptions import GenerationFailedError, ProviderContentError
from testsmith.models.domain import ChangedFile, JobState, PullRequest, SuiteStatus
from testsmith.providers.source import MappingSourceProvider

SOURCES = {
    "src/Foo.java": "class Foo {}",
    "web/bar.ts": "export const bar = 1;",
    "README.md": "# readme",
    "a.py": "x = 1",
    "b.py": "y = 2",
    "c.py": "z = 3",
    "d.py": "w = 4",
}


def make_orchestrator(store, generator, config=None, sources=None) -> TestGenerationOrchestrator:
    return TestGenerationOrchestrator(
        config or TestGenerationConfig(),
        generator,
        store,
        MappingSourceProvider(sources or SOURCES),
    )


def python_pr(*names: str, number: int = 9) -> PullRequest:
    return PullRequest(number=number, title="py", branch="main", changed_files=[ChangedFile(n, 1) for n in names])


class TestGenerate:
    """Tests for TestGenerationOrchestrator.generate."""

    @pytest.mark.asyncio
    async def test_pull_request_42_scenario(self, store, sample_pr, generator_factory):
        """Two supported files produce two READY suites; README is skipped."""
        generator = generator_factory(cases_per_unit=12)
        job = await make_orchestrator(store, generator).generate(sample_pr)

        assert job.state == JobState.SUCCEEDED
        assert [s.file_path for s in job.suites] == ["src/Foo.java", "web/bar.ts"]
        assert all(s.status == SuiteStatus.READY for s in job.suites)
        assert all(1 <= s.case_count <= 10 for s in job.suites)

        stored = await store.list_suites(42)
        assert {s.file_path for s in stored} == {"src/Foo.java", "web/bar.ts"}

        pr = await store.get_pull_request(42)
        assert pr.tests_generated == sum(s.case_count for s in job.suites)
        assert pr.tests_passed == 0
        assert pr.tests_failed == 0

    @pytest.mark.asyncio
    async def test_cases_converted_one_to_one(self, store, sample_pr, generator_factory):
        job = await make_orchestrator(store, generator_factory(cases_per_unit=2)).generate(sample_pr)

        suite = job.suites[0]
        assert [c.name for c in suite.test_cases] == ["test src/Foo.java 0", "test src/Foo.java 1"]
        assert all(c.file_path == "src/Foo.java" for c in suite.test_cases)
        assert suite.source_fingerprint == sample_pr.changed_files[0].fingerprint
        assert suite.branch == "feature/x"

    @pytest.mark.asyncio
    async def test_zero_units_succeeds_with_no_suites(self, store, generator_factory):
        pr = PullRequest(number=5, title="docs", branch="main", changed_files=[ChangedFile("README.md", 2)])
        generator = generator_factory()

        job = await make_orchestrator(store, generator).generate(pr)

        assert job.state == JobState.SUCCEEDED
        assert job.suites == []
        assert generator.calls == []
        assert job.is_failure is False

    @pytest.mark.asyncio
    async def test_one_failing_unit_gives_partial_failure(self, store, generator_factory):
        """Exhausted retries for one unit do not affect its siblings."""
        generator = generator_factory(
            failures={"b.py": GenerationFailedError("Provider still failing", unit_id="b.py#unit", attempts=3)}
        )
        pr = python_pr("a.py", "b.py", "c.py")

        job = await make_orchestrator(store, generator).generate(pr)

        assert job.state == JobState.PARTIALLY_FAILED
        assert [s.file_path for s in job.suites] == ["a.py", "c.py"]
        assert job.failures == {"b.py#unit": "Provider still failing"}

        statuses = {s.file_path: s for s in await store.list_suites(9)}
        assert statuses["b.py"].status == SuiteStatus.FAILED
        assert statuses["b.py"].error_message == "Provider still failing"
        assert statuses["a.py"].status == SuiteStatus.READY

    @pytest.mark.asyncio
    async def test_all_units_failing_gives_failed_job(self, store, generator_factory):
        error = ProviderContentError("rejected")
        generator = generator_factory(failures={"a.py": error, "b.py": error})

        job = await make_orchestrator(store, generator).generate(python_pr("a.py", "b.py"))

        assert job.state == JobState.FAILED
        assert job.is_failure is True
        assert set(job.failures) == {"a.py#unit", "b.py#unit"}

    @pytest.mark.asyncio
    async def test_missing_source_fails_only_that_unit(self, store, generator_factory):
        pr = python_pr("a.py", "missing.py")

        job = await make_orchestrator(store, generator_factory()).generate(pr)

        assert job.state == JobState.PARTIALLY_FAILED
        assert "missing.py#unit" in job.failures

    @pytest.mark.asyncio
    async def test_concurrency_bounded_by_parallelism(self, store, generator_factory):
        generator = generator_factory(delay=0.01)
        config = TestGenerationConfig(parallelism=2)

        await make_orchestrator(store, generator, config).generate(python_pr("a.py", "b.py", "c.py", "d.py"))

        assert generator.peak == 2
        assert generator.calls[:2] == ["a.py#unit", "b.py#unit"]

    @pytest.mark.asyncio
    async def test_regeneration_marks_previous_suite_stale(self, store, generator_factory):
        pr = python_pr("a.py")
        orchestrator = make_orchestrator(store, generator_factory())

        first = await orchestrator.generate(pr)
        second = await orchestrator.generate(pr)

        old = await store.get_suite(first.suites[0].id)
        new = await store.get_suite(second.suites[0].id)
        assert old.status == SuiteStatus.STALE
        assert new.status == SuiteStatus.READY
        assert len(await store.list_suites(9)) == 2

    @pytest.mark.asyncio
    async def test_changed_file_marks_suite_stale(self, store, generator_factory):
        orchestrator = make_orchestrator(store, generator_factory())
        first = await orchestrator.generate(python_pr("a.py", "b.py"))

        changed = PullRequest(
            number=9,
            title="py",
            branch="main",
            changed_files=[ChangedFile("a.py", 1), ChangedFile("b.py", 5)],
        )
        await orchestrator.generate(changed, resume=True)

        by_id = {s.id: s for s in await store.list_suites(9)}
        a_suite, b_suite = first.suites
        assert by_id[a_suite.id].status == SuiteStatus.READY
        assert by_id[b_suite.id].status == SuiteStatus.STALE


class TestResume:
    """Tests for resumable generation."""

    @pytest.mark.asyncio
    async def test_resume_reuses_up_to_date_suites(self, store, generator_factory):
        pr = python_pr("a.py", "b.py")
        await make_orchestrator(store, generator_factory()).generate(pr)

        generator = generator_factory()
        job = await make_orchestrator(store, generator).generate(pr, resume=True)

        assert generator.calls == []
        assert job.state == JobState.SUCCEEDED
        assert [s.file_path for s in job.reused] == ["a.py", "b.py"]
        assert job.suites == []

    @pytest.mark.asyncio
    async def test_resume_fails_interrupted_suites_and_redispatches(self, store, generator_factory, suite_factory):
        pr = python_pr("a.py")
        interrupted = suite_factory(pr_number=9, file_path="a.py", status=SuiteStatus.GENERATING, case_names=[])
        await store.save_suite(interrupted)

        generator = generator_factory()
        job = await make_orchestrator(store, generator).generate(pr, resume=True)

        assert generator.calls == ["a.py#unit"]
        assert job.state == JobState.SUCCEEDED
        assert (await store.get_suite(interrupted.id)).status == SuiteStatus.FAILED

    @pytest.mark.asyncio
    async def test_fresh_run_also_fails_interrupted_suites(self, store, generator_factory, suite_factory):
        interrupted = suite_factory(pr_number=9, file_path="a.py", status=SuiteStatus.GENERATING, case_names=[])
        await store.save_suite(interrupted)

        job = await make_orchestrator(store, generator_factory()).generate(python_pr("a.py"))

        assert job.state == JobState.SUCCEEDED
        stored = await store.get_suite(interrupted.id)
        assert stored.status == SuiteStatus.FAILED
        assert stored.error_message == "generation interrupted"

    @pytest.mark.asyncio
    async def test_every_suite_ends_terminal(self, store, generator_factory):
        """No suite is left GENERATING after a job, whatever its outcome."""
        generator = generator_factory(failures={"b.py": ProviderContentError("no")})

        await make_orchestrator(store, generator).generate(python_pr("a.py", "b.py", "c.py"))

        assert all(s.status != SuiteStatus.GENERATING for s in await store.list_suites(9))


@pytest.mark.asyncio
async def test_job_enters_in_progress_on_first_dispatch(store, generator_factory):
    observed = []

    class ObservingGenerator(generator_factory):
        async def generate(self, unit, source):
            observed.append(job_ref[0].state if job_ref else None)
            return await super().generate(unit, source)

    job_ref = []
    orchestrator = make_orchestrator(store, ObservingGenerator())
    original = orchestrator._generate_unit

    async def capture(job, *args):
        job_ref.append(job)
        return await original(job, *args)

    orchestrator._generate_unit = capture
    job = await orchestrator.generate(python_pr("a.py"))
    await asyncio.sleep(0)

    assert observed == [JobState.IN_PROGRESS]
    assert job.started_at is not None
    assert job.finished_at >= job.started_at

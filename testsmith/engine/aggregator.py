"""
Result aggregation.

Derives the pull request counters and dashboard statistics from suites and
executions. Every function here is pure: the same inputs always produce the
same statistics, so re-running aggregation never double-counts.

Counting rules:
    - ``tests_generated`` counts cases of the PR's non-STALE suites
    - ``tests_passed``/``tests_failed`` count those cases by their latest
      recorded outcome, so a case re-run by several executions counts once
    - ``coverage`` is the value reported by the most recent terminal
      execution of the PR that reported one
"""

from dataclasses import dataclass, field

import structlog

from testsmith.models.domain import (
    CaseStatus,
    ExecutionStatus,
    PullRequest,
    PullRequestStatus,
    SuiteStatus,
    TestExecution,
    TestSuite,
    utc_now,
)
from testsmith.store.base import EntityStore

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PullRequestStats:
    """Derived counters for one pull request."""

    pr_number: int
    tests_generated: int
    tests_passed: int
    tests_failed: int
    coverage: float | None = None

    @property
    def pass_rate(self) -> float | None:
        """Passed share of executed cases, as a percentage."""
        executed = self.tests_passed + self.tests_failed
        if executed == 0:
            return None
        return round(self.tests_passed * 100 / executed, 2)

    def to_dict(self) -> dict:
        return {
            "pr_number": self.pr_number,
            "tests_generated": self.tests_generated,
            "tests_passed": self.tests_passed,
            "tests_failed": self.tests_failed,
            "coverage": self.coverage,
            "pass_rate": self.pass_rate,
        }


@dataclass(frozen=True)
class ExecutionStats:
    """Reporting view of one execution."""

    execution_id: str
    status: ExecutionStatus
    total: int
    passed: int
    failed: int
    skipped: int
    duration: int | None
    coverage: float | None = None
    error_message: str | None = None

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration": self.duration,
            "coverage": self.coverage,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class RecentPullRequest:
    number: int
    title: str
    status: PullRequestStatus
    tests_generated: int
    tests_passed: int
    tests_failed: int


@dataclass(frozen=True)
class DashboardStats:
    """Totals across every tracked pull request.

    ``execution_time`` is the mean duration (ms) of terminal executions.
    ``running_tests`` counts executions that are PENDING or RUNNING.
    """

    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    coverage: float | None = None
    execution_time: int | None = None
    active_prs: int = 0
    merged_prs: int = 0
    generated_test_suites: int = 0
    running_tests: int = 0
    recent_prs: tuple[RecentPullRequest, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "total_tests": self.total_tests,
            "passed_tests": self.passed_tests,
            "failed_tests": self.failed_tests,
            "coverage": self.coverage,
            "execution_time": self.execution_time,
            "active_prs": self.active_prs,
            "merged_prs": self.merged_prs,
            "generated_test_suites": self.generated_test_suites,
            "running_tests": self.running_tests,
            "recent_prs": [
                {
                    "number": pr.number,
                    "title": pr.title,
                    "status": pr.status.value,
                    "tests_generated": pr.tests_generated,
                    "tests_passed": pr.tests_passed,
                    "tests_failed": pr.tests_failed,
                }
                for pr in self.recent_prs
            ],
        }


class ResultAggregator:
    """Compute derived statistics. Holds no state."""

    def pull_request_stats(
        self,
        pull_request: PullRequest,
        suites: list[TestSuite],
        executions: list[TestExecution],
    ) -> PullRequestStats:
        """Derive the counters of one pull request.

        Suites and executions belonging to other pull requests are ignored,
        so callers may pass unfiltered lists.
        """
        live = [
            s for s in suites if s.pr_number == pull_request.number and s.status != SuiteStatus.STALE
        ]
        cases = [case for suite in live for case in suite.test_cases]

        suite_ids = {s.id for s in suites if s.pr_number == pull_request.number}
        return PullRequestStats(
            pr_number=pull_request.number,
            tests_generated=len(cases),
            tests_passed=sum(1 for c in cases if c.status == CaseStatus.PASSED),
            tests_failed=sum(1 for c in cases if c.status == CaseStatus.FAILED),
            coverage=self._latest_coverage(pull_request.number, suite_ids, executions),
        )

    def refresh(
        self,
        pull_request: PullRequest,
        suites: list[TestSuite],
        executions: list[TestExecution],
    ) -> PullRequestStats:
        """Write the derived counters onto ``pull_request`` and return them."""
        stats = self.pull_request_stats(pull_request, suites, executions)
        pull_request.tests_generated = stats.tests_generated
        pull_request.tests_passed = stats.tests_passed
        pull_request.tests_failed = stats.tests_failed
        pull_request.coverage = stats.coverage
        pull_request.updated_at = utc_now()
        return stats

    def execution_stats(self, execution: TestExecution) -> ExecutionStats:
        results = execution.results
        return ExecutionStats(
            execution_id=execution.id,
            status=execution.status,
            total=results.total,
            passed=results.passed,
            failed=results.failed,
            skipped=results.skipped,
            duration=execution.duration,
            coverage=results.coverage,
            error_message=execution.error_message,
        )

    def dashboard_stats(
        self,
        pull_requests: list[PullRequest],
        suites: list[TestSuite],
        executions: list[TestExecution],
        recent_limit: int = 5,
    ) -> DashboardStats:
        """Summarize every pull request for the dashboard."""
        per_pr = [self.pull_request_stats(pr, suites, executions) for pr in pull_requests]

        coverages = [s.coverage for s in per_pr if s.coverage is not None]
        durations = [e.duration for e in executions if e.duration is not None]

        recent = sorted(pull_requests, key=lambda pr: (pr.created_at, pr.number), reverse=True)
        by_number = {s.pr_number: s for s in per_pr}

        return DashboardStats(
            total_tests=sum(s.tests_generated for s in per_pr),
            passed_tests=sum(s.tests_passed for s in per_pr),
            failed_tests=sum(s.tests_failed for s in per_pr),
            coverage=round(sum(coverages) / len(coverages), 2) if coverages else None,
            execution_time=int(sum(durations) / len(durations)) if durations else None,
            active_prs=sum(
                1 for pr in pull_requests if pr.status in (PullRequestStatus.OPEN, PullRequestStatus.IN_REVIEW)
            ),
            merged_prs=sum(1 for pr in pull_requests if pr.status == PullRequestStatus.MERGED),
            generated_test_suites=sum(1 for s in suites if s.status == SuiteStatus.READY),
            running_tests=sum(
                1 for e in executions if e.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
            ),
            recent_prs=tuple(
                RecentPullRequest(
                    number=pr.number,
                    title=pr.title,
                    status=pr.status,
                    tests_generated=by_number[pr.number].tests_generated,
                    tests_passed=by_number[pr.number].tests_passed,
                    tests_failed=by_number[pr.number].tests_failed,
                )
                for pr in recent[:recent_limit]
            ),
        )

    @staticmethod
    def _latest_coverage(
        pr_number: int,
        suite_ids: set[str],
        executions: list[TestExecution],
    ) -> float | None:
        reported = [
            e
            for e in executions
            if (e.pr_number == pr_number or e.suite_id in suite_ids)
            and e.status.is_terminal
            and e.results.coverage is not None
            and e.end_time is not None
        ]
        if not reported:
            return None
        latest = max(reported, key=lambda e: (e.end_time, e.id))
        return latest.results.coverage


async def refresh_pull_request(
    store: EntityStore,
    pr_number: int,
    aggregator: ResultAggregator | None = None,
) -> PullRequestStats | None:
    """Recompute and persist the counters of a stored pull request.

    Returns None when the pull request is not in the store (ad hoc suites).
    """
    pull_request = await store.find_pull_request(pr_number)
    if pull_request is None:
        return None

    aggregator = aggregator or ResultAggregator()
    stats = aggregator.refresh(
        pull_request,
        await store.list_suites(pr_number),
        await store.list_executions(pr_number),
    )
    await store.save_pull_request(pull_request)
    log.info(
        "pull_request_stats_refreshed",
        pr_number=pr_number,
        tests_generated=stats.tests_generated,
        tests_passed=stats.tests_passed,
        tests_failed=stats.tests_failed,
        coverage=stats.coverage,
    )
    return stats

"""In-process entity store.

Entities are held as their serialized form so every read hands out an
independent copy, the same as the JSON store does.
"""

from collections.abc import Callable
from typing import Any

from testsmith.exceptions import EntityNotFoundError
from testsmith.models.domain import PullRequest, TestExecution, TestSuite
from testsmith.store.base import EntityStore


class InMemoryStore(EntityStore):
    """Dictionary-backed store for tests and one-shot CLI runs."""

    def __init__(self) -> None:
        self._pull_requests: dict[int, dict[str, Any]] = {}
        self._suites: dict[str, dict[str, Any]] = {}
        self._executions: dict[str, dict[str, Any]] = {}

    async def get_pull_request(self, number: int) -> PullRequest:
        if number not in self._pull_requests:
            raise EntityNotFoundError("pull_request", number)
        return PullRequest.from_dict(self._pull_requests[number])

    async def save_pull_request(self, pull_request: PullRequest) -> None:
        self._pull_requests[pull_request.number] = pull_request.to_dict()

    async def list_pull_requests(self) -> list[PullRequest]:
        return [PullRequest.from_dict(self._pull_requests[n]) for n in sorted(self._pull_requests)]

    async def get_suite(self, suite_id: str) -> TestSuite:
        if suite_id not in self._suites:
            raise EntityNotFoundError("suite", suite_id)
        return TestSuite.from_dict(self._suites[suite_id])

    async def save_suite(self, suite: TestSuite) -> None:
        self._suites[suite.id] = suite.to_dict()

    async def update_suite(self, suite_id: str, change: Callable[[TestSuite], bool]) -> TestSuite:
        suite = await self.get_suite(suite_id)
        if change(suite):
            self._suites[suite_id] = suite.to_dict()
        return suite

    async def list_suites(self, pr_number: int | None = None) -> list[TestSuite]:
        # Insertion order is creation order.
        return [
            TestSuite.from_dict(data)
            for data in self._suites.values()
            if pr_number is None or data["pr_number"] == pr_number
        ]

    async def get_execution(self, execution_id: str) -> TestExecution:
        if execution_id not in self._executions:
            raise EntityNotFoundError("execution", execution_id)
        return TestExecution.from_dict(self._executions[execution_id])

    async def save_execution(self, execution: TestExecution) -> None:
        self._executions[execution.id] = execution.to_dict()

    async def list_executions(self, pr_number: int | None = None) -> list[TestExecution]:
        if pr_number is None:
            return [TestExecution.from_dict(data) for data in self._executions.values()]

        suite_ids = {sid for sid, data in self._suites.items() if data["pr_number"] == pr_number}
        return [
            TestExecution.from_dict(data)
            for data in self._executions.values()
            if data["pr_number"] == pr_number or data["suite_id"] in suite_ids
        ]

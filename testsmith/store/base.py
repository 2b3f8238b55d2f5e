"""Entity store interface.

The orchestrator, the execution engine and the reporting surfaces share
one store. Every read returns a fresh copy of the entity; nothing is
visible to other readers until it is saved.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable

from testsmith.exceptions import EntityNotFoundError
from testsmith.models.domain import PullRequest, TestExecution, TestSuite


class EntityStore(ABC):
    """Abstract persistence for pull requests, suites and executions."""

    @abstractmethod
    async def get_pull_request(self, number: int) -> PullRequest:
        """Load a pull request.

        Raises:
            EntityNotFoundError: If no pull request has that number.
        """
        pass

    @abstractmethod
    async def save_pull_request(self, pull_request: PullRequest) -> None:
        pass

    @abstractmethod
    async def list_pull_requests(self) -> list[PullRequest]:
        """All pull requests, ordered by number."""
        pass

    @abstractmethod
    async def get_suite(self, suite_id: str) -> TestSuite:
        """Load a suite with its cases.

        Raises:
            EntityNotFoundError: If no suite has that id.
        """
        pass

    @abstractmethod
    async def save_suite(self, suite: TestSuite) -> None:
        pass

    @abstractmethod
    async def update_suite(self, suite_id: str, change: Callable[[TestSuite], bool]) -> TestSuite:
        """Apply ``change`` to the stored suite as one atomic read-modify-write.

        ``change`` mutates the freshly loaded suite and returns True when it
        should be saved. Concurrent updates of the same suite never overwrite
        each other's fields, unlike a :meth:`get_suite` then :meth:`save_suite`
        round trip.

        Returns:
            The suite as stored after the update.

        Raises:
            EntityNotFoundError: If no suite has that id.
        """
        pass

    @abstractmethod
    async def list_suites(self, pr_number: int | None = None) -> list[TestSuite]:
        """Suites, optionally restricted to one pull request, oldest first."""
        pass

    @abstractmethod
    async def get_execution(self, execution_id: str) -> TestExecution:
        """Load an execution.

        Raises:
            EntityNotFoundError: If no execution has that id.
        """
        pass

    @abstractmethod
    async def save_execution(self, execution: TestExecution) -> None:
        pass

    @abstractmethod
    async def list_executions(self, pr_number: int | None = None) -> list[TestExecution]:
        """Executions, optionally restricted to one pull request.

        SINGLE executions belong to the pull request of their suite.
        """
        pass

    async def find_pull_request(self, number: int) -> PullRequest | None:
        """Like :meth:`get_pull_request` but None when missing."""
        try:
            return await self.get_pull_request(number)
        except EntityNotFoundError:
            return None

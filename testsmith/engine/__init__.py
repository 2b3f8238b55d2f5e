"""Generation and execution engine.

Key Components:
    - ChangeSetPartitioner: Splits a pull request into generation units
    - TestGenerationOrchestrator: Generates suites for a pull request
    - ExecutionEngine: Runs suites and tracks executions
    - ResultAggregator: Derives pull request and dashboard statistics
    - ParallelExecutor: Bounded worker pool shared by the above

Example:
    >>> from testsmith.engine import TestGenerationOrchestrator
    >>> orchestrator = TestGenerationOrchestrator(config, client, store, sources)
    >>> job = await orchestrator.generate(pull_request)
"""

from testsmith.engine.aggregator import DashboardStats, ExecutionStats, PullRequestStats, ResultAggregator
from testsmith.engine.execution import CaseOutcome, CaseRunner, ExecutionEngine, SubprocessCaseRunner
from testsmith.engine.orchestrator import TestGenerationOrchestrator
from testsmith.engine.partitioner import ChangeSetPartitioner

__all__ = [
    "CaseOutcome",
    "CaseRunner",
    "ChangeSetPartitioner",
    "DashboardStats",
    "ExecutionEngine",
    "ExecutionStats",
    "PullRequestStats",
    "ResultAggregator",
    "SubprocessCaseRunner",
    "TestGenerationOrchestrator",
]

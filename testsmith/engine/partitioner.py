"""
Change-set partitioning.

Turns a pull request's changed files into generation units: one unit per
file whose language is recognized and enabled, carrying the test type to
generate and the per-file case cap. Also detects READY suites whose source
file has changed since they were generated.

Test type inference:
    - E2E when the path has an ``e2e``, ``cypress`` or ``playwright``
      directory or name segment
    - INTEGRATION when it sits under an ``integration``/``it`` directory, or
      its name ends in ``IT`` or contains ``_integration``/``.integration``
    - UNIT otherwise, and whenever the inferred type is not enabled
"""

import re
from pathlib import PurePosixPath

import structlog

from testsmith.config.settings import TestGenerationConfig
from testsmith.models.domain import (
    GenerationUnit,
    Language,
    PullRequest,
    SuiteStatus,
    TestSuite,
    TestType,
)

log = structlog.get_logger(__name__)

_E2E_SEGMENT = re.compile(r"(^|[._-])(e2e|cypress|playwright)([._-]|$)", re.IGNORECASE)
_INTEGRATION_DIRS = {"integration", "integrations", "it"}
_INTEGRATION_NAME = re.compile(r"((?<=[a-z0-9])IT$|[._-]integration([._-]|$))")


class ChangeSetPartitioner:
    """Split a pull request into generation units.

    Example:
        >>> partitioner = ChangeSetPartitioner(TestGenerationConfig())
        >>> [u.id for u in partitioner.partition(pr)]
        ['src/Foo.java#unit', 'web/e2e/login.spec.ts#e2e']
    """

    def __init__(self, config: TestGenerationConfig) -> None:
        self.config = config

    def partition(self, pull_request: PullRequest) -> list[GenerationUnit]:
        """Build units for the PR's eligible files, in changed-file order.

        Files of unknown or disabled language produce no unit; they remain
        on the PR untouched. A file listed more than once yields one unit,
        built from its last entry, so unit ids stay unique.
        """
        units: list[GenerationUnit] = []
        last_entry = {changed.filename: i for i, changed in enumerate(pull_request.changed_files)}

        for position, changed in enumerate(pull_request.changed_files):
            if last_entry[changed.filename] != position:
                log.warning(
                    "duplicate_changed_file",
                    pr_number=pull_request.number,
                    file=changed.filename,
                    position=position,
                )
                continue
            language = Language.from_path(changed.filename)
            if language == Language.UNKNOWN:
                log.warning(
                    "unit_skipped_unknown_language",
                    pr_number=pull_request.number,
                    file=changed.filename,
                )
                continue
            if language not in self.config.supported_languages:
                log.info(
                    "unit_skipped_unsupported_language",
                    pr_number=pull_request.number,
                    file=changed.filename,
                    language=language.value,
                )
                continue

            units.append(
                GenerationUnit(
                    file=changed,
                    language=language,
                    test_type=self.infer_test_type(changed.filename),
                    max_tests=self.config.max_tests_per_file,
                    position=position,
                )
            )

        log.info(
            "pull_request_partitioned",
            pr_number=pull_request.number,
            changed_files=len(pull_request.changed_files),
            units=len(units),
        )
        return units

    def infer_test_type(self, path: str) -> TestType:
        """Pick the test type for a file from path conventions."""
        pure = PurePosixPath(path)
        directories = [part.lower() for part in pure.parts[:-1]]

        if any(_E2E_SEGMENT.search(part) for part in pure.parts):
            inferred = TestType.E2E
        elif _INTEGRATION_DIRS.intersection(directories) or _INTEGRATION_NAME.search(pure.stem):
            inferred = TestType.INTEGRATION
        else:
            inferred = TestType.UNIT

        if inferred not in self.config.test_types:
            return TestType.UNIT
        return inferred

    def detect_stale(self, pull_request: PullRequest, suites: list[TestSuite]) -> list[TestSuite]:
        """Mark READY suites of the PR whose file changed since generation.

        A suite whose file is no longer on the PR is left alone.

        Returns:
            The suites that were marked STALE (mutated in place).
        """
        current = {f.filename: f.fingerprint for f in pull_request.changed_files}
        stale: list[TestSuite] = []

        for suite in suites:
            if suite.pr_number != pull_request.number or suite.status != SuiteStatus.READY:
                continue
            fingerprint = current.get(suite.file_path)
            if fingerprint is None or fingerprint == suite.source_fingerprint:
                continue
            suite.mark(SuiteStatus.STALE)
            stale.append(suite)
            log.info(
                "suite_marked_stale",
                suite_id=suite.id,
                file=suite.file_path,
                reason="source_changed",
            )

        return stale

"""Tests for testsmith/engine/partitioner.py."""

import pytest
from structlog.testing import capture_logs

from testsmith.config.settings import TestGenerationConfig
from testsmith.engine.partitioner import ChangeSetPartitioner
from testsmith.models.domain import ChangedFile, Language, PullRequest, SuiteStatus, TestType


def make_pr(*filenames: str) -> PullRequest:
    return PullRequest(
        number=7,
        title="Change",
        branch="main",
        changed_files=[ChangedFile(name, additions=1) for name in filenames],
    )


class TestPartition:
    """Tests for ChangeSetPartitioner.partition."""

    def test_units_follow_changed_file_order(self, generation_config):
        pr = make_pr("b/Second.java", "a/first.py", "c/third.ts")

        units = ChangeSetPartitioner(generation_config).partition(pr)

        assert [u.file_path for u in units] == ["b/Second.java", "a/first.py", "c/third.ts"]
        assert [u.position for u in units] == [0, 1, 2]

    def test_partition_is_deterministic(self, generation_config):
        pr = make_pr("x.py", "y.java", "z.js", "w.cs")
        partitioner = ChangeSetPartitioner(generation_config)

        assert partitioner.partition(pr) == partitioner.partition(pr)

    def test_unknown_language_is_excluded_with_warning(self, generation_config):
        pr = make_pr("README.md", "src/app.py")

        with capture_logs() as logs:
            units = ChangeSetPartitioner(generation_config).partition(pr)

        assert [u.file_path for u in units] == ["src/app.py"]
        warning = next(e for e in logs if e["event"] == "unit_skipped_unknown_language")
        assert warning["log_level"] == "warning"
        assert warning["file"] == "README.md"
        assert len(pr.changed_files) == 2

    def test_unsupported_language_is_excluded_with_info(self, generation_config):
        pr = make_pr("main.go", "lib.rs")

        with capture_logs() as logs:
            units = ChangeSetPartitioner(generation_config).partition(pr)

        assert units == []
        skipped = [e for e in logs if e["event"] == "unit_skipped_unsupported_language"]
        assert {e["file"] for e in skipped} == {"main.go", "lib.rs"}
        assert all(e["log_level"] == "info" for e in skipped)

    def test_duplicate_filename_yields_one_unit_from_last_entry(self, generation_config):
        pr = PullRequest(
            number=7,
            title="Change",
            branch="main",
            changed_files=[
                ChangedFile("src/app.py", additions=1),
                ChangedFile("src/Other.java", additions=2),
                ChangedFile("src/app.py", additions=9),
            ],
        )

        with capture_logs() as logs:
            units = ChangeSetPartitioner(generation_config).partition(pr)

        assert [u.id for u in units] == ["src/Other.java#unit", "src/app.py#unit"]
        assert len({u.id for u in units}) == len(units)
        assert units[1].position == 2
        assert units[1].fingerprint == pr.changed_files[2].fingerprint
        duplicate = next(e for e in logs if e["event"] == "duplicate_changed_file")
        assert duplicate["log_level"] == "warning"
        assert duplicate["position"] == 0

    def test_unit_carries_language_cap_and_fingerprint(self):
        config = TestGenerationConfig(max_tests_per_file=4)
        pr = make_pr("src/Foo.java")

        (unit,) = ChangeSetPartitioner(config).partition(pr)

        assert unit.language == Language.JAVA
        assert unit.max_tests == 4
        assert unit.fingerprint == pr.changed_files[0].fingerprint
        assert unit.id == "src/Foo.java#unit"


class TestInferTestType:
    """Tests for test type inference from path conventions."""

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("src/main/java/Foo.java", TestType.UNIT),
            ("src/integration/OrderFlow.java", TestType.INTEGRATION),
            ("src/it/OrderIT.java", TestType.INTEGRATION),
            ("src/OrderIT.java", TestType.INTEGRATION),
            ("app/payment_integration.py", TestType.INTEGRATION),
            ("web/e2e/login.ts", TestType.E2E),
            ("cypress/support/commands.js", TestType.E2E),
            ("tests/checkout.playwright.ts", TestType.E2E),
            ("src/Unit.java", TestType.UNIT),
            ("src/Submit.java", TestType.UNIT),
        ],
    )
    def test_path_conventions(self, generation_config, path, expected):
        assert ChangeSetPartitioner(generation_config).infer_test_type(path) == expected

    def test_disabled_type_falls_back_to_unit(self):
        config = TestGenerationConfig(test_types=["unit", "integration"])

        assert ChangeSetPartitioner(config).infer_test_type("web/e2e/login.ts") == TestType.UNIT


class TestDetectStale:
    """Tests for ChangeSetPartitioner.detect_stale."""

    def test_changed_file_marks_ready_suite_stale(self, generation_config, suite_factory):
        pr = make_pr("src/Foo.java", "src/Bar.java")
        current = suite_factory(pr_number=7, file_path="src/Foo.java", fingerprint=pr.changed_files[0].fingerprint)
        outdated = suite_factory(pr_number=7, file_path="src/Bar.java", fingerprint="old")

        stale = ChangeSetPartitioner(generation_config).detect_stale(pr, [current, outdated])

        assert stale == [outdated]
        assert outdated.status == SuiteStatus.STALE
        assert current.status == SuiteStatus.READY

    def test_only_ready_suites_of_the_pr_are_considered(self, generation_config, suite_factory):
        pr = make_pr("src/Foo.java")
        failed = suite_factory(pr_number=7, file_path="src/Foo.java", status=SuiteStatus.FAILED, fingerprint="old")
        other_pr = suite_factory(pr_number=8, file_path="src/Foo.java", fingerprint="old")

        assert ChangeSetPartitioner(generation_config).detect_stale(pr, [failed, other_pr]) == []
        assert failed.status == SuiteStatus.FAILED
        assert other_pr.status == SuiteStatus.READY

    def test_file_no_longer_on_pr_is_left_alone(self, generation_config, suite_factory):
        pr = make_pr("src/Other.java")
        suite = suite_factory(pr_number=7, file_path="src/Foo.java", fingerprint="old")

        assert ChangeSetPartitioner(generation_config).detect_stale(pr, [suite]) == []

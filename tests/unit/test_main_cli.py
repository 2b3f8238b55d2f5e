"""Tests for the testsmith CLI in testsmith/main.py."""

import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from testsmith.exceptions import ProviderContentError, ValidationError
from testsmith.main import cli, load_pull_request

PR_DESCRIPTION = {
    "number": 42,
    "title": "Add payment retries",
    "branch": "feature/x",
    "author": "jdoe",
    "changed_files": [
        {"filename": "src/app.py", "additions": 12, "deletions": 1, "content": "def pay(): return True\n"},
        {"filename": "README.md", "additions": 2, "content": "# app\n"},
    ],
}


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Leave structlog unconfigured so the CLI can be invoked repeatedly."""
    with patch("testsmith.main.configure_logging"):
        yield


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "testsmith.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "storage": {"backend": "json", "state_directory": str(tmp_path / "state")},
                "test_generation": {"max_tests_per_file": 5, "test_types": ["unit"]},
            }
        )
    )
    return str(path)


@pytest.fixture
def pr_file(tmp_path):
    path = tmp_path / "pr.yaml"
    path.write_text(yaml.safe_dump(PR_DESCRIPTION))
    return str(path)


@pytest.fixture
def fake_provider(generator_factory):
    """Replace the provider client with an in-process generator."""

    class FakeClient:
        generator = generator_factory(cases_per_unit=2)

        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self.generator

        async def __aexit__(self, *exc_info):
            return None

    with patch("testsmith.main.GenerationProviderClient", FakeClient):
        yield FakeClient


@pytest.fixture
def fake_runner(runner_factory):
    runner = runner_factory()
    with patch("testsmith.main.SubprocessCaseRunner", return_value=runner):
        yield runner


def interrupted(coro):
    coro.close()
    raise KeyboardInterrupt


# =============================================================================
# generate
# =============================================================================


class TestGenerateCommand:
    """Tests for the generate command."""

    def test_generates_suites(self, cli_runner, config_file, pr_file, fake_provider, tmp_path):
        result = cli_runner.invoke(cli, ["--config", config_file, "generate", "--pr-file", pr_file])

        assert result.exit_code == 0, result.output
        assert "succeeded" in result.output
        assert "src/app.py (unit): 2 cases" in result.output
        assert fake_provider.generator.calls == ["src/app.py#unit"]

        suites = list((tmp_path / "state" / "suites").glob("*.json"))
        assert len(suites) == 1
        assert json.loads(suites[0].read_text())["status"] == "ready"

    def test_failed_job_exits_nonzero(self, cli_runner, config_file, pr_file, fake_provider):
        fake_provider.generator.failures = {"src/app.py": ProviderContentError("Provider returned no test cases")}

        result = cli_runner.invoke(cli, ["--config", config_file, "generate", "--pr-file", pr_file])

        assert result.exit_code == 1
        assert "failed" in result.output
        assert "Provider returned no test cases" in result.output

    def test_reads_sources_from_repo(self, cli_runner, config_file, tmp_path, fake_provider):
        repo = tmp_path / "repo"
        (repo / "src").mkdir(parents=True)
        (repo / "src" / "app.py").write_text("x = 1\n")
        pr = tmp_path / "pr.json"
        pr.write_text(json.dumps({"number": 7, "title": "t", "branch": "b", "changed_files": ["src/app.py"]}))

        result = cli_runner.invoke(
            cli, ["--config", config_file, "generate", "--pr-file", str(pr), "--repo", str(repo)]
        )

        assert result.exit_code == 0, result.output

    def test_invalid_pr_file(self, cli_runner, config_file, tmp_path, fake_provider):
        pr = tmp_path / "pr.yaml"
        pr.write_text("- not\n- a mapping\n")

        result = cli_runner.invoke(cli, ["--config", config_file, "generate", "--pr-file", str(pr)])

        assert result.exit_code == 1
        assert "must be an object" in result.output

    def test_missing_pr_file_is_usage_error(self, cli_runner, config_file, tmp_path):
        result = cli_runner.invoke(
            cli, ["--config", config_file, "generate", "--pr-file", str(tmp_path / "absent.yaml")]
        )

        assert result.exit_code == 2

    def test_keyboard_interrupt(self, cli_runner, config_file, pr_file):
        with patch("testsmith.main.asyncio.run", side_effect=interrupted):
            result = cli_runner.invoke(cli, ["--config", config_file, "generate", "--pr-file", pr_file])

        assert result.exit_code == 130
        assert "Interrupted" in result.output


# =============================================================================
# execute and stats
# =============================================================================


class TestExecuteCommand:
    """Tests for the execute command."""

    def test_requires_exactly_one_scope(self, cli_runner, config_file):
        neither = cli_runner.invoke(cli, ["--config", config_file, "execute"])
        both = cli_runner.invoke(cli, ["--config", config_file, "execute", "--pr", "1", "--suite", "s"])

        assert neither.exit_code == 1
        assert both.exit_code == 1
        assert "exactly one of --pr or --suite" in neither.output

    def test_runs_generated_suites(self, cli_runner, config_file, pr_file, fake_provider, fake_runner):
        cli_runner.invoke(cli, ["--config", config_file, "generate", "--pr-file", pr_file])

        result = cli_runner.invoke(cli, ["--config", config_file, "execute", "--pr", "42"])

        assert result.exit_code == 0, result.output
        assert "completed" in result.output
        assert "Passed: 2" in result.output
        assert len(fake_runner.started) == 2

    def test_unknown_suite_exits_nonzero(self, cli_runner, config_file, fake_runner):
        result = cli_runner.invoke(cli, ["--config", config_file, "execute", "--suite", "missing"])

        assert result.exit_code == 1
        assert "Test suite not found: missing" in result.output


class TestStatsCommand:
    def test_shows_counters(self, cli_runner, config_file, pr_file, fake_provider, fake_runner):
        cli_runner.invoke(cli, ["--config", config_file, "generate", "--pr-file", pr_file])
        cli_runner.invoke(cli, ["--config", config_file, "execute", "--pr", "42"])

        result = cli_runner.invoke(cli, ["--config", config_file, "stats", "--pr", "42"])

        assert result.exit_code == 0, result.output
        assert "PR #42: Add payment retries" in result.output
        assert "Tests generated: 2" in result.output
        assert "Tests passed: 2" in result.output
        assert "Coverage: n/a" in result.output

    def test_unknown_pull_request(self, cli_runner, config_file):
        result = cli_runner.invoke(cli, ["--config", config_file, "stats", "--pr", "5"])

        assert result.exit_code == 1
        assert "Error: pull_request not found: 5" in result.output


class TestServeCommand:
    def test_runs_api_under_uvicorn(self, cli_runner, config_file):
        with patch("uvicorn.run") as mock_run:
            result = cli_runner.invoke(cli, ["--config", config_file, "serve", "--port", "9001"])

        assert result.exit_code == 0, result.output
        app = mock_run.call_args.args[0]
        assert {route.path for route in app.routes} >= {"/health", "/dashboard"}
        assert mock_run.call_args.kwargs == {"host": "127.0.0.1", "port": 9001}


class TestConfigHandling:
    def test_missing_config_file(self, cli_runner, tmp_path):
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "stats", "--pr", "1"])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_help(self, cli_runner):
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("generate", "execute", "stats", "serve"):
            assert command in result.output


# =============================================================================
# load_pull_request
# =============================================================================


class TestLoadPullRequest:
    def test_inline_contents(self, pr_file):
        pull_request, contents = load_pull_request(pr_file)

        assert pull_request.number == 42
        assert [f.filename for f in pull_request.changed_files] == ["src/app.py", "README.md"]
        assert pull_request.changed_files[0].additions == 12
        assert contents["src/app.py"].startswith("def pay")

    def test_plain_filenames(self, tmp_path):
        path = tmp_path / "pr.yaml"
        path.write_text("number: 3\ntitle: t\nbranch: b\nchanged_files: [a.py, b.ts]\n")

        pull_request, contents = load_pull_request(str(path))

        assert [f.filename for f in pull_request.changed_files] == ["a.py", "b.ts"]
        assert contents == {}

    def test_missing_number(self, tmp_path):
        path = tmp_path / "pr.yaml"
        path.write_text("title: t\n")

        with pytest.raises(ValidationError):
            load_pull_request(str(path))

    def test_bad_number(self, tmp_path):
        path = tmp_path / "pr.yaml"
        path.write_text("number: forty-two\n")

        with pytest.raises(ValidationError, match="Invalid PR file"):
            load_pull_request(str(path))

"""CLI entry point for testsmith."""

import asyncio
import sys
from pathlib import Path
from typing import Any

import click
import structlog
import yaml

from testsmith.api import create_app
from testsmith.config.settings import TestsmithSettings
from testsmith.engine.aggregator import ResultAggregator
from testsmith.engine.execution import ExecutionEngine, SubprocessCaseRunner
from testsmith.engine.orchestrator import TestGenerationOrchestrator
from testsmith.exceptions import ConfigurationError, TestsmithError, ValidationError
from testsmith.models.domain import ChangedFile, ExecutionStatus, GenerationJob, PullRequest, TestExecution
from testsmith.providers.generation import GenerationProviderClient
from testsmith.providers.source import LocalSourceProvider, MappingSourceProvider, SourceProvider
from testsmith.ratelimit import RateLimiter
from testsmith.store import EntityStore, create_store
from testsmith.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default=None, help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str) -> None:
    """testsmith: generate and run tests for pull requests."""
    configure_logging(log_level)

    try:
        settings = TestsmithSettings.from_yaml(config) if config else TestsmithSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


def _run(coro: Any, event: str) -> Any:
    """Run a command coroutine, mapping errors to exit codes."""
    try:
        return asyncio.run(coro)
    except TestsmithError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{event}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


@cli.command()
@click.option(
    "--pr-file",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="PR description (YAML or JSON)",
)
@click.option(
    "--repo",
    default=None,
    type=click.Path(exists=True, file_okay=False),
    help="Repository checkout to read sources from",
)
@click.option("--resume", is_flag=True, help="Reuse suites that are already up to date")
@click.pass_context
def generate(ctx: click.Context, pr_file: str, repo: str | None, resume: bool) -> None:
    """Generate test suites for a pull request."""
    settings = ctx.obj["settings"]
    job = _run(_generate(settings, pr_file, repo, resume), "generate")
    sys.exit(1 if job.is_failure else 0)


@cli.command()
@click.option("--pr", "pr_number", type=int, default=None, help="Pull request to execute")
@click.option("--branch", default=None, help="Only run suites generated for this branch")
@click.option("--suite", "suite_id", default=None, help="Single suite to execute")
@click.pass_context
def execute(ctx: click.Context, pr_number: int | None, branch: str | None, suite_id: str | None) -> None:
    """Run generated test suites."""
    if (pr_number is None) == (suite_id is None):
        click.echo("Error: Provide exactly one of --pr or --suite", err=True)
        sys.exit(1)

    settings = ctx.obj["settings"]
    execution = _run(_execute(settings, pr_number, branch, suite_id), "execute")
    sys.exit(0 if execution.status == ExecutionStatus.COMPLETED else 1)


@cli.command()
@click.option("--pr", "pr_number", type=int, required=True, help="Pull request number")
@click.pass_context
def stats(ctx: click.Context, pr_number: int) -> None:
    """Show derived statistics for a pull request."""
    settings = ctx.obj["settings"]
    _run(_show_stats(settings, pr_number), "stats")


@cli.command()
@click.option("--host", default="127.0.0.1", help="Interface to bind")
@click.option("--port", type=int, default=8000, help="Port to listen on")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Serve the read-only reporting API."""
    import uvicorn

    settings = ctx.obj["settings"]
    limiter = RateLimiter(settings.rate_limit.window_ms, settings.rate_limit.max_requests, name="api")
    app = create_app(create_store(settings), limiter)

    log.info("api_starting", host=host, port=port)
    uvicorn.run(app, host=host, port=port)


def load_pull_request(path: str) -> tuple[PullRequest, dict[str, str]]:
    """Read a PR description file.

    The file is YAML (or JSON) with ``number``, ``title``, ``branch`` and a
    ``changed_files`` list. Entries may carry the file's ``content`` inline.

    Returns:
        The pull request and any inline file contents by path.

    Raises:
        ValidationError: If the file is not a valid PR description.
    """
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(f"Cannot read PR file {path}: {e}") from e

    if not isinstance(data, dict) or "number" not in data:
        raise ValidationError(f"PR file {path} must be an object with a 'number'")

    contents: dict[str, str] = {}
    files = []
    for entry in data.get("changed_files") or []:
        if isinstance(entry, str):
            entry = {"filename": entry}
        files.append(ChangedFile.from_dict(entry))
        if entry.get("content") is not None:
            contents[entry["filename"]] = entry["content"]

    try:
        pull_request = PullRequest.from_dict({**data, "changed_files": [f.to_dict() for f in files]})
    except (KeyError, ValueError, TypeError) as e:
        raise ValidationError(f"Invalid PR file {path}: {e}") from e
    return pull_request, contents


async def _generate(settings: TestsmithSettings, pr_file: str, repo: str | None, resume: bool) -> GenerationJob:
    """Run generation for the PR described in ``pr_file``."""
    pull_request, contents = load_pull_request(pr_file)

    sources: SourceProvider
    if repo is None and contents:
        sources = MappingSourceProvider(contents)
    else:
        sources = LocalSourceProvider(repo or ".")

    store = create_store(settings)
    limiter = RateLimiter(
        settings.provider_rate_limit.window_ms,
        settings.provider_rate_limit.max_requests,
        name="provider",
    )

    async with GenerationProviderClient(settings.llm, limiter) as client:
        orchestrator = TestGenerationOrchestrator(settings.test_generation, client, store, sources)
        job = await orchestrator.generate(pull_request, resume=resume)

    click.echo(f"Job {job.id}: {job.state.value}")
    click.echo(f"  Units: {len(job.units)}  Generated: {len(job.suites)}  Reused: {len(job.reused)}")
    for suite in job.suites:
        click.echo(f"  + {suite.file_path} ({suite.test_type.value}): {suite.case_count} cases [{suite.id}]")
    for unit_id, message in job.failures.items():
        click.echo(f"  ! {unit_id}: {message}")
    return job


async def _execute(
    settings: TestsmithSettings,
    pr_number: int | None,
    branch: str | None,
    suite_id: str | None,
) -> TestExecution:
    """Run an execution to completion and print its results."""
    store = create_store(settings)
    engine = _build_engine(settings, store)

    if pr_number is not None:
        execution = await engine.execute_pull_request(pr_number, branch)
    else:
        execution = await engine.execute_suite(str(suite_id))

    results = execution.results
    click.echo(f"Execution {execution.id}: {execution.status.value}")
    click.echo(
        f"  Total: {results.total}  Passed: {results.passed}  "
        f"Failed: {results.failed}  Skipped: {results.skipped}"
    )
    if results.coverage is not None:
        click.echo(f"  Coverage: {results.coverage}%")
    if execution.duration is not None:
        click.echo(f"  Duration: {execution.duration}ms")
    if execution.error_message:
        click.echo(f"  Error: {execution.error_message}")
    return execution


async def _show_stats(settings: TestsmithSettings, pr_number: int) -> None:
    store = create_store(settings)
    pull_request = await store.get_pull_request(pr_number)
    stats = ResultAggregator().pull_request_stats(
        pull_request,
        await store.list_suites(pr_number),
        await store.list_executions(pr_number),
    )

    click.echo(f"PR #{pull_request.number}: {pull_request.title}")
    click.echo(f"  Tests generated: {stats.tests_generated}")
    click.echo(f"  Tests passed: {stats.tests_passed}")
    click.echo(f"  Tests failed: {stats.tests_failed}")
    click.echo(f"  Coverage: {'n/a' if stats.coverage is None else f'{stats.coverage}%'}")


def _build_engine(settings: TestsmithSettings, store: EntityStore) -> ExecutionEngine:
    return ExecutionEngine(
        store,
        SubprocessCaseRunner(settings.execution.working_directory),
        settings.execution,
        case_timeout_ms=settings.test_generation.default_timeout,
    )


if __name__ == "__main__":
    cli()

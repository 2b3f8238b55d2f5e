"""
JSON file persistence for entities.

Each entity is a JSON document in a per-kind subdirectory::

    <state_dir>/
        pull_requests/42.json
        suites/<suite-id>.json
        suites/.<suite-id>.json.lock
        executions/<execution-id>.json

Writes are atomic: the document goes to a ``.tmp`` sibling first and is
renamed over the target. Each document has its own asyncio lock, so
writers of different entities never wait on each other. Writers also hold
an exclusive ``flock`` on the document's hidden ``.lock`` sidecar, so
processes sharing one state directory serialize their writes too.

Example:
    >>> store = JsonStateStore(".testsmith/state")
    >>> await store.save_pull_request(pr)
    >>> suites = await store.list_suites(pr_number=pr.number)
"""

import asyncio
import fcntl
import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from testsmith.exceptions import EntityNotFoundError, StoreError
from testsmith.models.domain import PullRequest, TestExecution, TestSuite
from testsmith.store.base import EntityStore

log = structlog.get_logger(__name__)

_KINDS = ("pull_requests", "suites", "executions")

# Poll interval while another process holds a document's flock.
_LOCK_POLL_SECONDS = 0.01


class JsonStateStore(EntityStore):
    """Store entities as JSON files with atomic writes.

    Attributes:
        state_dir: Root directory of the state files.

    Thread Safety:
        Designed for single-threaded asyncio usage. Lock creation is guarded
        by a meta-lock so concurrent first access to a document is safe.
        Several processes, or several stores in one process, may share a
        state directory: document writes are serialized by ``flock``.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Create the store, making the state directories if needed.

        Args:
            state_dir: Root directory for the per-kind subdirectories.
        """
        self.state_dir = Path(state_dir)
        for kind in _KINDS:
            (self.state_dir / kind).mkdir(parents=True, exist_ok=True)
        self._locks: dict[Path, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, path: Path) -> asyncio.Lock:
        async with self._locks_lock:
            if path not in self._locks:
                self._locks[path] = asyncio.Lock()
            return self._locks[path]

    @asynccontextmanager
    async def _document_lock(self, path: Path) -> AsyncIterator[None]:
        """Hold the document's asyncio lock and the flock on its sidecar."""
        lock = await self._get_lock(path)
        async with lock:
            lock_path = path.parent / f".{path.name}.lock"
            try:
                lock_file = open(lock_path, "w")
            except OSError as e:
                raise StoreError(f"Cannot open lock file {lock_path}: {e}") from e

            with lock_file:
                while True:
                    try:
                        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        await asyncio.sleep(_LOCK_POLL_SECONDS)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _path(self, kind: str, identifier: str | int) -> Path:
        return self.state_dir / kind / f"{identifier}.json"

    async def _read_file(self, path: Path) -> dict[str, Any]:
        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
        except FileNotFoundError:
            raise
        except OSError as e:
            raise StoreError(f"Cannot read state file {path}: {e}") from e

        try:
            data: dict[str, Any] = json.loads(content)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt state file {path}: {e}") from e
        return data

    async def _write_file(self, path: Path, data: dict[str, Any]) -> None:
        """Write a document atomically via a temporary sibling file."""
        tmp_path = path.with_suffix(".tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(data, indent=2))
            tmp_path.replace(path)
        except OSError as e:
            raise StoreError(f"Cannot write state file {path}: {e}") from e

        log.debug("state_saved", path=str(path))

    async def _read(self, path: Path) -> dict[str, Any]:
        lock = await self._get_lock(path)
        async with lock:
            return await self._read_file(path)

    async def _write(self, path: Path, data: dict[str, Any]) -> None:
        async with self._document_lock(path):
            await self._write_file(path, data)

    async def _load(self, kind: str, identifier: str | int) -> dict[str, Any]:
        try:
            return await self._read(self._path(kind, identifier))
        except FileNotFoundError:
            raise EntityNotFoundError(kind.rstrip("s"), identifier) from None

    async def _load_all(self, kind: str) -> list[dict[str, Any]]:
        documents = []
        for path in sorted((self.state_dir / kind).glob("*.json")):
            try:
                documents.append(await self._read(path))
            except FileNotFoundError:
                # Deleted between glob and read.
                continue
        return documents

    async def get_pull_request(self, number: int) -> PullRequest:
        return PullRequest.from_dict(await self._load("pull_requests", number))

    async def save_pull_request(self, pull_request: PullRequest) -> None:
        await self._write(self._path("pull_requests", pull_request.number), pull_request.to_dict())

    async def list_pull_requests(self) -> list[PullRequest]:
        prs = [PullRequest.from_dict(data) for data in await self._load_all("pull_requests")]
        return sorted(prs, key=lambda pr: pr.number)

    async def get_suite(self, suite_id: str) -> TestSuite:
        return TestSuite.from_dict(await self._load("suites", suite_id))

    async def save_suite(self, suite: TestSuite) -> None:
        await self._write(self._path("suites", suite.id), suite.to_dict())

    async def update_suite(self, suite_id: str, change: Callable[[TestSuite], bool]) -> TestSuite:
        path = self._path("suites", suite_id)
        async with self._document_lock(path):
            try:
                suite = TestSuite.from_dict(await self._read_file(path))
            except FileNotFoundError:
                raise EntityNotFoundError("suite", suite_id) from None
            if change(suite):
                await self._write_file(path, suite.to_dict())
        return suite

    async def list_suites(self, pr_number: int | None = None) -> list[TestSuite]:
        suites = [
            TestSuite.from_dict(data)
            for data in await self._load_all("suites")
            if pr_number is None or data.get("pr_number") == pr_number
        ]
        return sorted(suites, key=lambda s: (s.created_at, s.id))

    async def get_execution(self, execution_id: str) -> TestExecution:
        return TestExecution.from_dict(await self._load("executions", execution_id))

    async def save_execution(self, execution: TestExecution) -> None:
        await self._write(self._path("executions", execution.id), execution.to_dict())

    async def list_executions(self, pr_number: int | None = None) -> list[TestExecution]:
        documents = await self._load_all("executions")
        if pr_number is not None:
            suite_ids = {s.id for s in await self.list_suites(pr_number)}
            documents = [
                data
                for data in documents
                if data.get("pr_number") == pr_number or data.get("suite_id") in suite_ids
            ]
        executions = [TestExecution.from_dict(data) for data in documents]
        return sorted(executions, key=lambda e: (e.start_time is None, e.start_time, e.id))

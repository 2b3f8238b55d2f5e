"""Source file access for generation.

The orchestrator reads the current contents of each changed file through a
SourceProvider so it never depends on where the checkout lives.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path

import aiofiles

from testsmith.exceptions import ValidationError


class SourceProvider(ABC):
    """Abstract reader of source files by repository-relative path."""

    @abstractmethod
    async def read(self, path: str) -> str:
        """Return the file contents.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        pass


class LocalSourceProvider(SourceProvider):
    """Read files from a checkout on local disk.

    Attributes:
        repo_root: Directory paths are resolved against.
    """

    def __init__(self, repo_root: str | Path) -> None:
        self.repo_root = Path(repo_root).resolve()

    async def read(self, path: str) -> str:
        target = (self.repo_root / path).resolve()
        if not target.is_relative_to(self.repo_root):
            raise ValidationError(f"Path escapes repository root: {path}")

        async with aiofiles.open(target, encoding="utf-8", errors="replace") as f:
            return await f.read()


class MappingSourceProvider(SourceProvider):
    """Serve file contents supplied inline, e.g. alongside a PR payload."""

    def __init__(self, files: Mapping[str, str]) -> None:
        self._files = dict(files)

    async def read(self, path: str) -> str:
        if path not in self._files:
            raise FileNotFoundError(path)
        return self._files[path]

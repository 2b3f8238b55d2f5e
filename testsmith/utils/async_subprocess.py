"""Async subprocess utilities.

Provides non-blocking subprocess execution for the subprocess case runner,
which shells out to a language's test tool without stalling the event loop.

Example:
    >>> from testsmith.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("python", "-m", "pytest", "-q", cwd="/tmp/case")
    >>> if code == 0:
    ...     print("passed")

Thread Safety:
    Safe to call concurrently from multiple async tasks. Each call creates
    an independent subprocess with no shared state.
"""

import asyncio
import subprocess
from collections.abc import Mapping
from pathlib import Path


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments as separate strings. The first argument
            is the executable, subsequent arguments are passed to it.
        cwd: Working directory for command execution.
        check: If True (default), raise CalledProcessError when the command
            returns a non-zero exit code.
        timeout: Maximum seconds to wait for completion. If exceeded, the
            process is killed and TimeoutError is raised.
        env: Environment for the child process; inherits the parent's
            when None.

    Returns:
        Tuple of (stdout, stderr, return_code) with output decoded as UTF-8
        (invalid bytes replaced).

    Raises:
        subprocess.CalledProcessError: If check=True and command returns
            non-zero.
        TimeoutError: If timeout is exceeded. The process is killed
            before this exception is raised.
        FileNotFoundError: If the command executable is not found.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout,
        )
    except (TimeoutError, asyncio.CancelledError):
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            args,
            stdout,
            stderr,
        )

    return stdout, stderr, process.returncode or 0

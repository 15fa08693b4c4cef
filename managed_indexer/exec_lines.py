"""Run git subprocesses on the event loop and stream their output.

``exec_get_lines`` yields stdout lazily so large listings (``git ls-files -s``
on a big repository) are parsed while the process is still writing.
"""

from __future__ import annotations

import asyncio
import os
import shlex
from typing import AsyncIterator, List, Optional, Sequence, Union

from managed_indexer.errors import GitCommandError
from managed_indexer.logger import get_logger

logger = get_logger(__name__)

Command = Union[str, Sequence[str]]

# Base git invocation; quotepath off keeps non-ASCII paths unescaped in output
GIT: List[str] = ["git", "-c", "core.quotepath=off"]


def _as_argv(cmd: Command) -> List[str]:
    if isinstance(cmd, str):
        return shlex.split(cmd)
    return [str(part) for part in cmd]


async def exec_get_lines(
    cmd: Command,
    cwd: Union[str, os.PathLike],
    context: Optional[str] = None,
) -> AsyncIterator[str]:
    """Yield stdout lines of ``cmd`` as they are produced.

    Args:
        cmd: argv list, or a string split with shell rules
        cwd: working directory for the process
        context: short description used in error messages

    Raises:
        GitCommandError: the process could not start or exited non-zero
    """
    argv = _as_argv(cmd)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise GitCommandError(argv, None, str(exc), context) from exc

    assert process.stdout is not None
    stderr_task = asyncio.ensure_future(process.stderr.read()) if process.stderr else None
    try:
        while True:
            raw = await process.stdout.readline()
            if not raw:
                break
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")
    finally:
        # Consumer may stop early; make sure the process does not linger
        if process.returncode is None and not process.stdout.at_eof():
            try:
                process.kill()
            except ProcessLookupError:
                pass
        returncode = await process.wait()
        stderr = b""
        if stderr_task is not None:
            stderr = await stderr_task

    if returncode != 0:
        raise GitCommandError(argv, returncode, stderr.decode("utf-8", errors="replace"), context)


async def run_git(args: Sequence[str], cwd: Union[str, os.PathLike], context: Optional[str] = None) -> str:
    """Run ``git <args>`` and return its full stdout, stripped."""
    lines = [
        line
        async for line in exec_get_lines([*GIT, *args], cwd, context)
    ]
    return "\n".join(lines).strip()


__all__ = ["GIT", "exec_get_lines", "run_git"]

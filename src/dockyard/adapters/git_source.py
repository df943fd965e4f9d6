"""Git working-area operations."""

from __future__ import annotations

import asyncio
from pathlib import Path


class GitSource:
    """Thin async wrapper around the git CLI.

    A git process that outlives ``timeout_seconds``, or whose caller is
    cancelled, is killed rather than left running.
    """

    def __init__(self, executable: str = "git", *, timeout_seconds: float | None = None) -> None:
        self._executable = executable
        self._timeout_seconds = timeout_seconds

    async def clone(self, repo_url: str, branch: str, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        await self._run_git(None, "clone", "--branch", branch, repo_url, str(path))

    async def sync(self, path: Path, branch: str) -> None:
        """Reset the working area to the remote head of ``branch``."""
        await self._run_git(path, "fetch", "origin", branch)
        await self._run_git(path, "checkout", branch)
        await self._run_git(path, "reset", "--hard", f"origin/{branch}")

    async def _run_git(self, cwd: Path | None, *args: str) -> str:
        command = [self._executable, *args]
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            async with asyncio.timeout(self._timeout_seconds):
                stdout, stderr = await process.communicate()
        except TimeoutError:
            await self._kill(process)
            msg = f"{' '.join(command)} timed out after {self._timeout_seconds}s"
            raise RuntimeError(msg) from None
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        output = stdout.decode("utf-8", errors="replace") + stderr.decode("utf-8", errors="replace")
        if process.returncode != 0:
            msg = f"{' '.join(command)} failed: {output.strip()}"
            raise RuntimeError(msg)
        return output.strip()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from dockyard.adapters import git_source
from dockyard.adapters.git_source import GitSource


class _Process:
    def __init__(self, returncode: int, stdout: bytes = b"", stderr: bytes = b"") -> None:
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr

    async def communicate(self) -> tuple[bytes, bytes]:
        return self._stdout, self._stderr


class _HungProcess:
    def __init__(self) -> None:
        self.returncode: int | None = None
        self.killed = False

    async def communicate(self) -> tuple[bytes, bytes]:
        await asyncio.Event().wait()
        return b"", b""

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        return -9


def _capture(
    monkeypatch: pytest.MonkeyPatch, returncode: int = 0, stderr: bytes = b""
) -> list[tuple[tuple[str, ...], Any]]:
    calls: list[tuple[tuple[str, ...], Any]] = []

    async def fake_exec(*args: str, **kwargs: Any) -> _Process:
        calls.append((args, kwargs["cwd"]))
        return _Process(returncode, stderr=stderr)

    monkeypatch.setattr(git_source.asyncio, "create_subprocess_exec", fake_exec)
    return calls


@pytest.mark.asyncio
async def test_clone_checks_out_branch(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls = _capture(monkeypatch)
    target = tmp_path / "projects" / "p1"

    await GitSource().clone("https://example.com/demo.git", "release", target)

    assert calls == [
        (
            ("git", "clone", "--branch", "release", "https://example.com/demo.git", str(target)),
            None,
        )
    ]
    assert target.parent.is_dir()


@pytest.mark.asyncio
async def test_sync_resets_to_remote_branch(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    calls = _capture(monkeypatch)

    await GitSource().sync(tmp_path, "main")

    assert [args[1:] for args, _ in calls] == [
        ("fetch", "origin", "main"),
        ("checkout", "main"),
        ("reset", "--hard", "origin/main"),
    ]
    assert all(cwd == tmp_path for _, cwd in calls)


@pytest.mark.asyncio
async def test_git_failure_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _capture(monkeypatch, returncode=128, stderr=b"fatal: couldn't find remote ref main")

    with pytest.raises(RuntimeError, match="couldn't find remote ref"):
        await GitSource().sync(tmp_path, "main")


@pytest.mark.asyncio
async def test_hung_git_is_killed_after_timeout(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    process = _HungProcess()

    async def fake_exec(*args: str, **kwargs: Any) -> _HungProcess:
        return process

    monkeypatch.setattr(git_source.asyncio, "create_subprocess_exec", fake_exec)

    with pytest.raises(RuntimeError, match="timed out"):
        await GitSource(timeout_seconds=0.05).sync(tmp_path, "main")

    assert process.killed is True


@pytest.mark.asyncio
async def test_cancelled_git_is_killed(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    process = _HungProcess()

    async def fake_exec(*args: str, **kwargs: Any) -> _HungProcess:
        return process

    monkeypatch.setattr(git_source.asyncio, "create_subprocess_exec", fake_exec)
    task = asyncio.create_task(GitSource().sync(tmp_path, "main"))
    await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert process.killed is True

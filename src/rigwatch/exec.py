"""Command execution and terminal capture collaborators."""

from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import Protocol, Sequence

import structlog

from .util import CommandError

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 10.0
CAPTURE_TIMEOUT = 3.0
CAPTURE_LINES = 30


class CommandRunner(Protocol):
    async def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float = DEFAULT_TIMEOUT,
        cwd: Path | None = None,
    ) -> str: ...


class SubprocessRunner:
    """Runs gt/bd/gh/tmux as child processes from the town root."""

    def __init__(self, default_cwd: Path | None = None) -> None:
        self.default_cwd = default_cwd

    async def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float = DEFAULT_TIMEOUT,
        cwd: Path | None = None,
    ) -> str:
        workdir = cwd or self.default_cwd
        logger.debug("Running command", argv=list(argv), cwd=str(workdir) if workdir else None)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(workdir) if workdir else None,
            env=dict(os.environ),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise CommandError(list(argv), proc.returncode or -1, out, err)
        return out


class TmuxCapture:
    """Reads the visible tail of a tmux pane."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        timeout: float = CAPTURE_TIMEOUT,
        lines: int = CAPTURE_LINES,
    ) -> None:
        self.runner = runner
        self.timeout = timeout
        self.lines = lines
        self._available: bool | None = None

    def available(self) -> bool:
        if self._available is None:
            self._available = shutil.which("tmux") is not None
        return self._available

    async def capture(self, session: str) -> str:
        out = await self.runner.run(
            ["tmux", "capture-pane", "-t", session, "-p"],
            timeout=self.timeout,
        )
        return "\n".join(out.rstrip("\n").split("\n")[-self.lines :])

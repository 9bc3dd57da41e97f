"""Owned handles for external tool subprocesses.

Each compiler invocation is a :class:`ToolProcess`.  When the owning
generation is cancelled, or the awaiting task itself is cancelled, the
child is terminated (then killed after a grace period) before the
cancellation propagates, so superseded builds never leave toolchain
processes behind.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from pydantic import BaseModel

from trowel.core.generation import CancellationToken
from trowel.utils.exceptions import Diagnostic, GenerationCancelled
from trowel.utils.logging import get_logger

logger = get_logger("pipelines.tools")

TERMINATE_GRACE_SECONDS = 5.0


class ToolOutput(BaseModel):
    returncode: int
    stdout: bytes = b""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ToolProcess:
    """A single external command, run to completion or terminated."""

    def __init__(
        self,
        program: str,
        args: list[str],
        cwd: Path | None = None,
        stdin: bytes | None = None,
    ) -> None:
        self.program = program
        self.args = args
        self.cwd = cwd
        self.stdin = stdin
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def command(self) -> str:
        return " ".join([self.program, *self.args])

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def run(self, token: CancellationToken) -> ToolOutput:
        """Spawn the command and wait for it.

        Raises :class:`GenerationCancelled` if *token* fires first, and
        ``OSError`` if the program cannot be started.
        """
        token.raise_if_cancelled()
        logger.debug("tool_spawn", command=self.command, generation=token.generation)
        self._proc = await asyncio.create_subprocess_exec(
            self.program,
            *self.args,
            cwd=self.cwd,
            stdin=asyncio.subprocess.PIPE if self.stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        communicate = asyncio.ensure_future(self._proc.communicate(self.stdin))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({communicate, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if not communicate.done():
                await self.terminate()
                raise GenerationCancelled(token.generation)
            stdout, stderr = communicate.result()
        except asyncio.CancelledError:
            await self.terminate()
            raise
        finally:
            for pending in (communicate, cancelled):
                if not pending.done():
                    pending.cancel()

        output = ToolOutput(
            returncode=self._proc.returncode,
            stdout=stdout,
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        logger.debug("tool_exit", command=self.command, returncode=output.returncode)
        token.raise_if_cancelled()
        return output

    async def terminate(self) -> None:
        """Stop the child: SIGTERM first, SIGKILL if it ignores us."""
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        logger.info("tool_terminate", command=self.command, pid=proc.pid)
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), TERMINATE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        except ProcessLookupError:
            pass


# ---------------------------------------------------------------------------
# Diagnostic extraction from tool output
# ---------------------------------------------------------------------------

_RUSTC_ERROR = re.compile(
    r"^error(?:\[\w+\])?: (?P<message>.+?)\n\s*--> (?P<file>[^\n:]+):(?P<line>\d+):(?P<column>\d+)",
    re.MULTILINE,
)
_SASS_MESSAGE = re.compile(r"^Error: (?P<message>.+)$", re.MULTILINE)
_SASS_LOCATION = re.compile(r"^\s+(?P<file>\S+) (?P<line>\d+):(?P<column>\d+)\s", re.MULTILINE)


def parse_rustc_diagnostics(stderr: str) -> list[Diagnostic]:
    return [
        Diagnostic(
            source=match["file"],
            message=match["message"],
            line=int(match["line"]),
            column=int(match["column"]),
        )
        for match in _RUSTC_ERROR.finditer(stderr)
    ]


def parse_sass_diagnostics(stderr: str, default_source: str) -> list[Diagnostic]:
    message = _SASS_MESSAGE.search(stderr)
    if message is None:
        return []
    location = _SASS_LOCATION.search(stderr, message.end())
    if location is None:
        return [Diagnostic(source=default_source, message=message["message"])]
    return [
        Diagnostic(
            source=location["file"],
            message=message["message"],
            line=int(location["line"]),
            column=int(location["column"]),
        )
    ]

"""Subprocess plumbing shared by the CLI-backed providers.

Adapters compose these helpers instead of inheriting them: spawning in a
new process group, line streaming without the StreamReader size limit,
stderr draining, exit classification, and cooperative-then-forceful
termination.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from typing import AsyncIterator

from ..errors import ProviderExecutionError, ProviderNotInstalledError
from ..failure_classifier import classify_failure
from ..models import ErrorKind

logger = logging.getLogger(__name__)

# Keep this much stderr for error messages and classification.
_STDERR_TAIL_LINES = 200


async def read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read a full line from *stream* with no size limit.

    Unlike ``StreamReader.readline()``, this will never raise
    ``LimitOverrunError``. When the internal buffer fills before a
    newline is found, the buffered bytes are drained and accumulated
    until the separator appears or EOF is reached. A single JSON event
    (a tool result with a large file listing) easily exceeds 64 KiB.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunk = await stream.readuntil(b"\n")
            chunks.append(chunk)
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunk = await stream.read(exc.consumed)
            chunks.append(chunk)
        except asyncio.IncompleteReadError as exc:
            # EOF before newline: return whatever is left.
            chunks.append(exc.partial)
            return b"".join(chunks)


def _signal_process(proc: asyncio.subprocess.Process, sig: int) -> bool:
    """Signal the whole process group, falling back to the child alone.

    Returns False when the process is already gone.
    """
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            logger.debug("killpg(%s) not permitted, signalling pid only", proc.pid)
    try:
        proc.send_signal(sig)
    except ProcessLookupError:
        return False
    return True


async def terminate_process(
    proc: asyncio.subprocess.Process,
    grace_seconds: float = 5.0,
) -> int | None:
    """Stop *proc*: SIGTERM to its group, then SIGKILL after the grace period."""
    if proc.returncode is not None:
        return proc.returncode

    if not _signal_process(proc, signal.SIGTERM):
        return proc.returncode
    try:
        return await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "Process %s ignored SIGTERM for %.1fs, sending SIGKILL",
            proc.pid, grace_seconds,
        )
    if _signal_process(proc, signal.SIGKILL):
        return await proc.wait()
    return proc.returncode


async def _drain_stderr(stream: asyncio.StreamReader | None, tail: deque[str]) -> None:
    if stream is None:
        return
    while True:
        line = await read_line_unbounded(stream)
        if not line:
            return
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            logger.debug("stderr: %s", text[:300])
            tail.append(text)


async def stream_process_lines(
    cmd: list[str],
    *,
    provider_id: str,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    stdin_payload: str | None = None,
    timeout_seconds: float | None = None,
    grace_seconds: float = 5.0,
) -> AsyncIterator[str]:
    """Run *cmd* and yield its stdout line by line (decoded, stripped).

    Raises ``ProviderNotInstalledError`` when the executable is gone,
    ``ProviderExecutionError(TIMEOUT)`` when the wall clock runs out,
    and a classified ``ProviderExecutionError`` on a nonzero exit. The
    process is always terminated when the generator is closed early or
    its consumer is cancelled.
    """
    logger.info(
        "Spawning %s: %s (cwd=%s)",
        provider_id, " ".join(cmd[:6]) + (" ..." if len(cmd) > 6 else ""), cwd,
    )
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if stdin_payload is not None
            else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise ProviderNotInstalledError(
            provider_id, f"executable not found: {cmd[0]}",
        ) from exc

    stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
    stderr_task = asyncio.create_task(
        _drain_stderr(proc.stderr, stderr_tail),
        name=f"{provider_id}-stderr-{proc.pid}",
    )
    loop = asyncio.get_running_loop()
    deadline = (
        loop.time() + timeout_seconds
        if timeout_seconds is not None and timeout_seconds > 0 else None
    )

    try:
        if stdin_payload is not None and proc.stdin is not None:
            proc.stdin.write(stdin_payload.encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()

        while True:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise _timeout_error(provider_id, timeout_seconds)
            try:
                raw = await asyncio.wait_for(
                    read_line_unbounded(proc.stdout), timeout=remaining,
                )
            except asyncio.TimeoutError:
                raise _timeout_error(provider_id, timeout_seconds) from None
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            yield line

        returncode = await proc.wait()
        try:
            # A grandchild may still hold stderr open.
            await asyncio.wait_for(stderr_task, timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.debug("%s stderr still open after exit", provider_id)
        if returncode != 0:
            stderr_text = "\n".join(stderr_tail)
            classification = classify_failure(exit_code=returncode, stderr=stderr_text)
            logger.warning(
                "%s exited with code %d: %s",
                provider_id, returncode, classification.describe(),
            )
            detail = stderr_text.strip().splitlines()[-1] if stderr_text.strip() else ""
            raise ProviderExecutionError(
                classification.kind,
                f"{provider_id} exited with code {returncode}"
                + (f": {detail}" if detail else ""),
                exit_code=returncode,
                stderr=stderr_text,
            )
    finally:
        if proc.returncode is None:
            await terminate_process(proc, grace_seconds)
        if not stderr_task.done():
            stderr_task.cancel()


def _timeout_error(provider_id: str, timeout_seconds: float | None) -> ProviderExecutionError:
    return ProviderExecutionError(
        ErrorKind.TIMEOUT,
        f"{provider_id} exceeded its {timeout_seconds}s time limit",
    )

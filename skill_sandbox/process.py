"""Async child-process runner shared by one-shot executions and deployment invokes."""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

# How long to wait for pipes to close after the process group was killed.
_KILL_GRACE_S = 2.0
_READ_CHUNK = 64 * 1024


@dataclass
class ProcessOutcome:
    """Exit status and captured output of one child process."""
    exit_code: Optional[int]
    signal: Optional[str]
    stdout: str
    stderr: str
    timed_out: bool = False


def _kill_process_tree(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the child's whole process group so shell children don't keep pipes open."""
    if process.pid is None:
        return
    try:
        # start_new_session=True makes the child a group leader, so pgid == pid
        # even after the leader itself has been reaped.
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except (PermissionError, OSError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


async def _drain(stream: Optional[asyncio.StreamReader], chunks: List[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        chunks.append(chunk)


async def _feed_stdin(process: asyncio.subprocess.Process, data: bytes) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.write(data)
        await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        # The child exited (or closed stdin) without reading everything.
        pass
    finally:
        try:
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            pass


def _signal_name(returncode: Optional[int]) -> Optional[str]:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


async def run_shell(
    command: str,
    *,
    cwd: Union[str, Path],
    env: Optional[Dict[str, str]] = None,
    stdin_data: Optional[str] = None,
    timeout: Optional[float] = None,
) -> ProcessOutcome:
    """
    Run *command* through the shell in *cwd* and collect its output.

    stdout/stderr are read incrementally while the child runs. *stdin_data* is
    written and then stdin is closed so the child sees EOF. When *timeout* (seconds)
    expires the whole process group is SIGKILLed; the call then returns within a
    short grace period even if an escaped grandchild still holds the pipes.
    """
    logger.debug("Spawning in %s: %s", cwd, command)
    process = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
        env=env,
        start_new_session=True,
    )

    stdout_chunks: List[bytes] = []
    stderr_chunks: List[bytes] = []
    tasks = [
        asyncio.ensure_future(_drain(process.stdout, stdout_chunks)),
        asyncio.ensure_future(_drain(process.stderr, stderr_chunks)),
    ]
    if stdin_data is not None:
        tasks.append(asyncio.ensure_future(_feed_stdin(process, stdin_data.encode("utf-8"))))

    async def _wait_for_close() -> None:
        await asyncio.gather(*tasks)
        await process.wait()

    waiter = asyncio.ensure_future(_wait_for_close())
    timed_out = False
    try:
        if timeout is None:
            await waiter
        else:
            try:
                await asyncio.wait_for(asyncio.shield(waiter), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                _kill_process_tree(process)
                try:
                    await asyncio.wait_for(waiter, timeout=_KILL_GRACE_S)
                except asyncio.TimeoutError:
                    logger.warning("Pipes still open %.1fs after killing pid %s", _KILL_GRACE_S, process.pid)
                    await process.wait()
    except asyncio.CancelledError:
        _kill_process_tree(process)
        waiter.cancel()
        raise

    returncode = process.returncode
    return ProcessOutcome(
        exit_code=returncode if returncode is not None and returncode >= 0 else None,
        signal=_signal_name(returncode),
        stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
        stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        timed_out=timed_out,
    )

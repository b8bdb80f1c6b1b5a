from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from services.common.logging_setup import get_logger


log = get_logger("render.executor")

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"

REASON_OK = "ok"
REASON_EXIT = "exit"
REASON_SIGNAL = "signal"
REASON_OUTPUT_MISSING = "output_missing"
REASON_TIMEOUT = "timeout"
REASON_SPAWN = "spawn"


class TailBuffer:
    """Keeps only the last `limit` bytes written to it."""

    def __init__(self, limit: int) -> None:
        self._limit = max(0, int(limit))
        self._buf = bytearray()

    def write(self, chunk: bytes) -> None:
        if not self._limit:
            return
        self._buf += chunk
        overflow = len(self._buf) - self._limit
        if overflow > 0:
            del self._buf[:overflow]

    def __len__(self) -> int:
        return len(self._buf)

    def text(self) -> str:
        return self._buf.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class TranscodeOutcome:
    status: str
    reason: str
    exit_code: Optional[int]
    duration_ms: int
    stdout_tail: str
    stderr_tail: str
    output: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


async def _drain(stream: Optional[asyncio.StreamReader], sink: TailBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        sink.write(chunk)


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError:
        # fall back to the direct child
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass


class TranscodeExecutor:
    """Runs one external transcoder process and maps how it ended."""

    def __init__(self, *, tail_bytes: int = 16384, kill_grace_sec: float = 5.0) -> None:
        self._tail_bytes = tail_bytes
        self._kill_grace_sec = kill_grace_sec

    async def _stop(self, proc: asyncio.subprocess.Process) -> None:
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace_sec)
        except asyncio.TimeoutError:
            log.warning("transcode_kill pid=%s grace_sec=%s", proc.pid, self._kill_grace_sec)
            _signal_group(proc, signal.SIGKILL)
            await proc.wait()

    async def run(self, argv: Sequence[str], *, timeout_sec: float, output: Path) -> TranscodeOutcome:
        out_tail = TailBuffer(self._tail_bytes)
        err_tail = TailBuffer(self._tail_bytes)
        start = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            log.warning("transcode_spawn_failed argv0=%s err=%s", argv[0] if argv else "", e)
            return TranscodeOutcome(STATUS_FAILURE, REASON_SPAWN, None, elapsed_ms(), "", str(e))

        pumps: List[asyncio.Task] = [
            asyncio.create_task(_drain(proc.stdout, out_tail)),
            asyncio.create_task(_drain(proc.stderr, err_tail)),
        ]
        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout_sec)
        except asyncio.TimeoutError:
            timed_out = True
            log.warning("transcode_timeout pid=%s timeout_sec=%s", proc.pid, timeout_sec)
            await self._stop(proc)
        except asyncio.CancelledError:
            await self._stop(proc)
            raise
        finally:
            try:
                await asyncio.wait_for(asyncio.gather(*pumps), timeout=5)
            except asyncio.TimeoutError:
                for t in pumps:
                    t.cancel()
                await asyncio.gather(*pumps, return_exceptions=True)

        code = proc.returncode
        duration_ms = elapsed_ms()
        stdout_tail, stderr_tail = out_tail.text(), err_tail.text()

        if timed_out:
            return TranscodeOutcome(STATUS_FAILURE, REASON_TIMEOUT, code, duration_ms, stdout_tail, stderr_tail)
        if code is not None and code < 0:
            return TranscodeOutcome(STATUS_FAILURE, REASON_SIGNAL, code, duration_ms, stdout_tail, stderr_tail)
        if code != 0:
            return TranscodeOutcome(STATUS_FAILURE, REASON_EXIT, code, duration_ms, stdout_tail, stderr_tail)

        # exit 0 is not enough on its own
        try:
            size = output.stat().st_size
        except FileNotFoundError:
            size = 0
        if size <= 0:
            return TranscodeOutcome(STATUS_FAILURE, REASON_OUTPUT_MISSING, code, duration_ms, stdout_tail, stderr_tail)

        return TranscodeOutcome(STATUS_SUCCESS, REASON_OK, code, duration_ms, stdout_tail, stderr_tail, output=output)

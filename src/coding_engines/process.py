"""Subprocess helpers shared by the executor and the server manager."""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
from typing import IO

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"
EOF = None


def terminate_process(
    process: subprocess.Popen[str] | subprocess.Popen[bytes],
    *,
    grace_seconds: float = 5.0,
) -> None:
    """SIGTERM, then SIGKILL if the process outlives the grace period."""

    if process.poll() is not None:
        return
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s ignored SIGTERM, killing", process.pid)
        try:
            process.kill()
        except OSError:
            return
        try:
            process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.error("Process %s did not exit after SIGKILL", process.pid)


def pump_lines(
    stream: IO[str],
    stream_name: str,
    sink: queue.Queue[tuple[str, str | None]],
) -> threading.Thread:
    """Read ``stream`` line by line into ``sink`` from a daemon thread.

    Items are ``(stream_name, line)``; ``(stream_name, None)`` marks EOF.
    """

    def _run() -> None:
        try:
            for line in stream:
                sink.put((stream_name, line.rstrip("\r\n")))
        except (OSError, ValueError):
            logger.debug("Stream %s closed while reading", stream_name, exc_info=True)
        finally:
            sink.put((stream_name, EOF))

    thread = threading.Thread(target=_run, daemon=True, name=f"pump-{stream_name}")
    thread.start()
    return thread

"""
Terminal process handoff.

On POSIX the supervisor replaces its own process image with the worker,
so the worker inherits the PID, signals and exit status directly. Where
exec semantics are unavailable the worker is run as a child whose
signals are forwarded and whose exit code becomes ours.
"""

import os
import signal
import subprocess
import sys
from typing import NoReturn, Optional, Sequence

import structlog


FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def supports_exec() -> bool:
    """Whether ``os.execvp`` replaces the process image on this platform."""
    return os.name == "posix"


def hand_off(argv: Sequence[str], cwd: Optional[str] = None) -> NoReturn:
    """
    Transfer control to ``argv``; never returns.

    Args:
        argv: Worker command line, argv[0] is resolved on PATH
        cwd: Directory to change into before the handoff
    """
    if not argv:
        raise ValueError("Cannot hand off to an empty command")

    if supports_exec():
        if cwd:
            os.chdir(cwd)
        # exec discards unflushed Python buffers
        sys.stdout.flush()
        sys.stderr.flush()
        os.execvp(argv[0], list(argv))

    sys.exit(run_forwarding_signals(argv, cwd=cwd))


def run_forwarding_signals(argv: Sequence[str], cwd: Optional[str] = None) -> int:
    """Run ``argv`` in the foreground, forwarding termination signals to it."""
    logger = structlog.get_logger().bind(component="process")
    proc = subprocess.Popen(list(argv), cwd=cwd)
    logger.info("Worker started as child process", pid=proc.pid)

    def _forward(signum, frame):
        if proc.poll() is None:
            proc.send_signal(signum)

    previous = {}
    for sig in FORWARDED_SIGNALS:
        previous[sig] = signal.signal(sig, _forward)

    try:
        return proc.wait()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

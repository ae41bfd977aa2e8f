"""Liveness checks and termination for agent processes left behind by a
previous server run.

Only the pid recorded in agents.json is considered; nothing else on the
machine is touched.
"""

from __future__ import annotations

import logging
import os
import signal

logger = logging.getLogger(__name__)


def is_process_alive(pid: int | None) -> bool:
    """True when a process with *pid* exists (signal 0 probe)."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False
    return True


def terminate_process(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Send *sig* to *pid*. Returns False if it was already gone.

    Raises PermissionError when the process belongs to another user.
    """
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return False
    logger.info("Sent signal %d to orphaned agent process pid=%d", sig, pid)
    return True

"""Liveness checks and graceful termination by pid."""

from __future__ import annotations

import psutil

from .errors import ProcessError


def alive(pid: int) -> bool:
    """Return True if a process with this pid exists (zombies count as dead)."""
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists, but owned by someone else
        return True


def terminate(pid: int) -> None:
    """Send the platform's graceful-termination signal (SIGTERM on POSIX).

    Never escalates and never waits for the process to exit.
    """
    try:
        psutil.Process(pid).terminate()
    except psutil.NoSuchProcess as exc:
        raise ProcessError(pid, ProcessError.NOT_FOUND, f"process {pid} not found") from exc
    except psutil.AccessDenied as exc:
        raise ProcessError(
            pid, ProcessError.PERMISSION_DENIED, f"permission denied signalling process {pid}"
        ) from exc
    except OSError as exc:
        raise ProcessError(pid, ProcessError.OTHER_IO, f"failed to terminate process {pid}: {exc}") from exc

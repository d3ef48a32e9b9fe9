# src/notesync/core/coordination/liveness.py
"""Process identity and liveness checks.

Locks and gate tickets record (host, pid, process start time) of their
owner. An owner on this host is alive while a process with that pid exists
and was started at the recorded time; a pid recycled by a later process
does not match. Owners on other hosts cannot be inspected and are judged
by heartbeat alone.
"""

import os
import socket
from dataclasses import dataclass

import psutil

# create_time() is derived from boot time and clock ticks; allow for rounding
CREATE_TIME_TOLERANCE_SECONDS = 0.05


@dataclass(frozen=True, slots=True)
class ProcessIdentity:
    """Host, pid and start time of a lock or ticket owner."""

    host: str
    pid: int
    started: float | None = None

    def __str__(self) -> str:
        return f"{self.host}:{self.pid}"

    @classmethod
    def current(cls) -> "ProcessIdentity":
        return cls(host=socket.gethostname(), pid=os.getpid(), started=psutil.Process().create_time())

    @property
    def is_local(self) -> bool:
        return self.host == socket.gethostname()


def process_alive(pid: int, started: float | None = None) -> bool:
    """Whether the process that recorded (pid, started) still runs on this host.

    When started is None only the pid is checked. A process visible but
    owned by another user counts as alive.
    """
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        if not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE:
            return False
        if started is not None and abs(proc.create_time() - started) > CREATE_TIME_TOLERANCE_SECONDS:
            return False
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        return True
    return True

"""OS process enumeration and signalling behind a small interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List

import psutil

from app.jobs.models import TerminationSignal


class ProcessGone(Exception):
    """The pid no longer exists. Callers treat this as a successful kill."""


@dataclass(frozen=True)
class ProcessInfo:
    """A running process as seen by the reaper."""
    pid: int
    command_line: str


class ProcessTable(ABC):
    """Access to the OS process list, swappable in tests."""

    @abstractmethod
    def list_processes(self) -> List[ProcessInfo]:
        """Snapshot of live processes. May raise if the OS call itself fails."""
        ...

    @abstractmethod
    def send_signal(self, pid: int, signal: TerminationSignal) -> None:
        """Deliver a signal. Raises ProcessGone when the pid is already dead."""
        ...

    @abstractmethod
    def is_alive(self, pid: int) -> bool:
        ...

    def ancestors(self, pid: int) -> List[int]:
        return []


class PsutilProcessTable(ProcessTable):
    """psutil-backed table; terminate()/kill() map to SIGTERM/SIGKILL on POSIX."""

    def list_processes(self) -> List[ProcessInfo]:
        processes = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = proc.info.get("cmdline")
            if not cmdline:
                # Kernel threads, zombies, or access denied
                continue
            processes.append(ProcessInfo(pid=proc.info["pid"], command_line=" ".join(cmdline)))
        return processes

    def send_signal(self, pid: int, signal: TerminationSignal) -> None:
        try:
            proc = psutil.Process(pid)
            if signal == TerminationSignal.FORCEFUL:
                proc.kill()
            else:
                proc.terminate()
        except psutil.NoSuchProcess as exc:
            raise ProcessGone(pid) from exc

    def is_alive(self, pid: int) -> bool:
        try:
            proc = psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def ancestors(self, pid: int) -> List[int]:
        try:
            return [p.pid for p in psutil.Process(pid).parents()]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

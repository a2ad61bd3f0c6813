"""Process reaper: find render-job processes and kill them, verifying death.

Best effort throughout. Nothing in here raises back into the caller's stop
sequence: enumeration failures, already-dead pids and survivors are logged
and reported in `last_report`.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Set

from app.jobs.models import TerminationSignal
from app.processes.patterns import compile_patterns
from app.processes.process_table import ProcessGone, ProcessTable, PsutilProcessTable

logger = logging.getLogger(__name__)


@dataclass
class ReapReport:
    """What one reaping pass found, killed and left alive."""
    matched: List[int] = field(default_factory=list)
    killed: int = 0
    survivors: List[int] = field(default_factory=list)
    error: Optional[str] = None


class ProcessReaper:
    """Kills processes that belong to a render job.

    Targets are (a) PIDs tracked at spawn time and (b) processes whose
    command line matches the allow-list. The reaper's own process and its
    ancestors are never targeted.
    """

    def __init__(
        self,
        patterns: Sequence[str],
        table: Optional[ProcessTable] = None,
        grace_s: float = 0.3,
        verify_delay_s: float = 0.2,
    ):
        self._patterns = list(patterns)
        self._table = table or PsutilProcessTable()
        self._grace_s = grace_s
        self._verify_delay_s = verify_delay_s
        self._tracked: Set[int] = set()
        self.last_report = ReapReport()

    @property
    def patterns(self) -> List[str]:
        return list(self._patterns)

    def track(self, pid: int) -> None:
        self._tracked.add(pid)

    def untrack(self, pid: int) -> None:
        self._tracked.discard(pid)

    def tracked(self) -> List[int]:
        return sorted(self._tracked)

    def find_targets(self, patterns: Optional[Sequence[str]] = None) -> List[int]:
        """Matching pids, own process excluded. Raises if enumeration fails."""
        own_pid = os.getpid()
        protected = {own_pid, *self._table.ancestors(own_pid)}
        regexes = compile_patterns(self._patterns if patterns is None else patterns)

        targets: Set[int] = set()
        for proc in self._table.list_processes():
            if proc.pid in protected:
                continue
            if proc.pid in self._tracked or any(r.search(proc.command_line) for r in regexes):
                targets.add(proc.pid)
        return sorted(targets)

    async def reap(self, patterns: Optional[Sequence[str]] = None, forceful: bool = False) -> int:
        """One reaping pass. Returns the number of processes signalled to death.

        forceful=True sends SIGKILL straight away; otherwise SIGTERM first and
        SIGKILL to whatever is still alive after the grace window.
        """
        report = ReapReport()
        self.last_report = report

        loop = asyncio.get_event_loop()
        try:
            targets = await loop.run_in_executor(None, self.find_targets, patterns)
        except Exception as e:
            report.error = f"{type(e).__name__}: {e}"
            logger.error("Process enumeration failed, skipping reap pass: %s", report.error)
            return 0

        report.matched = targets
        if not targets:
            logger.info("No render processes found to reap")
            return 0

        logger.info(
            "Reaping %d process(es) with %s: %s",
            len(targets),
            "SIGKILL" if forceful else "SIGTERM",
            targets,
        )

        if forceful:
            pending = self._signal_all(targets, TerminationSignal.FORCEFUL)
        else:
            pending = self._signal_all(targets, TerminationSignal.GRACEFUL)
            if pending:
                await asyncio.sleep(self._grace_s)
                stubborn = [pid for pid in pending if self._safe_is_alive(pid)]
                if stubborn:
                    logger.info("Escalating to SIGKILL for %s", stubborn)
                    self._signal_all(stubborn, TerminationSignal.FORCEFUL)

        await asyncio.sleep(self._verify_delay_s)

        for pid in targets:
            if self._safe_is_alive(pid):
                report.survivors.append(pid)
            else:
                self._tracked.discard(pid)

        report.killed = len(targets) - len(report.survivors)
        if report.survivors:
            logger.warning("Process(es) still alive after SIGKILL: %s", report.survivors)
        logger.info("Reap pass finished: %d killed, %d survived", report.killed, len(report.survivors))
        return report.killed

    async def sweep(
        self,
        passes: int = 2,
        settle_s: float = 0.5,
        forceful: bool = True,
        patterns: Optional[Sequence[str]] = None,
    ) -> int:
        """Several strictly sequential passes; catches children forked mid-pass."""
        total = 0
        for i in range(max(1, passes)):
            if i > 0:
                await asyncio.sleep(settle_s)
            total += await self.reap(patterns, forceful=forceful)
        return total

    def _signal_all(self, pids: Iterable[int], signal: TerminationSignal) -> List[int]:
        """Signal every pid; returns those that were still there to receive it."""
        delivered = []
        for pid in pids:
            try:
                self._table.send_signal(pid, signal)
                delivered.append(pid)
                logger.debug("Sent %s to pid %d", signal.value, pid)
            except ProcessGone:
                logger.debug("Process %d already terminated", pid)
            except Exception as e:
                logger.warning("Failed to send %s to pid %d: %s", signal.value, pid, e)
        return delivered

    def _safe_is_alive(self, pid: int) -> bool:
        try:
            return self._table.is_alive(pid)
        except Exception as e:
            logger.debug("Liveness check failed for pid %d: %s", pid, e)
            return False

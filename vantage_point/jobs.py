"""
Asynchronous probe jobs.

A launched job runs detached from the request that started it; its process
id is the handle the controller later uses to collect results.
"""

import logging
import subprocess
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from vantage_point.errors import ProbeToolError, UnknownHandleError
from vantage_point.prober import PING_TOOL, RR_TOOL, TRACEROUTE_TOOL, TS_TOOL
from vantage_point.tools import ToolRunner, read_result, remove_files
from vantage_point.workfile import WorkFileAllocator


logger = logging.getLogger(__name__)


class ProbeKind(str, Enum):
    TRACEROUTE = "traceroute"
    PING = "ping"
    RR = "rr"
    TS = "ts"


@dataclass
class ProbeJob:
    """
    A running or finished background probe.

    Attributes:
        handle: Process id of the launched tool
        output_files: Primary output first, then side files, then the work file
        kind: Probe kind
        process: Process object, used to check whether the tool is still running
    """
    handle: int
    output_files: List[str]
    kind: ProbeKind
    process: Optional[subprocess.Popen] = field(default=None, repr=False)


class AsyncJobTracker:
    """
    Launches probing tools in the background and reaps their results by handle.

    ``_jobs`` is guarded by ``_jobs_lock`` only for the insert and the
    pop, so work on different handles never waits on another job's I/O.
    """

    def __init__(self, tools: ToolRunner, allocator: WorkFileAllocator):
        self.tools = tools
        self.allocator = allocator
        self._jobs: Dict[int, ProbeJob] = {}
        self._jobs_lock = threading.Lock()

    def _commands(self, kind: ProbeKind, fn: str):
        """Return (argv, output files, stdout file or None) for a job kind."""
        t = self.tools
        if kind == ProbeKind.TRACEROUTE:
            trace_out, count_out = f"{fn}.trace.out", f"{fn}.count.out"
            argv = t.command(TRACEROUTE_TOOL, t.threads, fn, t.device, 1, trace_out, count_out)
            return argv, [trace_out, count_out, fn], None
        if kind == ProbeKind.PING:
            out = f"{fn}.out"
            return t.command(PING_TOOL, t.threads, fn, t.device), [out, fn], out
        if kind == ProbeKind.RR:
            rr_out = f"{fn}.rrping.out"
            argv = t.command(RR_TOOL, t.threads, fn, t.device, rr_out)
            return argv, [rr_out, f"{rr_out}.ttl", fn], None
        out = f"{fn}.out"
        return t.command(TS_TOOL, t.threads, fn, t.device), [out, fn], out

    def launch(self, kind: ProbeKind, targets: Sequence) -> int:
        """
        Start a probe in the background.

        Args:
            kind: Probe kind
            targets: Destinations, or [target, slot, ...] lists for timestamp probes

        Returns:
            Handle to pass to ``reap``
        """
        kind = ProbeKind(kind)
        if kind == ProbeKind.TS:
            lines = [" ".join(probe) for probe in targets]
        else:
            lines = list(targets)
        fn = self.allocator.allocate_lines(lines)
        argv, files, stdout_path = self._commands(kind, fn)

        stdout = open(stdout_path, 'w') if stdout_path else None
        try:
            process = self.tools.spawn(argv, stdout=stdout)
        except OSError as e:
            remove_files(*files)
            raise ProbeToolError(argv[0], detail=str(e))
        finally:
            if stdout is not None:
                stdout.close()

        job = ProbeJob(handle=process.pid, output_files=files, kind=kind, process=process)
        with self._jobs_lock:
            self._jobs[job.handle] = job
        logger.info(f"Launched {kind.value} job {job.handle} for {len(lines)} targets")
        return job.handle

    def pending(self) -> List[int]:
        """Handles launched but not yet reaped."""
        with self._jobs_lock:
            return list(self._jobs)

    def reap(self, handle: int) -> str:
        """
        Collect the output of a launched job, killing it if still running.

        A handle can be reaped once; the entry is removed before any file
        is touched.

        Raises:
            UnknownHandleError: If the handle is not tracked
            MissingResultFileError: If the tool produced no output file
        """
        with self._jobs_lock:
            job = self._jobs.pop(handle, None)
        if job is None:
            raise UnknownHandleError(handle)

        try:
            if job.process is not None and job.process.poll() is None:
                logger.info(f"Killing pid {handle}")
                self.tools.kill_group(handle)
                try:
                    job.process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    logger.warning(f"Job {handle} did not exit after kill")
            else:
                logger.info(f"Job {handle} completed")
            self.tools.fix_ownership(*job.output_files)
            return read_result(job.output_files[0])
        finally:
            remove_files(*job.output_files)

"""
Synchronous probe execution.

Each probe kind writes its targets to a work file, runs one external tool to
completion and returns the tool's raw output. Temporary files are removed on
every exit path.
"""

import logging
import os
from typing import List, Sequence

from vantage_point.errors import ProbeToolError
from vantage_point.tools import ToolRunner, read_result, remove_files
from vantage_point.workfile import WorkFileAllocator


logger = logging.getLogger(__name__)


TRACEROUTE_TOOL = "randstprober"
PING_TOOL = "aliasprobe"
RR_TOOL = "rrping"
TS_TOOL = "tsprespec-ping"
PARIS_TOOL_DIR = "ptrun"
PARIS_TOOL = "ptrun.py"


class ProbeExecutor:
    """
    Blocking wrapper around the probing tools.

    Callers that must stay responsive use ``AsyncJobTracker`` instead; these
    calls hold the calling thread until the tool exits.

    Attributes:
        tools: Runner for the external binaries
        allocator: Source of unique work file names
    """

    def __init__(self, tools: ToolRunner, allocator: WorkFileAllocator):
        self.tools = tools
        self.allocator = allocator

    def _check(self, tool: str, result) -> None:
        if result.returncode != 0:
            detail = (result.stderr or "").strip()
            raise ProbeToolError(tool, result.returncode, detail)

    def _run_tool(self, tool: str, argv: List[str], check: bool = True, **kwargs):
        """
        Run a probing tool.

        With ``check`` a nonzero exit raises ProbeToolError; without it the
        exit status is only logged and the caller gets the result as is.
        """
        try:
            result = self.tools.run(argv, **kwargs)
        except OSError as e:
            raise ProbeToolError(tool, detail=str(e))
        if check:
            self._check(tool, result)
        elif result.returncode != 0:
            logger.warning(f"{tool} exited with status {result.returncode}: {(result.stderr or '').strip()}")
        return result

    def traceroute(self, targets: Sequence[str]) -> str:
        """Run one traceroute per target."""
        logger.info(f"Sending {len(targets)} traceroutes")
        fn = self.allocator.allocate_lines(targets)
        trace_out, count_out = f"{fn}.trace.out", f"{fn}.count.out"
        try:
            self._run_tool(TRACEROUTE_TOOL, self.tools.command(
                TRACEROUTE_TOOL, self.tools.threads, fn, self.tools.device, 1, trace_out, count_out
            ))
            self.tools.fix_ownership(trace_out, count_out)
            return read_result(trace_out)
        finally:
            remove_files(trace_out, fn, count_out)

    def ping(self, targets: Sequence[str]) -> str:
        """Ping every target; the tool reports on stdout, which is returned whatever its exit status."""
        logger.info(f"Sending {len(targets)} pings")
        fn = self.allocator.allocate_lines(targets)
        try:
            result = self._run_tool(PING_TOOL, self.tools.command(
                PING_TOOL, self.tools.threads, fn, self.tools.device
            ), check=False)
            return result.stdout
        finally:
            remove_files(fn)

    def rr(self, targets: Sequence[str]) -> str:
        """Send one record-route ping per target."""
        logger.info(f"Sending {len(targets)} record-routes")
        fn = self.allocator.allocate_lines(targets)
        rr_out, ttl_out = f"{fn}.rrping.out", f"{fn}.rrping.out.ttl"
        try:
            self._run_tool(RR_TOOL, self.tools.command(
                RR_TOOL, self.tools.threads, fn, self.tools.device, rr_out
            ))
            self.tools.fix_ownership(rr_out, ttl_out)
            return read_result(rr_out)
        finally:
            remove_files(fn, rr_out, ttl_out)

    def ts(self, probes: Sequence[Sequence[str]]) -> str:
        """
        Send prespecified timestamp probes.

        Args:
            probes: Each probe is [target, slot, slot, ...]
        """
        logger.info(f"Sending {len(probes)} timestamps")
        fn = self.allocator.allocate_lines(" ".join(probe) for probe in probes)
        try:
            result = self._run_tool(TS_TOOL, self.tools.command(
                TS_TOOL, self.tools.threads, fn, self.tools.device
            ), check=False)
            return result.stdout
        finally:
            remove_files(fn)

    def paristrace(self, target: str) -> str:
        """Run a Paris traceroute toward a single target and return its text summary."""
        logger.info(f"Running Paris traceroute towards {target}")
        base = self.allocator.reserve("paristrace_output_{port}_{uid}")
        bin_out, txt_out = f"{base}.bin", f"{base}.txt"
        tool_dir = os.path.join(self.tools.tools_dir, PARIS_TOOL_DIR)
        argv = self.tools.privileged([
            os.path.join(".", PARIS_TOOL), "-d", target, "-o", bin_out, "-s", txt_out
        ])
        try:
            self._run_tool(PARIS_TOOL, argv, cwd=tool_dir)
            self.tools.fix_ownership(bin_out, txt_out)
            return read_result(txt_out)
        finally:
            remove_files(txt_out, bin_out)

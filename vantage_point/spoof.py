"""
Spoofed probe coordination.

Spoofed probes have a send leg (this agent emits probes carrying another
host's source address) and a receive leg (this agent captures probes that
others spoofed as it). Both legs carry a numeric session id so concurrent
campaigns can be told apart.

Receivers are killed by matching (kind, session id) on the command line, so
sessions with different ids never disturb each other. Two calls for the
same session are not serialized here; callers must not overlap them.
"""

import logging
import os
import subprocess
import threading
from enum import Enum
from typing import Dict, List, Mapping, Sequence, Tuple, Union

from models import DEFAULT_SPOOF_ID
from vantage_point.errors import MissingResultFileError, OutOfRangeError, ProbeToolError
from vantage_point.tools import ToolRunner, read_result, remove_files
from vantage_point.workfile import WorkFileAllocator


logger = logging.getLogger(__name__)

TRACEROUTE_ID_MAX = 2047
SESSION_ID_MAX = 65535
DEFAULT_START_TTL = 1
DEFAULT_FINISH_TTL = 30
MAX_TTL = 31

RR_SEND_TOOL = "rrspoof"
TS_SEND_TOOL = "tsprespec-spoof"
TR_SEND_TOOL = "pingspoof"


class SpoofKind(str, Enum):
    RR = "rr"
    TS = "ts"

    @property
    def receiver_prefix(self) -> str:
        return "rrspoof" if self is SpoofKind.RR else "tsprespec"

    @property
    def receiver_tool(self) -> str:
        return f"{self.receiver_prefix}-recv"


def validate_session_id(session_id: int, max_value: int = SESSION_ID_MAX) -> int:
    """Raise OutOfRangeError unless 0 <= session_id <= max_value."""
    if isinstance(session_id, bool) or not isinstance(session_id, int):
        raise OutOfRangeError(0, max_value, session_id, "Spoofer ID out of range")
    if session_id < 0 or session_id > max_value:
        raise OutOfRangeError(0, max_value, session_id, "Spoofer ID out of range")
    return session_id


def validate_traceroute_id(session_id: int) -> int:
    """Spoofed traceroute ids must fit the 11-bit field."""
    return validate_session_id(session_id, TRACEROUTE_ID_MAX)


def ttl_range(traceroute: Union[str, Sequence]) -> Tuple[str, int, int]:
    """
    Resolve a traceroute spec to (destination, start_ttl, finish_ttl).

    Accepts dst, [dst], [dst, start] or [dst, start, finish]; missing TTLs
    default to 1 and 30.

    Raises:
        OutOfRangeError: Unless 1 <= start <= finish <= 31
    """
    if isinstance(traceroute, str):
        dst, start, finish = traceroute, DEFAULT_START_TTL, DEFAULT_FINISH_TTL
    else:
        if len(traceroute) == 0:
            raise ValueError("Traceroute spec must name a destination")
        dst = str(traceroute[0])
        start = int(traceroute[1]) if len(traceroute) > 1 else DEFAULT_START_TTL
        finish = int(traceroute[2]) if len(traceroute) > 2 else DEFAULT_FINISH_TTL

    if start < 1 or start > finish:
        raise OutOfRangeError(1, finish, start, "Start TTL out of range")
    if finish > MAX_TTL:
        raise OutOfRangeError(start, MAX_TTL, finish, "Finish TTL out of range")
    return dst, start, finish


class SpoofCoordinator:
    """
    Sends spoofed probes and runs the matching receivers.

    Per-receiver maps are always walked as an explicit list of receivers,
    never by iterating the mapping's items; some hosts issue a call back to
    themselves when the map is walked as a map.
    """

    def __init__(self, tools: ToolRunner, allocator: WorkFileAllocator):
        self.tools = tools
        self.allocator = allocator
        self._receivers: Dict[str, subprocess.Popen] = {}
        self._receivers_lock = threading.Lock()

    def _send(self, tool: str, lines: List[str], session_id: int) -> None:
        fn = self.allocator.allocate_lines(lines)
        try:
            argv = self.tools.command(tool, self.tools.threads, fn, self.tools.device, session_id)
            try:
                result = self.tools.run(argv)
            except OSError as e:
                raise ProbeToolError(tool, detail=str(e))
            if result.returncode != 0:
                raise ProbeToolError(tool, result.returncode, (result.stderr or "").strip())
        finally:
            remove_files(fn)

    def spoof_rr(self, probes: Mapping[str, Sequence[str]], session_id: int = DEFAULT_SPOOF_ID) -> None:
        """
        Send spoofed record-route pings.

        Args:
            probes: receiver -> destinations to spoof as that receiver
        """
        validate_session_id(session_id)
        lines = []
        for receiver in list(probes.keys()):
            destinations = probes[receiver]
            logger.info(f"Spoofing {receiver} for {len(destinations)} record-routes")
            for dst in destinations:
                lines.append(f"{dst} {receiver}")
        self._send(RR_SEND_TOOL, lines, session_id)

    def spoof_ts(self, probes: Mapping[str, Sequence[Sequence[str]]], session_id: int = DEFAULT_SPOOF_ID) -> None:
        """
        Send spoofed prespecified timestamp pings.

        Args:
            probes: receiver -> [[target, slot, ...], ...]
        """
        validate_session_id(session_id)
        lines = []
        for receiver in list(probes.keys()):
            timestamps = probes[receiver]
            logger.info(f"Spoofing {receiver} for {len(timestamps)} timestamps")
            for ts in timestamps:
                lines.append(" ".join([receiver] + [str(x) for x in ts]))
        self._send(TS_SEND_TOOL, lines, session_id)

    def spoof_tr(self, probes: Mapping[str, Sequence], session_id: int) -> None:
        """
        Send spoofed traceroutes, one probe per (destination, ttl, receiver).

        Everything is validated before a work file is written.

        Raises:
            OutOfRangeError: For an id outside 11 bits or a bad TTL range
        """
        validate_traceroute_id(session_id)
        lines = []
        for receiver in list(probes.keys()):
            traceroutes = [ttl_range(tr) for tr in probes[receiver]]
            logger.info(f"Sending spoofed traceroute ID={session_id} as {receiver} "
                        + " ".join(f"{d},{s},{f}" for d, s, f in traceroutes))
            for dst, start, finish in traceroutes:
                for ttl in range(start, finish + 1):
                    lines.append(f"{dst} {ttl} {receiver}")
        self._send(TR_SEND_TOOL, lines, session_id)

    def _kill_pattern(self, prefixes: str, session_id: int) -> str:
        return f"({prefixes})-recv [^ ]+ [^ ]+ {session_id}$"

    def receive(self, kind: SpoofKind, session_id: int = DEFAULT_SPOOF_ID) -> str:
        """
        Start a receiver for a session and return the path it writes to.

        Any receiver already running for the same (kind, session id) is
        killed first.
        """
        kind = SpoofKind(kind)
        validate_session_id(session_id)
        self.tools.pkill(self._kill_pattern(kind.receiver_prefix, session_id))

        fn = self.allocator.reserve(f"spoof_{{port}}_{{uid}}_{kind.receiver_prefix}ping.out")
        logger.info(f"Receiving spoofed {kind.receiver_prefix} {fn}")
        argv = self.tools.command(kind.receiver_tool, self.tools.device, fn, session_id)
        try:
            process = self.tools.spawn(argv)
        except OSError as e:
            raise ProbeToolError(kind.receiver_tool, detail=str(e))
        with self._receivers_lock:
            self._receivers[fn] = process
        return fn

    def receive_rr(self, session_id: int = DEFAULT_SPOOF_ID) -> str:
        return self.receive(SpoofKind.RR, session_id)

    def receive_ts(self, session_id: int = DEFAULT_SPOOF_ID) -> str:
        return self.receive(SpoofKind.TS, session_id)

    def _reap_receiver(self, output_path: str) -> None:
        with self._receivers_lock:
            process = self._receivers.pop(output_path, None)
        if process is None:
            return
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Receiver for {output_path} still running after kill")

    def is_receiver_output(self, output_path: str) -> bool:
        """True for paths handed out by ``receive`` in this or an earlier run."""
        with self._receivers_lock:
            if output_path in self._receivers:
                return True
        directory, name = os.path.split(os.path.abspath(output_path))
        suffixes = tuple(f"{kind.receiver_prefix}ping.out" for kind in SpoofKind)
        return (
            directory == os.path.abspath(self.allocator.output_dir)
            and name.startswith("spoof_")
            and name.endswith(suffixes)
        )

    def kill_and_retrieve(self, output_path: str, session_id: int = DEFAULT_SPOOF_ID) -> Tuple[str, List[str]]:
        """
        Stop the session's receivers and return what they captured.

        Returns:
            (raw probe output, source hostnames one per line of the .src file)

        Raises:
            ValueError: If ``output_path`` is not a receiver output file
            MissingResultFileError: If the receiver never produced its files;
                nothing is removed in that case
        """
        validate_session_id(session_id)
        if not self.is_receiver_output(output_path):
            raise ValueError(f"Not a receiver output file: {output_path}")
        self.tools.pkill(self._kill_pattern("tsprespec|rrspoof", session_id))
        self._reap_receiver(output_path)

        src_path, ttl_path = f"{output_path}.src", f"{output_path}.ttl"
        for path in (output_path, src_path):
            if not os.path.exists(path):
                raise MissingResultFileError(path)

        logger.info(f"Retrieving {output_path}")
        try:
            self.tools.fix_ownership(output_path, src_path, ttl_path)
            probes = read_result(output_path)
            sources = [line.rstrip("\n") for line in read_result(src_path).splitlines()]
            if os.path.exists(ttl_path):
                ttls = read_result(ttl_path)
                logger.debug(f"Receiver wrote {len(ttls.splitlines())} TTL records")
            return probes, sources
        finally:
            remove_files(output_path, src_path, ttl_path)

    def killall_receive(self) -> None:
        """Kill every receiver on the host, clearing leftovers from earlier runs."""
        for kind in SpoofKind:
            self.tools.killall(kind.receiver_tool)
        with self._receivers_lock:
            self._receivers.clear()

"""
Unit tests for synchronous probe execution.
Tests tool command lines, result reading and temporary file cleanup.
"""

import os
from pathlib import Path

import pytest

from vantage_point.errors import MissingResultFileError, ProbeToolError
from vantage_point.prober import ProbeExecutor


@pytest.fixture
def executor(tools, allocator):
    return ProbeExecutor(tools, allocator)


def leftover_files(tmp_path):
    return sorted(os.listdir(tmp_path))


class TestTraceroute:
    """Test the traceroute probe."""

    def test_command_and_result(self, executor, tools, tmp_path):
        """The tool gets threads, work file, device and both output files."""
        def write_outputs(argv):
            Path(argv[5]).write_text("hop data")
            Path(argv[6]).write_text("3")
        tools.on_run = write_outputs

        result = executor.traceroute(["1.2.3.4", "5.6.7.8"])

        assert result == "hop data"
        fn = os.path.join(str(tmp_path), "targs_54321_0.txt")
        assert tools.commands == [[
            "/opt/vp-tools/randstprober", "40", fn, "eth0", "1",
            f"{fn}.trace.out", f"{fn}.count.out",
        ]]
        assert tools.inputs == ["1.2.3.4\n5.6.7.8\n"]
        assert tools.chowned == [[f"{fn}.trace.out", f"{fn}.count.out"]]
        assert leftover_files(tmp_path) == []

    def test_missing_output_still_cleans_up(self, executor, tools, tmp_path):
        """A tool that writes nothing surfaces as MissingResultFile."""
        with pytest.raises(MissingResultFileError):
            executor.traceroute(["1.2.3.4"])

        assert leftover_files(tmp_path) == []

    def test_tool_failure_raises_and_cleans_up(self, executor, tools, tmp_path):
        def write_partial(argv):
            Path(argv[5]).write_text("partial")
        tools.on_run = write_partial
        tools.returncode = 2
        tools.stderr = "socket: Operation not permitted\n"

        with pytest.raises(ProbeToolError) as exc_info:
            executor.traceroute(["1.2.3.4"])

        assert exc_info.value.returncode == 2
        assert "Operation not permitted" in str(exc_info.value)
        assert leftover_files(tmp_path) == []


class TestPingAndTimestamp:
    """Test the probes that report on stdout."""

    def test_ping_returns_stdout(self, executor, tools, tmp_path):
        tools.stdout = "1.2.3.4 alive\n"

        assert executor.ping(["1.2.3.4"]) == "1.2.3.4 alive\n"
        fn = os.path.join(str(tmp_path), "targs_54321_0.txt")
        assert tools.commands == [["/opt/vp-tools/aliasprobe", "40", fn, "eth0"]]
        assert leftover_files(tmp_path) == []

    def test_ts_writes_one_probe_per_line(self, executor, tools, tmp_path):
        """Each probe is written as target followed by its prespecified slots."""
        tools.stdout = "ts results"

        result = executor.ts([["1.2.3.4", "10.0.0.1"], ["5.6.7.8", "10.0.0.2", "10.0.0.3"]])

        assert result == "ts results"
        assert tools.commands[0][0] == "/opt/vp-tools/tsprespec-ping"
        assert tools.inputs == ["1.2.3.4 10.0.0.1\n5.6.7.8 10.0.0.2 10.0.0.3\n"]
        assert leftover_files(tmp_path) == []

    def test_ping_nonzero_exit_keeps_output(self, executor, tools, tmp_path):
        """Unreachable targets make the tool exit nonzero; what it printed is still returned."""
        tools.stdout = "1.2.3.4 alive\n5.6.7.8 timeout\n"
        tools.returncode = 1

        assert executor.ping(["1.2.3.4", "5.6.7.8"]) == "1.2.3.4 alive\n5.6.7.8 timeout\n"
        assert leftover_files(tmp_path) == []

    def test_ts_nonzero_exit_keeps_output(self, executor, tools):
        tools.stdout = "partial ts results"
        tools.returncode = 3

        assert executor.ts([["1.2.3.4", "10.0.0.1"]]) == "partial ts results"

    def test_unlaunchable_tool(self, executor, tools, tmp_path):
        """A binary that cannot be executed is reported as a tool error."""
        def missing_binary(argv):
            raise FileNotFoundError(argv[0])
        tools.on_run = missing_binary

        with pytest.raises(ProbeToolError):
            executor.ping(["1.2.3.4"])

        assert leftover_files(tmp_path) == []


class TestRecordRoute:
    """Test the record-route probe."""

    def test_reads_rr_output_and_removes_ttl_file(self, executor, tools, tmp_path):
        def write_outputs(argv):
            Path(argv[4]).write_text("rr data")
            Path(argv[4] + ".ttl").write_text("64")
        tools.on_run = write_outputs

        assert executor.rr(["1.2.3.4"]) == "rr data"
        fn = os.path.join(str(tmp_path), "targs_54321_0.txt")
        assert tools.commands == [["/opt/vp-tools/rrping", "40", fn, "eth0", f"{fn}.rrping.out"]]
        assert leftover_files(tmp_path) == []


class TestParisTraceroute:
    """Test the Paris traceroute wrapper."""

    def test_runs_in_tool_directory(self, executor, tools, tmp_path):
        def write_outputs(argv):
            Path(argv[4]).write_bytes(b"\x00\x01")
            Path(argv[6]).write_text("paris summary")
        tools.on_run = write_outputs

        assert executor.paristrace("1.2.3.4") == "paris summary"

        base = os.path.join(str(tmp_path), "paristrace_output_54321_0")
        assert tools.commands == [["./ptrun.py", "-d", "1.2.3.4", "-o", f"{base}.bin", "-s", f"{base}.txt"]]
        assert tools.cwds == ["/opt/vp-tools/ptrun"]
        assert leftover_files(tmp_path) == []

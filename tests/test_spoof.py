"""
Tests for spoofed probe coordination.
Tests send-side work files, id and TTL validation, and the receiver
start/kill/retrieve cycle.
"""

import os
import re
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st

from vantage_point.errors import MissingResultFileError, OutOfRangeError, ProbeToolError
from vantage_point.spoof import (
    SpoofCoordinator,
    SpoofKind,
    ttl_range,
    validate_session_id,
    validate_traceroute_id,
)


@pytest.fixture
def spoofer(tools, allocator):
    return SpoofCoordinator(tools, allocator)


class TestSpoofSend:
    """Test the send leg."""

    def test_spoof_rr_lines(self, spoofer, tools, tmp_path):
        """Each destination is paired with the receiver it is spoofed as."""
        spoofer.spoof_rr({"hostA": ["1.2.3.4", "5.6.7.8"]}, 45678)

        fn = os.path.join(str(tmp_path), "targs_54321_0.txt")
        assert tools.commands == [["/opt/vp-tools/rrspoof", "40", fn, "eth0", "45678"]]
        assert tools.inputs == ["1.2.3.4 hostA\n5.6.7.8 hostA\n"]
        assert os.listdir(tmp_path) == []

    def test_spoof_rr_default_session(self, spoofer, tools):
        spoofer.spoof_rr({"hostA": ["1.2.3.4"]})

        assert tools.commands[0][-1] == "45678"

    def test_spoof_ts_lines(self, spoofer, tools):
        spoofer.spoof_ts({"hostB": [["1.2.3.4", "10.0.0.1", "10.0.0.2"]]}, 7)

        assert tools.commands[0][0] == "/opt/vp-tools/tsprespec-spoof"
        assert tools.commands[0][-1] == "7"
        assert tools.inputs == ["hostB 1.2.3.4 10.0.0.1 10.0.0.2\n"]

    def test_spoof_tr_one_line_per_ttl(self, spoofer, tools):
        spoofer.spoof_tr({"hostC": [["1.2.3.4", 2, 4], "5.6.7.8"]}, 12)

        lines = tools.inputs[0].splitlines()
        assert lines[:3] == ["1.2.3.4 2 hostC", "1.2.3.4 3 hostC", "1.2.3.4 4 hostC"]
        assert lines[3] == "5.6.7.8 1 hostC"
        assert lines[-1] == "5.6.7.8 30 hostC"
        assert len(lines) == 3 + 30
        assert tools.commands[0][0] == "/opt/vp-tools/pingspoof"

    @pytest.mark.parametrize("session_id", [0, 2047])
    def test_spoof_tr_accepts_id_bounds(self, spoofer, tools, session_id):
        spoofer.spoof_tr({"hostC": ["1.2.3.4"]}, session_id)

        assert tools.commands[0][-1] == str(session_id)

    @pytest.mark.parametrize("session_id", [-1, 2048])
    def test_spoof_tr_rejects_ids_outside_11_bits(self, spoofer, tools, session_id):
        """Invalid ids are rejected before anything is written or run."""
        with pytest.raises(OutOfRangeError) as exc_info:
            spoofer.spoof_tr({"hostC": ["1.2.3.4"]}, session_id)

        assert (exc_info.value.min, exc_info.value.max) == (0, 2047)
        assert exc_info.value.value == session_id
        assert tools.commands == []

    def test_spoof_tr_bad_ttl_sends_nothing(self, spoofer, tools, tmp_path):
        with pytest.raises(OutOfRangeError):
            spoofer.spoof_tr({"hostC": ["1.2.3.4", ["5.6.7.8", 5, 3]]}, 1)

        assert tools.commands == []
        assert os.listdir(tmp_path) == []

    def test_send_failure_removes_work_file(self, spoofer, tools, tmp_path):
        tools.returncode = 1

        with pytest.raises(ProbeToolError):
            spoofer.spoof_rr({"hostA": ["1.2.3.4"]})

        assert os.listdir(tmp_path) == []


class TestTtlRange:
    """Test traceroute TTL bounds."""

    def test_defaults(self):
        assert ttl_range("1.2.3.4") == ("1.2.3.4", 1, 30)
        assert ttl_range(["1.2.3.4"]) == ("1.2.3.4", 1, 30)
        assert ttl_range(["1.2.3.4", 5]) == ("1.2.3.4", 5, 30)

    def test_full_range_accepted(self):
        assert ttl_range(["1.2.3.4", 1, 30]) == ("1.2.3.4", 1, 30)
        assert ttl_range(["1.2.3.4", 31, 31]) == ("1.2.3.4", 31, 31)

    def test_start_after_finish(self):
        with pytest.raises(OutOfRangeError) as exc_info:
            ttl_range(["1.2.3.4", 5, 3])

        assert exc_info.value.value == 5

    def test_start_below_one(self):
        with pytest.raises(OutOfRangeError):
            ttl_range(["1.2.3.4", 0, 3])

    def test_finish_above_max(self):
        with pytest.raises(OutOfRangeError) as exc_info:
            ttl_range(["1.2.3.4", 1, 32])

        assert exc_info.value.max == 31
        assert exc_info.value.value == 32


class TestReceive:
    """Test the receive leg."""

    def test_receive_kills_same_session_first(self, spoofer, tools, tmp_path):
        fn = spoofer.receive(SpoofKind.RR, 45678)

        assert fn == os.path.join(str(tmp_path), "spoof_54321_0_rrspoofping.out")
        assert tools.pkilled == ["(rrspoof)-recv [^ ]+ [^ ]+ 45678$"]
        assert tools.commands == [["/opt/vp-tools/rrspoof-recv", "eth0", fn, "45678"]]

    def test_receive_ts_uses_timestamp_receiver(self, spoofer, tools):
        fn = spoofer.receive_ts(9)

        assert fn.endswith("_tsprespecping.out")
        assert tools.commands[0][0] == "/opt/vp-tools/tsprespec-recv"

    def test_kill_pattern_only_matches_its_session(self, spoofer, tools):
        """Receivers for other session ids survive a restart of this one."""
        spoofer.receive_rr(45)
        pattern = re.compile(tools.pkilled[0])

        assert pattern.search("rrspoof-recv eth0 /tmp/spoof_1_2_rrspoofping.out 45")
        assert not pattern.search("rrspoof-recv eth0 /tmp/spoof_1_2_rrspoofping.out 456")
        assert not pattern.search("tsprespec-recv eth0 /tmp/spoof_1_2_tsprespecping.out 45")

    def test_kill_and_retrieve(self, spoofer, tools, tmp_path):
        fn = spoofer.receive_rr(45678)
        Path(fn).write_text("probe bytes")
        Path(f"{fn}.src").write_text("hostA\nhostB\n")
        Path(f"{fn}.ttl").write_text("64\n")

        probes, sources = spoofer.kill_and_retrieve(fn, 45678)

        assert probes == "probe bytes"
        assert sources == ["hostA", "hostB"]
        assert tools.pkilled[-1] == "(tsprespec|rrspoof)-recv [^ ]+ [^ ]+ 45678$"
        assert tools.spawned[0].returncode is not None
        assert os.listdir(tmp_path) == []

    def test_kill_and_retrieve_missing_output(self, spoofer, tmp_path):
        fn = os.path.join(str(tmp_path), "spoof_54321_9_rrspoofping.out")

        with pytest.raises(MissingResultFileError):
            spoofer.kill_and_retrieve(fn)

    def test_kill_and_retrieve_rejects_foreign_path(self, spoofer, tools, tmp_path):
        """Files the receivers did not write are left alone."""
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        important = elsewhere / "important.dat"
        important.write_text("keep me")
        Path(f"{important}.src").write_text("hostA\n")

        with pytest.raises(ValueError):
            spoofer.kill_and_retrieve(str(important), 45678)

        assert important.read_text() == "keep me"
        assert Path(f"{important}.src").exists()
        assert tools.pkilled == []
        assert tools.chowned == []

    def test_kill_and_retrieve_rejects_unrelated_name_in_output_dir(self, spoofer, tmp_path):
        other = tmp_path / "targs_54321_3.txt"
        other.write_text("targets")

        with pytest.raises(ValueError):
            spoofer.kill_and_retrieve(str(other))

        assert other.exists()

    def test_kill_and_retrieve_missing_sources_keeps_capture(self, spoofer, tools):
        fn = spoofer.receive_ts(7)
        Path(fn).write_text("ts capture")

        with pytest.raises(MissingResultFileError) as exc_info:
            spoofer.kill_and_retrieve(fn, 7)

        assert exc_info.value.path == f"{fn}.src"
        assert Path(fn).read_text() == "ts capture"
        assert tools.chowned == []

    def test_kill_and_retrieve_after_agent_restart(self, spoofer, tmp_path):
        """Output of a receiver started by an earlier run is still retrievable."""
        fn = os.path.join(str(tmp_path), "spoof_54321_4_rrspoofping.out")
        Path(fn).write_text("capture bytes")
        Path(f"{fn}.src").write_text("hostA\n")

        assert spoofer.kill_and_retrieve(fn) == ("capture bytes", ["hostA"])
        assert os.listdir(tmp_path) == []

    def test_killall_receive(self, spoofer, tools):
        spoofer.killall_receive()

        assert sorted(tools.killalls) == ["rrspoof-recv", "tsprespec-recv"]


@settings(max_examples=100)
@given(session_id=st.integers(min_value=-100000, max_value=100000))
def test_property_session_id_range(session_id):
    """
    For any integer id, validation succeeds exactly when it fits in 16 bits.
    """
    if 0 <= session_id <= 65535:
        assert validate_session_id(session_id) == session_id
    else:
        with pytest.raises(OutOfRangeError):
            validate_session_id(session_id)


@settings(max_examples=100)
@given(session_id=st.integers(min_value=-5000, max_value=5000))
def test_property_traceroute_id_range(session_id):
    """
    For any integer id, spoofed traceroute validation accepts exactly 0..2047.
    """
    if 0 <= session_id <= 2047:
        assert validate_traceroute_id(session_id) == session_id
    else:
        with pytest.raises(OutOfRangeError):
            validate_traceroute_id(session_id)


def test_boolean_is_not_a_session_id():
    with pytest.raises(OutOfRangeError):
        validate_session_id(True)

"""
Shared fixtures: a recording stand-in for the probing tools and a fake
HTTP server for update downloads.
"""

import itertools
import os
import subprocess
from unittest.mock import Mock

import pytest
import requests

from vantage_point.tools import ToolRunner
from vantage_point.workfile import WorkFileAllocator


class FakeProcess:
    """Popen look-alike for a spawned tool."""

    _pids = itertools.count(4000)

    def __init__(self, argv, running=True):
        self.argv = argv
        self.pid = next(self._pids)
        self.returncode = None if running else 0

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self.returncode is None:
            self.returncode = -9
        return self.returncode


class FakeToolRunner(ToolRunner):
    """
    ToolRunner that records commands instead of executing them.

    ``on_run``/``on_spawn`` let a test create the files a real tool would
    write. The contents of the work file passed to each command are kept in
    ``inputs`` since the file is deleted once the call returns.
    """

    def __init__(self, tools_dir="/opt/vp-tools", threads=40, device="eth0", use_sudo=False):
        super().__init__(tools_dir, threads, device, use_sudo=False)
        self.commands = []
        self.inputs = []
        self.cwds = []
        self.spawned = []
        self.chowned = []
        self.pkilled = []
        self.killed_groups = []
        self.killalls = []
        self.returncode = 0
        self.stdout = ""
        self.stderr = ""
        self.on_run = None
        self.on_spawn = None
        self.keep_running = True

    def _record(self, argv):
        argv = list(argv)
        self.commands.append(argv)
        work = [a for a in argv if a.endswith(".txt") and os.path.isfile(a)]
        if work:
            with open(work[0]) as f:
                self.inputs.append(f.read())
        else:
            self.inputs.append(None)
        return argv

    def run(self, argv, stdout=None, cwd=None):
        argv = self._record(argv)
        self.cwds.append(cwd)
        if self.on_run is not None:
            self.on_run(argv)
        if stdout is not None:
            stdout.write(self.stdout)
            return subprocess.CompletedProcess(argv, self.returncode, None, self.stderr)
        return subprocess.CompletedProcess(argv, self.returncode, self.stdout, self.stderr)

    def spawn(self, argv, stdout=None):
        argv = self._record(argv)
        if self.on_spawn is not None:
            self.on_spawn(argv, stdout)
        process = FakeProcess(argv, running=self.keep_running)
        self.spawned.append(process)
        return process

    def fix_ownership(self, *files):
        self.chowned.append(list(files))

    def pkill(self, pattern):
        self.pkilled.append(pattern)

    def kill_group(self, pgid):
        self.killed_groups.append(pgid)
        for process in self.spawned:
            if process.pid == pgid and process.returncode is None:
                process.returncode = -9

    def killall(self, name):
        self.killalls.append(name)


@pytest.fixture
def tools():
    return FakeToolRunner()


@pytest.fixture
def allocator(tmp_path):
    return WorkFileAllocator(str(tmp_path), lambda: 54321)


def serve(pages):
    """Build a requests.get replacement serving ``pages`` by URL."""
    def fake_get(url, timeout=None):
        if url not in pages:
            response = Mock(status_code=404, text="")
            response.raise_for_status.side_effect = requests.exceptions.HTTPError("404")
            return response
        response = Mock(status_code=200, text=pages[url])
        response.raise_for_status.return_value = None
        return response
    return fake_get

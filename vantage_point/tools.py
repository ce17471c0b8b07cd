"""
Invocation of the external probing binaries.

Every command is built as an argument list; target names never pass
through a shell.
"""

import logging
import os
import signal
import subprocess
from typing import IO, List, Optional, Sequence, Union

from vantage_point.errors import MissingResultFileError


logger = logging.getLogger(__name__)


class ToolRunner:
    """
    Runs probing tools from a tools directory, optionally under sudo.

    Attributes:
        tools_dir: Directory holding the probing binaries
        threads: Thread count passed as the first argument to every tool
        device: Network interface the tools bind to
        use_sudo: Prefix commands with ``sudo`` (the tools need raw sockets)
    """

    def __init__(self, tools_dir: str, threads: int, device: str, use_sudo: bool = True):
        self.tools_dir = tools_dir
        self.threads = threads
        self.device = device
        self.use_sudo = use_sudo

    def privileged(self, argv: List[str]) -> List[str]:
        return (["sudo"] + argv) if self.use_sudo else argv

    def tool_path(self, tool: str) -> str:
        return os.path.join(self.tools_dir, tool)

    def command(self, tool: str, *args: Union[str, int]) -> List[str]:
        """
        Build a tool command line.

        Example: ["sudo", "./rrping", "40", "/tmp/targs_54321_0.txt", "eth0", "..."]
        """
        return self.privileged([self.tool_path(tool)] + [str(a) for a in args])

    def run(
        self,
        argv: Sequence[str],
        stdout: Optional[IO] = None,
        cwd: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run a command to completion.

        Output is captured as text unless ``stdout`` redirects it to a file.

        Raises:
            OSError: If the binary cannot be executed
        """
        logger.info(f"Running {' '.join(argv)}")
        if stdout is None:
            return subprocess.run(list(argv), capture_output=True, text=True, cwd=cwd)
        return subprocess.run(list(argv), stdout=stdout, stderr=subprocess.PIPE, text=True, cwd=cwd)

    def spawn(self, argv: Sequence[str], stdout: Optional[IO] = None) -> subprocess.Popen:
        """
        Start a command in the background and return immediately.

        The child gets its own session so it outlives the calling request.
        """
        logger.info(f"Launching {' '.join(argv)}")
        return subprocess.Popen(
            list(argv),
            stdout=stdout if stdout is not None else subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

    def fix_ownership(self, *files: str) -> None:
        """
        Give files written by privileged tools back to the invoking user.

        Best effort: failures are logged, never raised.
        """
        if not self.use_sudo:
            return
        existing = [f for f in files if os.path.exists(f)]
        if not existing:
            return
        try:
            result = subprocess.run(
                ["sudo", "chown", str(os.getuid())] + existing,
                capture_output=True,
                text=True,
                timeout=10,
            )
            if result.returncode != 0:
                logger.warning(f"chown returned {result.returncode}: {result.stderr.strip()}")
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Unable to fix ownership of {existing}: {e}")

    def pkill(self, pattern: str) -> None:
        """Forcibly terminate every process whose command line matches ``pattern``."""
        argv = self.privileged(["pkill", "-9", "-f", pattern])
        try:
            result = subprocess.run(argv, capture_output=True, text=True, timeout=10)
            # pkill exits 1 when nothing matched
            if result.returncode > 1:
                logger.warning(f"pkill {pattern!r} returned {result.returncode}: {result.stderr.strip()}")
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Unable to kill processes matching {pattern!r}: {e}")

    def kill_group(self, pgid: int) -> None:
        """Forcibly terminate a background job started by ``spawn``."""
        try:
            if self.use_sudo:
                subprocess.run(["sudo", "kill", "-9", "--", f"-{pgid}"],
                               capture_output=True, text=True, timeout=10)
            else:
                os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            logger.debug(f"Process group {pgid} already gone")
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Unable to kill process group {pgid}: {e}")

    def killall(self, name: str) -> None:
        """Forcibly terminate every process with exactly this name."""
        argv = self.privileged(["killall", "-9", "-e", name])
        try:
            subprocess.run(argv, capture_output=True, text=True, timeout=10)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Unable to killall {name}: {e}")


def remove_files(*files: str) -> None:
    """Delete files if present; failures are logged only."""
    for f in files:
        try:
            if os.path.exists(f):
                os.remove(f)
        except OSError as e:
            logger.error(f"Can't delete file {f}: {e}")


def read_result(path: str) -> str:
    """
    Read a tool output file.

    Raises:
        MissingResultFileError: If the tool never produced it
    """
    try:
        with open(path, 'r') as f:
            return f.read()
    except FileNotFoundError:
        raise MissingResultFileError(path)

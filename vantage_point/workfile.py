"""
Unique temporary file names for probe jobs.
"""

import logging
import os
import threading
from typing import Callable, IO, Optional


logger = logging.getLogger(__name__)


class WorkFileAllocator:
    """
    Issues work file paths that are unique for the life of the process.

    The counter is the only state guarded by ``_counter_lock`` and is never
    reset.

    Attributes:
        output_dir: Directory work files are created in
        port_provider: Returns the listen port embedded in file names
    """

    def __init__(self, output_dir: str, port_provider: Callable[[], Optional[int]]):
        self.output_dir = output_dir
        self.port_provider = port_provider
        self._counter_lock = threading.Lock()
        self._count = 0

    def next_uid(self) -> int:
        """Atomically read and increment the counter."""
        with self._counter_lock:
            uid = self._count
            self._count += 1
        return uid

    def _port_label(self) -> str:
        port = self.port_provider()
        return "" if port is None else str(port)

    def path_for(self, uid: int, template: str = "targs_{port}_{uid}.txt") -> str:
        return os.path.join(self.output_dir, template.format(port=self._port_label(), uid=uid))

    def allocate(self, filler: Callable[[IO[str]], None]) -> str:
        """
        Create a new work file and let ``filler`` write its contents.

        Args:
            filler: Called with the open file handle

        Returns:
            Path of the written file

        Raises:
            OSError: If the file cannot be created or written
        """
        fn = self.path_for(self.next_uid())
        with open(fn, 'w') as f:
            filler(f)
        logger.debug(f"Created work file {fn}")
        return fn

    def allocate_lines(self, lines) -> str:
        """Create a work file containing one line per item."""
        def write_lines(f):
            for line in lines:
                f.write(f"{line}\n")
        return self.allocate(write_lines)

    def reserve(self, template: str) -> str:
        """Return a unique path without creating the file."""
        return self.path_for(self.next_uid(), template)

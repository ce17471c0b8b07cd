"""
Network device selection for the probing tools.
"""

import logging
from typing import Dict


logger = logging.getLogger(__name__)

DEFAULT_DEVICE = "eth0"
PROC_NET_DEV = "/proc/net/dev"


class DeviceSelector:
    """
    Picks the interface to bind probing tools to.

    The busiest ``eth*`` interface (by received packet count) wins; anything
    unreadable falls back to ``eth0``.
    """

    def __init__(self, stats_path: str = PROC_NET_DEV, prefix: str = "eth"):
        self.stats_path = stats_path
        self.prefix = prefix

    def read_packet_counts(self) -> Dict[str, int]:
        """
        Parse per-interface received packet counters.

        Returns:
            Mapping of interface name to packet count for matching interfaces
        """
        counts = {}
        with open(self.stats_path, 'r') as f:
            for line in f:
                if ':' not in line:
                    continue
                name, stats = line.split(':', 1)
                name = name.strip()
                if not name.startswith(self.prefix):
                    continue
                fields = stats.split()
                if len(fields) < 2:
                    continue
                try:
                    counts[name] = int(fields[1])
                except ValueError:
                    continue
        return counts

    def select(self) -> str:
        """Return the name of the interface with the most packets."""
        device = DEFAULT_DEVICE
        try:
            counts = self.read_packet_counts()
        except OSError as e:
            logger.warning(f"Unable to read {self.stats_path}, using {device}: {e}")
            return device

        current_packets = 0
        for name, packets in counts.items():
            if packets > current_packets:
                device, current_packets = name, packets

        logger.info(f"Selected probing device {device} ({current_packets} packets)")
        return device

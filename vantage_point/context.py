"""
Process-wide context for the agent.

Built once at startup, after configuration and logging, and handed to the
agent; nothing in it is reinitialized while the process lives.
"""

import logging
import socket
from dataclasses import dataclass, field
from typing import List, Optional

import requests
import yaml

from config.parser import VantagePointConfig
from vantage_point.client import RetryExhausted, retry_with_backoff
from vantage_point.device import DeviceSelector


logger = logging.getLogger(__name__)


def fetch_rate_limit(url: str, hostname: str, timeout: float = 10) -> Optional[int]:
    """
    Look up this host's probing thread count in the published rate limit table.

    The table is a YAML mapping of host name to thread count. Returns None
    when the host is not listed or the table cannot be fetched.
    """
    def operation():
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        table = yaml.safe_load(response.text)
        return table if isinstance(table, dict) else None

    try:
        table = retry_with_backoff(operation, "fetch_rate_limit", attempts=3, backoff=[2])
    except RetryExhausted:
        return None

    if hostname not in table:
        return None
    try:
        return int(table[hostname])
    except (TypeError, ValueError):
        logger.warning(f"Ignoring bad rate limit for {hostname}: {table[hostname]!r}")
        return None


@dataclass
class AgentContext:
    """
    Shared startup state.

    Attributes:
        config: Effective configuration
        device: Network interface the probing tools bind to
        probing_threads: Thread count passed to the probing tools
        log_file: File the agent logs to, if any
        applied_updates: Staged components already put to use during startup
    """
    config: VantagePointConfig
    device: str
    probing_threads: int
    log_file: Optional[str] = None
    applied_updates: List[str] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        config: VantagePointConfig,
        selector: Optional[DeviceSelector] = None,
        use_rate_limit: bool = True,
        applied_updates: Optional[List[str]] = None,
    ) -> 'AgentContext':
        """Select the probing device and apply the published rate limit."""
        device = (selector or DeviceSelector()).select()

        threads = config.probing_threads
        if use_rate_limit and config.rate_limit_url:
            limit = fetch_rate_limit(config.rate_limit_url, socket.gethostname(), config.controller_timeout)
            if limit is not None and limit > 0:
                logger.info(f"Using published rate limit of {limit} probing threads")
                threads = limit

        return cls(
            config=config,
            device=device,
            probing_threads=threads,
            log_file=config.log_file,
            applied_updates=list(applied_updates or []),
        )

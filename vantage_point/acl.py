"""
Host allow-list for the agent's RPC interface.

Only loopback and the controller's host may call the agent when the list is
enforced.
"""

import ipaddress
import logging
import socket
from typing import List, Optional, Set, Tuple
from urllib.parse import urlsplit


logger = logging.getLogger(__name__)


def uri_to_host(uri: str) -> Optional[str]:
    """
    Extract the host component of a URI.

    Example: "http://controller.example.org:8000/" -> "controller.example.org"
    """
    if not uri:
        return None
    uri = uri.strip()
    if "://" not in uri:
        uri = f"//{uri}"
    return urlsplit(uri).hostname


def uri_to_port(uri: str) -> Optional[int]:
    if not uri:
        return None
    if "://" not in uri:
        uri = f"//{uri}"
    return urlsplit(uri.strip()).port


def resolve(host: str) -> Set[str]:
    """All addresses a host name or literal refers to; empty if unresolvable."""
    try:
        return {str(ipaddress.ip_address(host))}
    except ValueError:
        pass
    try:
        infos = socket.getaddrinfo(host, None)
    except OSError as e:
        logger.warning(f"Unable to resolve {host}: {e}")
        return set()
    return {info[4][0] for info in infos}


class AccessList:
    """
    Ordered deny/allow rules evaluated against a caller's address.

    Rules are (action, host) pairs; the last matching rule wins, so the
    conventional "deny all" followed by allow entries admits exactly the
    allowed hosts.
    """

    def __init__(self, rules: List[Tuple[str, str]]):
        for action, _ in rules:
            if action not in ("allow", "deny"):
                raise ValueError(f"Unknown ACL action: {action}")
        self.rules = list(rules)
        self._addresses = {host: resolve(host) for _, host in self.rules if host != "all"}

    @classmethod
    def from_flat(cls, entries: List[str]) -> 'AccessList':
        """Build from ["deny", "all", "allow", "localhost", ...]."""
        if len(entries) % 2:
            raise ValueError("ACL entries must come in action/host pairs")
        return cls(list(zip(entries[0::2], entries[1::2])))

    def to_flat(self) -> List[str]:
        return [item for rule in self.rules for item in rule]

    @property
    def hosts(self) -> List[str]:
        return [host for action, host in self.rules if action == "allow"]

    def _matches(self, host: str, address: str) -> bool:
        if host == "all":
            return True
        if host == address:
            return True
        return address in self._addresses.get(host, set())

    def allows(self, address: Optional[str]) -> bool:
        if not address:
            return False
        permitted = False
        for action, host in self.rules:
            if self._matches(host, address):
                permitted = action == "allow"
        return permitted

    def __repr__(self) -> str:
        return f"AccessList({self.to_flat()})"


class AccessGate:
    """
    Decides who may call the agent and when the listener must be rebuilt.

    Attributes:
        enforced: Whether an allow-list guards the RPC listener
    """

    def __init__(self, enforced: bool = True):
        self.enforced = enforced

    def build_allow_list(self, controller_uri: str) -> AccessList:
        """Deny everyone except loopback and the controller's host."""
        host = uri_to_host(controller_uri)
        if not host:
            raise ValueError(f"No host in controller uri: {controller_uri!r}")
        return AccessList.from_flat(
            ["deny", "all", "allow", "localhost", "allow", "127.0.0.1", "allow", host]
        )

    def needs_restart(self, old_uri: Optional[str], new_uri: Optional[str]) -> bool:
        """True if the allow-list is enforced and the controller host changes."""
        if not self.enforced:
            return False
        return uri_to_host(new_uri) != uri_to_host(old_uri)

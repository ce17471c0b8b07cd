"""
Vantage point agent for distributed active network measurement.
Registers with a controller and runs probes on its behalf.
"""

from vantage_point.acl import AccessGate, AccessList
from vantage_point.client import ControllerClient, RetryExhausted
from vantage_point.jobs import AsyncJobTracker, ProbeKind
from vantage_point.prober import ProbeExecutor
from vantage_point.registration import RegistrationManager
from vantage_point.spoof import SpoofCoordinator, SpoofKind
from vantage_point.updater import SelfUpdateManager
from vantage_point.workfile import WorkFileAllocator

__all__ = [
    'AccessGate',
    'AccessList',
    'ControllerClient',
    'RetryExhausted',
    'AsyncJobTracker',
    'ProbeKind',
    'ProbeExecutor',
    'RegistrationManager',
    'SpoofCoordinator',
    'SpoofKind',
    'SelfUpdateManager',
    'WorkFileAllocator',
]

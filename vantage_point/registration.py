"""
Registration of the agent with its controller.

The manager owns the controller URI and the RPC listener's lifecycle: the
listener is started on first registration and rebuilt whenever a change of
controller host invalidates the allow-list.
"""

import logging
import random
import threading
from typing import Callable, Optional

from models import AgentInfo
from vantage_point.acl import AccessGate
from vantage_point.client import ControllerClient
from vantage_point.errors import MissingControllerURIError, VantagePointError
from vantage_point.rpc import RpcListener


logger = logging.getLogger(__name__)

# Failures the refresh loop retries; anything else reaches the loop boundary
RECOVERABLE_ERRORS = (VantagePointError, OSError, RuntimeError)


class RegistrationManager:
    """
    Tracks which controller the agent belongs to.

    States are unregistered (``controller_uri`` is None) and registered
    with ``controller_uri``; the only way to change controllers is
    ``update_controller``.

    Attributes:
        listener: RPC listener started on demand
        gate: Allow-list policy
        client: HTTP client for the controller
        info_provider: Builds the reference to this agent sent to the controller
        port: Port requested for the listener
        controller_info_url: Discovery location for the default controller
    """

    def __init__(
        self,
        listener: RpcListener,
        gate: AccessGate,
        client: ControllerClient,
        info_provider: Callable[[], AgentInfo],
        port: int,
        controller_info_url: Optional[str] = None,
        retry_delay: float = 120,
        retry_jitter: float = 130,
    ):
        self.listener = listener
        self.gate = gate
        self.client = client
        self.info_provider = info_provider
        self.port = port
        self.controller_info_url = controller_info_url
        self.retry_delay = retry_delay
        self.retry_jitter = retry_jitter
        self.controller_uri: Optional[str] = None
        self.failures = 0
        self.stop_event = threading.Event()
        self._state_lock = threading.RLock()

    @property
    def registered(self) -> bool:
        return self.controller_uri is not None

    def _ensure_listener(self) -> None:
        if self.listener.running:
            return
        if not self.gate.enforced:
            self.listener.start(None, self.port)
        elif self.controller_uri:
            self.listener.start(self.gate.build_allow_list(self.controller_uri), self.port)
        else:
            logger.warning("Not starting service: ACL required, but no controller uri")

    def register(self, controller: Optional[str] = None) -> None:
        """
        Start the listener if needed, then register with a controller.

        Args:
            controller: Controller URI to register with instead of the current one

        Raises:
            MissingControllerURIError: If no controller is known or given
            ControllerUnavailable: If the controller cannot be reached
        """
        with self._state_lock:
            self._ensure_listener()
            target = controller or self.controller_uri
            if target is None:
                raise MissingControllerURIError()
            self.client.register(target, self.info_provider())

    def unregister(self) -> None:
        """Unregister from the current controller; failures are only logged."""
        with self._state_lock:
            if self.controller_uri is None:
                return
            try:
                self.client.unregister(self.controller_uri, self.info_provider())
            except VantagePointError as e:
                logger.error(f"Unable to unregister from {self.controller_uri}: {e}")

    def stop_service(self) -> None:
        """Unregister, then stop the listener."""
        with self._state_lock:
            try:
                self.unregister()
            finally:
                self.listener.stop()

    def update_controller(self, uri: Optional[str]) -> None:
        """
        Move to a new controller.

        No-op for an empty URI or the current one. A host change under an
        enforced allow-list stops the listener so ``register`` restarts it
        with a fresh list; otherwise the old controller is just unregistered.
        """
        if not uri:
            logger.info("Not updating controller: nil")
            return

        with self._state_lock:
            if uri == self.controller_uri:
                return

            logger.info(f"Updating from controller {self.controller_uri} to {uri}")
            if self.controller_uri is not None:
                try:
                    if self.gate.needs_restart(self.controller_uri, uri):
                        logger.info(f"Stopping service for new ACL {self.gate.build_allow_list(uri)}")
                        self.stop_service()
                    else:
                        logger.info("Unregistering for new controller")
                        self.unregister()
                except RECOVERABLE_ERRORS as e:
                    logger.error(f"Unable to unregister from {self.controller_uri}: {e}")
            self.controller_uri = uri
            self.register()

    def discover(self) -> str:
        """Fetch the default controller URI from the discovery location."""
        if not self.controller_info_url:
            raise MissingControllerURIError()
        return self.client.fetch_default_controller_uri(self.controller_info_url)

    def bootstrap(self, controller_uri: Optional[str] = None) -> None:
        """
        Initial registration at startup; never raises.

        Without an explicit URI the default controller is discovered.
        """
        if controller_uri is None:
            try:
                controller_uri = self.discover()
            except RECOVERABLE_ERRORS as e:
                logger.error(f"Unable to fetch controller uri: {e}")

        try:
            if controller_uri is None:
                self.register()
            else:
                self.update_controller(controller_uri)
        except RECOVERABLE_ERRORS as e:
            logger.error(f"Unable to register: {e}")

    def refresh_once(self) -> bool:
        """
        One refresh cycle: re-register, retrying once after a jittered delay.

        After a failed cycle the controller is re-discovered first. The
        failure count only resets on success.

        Returns:
            True if registration succeeded
        """
        while True:
            try:
                if self.failures > 0:
                    self.update_controller(self.discover())
                self.register()
                self.failures = 0
                return True
            except RECOVERABLE_ERRORS as e:
                self.failures += 1
                if self.failures == 1:
                    logger.error(f"Can't update or register {self.failures} times, retrying: {e}")
                    delay = self.retry_delay + random.uniform(0, self.retry_jitter)
                    if self.stop_event.wait(delay):
                        return False
                    continue
                logger.error(f"Can't update or register {self.failures} times, sleeping: {e}")
                return False

    def run_refresh_loop(self, interval: float, jitter: float) -> None:
        """Refresh registration every ``interval`` plus up to ``jitter`` seconds until stopped."""
        logger.info("Registration refresh thread started")
        while not self.stop_event.wait(interval + random.uniform(0, jitter)):
            try:
                self.refresh_once()
            except Exception as e:
                logger.error(f"Error in registration refresh loop: {e}", exc_info=True)
        logger.info("Registration refresh thread stopped")

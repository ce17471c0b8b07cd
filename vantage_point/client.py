"""
HTTP client module for the agent - handles communication with the controller.

This module implements registration, unregistration and controller
discovery over the controller's REST API.
"""

import logging
import time
from typing import Any, Callable, List, Optional

import requests

from models import AgentInfo
from vantage_point.errors import BadControllerURIError, ControllerUnavailable


logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted."""
    pass


def retry_with_backoff(
    operation: Callable[[], Any],
    operation_name: str,
    attempts: int = 3,
    backoff: Optional[List[float]] = None,
) -> Any:
    """
    Execute an operation, retrying with backoff delays.

    A result of None counts as a failure, as does an exception.

    Args:
        operation: Callable that performs the operation
        operation_name: Name of operation for logging
        attempts: Maximum number of attempts
        backoff: Delay before each retry, the last value repeating

    Returns:
        Result from successful operation

    Raises:
        RetryExhausted: If all retry attempts fail
    """
    backoff = backoff or [2]

    for attempt in range(attempts):
        try:
            result = operation()
            if result is not None:
                return result
            logger.warning(f"{operation_name} failed (attempt {attempt + 1}/{attempts})")
        except Exception as e:
            logger.warning(f"{operation_name} raised exception (attempt {attempt + 1}/{attempts}): {e}")

        if attempt < attempts - 1:
            delay = backoff[min(attempt, len(backoff) - 1)]
            logger.debug(f"Backing off for {delay}s before retry")
            time.sleep(delay)

    logger.error(f"{operation_name} failed after {attempts} attempts")
    raise RetryExhausted(f"{operation_name} failed after {attempts} attempts")


class ControllerClient:
    """
    HTTP client for communicating with controllers.

    The controller URI is passed per call because the agent may switch
    controllers at runtime.

    Attributes:
        timeout: HTTP request timeout in seconds
    """

    def __init__(self, timeout: float = 30):
        self.timeout = timeout

    def _post(self, controller_uri: str, operation: str, info: AgentInfo) -> None:
        endpoint = f"{controller_uri.rstrip('/')}/api/v1/{operation}"
        try:
            response = requests.post(endpoint, json=info.model_dump(), timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise ControllerUnavailable(f"Timeout calling {endpoint}")
        except requests.exceptions.RequestException as e:
            raise ControllerUnavailable(f"Request error calling {endpoint}: {e}")

        if response.status_code != 200:
            raise ControllerUnavailable(
                f"Controller returned status {response.status_code} for {operation}: {response.text}"
            )
        logger.debug(f"{operation} accepted by {controller_uri}")

    def register(self, controller_uri: str, info: AgentInfo) -> None:
        """
        Register this agent with a controller via POST /api/v1/register.

        Raises:
            ControllerUnavailable: If the controller cannot be reached or refuses
        """
        self._post(controller_uri, "register", info)
        logger.info(f"Registered {info.uri} with {controller_uri}")

    def unregister(self, controller_uri: str, info: AgentInfo) -> None:
        """
        Unregister this agent via POST /api/v1/unregister.

        Raises:
            ControllerUnavailable: If the controller cannot be reached or refuses
        """
        self._post(controller_uri, "unregister", info)
        logger.info(f"Unregistered {info.uri} from {controller_uri}")

    def fetch_default_controller_uri(self, info_url: str) -> str:
        """
        Fetch the current controller URI from the well-known discovery location.

        Raises:
            ControllerUnavailable: If the discovery endpoint cannot be read
            BadControllerURIError: If it does not return an http(s) URI
        """
        try:
            response = requests.get(info_url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ControllerUnavailable(f"Unable to fetch controller uri from {info_url}: {e}")

        if response.status_code != 200:
            raise ControllerUnavailable(
                f"Discovery endpoint {info_url} returned status {response.status_code}"
            )

        controller_uri = response.text.strip()
        if not controller_uri.startswith(("http://", "https://")):
            raise BadControllerURIError(controller_uri)
        return controller_uri

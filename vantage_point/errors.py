"""
Error types raised by the vantage point agent.

Each class corresponds to a failure kind a remote caller can receive as a
typed error body from the RPC layer.
"""

from typing import Optional


class VantagePointError(Exception):
    """Base class for all agent errors."""

    error_name = "VantagePointError"

    def to_dict(self) -> dict:
        return {"error": self.error_name, "detail": str(self)}


class OutOfRangeError(VantagePointError):
    """Raised when a spoofer id or TTL bound falls outside its allowed range."""

    error_name = "OutOfRange"

    def __init__(self, min_value: int, max_value: int, value, message: str = "Value out of range"):
        self.min = min_value
        self.max = max_value
        self.value = value
        super().__init__(f"{message}: {value} not in ({min_value}..{max_value})")

    def to_dict(self) -> dict:
        body = super().to_dict()
        body.update({"min": self.min, "max": self.max, "value": self.value})
        return body


class UnknownHandleError(VantagePointError):
    """Raised when results are requested for a job handle that is not tracked."""

    error_name = "UnknownHandle"

    def __init__(self, handle: int):
        self.handle = handle
        super().__init__(f"No probe job tracked for handle {handle}")


class MissingResultFileError(VantagePointError):
    """Raised when a probing tool did not produce its expected output file."""

    error_name = "MissingResultFile"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Result file not found: {path}")


class MissingControllerURIError(VantagePointError):
    """Raised when registering without any known controller."""

    error_name = "MissingControllerURI"

    def __init__(self):
        super().__init__("Missing URI for controller")


class BadControllerURIError(VantagePointError):
    """Raised when controller discovery returns something that is not a URI."""

    error_name = "BadControllerURI"

    def __init__(self, uri: str):
        self.uri = uri
        super().__init__(f"Bad controller uri: {uri!r}")


class ProbeToolError(VantagePointError):
    """Raised when an external probing tool cannot be run or exits non-zero."""

    error_name = "ProbeToolError"

    def __init__(self, tool: str, returncode: Optional[int] = None, detail: str = ""):
        self.tool = tool
        self.returncode = returncode
        message = f"Probe tool {tool} failed"
        if returncode is not None:
            message += f" with exit code {returncode}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class UnknownComponentError(VantagePointError):
    """Raised when an update check names a component that does not exist."""

    error_name = "UnknownComponent"

    def __init__(self, component: str):
        self.component = component
        super().__init__(f"Unknown update component: {component}")


class ControllerUnavailable(VantagePointError):
    """Raised when the controller or its discovery endpoint cannot be reached."""

    error_name = "ControllerUnavailable"

"""
Pydantic data models for the vantage point agent.

These models define the request and response bodies exchanged between the
agent's RPC surface and the controller, plus the agent's self-update
metadata.
"""

from typing import Dict, List, Optional, Union
from pydantic import BaseModel, Field, field_validator


DEFAULT_SPOOF_ID = 45678


class AgentInfo(BaseModel):
    """
    Reference to this agent, sent to the controller on (un)registration.

    Attributes:
        uri: Base URI the controller can call back on
        hostname: Advertised host name of the agent
        port: Listening port of the RPC service (None if not started)
        version: Running agent version
    """
    uri: Optional[str] = Field(None, description="Agent RPC URI")
    hostname: str = Field(..., description="Agent host name")
    port: Optional[int] = Field(None, description="Agent RPC port")
    version: float = Field(..., description="Agent version")


class TargetList(BaseModel):
    """Ordered list of probe destinations."""
    targets: List[str] = Field(..., description="Destinations, one per probe")


class TimestampProbes(BaseModel):
    """
    Timestamp probe specifications.

    Each entry is a destination followed by the prespecified timestamp slots.
    """
    probes: List[List[str]] = Field(..., description="[target, slot, slot, ...] per probe")

    @field_validator('probes')
    @classmethod
    def validate_probes(cls, v):
        """Every probe needs at least a destination."""
        for probe in v:
            if not probe:
                raise ValueError("Timestamp probe must name a target")
        return v


class ParisTraceRequest(BaseModel):
    """Single Paris traceroute destination."""
    target: str = Field(..., description="Destination")


class ProbeOutput(BaseModel):
    """Raw output of a probing tool, returned verbatim."""
    output: str = Field(..., description="Tool-defined raw result text")


class JobHandle(BaseModel):
    """Handle of an asynchronously launched probe job."""
    handle: int = Field(..., description="Process id of the launched job")


class SpoofRequest(BaseModel):
    """
    Spoofed record-route or timestamp send request.

    Attributes:
        probes: receiver -> destinations (record route) or receiver ->
            [[target, slot, ...], ...] (timestamp)
        session_id: Spoofer id embedded in every probe
    """
    probes: Dict[str, List[Union[str, List[str]]]] = Field(..., description="Per-receiver targets")
    session_id: int = Field(DEFAULT_SPOOF_ID, description="Spoofer id")


class SpoofTracerouteRequest(BaseModel):
    """
    Spoofed traceroute send request.

    Each per-receiver entry is either a destination or a list
    [destination], [destination, start_ttl] or [destination, start_ttl, finish_ttl].
    """
    probes: Dict[str, List[Union[str, List[Union[str, int]]]]] = Field(..., description="Per-receiver traceroutes")
    session_id: int = Field(..., description="Spoofer id, 11 bits")


class ReceiveRequest(BaseModel):
    """Start a spoofed-probe receiver for a session."""
    session_id: int = Field(DEFAULT_SPOOF_ID, description="Spoofer id to listen for")


class ReceiveResponse(BaseModel):
    """Path the receiver writes its output to."""
    output_path: str = Field(..., description="Receiver output file")


class KillAndRetrieveRequest(BaseModel):
    """Stop a receiver and collect what it captured."""
    output_path: str = Field(..., description="Path returned by receive_spoofed_*")
    session_id: int = Field(DEFAULT_SPOOF_ID, description="Spoofer id of the session")


class KillAndRetrieveResponse(BaseModel):
    """Captured spoofed probes and the hosts they were received from."""
    probes: str = Field(..., description="Raw receiver output")
    sources: List[str] = Field(default_factory=list, description="Source hostnames, one per probe")


class UpdateControllerRequest(BaseModel):
    """New controller URI to register with."""
    uri: Optional[str] = Field(None, description="Controller URI")


class ShutdownRequest(BaseModel):
    """Exit code to terminate with."""
    code: int = Field(0, description="Process exit code")


class CheckUpdateRequest(BaseModel):
    """Component to check for a newer published version."""
    component: str = Field("vp", description="prober, vp or vp_config")


class CheckUpdateResponse(BaseModel):
    """Whether a new version was installed."""
    updated: bool = Field(..., description="True if the component was updated")


class InfoResponse(BaseModel):
    """Informational value about the running agent."""
    value: Optional[Union[str, int, float]] = Field(None, description="Requested value")


class ErrorResponse(BaseModel):
    """
    Typed failure returned to a remote caller.

    Attributes:
        error: Failure kind (OutOfRange, UnknownHandle, MissingResultFile, ...)
        detail: Human-readable description
        min, max, value: Range bounds and offending value for OutOfRange
    """
    error: str
    detail: str = ""
    min: Optional[int] = None
    max: Optional[int] = None
    value: Optional[Union[int, float, str]] = None


class UpdateInfo(BaseModel):
    """
    Self-update metadata for one component.

    Attributes:
        filename: Name of the artifact in the staging directory
        source_location: URL the artifact is downloaded from
        version_location: URL publishing the current version number
        installed_version: Version the agent is running
        restart_required: Whether installing a new version needs a restart
    """
    filename: str
    source_location: str
    version_location: str
    installed_version: float
    restart_required: bool = True

"""
RPC surface of the vantage point agent.

The controller drives the agent through this FastAPI application, served by
uvicorn on a background thread. When an allow-list is supplied, callers
outside it are refused before any route runs.
"""

import logging
import random
import socket
import threading
import time
from typing import Callable, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from models import (
    CheckUpdateRequest,
    CheckUpdateResponse,
    ErrorResponse,
    InfoResponse,
    JobHandle,
    KillAndRetrieveRequest,
    KillAndRetrieveResponse,
    ParisTraceRequest,
    ProbeOutput,
    ReceiveRequest,
    ReceiveResponse,
    ShutdownRequest,
    SpoofRequest,
    SpoofTracerouteRequest,
    TargetList,
    TimestampProbes,
    UpdateControllerRequest,
)
from vantage_point.acl import AccessList
from vantage_point.errors import (
    MissingResultFileError,
    OutOfRangeError,
    ProbeToolError,
    UnknownComponentError,
    UnknownHandleError,
    VantagePointError,
)


logger = logging.getLogger(__name__)

# Used to learn the outward-facing address on hosts whose name is not routable
TEST_IP = "128.208.2.159"
RANDOM_PORT_RANGE = (50000, 65000)

ERROR_STATUS = {
    OutOfRangeError: 400,
    UnknownComponentError: 400,
    UnknownHandleError: 404,
    MissingResultFileError: 404,
    ProbeToolError: 500,
}


def advertised_hostname() -> str:
    """Host name the controller should use to reach this agent."""
    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = None
    if not hostname or "measurement-lab.org" in hostname:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect((TEST_IP, 1))
            hostname = s.getsockname()[0]
    return hostname


def _error_response(exc: VantagePointError) -> JSONResponse:
    status = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status = code
            break
    body = ErrorResponse(**exc.to_dict())
    return JSONResponse(status_code=status, content=body.model_dump())


def create_app(agent, acl: Optional[AccessList] = None, front: bool = True) -> FastAPI:
    """
    Build the RPC application for an agent.

    Args:
        agent: Object implementing the agent operations
        acl: Allow-list to enforce, or None to accept every caller
        front: Expose the probing surface; when False only informational
            routes are served

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="Vantage Point Agent",
        description="Remote interface for issuing measurements to a vantage point",
        version=str(agent.version()),
    )

    if acl is not None:
        @app.middleware("http")
        async def enforce_acl(request: Request, call_next):
            address = request.client.host if request.client else None
            if not acl.allows(address):
                logger.warning(f"Refusing RPC from {address}: not in {acl}")
                body = ErrorResponse(error="AccessDenied", detail=f"{address} not allowed")
                return JSONResponse(status_code=403, content=body.model_dump())
            return await call_next(request)

    @app.exception_handler(VantagePointError)
    async def vantage_point_error_handler(request: Request, exc: VantagePointError):
        logger.warning(f"{request.url.path} failed: {exc}")
        return _error_response(exc)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        logger.warning(f"{request.url.path} rejected: {exc}")
        body = ErrorResponse(error="InvalidArgument", detail=str(exc))
        return JSONResponse(status_code=400, content=body.model_dump())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"Unexpected error in {request.url.path}: {exc}", exc_info=exc)
        body = ErrorResponse(error="InternalError", detail=str(exc))
        return JSONResponse(status_code=500, content=body.model_dump())

    info = APIRouter(prefix="/api/v1")

    @info.get("/version", response_model=InfoResponse)
    def version() -> InfoResponse:
        return InfoResponse(value=agent.version())

    @info.get("/hostname", response_model=InfoResponse)
    def hostname() -> InfoResponse:
        return InfoResponse(value=agent.hostname())

    @info.get("/port", response_model=InfoResponse)
    def port() -> InfoResponse:
        return InfoResponse(value=agent.port())

    @info.get("/uri", response_model=InfoResponse)
    def uri() -> InfoResponse:
        return InfoResponse(value=agent.uri())

    app.include_router(info)

    if not front:
        return app

    probes = APIRouter(prefix="/api/v1")

    @probes.post("/register")
    def register() -> dict:
        agent.register()
        return {"status": "ok"}

    @probes.post("/unregister")
    def unregister() -> dict:
        agent.unregister()
        return {"status": "ok"}

    @probes.post("/update_controller")
    def update_controller(data: UpdateControllerRequest) -> dict:
        def switch_controller(uri):
            try:
                agent.update_controller(uri)
            except Exception as e:
                logger.error(f"Unable to update controller to {uri}: {type(e).__name__}: {e}", exc_info=True)

        # May restart this listener, so reply before it happens
        threading.Thread(
            target=switch_controller, args=(data.uri,), name="UpdateController", daemon=True
        ).start()
        return {"status": "ok"}

    @probes.post("/shutdown")
    def shutdown(data: ShutdownRequest) -> dict:
        agent.shutdown(data.code)
        return {"status": "ok"}

    @probes.post("/traceroute", response_model=ProbeOutput)
    def traceroute(data: TargetList) -> ProbeOutput:
        return ProbeOutput(output=agent.traceroute(data.targets))

    @probes.post("/ping", response_model=ProbeOutput)
    def ping(data: TargetList) -> ProbeOutput:
        return ProbeOutput(output=agent.ping(data.targets))

    @probes.post("/rr", response_model=ProbeOutput)
    def rr(data: TargetList) -> ProbeOutput:
        return ProbeOutput(output=agent.rr(data.targets))

    @probes.post("/ts", response_model=ProbeOutput)
    def ts(data: TimestampProbes) -> ProbeOutput:
        return ProbeOutput(output=agent.ts(data.probes))

    @probes.post("/paristrace", response_model=ProbeOutput)
    def paristrace(data: ParisTraceRequest) -> ProbeOutput:
        return ProbeOutput(output=agent.paristrace(data.target))

    @probes.post("/launch_traceroute", response_model=JobHandle)
    def launch_traceroute(data: TargetList) -> JobHandle:
        return JobHandle(handle=agent.launch_traceroute(data.targets))

    @probes.post("/launch_ping", response_model=JobHandle)
    def launch_ping(data: TargetList) -> JobHandle:
        return JobHandle(handle=agent.launch_ping(data.targets))

    @probes.post("/launch_rr", response_model=JobHandle)
    def launch_rr(data: TargetList) -> JobHandle:
        return JobHandle(handle=agent.launch_rr(data.targets))

    @probes.post("/launch_ts", response_model=JobHandle)
    def launch_ts(data: TimestampProbes) -> JobHandle:
        return JobHandle(handle=agent.launch_ts(data.probes))

    @probes.post("/get_results", response_model=ProbeOutput)
    def get_results(data: JobHandle) -> ProbeOutput:
        return ProbeOutput(output=agent.get_results(data.handle))

    @probes.post("/spoof_rr")
    def spoof_rr(data: SpoofRequest) -> dict:
        agent.spoof_rr(data.probes, data.session_id)
        return {"status": "ok"}

    @probes.post("/spoof_ts")
    def spoof_ts(data: SpoofRequest) -> dict:
        agent.spoof_ts(data.probes, data.session_id)
        return {"status": "ok"}

    @probes.post("/spoof_tr")
    def spoof_tr(data: SpoofTracerouteRequest) -> dict:
        agent.spoof_tr(data.probes, data.session_id)
        return {"status": "ok"}

    @probes.post("/receive_spoofed_rr", response_model=ReceiveResponse)
    def receive_spoofed_rr(data: ReceiveRequest) -> ReceiveResponse:
        return ReceiveResponse(output_path=agent.receive_spoofed_rr(data.session_id))

    @probes.post("/receive_spoofed_ts", response_model=ReceiveResponse)
    def receive_spoofed_ts(data: ReceiveRequest) -> ReceiveResponse:
        return ReceiveResponse(output_path=agent.receive_spoofed_ts(data.session_id))

    @probes.post("/kill_and_retrieve", response_model=KillAndRetrieveResponse)
    def kill_and_retrieve(data: KillAndRetrieveRequest) -> KillAndRetrieveResponse:
        results, sources = agent.kill_and_retrieve(data.output_path, data.session_id)
        return KillAndRetrieveResponse(probes=results, sources=sources)

    @probes.post("/check_for_update", response_model=CheckUpdateResponse)
    def check_for_update(data: CheckUpdateRequest) -> CheckUpdateResponse:
        return CheckUpdateResponse(updated=agent.check_for_update(data.component))

    app.include_router(probes)
    return app


def bind_socket(port: int) -> socket.socket:
    """
    Bind a listening TCP socket, falling back when the port is taken.

    Tries the requested port, then an OS-assigned one, then a random high
    port.
    """
    candidates = [port, 0, random.randrange(*RANDOM_PORT_RANGE)]
    last_error = None
    for candidate in candidates:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("0.0.0.0", candidate))
            return sock
        except OSError as e:
            sock.close()
            last_error = e
            logger.warning(f"Did not work on port {candidate}: {e}")
    raise last_error


class RpcListener:
    """
    Runs the RPC application on a uvicorn server thread.

    ``start`` and ``stop`` may be called repeatedly; a restart builds a fresh
    application so a new allow-list takes effect.

    Attributes:
        app_factory: Builds the application for a given allow-list
        hostname_provider: Returns the host name put in the agent URI
    """

    def __init__(
        self,
        app_factory: Callable[[Optional[AccessList]], FastAPI],
        hostname_provider: Callable[[], str] = advertised_hostname,
        startup_timeout: float = 10,
    ):
        self.app_factory = app_factory
        self.hostname_provider = hostname_provider
        self.startup_timeout = startup_timeout
        self.acl: Optional[AccessList] = None
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._socket: Optional[socket.socket] = None
        self._uri: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def uri(self) -> Optional[str]:
        return self._uri

    @property
    def port(self) -> Optional[int]:
        if self._socket is None:
            return None
        return self._socket.getsockname()[1]

    def start(self, acl: Optional[AccessList], port: int) -> str:
        """
        Start serving; returns the agent URI.

        Raises:
            OSError: If no port could be bound
            RuntimeError: If the server does not come up in time
        """
        with self._lock:
            if self._server is not None:
                return self._uri

            sock = bind_socket(port)
            config = uvicorn.Config(
                self.app_factory(acl),
                log_level="warning",
                lifespan="off",
            )
            server = uvicorn.Server(config)
            thread = threading.Thread(
                target=server.run, kwargs={"sockets": [sock]}, name="RpcListener", daemon=True
            )
            thread.start()

            deadline = time.monotonic() + self.startup_timeout
            while not server.started:
                if not thread.is_alive() or time.monotonic() > deadline:
                    server.should_exit = True
                    sock.close()
                    raise RuntimeError("RPC listener failed to start")
                time.sleep(0.05)

            self._server, self._thread, self._socket = server, thread, sock
            self.acl = acl
            self._uri = f"http://{self.hostname_provider()}:{self.port}"
            logger.info(f"Started on {self._uri}" + (f" with {acl}" if acl else ""))
            return self._uri

    def stop(self) -> None:
        """Stop serving; a no-op if not running."""
        with self._lock:
            if self._server is None:
                return
            logger.info("Stopping RPC service")
            self._server.should_exit = True
            if self._thread is not None and self._thread is not threading.current_thread():
                self._thread.join(timeout=10)
            try:
                self._socket.close()
            except OSError as e:
                logger.warning(f"Error closing listener socket: {e}")
            self._server = self._thread = self._socket = None
            self._uri = None
            self.acl = None

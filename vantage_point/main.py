"""
Main program for the vantage point agent.

This module wires the probing components, registration and self-update
together, exposes them over the RPC listener and owns the two background
threads (update checker and registration refresher).
"""

import argparse
import fcntl
import logging
import os
import signal
import sys
import threading
import time
from typing import Callable, IO, List, Optional, Sequence

from config.parser import ConfigurationError, VantagePointConfig
from models import AgentInfo, DEFAULT_SPOOF_ID
from vantage_point.acl import AccessGate, uri_to_host
from vantage_point.client import ControllerClient
from vantage_point.context import AgentContext
from vantage_point.jobs import AsyncJobTracker, ProbeKind
from vantage_point.prober import ProbeExecutor
from vantage_point.registration import RegistrationManager
from vantage_point.rpc import RpcListener, advertised_hostname, create_app
from vantage_point.spoof import SpoofCoordinator, SpoofKind
from vantage_point.tools import ToolRunner
from vantage_point.updater import (
    PROBER_VERSION,
    VP_VERSION,
    SelfUpdateManager,
    apply_staged_config,
    default_components,
    is_staged_entry,
)
from vantage_point.workfile import WorkFileAllocator


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_BOOTSTRAP_FAILED = 6
EXIT_UPGRADE_RESTART = 11
EXIT_RESTART = 12
EXIT_ALREADY_RUNNING = 17

SHUTDOWN_GRACE = 1.0


def reexec(entry: Optional[str] = None) -> None:
    """
    Replace this process with a fresh copy of the agent.

    With ``entry`` the new process runs that script (the staged agent),
    otherwise the installed module.
    """
    command = [sys.executable, entry] if entry else [sys.executable, "-m", "vantage_point.main"]
    logger.info(f"Re-executing agent: {' '.join(command[1:])}")
    logging.shutdown()
    os.execv(sys.executable, command + sys.argv[1:])


def hard_exit(code: int) -> None:
    logging.shutdown()
    os._exit(code)


class Agent:
    """
    Vantage point agent.

    Holds the probing capability and the RPC service side by side; the RPC
    application only delegates to the methods below.

    Attributes:
        context: Process-wide startup state
        executor: Synchronous probes
        jobs: Asynchronous probes
        spoofer: Spoofed probe send/receive
        registration: Controller relationship and listener lifecycle
        updater: Self-update checks
    """

    def __init__(
        self,
        context: AgentContext,
        client: Optional[ControllerClient] = None,
        exit_func: Callable[[int], None] = hard_exit,
        restart_func: Callable[[Optional[str]], None] = reexec,
    ):
        config = context.config
        self.context = context
        self.exit_func = exit_func
        self.restart_func = restart_func

        self.listener = RpcListener(lambda acl: create_app(self, acl, config.front))
        self.allocator = WorkFileAllocator(config.output_dir, self.port)
        self.tools = ToolRunner(config.tools_dir, context.probing_threads, context.device, config.use_sudo)
        self.executor = ProbeExecutor(self.tools, self.allocator)
        self.jobs = AsyncJobTracker(self.tools, self.allocator)
        self.spoofer = SpoofCoordinator(self.tools, self.allocator)
        self.gate = AccessGate(config.use_acl)
        self.client = client or ControllerClient(timeout=config.controller_timeout)
        self.registration = RegistrationManager(
            listener=self.listener,
            gate=self.gate,
            client=self.client,
            info_provider=self.agent_info,
            port=config.port,
            controller_info_url=config.controller_info_url,
            retry_delay=config.registration_retry_delay,
            retry_jitter=config.registration_retry_jitter,
        )
        self.updater = SelfUpdateManager(
            default_components(config.update_base_url),
            config.update_staging_dir,
            timeout=config.controller_timeout,
        )
        self.update_thread: Optional[threading.Thread] = None
        self.register_thread: Optional[threading.Thread] = None

        for component in context.applied_updates:
            self.updater.activate(component)
        if self.updater.staged_path("prober") is not None:
            self._load_staged_prober()

        self.spoofer.killall_receive()
        logger.info(
            f"Agent initialized: device={context.device}, threads={context.probing_threads}, "
            f"backoff={config.backoff}"
        )

    # Informational

    def version(self) -> float:
        return self.updater.installed_version("vp")

    def uri(self) -> Optional[str]:
        return self.listener.uri

    def port(self) -> Optional[int]:
        return self.listener.port

    def hostname(self) -> str:
        uri = self.uri()
        if uri is None:
            return advertised_hostname()
        return uri_to_host(uri)

    def agent_info(self) -> AgentInfo:
        return AgentInfo(uri=self.uri(), hostname=self.hostname(), port=self.port(), version=self.version())

    @property
    def controller_uri(self) -> Optional[str]:
        return self.registration.controller_uri

    # Registration

    def start(self) -> None:
        """Bring up the listener and register with the configured or discovered controller."""
        self.registration.bootstrap(self.context.config.controller_uri)

    def register(self, controller: Optional[str] = None) -> None:
        self.registration.register(controller)

    def unregister(self) -> None:
        self.registration.unregister()

    def update_controller(self, uri: Optional[str]) -> None:
        self.registration.update_controller(uri)

    def stop_service(self) -> None:
        self.registration.stop_service()

    # Lifecycle

    def start_background(self, refresh_registration: bool = True) -> None:
        """
        Start the update checker and, unless a controller was pinned, the
        registration refresher.
        """
        config = self.context.config
        self.update_thread = threading.Thread(
            target=self.updater.run_update_loop,
            args=(
                self.apply_updates,
                config.update_initial_delay,
                config.update_interval,
                config.update_jitter,
            ),
            name="UpdateThread",
            daemon=True,
        )
        self.update_thread.start()

        if refresh_registration:
            self.register_thread = threading.Thread(
                target=self.registration.run_refresh_loop,
                args=(config.registration_interval, config.registration_jitter),
                name="RegisterThread",
                daemon=True,
            )
            self.register_thread.start()

    def stop_background(self) -> None:
        self.updater.stop_event.set()
        self.registration.stop_event.set()
        for thread in (self.update_thread, self.register_thread):
            if thread is not None and thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=10)

    def shutdown(self, code: int = EXIT_OK) -> None:
        """Exit with ``code`` after a short grace period so a pending reply can go out."""
        logger.info(f"Exiting: Received shutdown message {code}")

        def delayed_exit():
            time.sleep(SHUTDOWN_GRACE)
            self.exit_func(code)

        threading.Thread(target=delayed_exit, name="Shutdown", daemon=True).start()

    def restart(self, code: int = EXIT_RESTART) -> None:
        """
        Stop serving and hand over to a fresh process running the staged version.

        If the process cannot be replaced it exits with ``code`` so a
        supervisor can start it again.
        """
        logger.info("Shutting down for restart")
        self.stop_background()
        self.stop_service()
        try:
            self.restart_func(self.updater.entry_point())
        except OSError as e:
            logger.error(f"Unable to re-execute: {e}")
            self.exit_func(code)

    def _load_staged_prober(self) -> bool:
        """Swap the probe executor for the one in the staged prober artifact."""
        try:
            module = self.updater.load_module("prober")
            executor = module.ProbeExecutor(self.tools, self.allocator)
        except Exception as e:
            logger.error(f"Unable to load staged prober: {type(e).__name__}: {e}", exc_info=True)
            return False
        self.executor = executor
        return self.updater.activate("prober")

    def apply_updates(self, updated: List[str]) -> None:
        """Put newly staged components to use, restarting if any of them needs it."""
        if "prober" in updated:
            self._load_staged_prober()
        if self.updater.needs_restart(updated):
            self.restart(EXIT_UPGRADE_RESTART)

    def check_for_update(self, component: str = "vp") -> bool:
        """
        Stage a newer version of ``component`` and put it to use.

        A restart, if one is needed, happens on a separate thread so the
        caller gets its answer first.
        """
        if not self.updater.check_for_update(component):
            return False
        if component == "prober":
            self._load_staged_prober()
        if self.updater.needs_restart([component]):
            threading.Thread(
                target=self.restart, args=(EXIT_UPGRADE_RESTART,), name="UpgradeRestart", daemon=True
            ).start()
        return True

    # Synchronous probes

    def traceroute(self, targets: Sequence[str]) -> str:
        return self.executor.traceroute(targets)

    def ping(self, targets: Sequence[str]) -> str:
        return self.executor.ping(targets)

    def rr(self, targets: Sequence[str]) -> str:
        return self.executor.rr(targets)

    def ts(self, probes: Sequence[Sequence[str]]) -> str:
        return self.executor.ts(probes)

    def paristrace(self, target: str) -> str:
        return self.executor.paristrace(target)

    # Asynchronous probes

    def launch_traceroute(self, targets: Sequence[str]) -> int:
        return self.jobs.launch(ProbeKind.TRACEROUTE, targets)

    def launch_ping(self, targets: Sequence[str]) -> int:
        return self.jobs.launch(ProbeKind.PING, targets)

    def launch_rr(self, targets: Sequence[str]) -> int:
        return self.jobs.launch(ProbeKind.RR, targets)

    def launch_ts(self, probes: Sequence[Sequence[str]]) -> int:
        return self.jobs.launch(ProbeKind.TS, probes)

    def get_results(self, handle: int) -> str:
        return self.jobs.reap(handle)

    # Spoofed probes

    def spoof_rr(self, probes, session_id: int = DEFAULT_SPOOF_ID) -> None:
        self.spoofer.spoof_rr(probes, session_id)

    def spoof_ts(self, probes, session_id: int = DEFAULT_SPOOF_ID) -> None:
        self.spoofer.spoof_ts(probes, session_id)

    def spoof_tr(self, probes, session_id: int) -> None:
        self.spoofer.spoof_tr(probes, session_id)

    def receive_spoofed_rr(self, session_id: int = DEFAULT_SPOOF_ID) -> str:
        return self.spoofer.receive(SpoofKind.RR, session_id)

    def receive_spoofed_ts(self, session_id: int = DEFAULT_SPOOF_ID) -> str:
        return self.spoofer.receive(SpoofKind.TS, session_id)

    def kill_and_retrieve(self, output_path: str, session_id: int = DEFAULT_SPOOF_ID):
        return self.spoofer.kill_and_retrieve(output_path, session_id)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vantage-point",
        description="Vantage point agent: registers with a controller and runs measurements for it.",
    )
    parser.add_argument('-C', '--config', metavar='FILE', help="YAML configuration file")
    parser.add_argument('-A', '--no-acl', dest='acl', action='store_false', default=None,
                        help="Disable access control list. Otherwise, only allows connections "
                             "from localhost and from the host specified in the controller URI.")
    parser.add_argument('-c', '--controller', metavar='URI',
                        help="Controller URI (default: fetch from the discovery location)")
    parser.add_argument('-d', '--destination-probing', dest='backoff', action='store_false', default=None,
                        help="Enable destination probing. Overrides default assumption that "
                             "first hop from destination symmetric.")
    parser.add_argument('-F', '--no-front', dest='front', action='store_false', default=None,
                        help="Do not front the prober on the RPC service.")
    parser.add_argument('-o', '--out', metavar='PATH', help="Temp output path")
    parser.add_argument('-p', '--port', type=int, help="Port for RPC calls")
    parser.add_argument('-t', '--tools', metavar='PATH', help="Probe tool path")
    parser.add_argument('-v', '--version', action='store_true', help="Print versions and exit")
    return parser


def load_config(args: argparse.Namespace) -> VantagePointConfig:
    config = VantagePointConfig.from_file(args.config) if args.config else VantagePointConfig.defaults()
    return config.with_overrides({
        'controller.uri': args.controller,
        'rpc.acl': args.acl,
        'rpc.front': args.front,
        'rpc.port': args.port,
        'probing.backoff': args.backoff,
        'probing.output_dir': args.out,
        'probing.tools_dir': args.tools,
    })


def configure_logging(config: VantagePointConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    if config.log_file:
        try:
            handler = logging.FileHandler(config.log_file)
        except OSError as e:
            logger.warning(f"Unable to log to {config.log_file}: {e}")
            return
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(handler)


def acquire_instance_lock(path: str) -> Optional[IO]:
    """Take the single-instance lock; None if another agent holds it."""
    handle = open(path, 'a')
    try:
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        handle.close()
        return None
    return handle


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the agent program.
    """
    args = build_parser().parse_args(argv)
    if args.version:
        print(VP_VERSION)
        print(PROBER_VERSION)
        return EXIT_OK

    try:
        config = load_config(args)
    except ConfigurationError as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return 1

    configure_logging(config)

    config, config_applied = apply_staged_config(config)
    applied = ["vp_config"] if config_applied else []
    if is_staged_entry(config.update_staging_dir, sys.argv[0]):
        applied.append("vp")

    if not os.path.isdir(config.tools_dir):
        logger.error(f"EXITING: Unable to find probing tools in {config.tools_dir}")
        return EXIT_BOOTSTRAP_FAILED

    os.makedirs(config.output_dir, exist_ok=True)
    lock = acquire_instance_lock(os.path.join(config.output_dir, f"vantage_point_{config.port}.lock"))
    if lock is None:
        logger.error("Already running")
        return EXIT_ALREADY_RUNNING

    context = AgentContext.build(config, applied_updates=applied)
    agent = Agent(context)
    signal.signal(signal.SIGINT, lambda signum, frame: agent.shutdown(signum))
    signal.signal(signal.SIGTERM, lambda signum, frame: agent.shutdown(signum))

    agent.start()
    print(agent.uri(), file=sys.stderr)

    agent.start_background(refresh_registration=config.controller_uri is None)
    while agent.update_thread.is_alive():
        agent.update_thread.join(timeout=1)

    agent.shutdown(EXIT_OK)
    time.sleep(SHUTDOWN_GRACE * 2)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())

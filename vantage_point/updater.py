"""
Self-update of the agent's components.

Each component publishes a version number and a source artifact. When the
published number differs from the one in use the artifact is downloaded,
verified and staged. A staged artifact only counts as installed once a
consumer has put it to use:

- ``prober``: loaded into the running process, replacing the probe executor
- ``vp``: the agent entry script; a restart executes the staged copy
- ``vp_config``: layered under the local configuration at startup
"""

import importlib.util
import logging
import os
import random
import re
import tempfile
import threading
from pathlib import Path
from types import ModuleType
from typing import Callable, Dict, List, Optional, Tuple

import requests
import yaml

from config.parser import ConfigurationError, VantagePointConfig
from models import UpdateInfo
from vantage_point.errors import UnknownComponentError


logger = logging.getLogger(__name__)

PROBER_VERSION = 1.13
VP_VERSION = 1.81
VP_CONFIG_VERSION = 1.5

MANIFEST_NAME = "versions.yaml"
CHECK_ORDER = ("prober", "vp", "vp_config")
VP_ENTRY_NAME = "vantage_point.py"
VP_CONFIG_NAME = "vp_config.yaml"

_VERSION_RE = re.compile(r"^\s*([-+]?\d*\.?\d+)")


def parse_version(text: str) -> float:
    """Leading number of a version document, or 0.0 if there is none."""
    match = _VERSION_RE.match(text or "")
    return float(match.group(1)) if match else 0.0


def default_components(base_url: str) -> Dict[str, UpdateInfo]:
    """Update metadata for the prober, agent and config components."""
    base_url = base_url.rstrip('/')

    def info(filename: str, stem: str, version: float, restart: bool) -> UpdateInfo:
        return UpdateInfo(
            filename=filename,
            source_location=f"{base_url}/{filename}",
            version_location=f"{base_url}/{stem}_version.txt",
            installed_version=version,
            restart_required=restart,
        )

    return {
        "prober": info("prober.py", "prober", PROBER_VERSION, False),
        "vp": info(VP_ENTRY_NAME, "vantage_point", VP_VERSION, True),
        "vp_config": info(VP_CONFIG_NAME, "vp_config", VP_CONFIG_VERSION, True),
    }


def staged_config_path(staging_dir: str) -> Path:
    return Path(staging_dir) / VP_CONFIG_NAME


def staged_entry_path(staging_dir: str) -> Path:
    return Path(staging_dir) / VP_ENTRY_NAME


def is_staged_entry(staging_dir: str, script: Optional[str]) -> bool:
    """True if ``script`` is the staged agent entry script."""
    if not script:
        return False
    entry = staged_entry_path(staging_dir)
    return entry.exists() and os.path.realpath(script) == os.path.realpath(entry)


def apply_staged_config(config: VantagePointConfig) -> Tuple[VantagePointConfig, bool]:
    """
    Layer a staged published configuration under ``config``.

    Local values win over published ones. An unreadable staged file is
    ignored.

    Returns:
        (effective config, whether the staged config was applied)
    """
    path = staged_config_path(config.update_staging_dir)
    if not path.exists():
        return config, False
    try:
        published = VantagePointConfig.from_file(str(path))
        merged = config.layered_on(published)
    except ConfigurationError as e:
        logger.error(f"Ignoring staged configuration {path}: {e}")
        return config, False
    logger.info(f"Applied staged configuration {path}")
    return merged, True


class SelfUpdateManager:
    """
    Checks published versions and stages newer artifacts.

    Staged versions survive restarts in ``{staging_dir}/versions.yaml``.
    ``installed_version`` only changes when ``activate`` reports that the
    staged artifact is in use by this process.

    Attributes:
        components: Update metadata per component name
        staging_dir: Where verified artifacts are written
        timeout: HTTP request timeout in seconds
        staged: Version of the artifact staged per component
    """

    def __init__(self, components: Dict[str, UpdateInfo], staging_dir: str, timeout: float = 30):
        self.components = components
        self.staging_dir = Path(staging_dir)
        self.timeout = timeout
        self.staged: Dict[str, float] = {}
        self.stop_event = threading.Event()
        self._lock = threading.Lock()
        self._load_manifest()

    @property
    def manifest_path(self) -> Path:
        return self.staging_dir / MANIFEST_NAME

    def _load_manifest(self) -> None:
        try:
            with open(self.manifest_path, 'r') as f:
                manifest = yaml.safe_load(f) or {}
        except FileNotFoundError:
            return
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable version manifest {self.manifest_path}: {e}")
            return

        staged = manifest.get("staged", {}) if isinstance(manifest, dict) else {}
        for name, version in (staged or {}).items():
            if name in self.components and isinstance(version, (int, float)):
                if (self.staging_dir / self.components[name].filename).exists():
                    self.staged[name] = float(version)

    def _save_manifest(self) -> None:
        self._write_atomic(MANIFEST_NAME, yaml.safe_dump({"staged": dict(self.staged)}))

    def _write_atomic(self, filename: str, content: str) -> Path:
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        target = self.staging_dir / filename
        fd, tmp_path = tempfile.mkstemp(dir=self.staging_dir, prefix=f".{filename}.")
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(content)
            os.chmod(tmp_path, 0o755)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return target

    def _get(self, url: str) -> str:
        response = requests.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.text

    def verify(self, filename: str, source: str) -> None:
        """
        Reject truncated or corrupt downloads before they are staged.

        Raises:
            ValueError: If the artifact is empty or malformed
            SyntaxError: If a Python artifact does not compile
            ConfigurationError: If a configuration artifact does not validate
        """
        if not source.strip():
            raise ValueError(f"Downloaded {filename} is empty")
        if filename.endswith(".py"):
            compile(source, filename, "exec")
        elif filename.endswith((".yaml", ".yml")):
            document = yaml.safe_load(source)
            if not isinstance(document, dict):
                raise ValueError(f"Downloaded {filename} is not a mapping")
            VantagePointConfig(document)

    def installed_version(self, component: str) -> float:
        return self._info(component).installed_version

    def restart_required(self, component: str) -> bool:
        return self._info(component).restart_required

    def _info(self, component: str) -> UpdateInfo:
        info = self.components.get(component)
        if info is None:
            raise UnknownComponentError(component)
        return info

    def staged_path(self, component: str) -> Optional[Path]:
        """Path of the staged artifact, or None if nothing is staged."""
        info = self._info(component)
        if component not in self.staged:
            return None
        path = self.staging_dir / info.filename
        return path if path.exists() else None

    def entry_point(self) -> Optional[str]:
        """Staged agent entry script to restart into, if any."""
        path = self.staged_path("vp")
        return str(path) if path is not None else None

    def activate(self, component: str) -> bool:
        """
        Record that the staged artifact of a component is now in use.

        Returns:
            True if a staged version was activated
        """
        info = self._info(component)
        version = self.staged.get(component)
        if version is None:
            logger.warning(f"No staged {info.filename} to activate")
            return False
        if version != info.installed_version:
            logger.info(f"Now running {info.filename} version {version} (was {info.installed_version})")
        info.installed_version = version
        return True

    def load_module(self, component: str) -> ModuleType:
        """
        Import a staged Python artifact under a private module name.

        Raises:
            FileNotFoundError: If nothing is staged for the component
        """
        path = self.staged_path(component)
        if path is None:
            raise FileNotFoundError(f"No staged artifact for {component}")
        spec = importlib.util.spec_from_file_location(f"vantage_point_staged_{component}", path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    def check_for_update(self, component: str = "vp") -> bool:
        """
        Stage a newer published version of a component if there is one.

        Versions are compared for equality only; the published one is always
        the one to run. A version that is already staged is not fetched again.

        Returns:
            True if a new version was staged

        Raises:
            UnknownComponentError: If the component does not exist
        """
        info = self._info(component)
        with self._lock:
            try:
                logger.info(f"Checking for newer version of {info.filename}....")
                current_version = parse_version(self._get(info.version_location))
                if current_version == 0.0:
                    logger.error("Error: Unable to fetch number of current version")
                    return False
                if current_version == info.installed_version:
                    logger.info(f"No upgrade available from {info.installed_version}")
                    return False
                if self.staged.get(component) == current_version and self.staged_path(component):
                    logger.warning(f"Version {current_version} of {info.filename} already staged, not yet in use")
                    return False

                logger.info(f"Upgrading from {info.installed_version} to {current_version}")
                source = self._get(info.source_location)
                self.verify(info.filename, source)
                path = self._write_atomic(info.filename, source)
                self.staged[component] = current_version
                self._save_manifest()
                logger.info(f"Staged version {current_version} at {path}")
                return True
            except (requests.exceptions.RequestException, OSError, ValueError, SyntaxError,
                    yaml.YAMLError, ConfigurationError) as e:
                logger.error(f"Unable to check for update: {type(e).__name__}: {e}")
                return False

    def check_all(self) -> List[str]:
        """
        Check every component.

        Returns:
            Names of the components that had a new version staged
        """
        updated = [c for c in CHECK_ORDER if c in self.components and self.check_for_update(c)]
        logger.info(f"Checked for update.  Updated: {updated}  Restart: {self.needs_restart(updated)}")
        return updated

    def needs_restart(self, updated: List[str]) -> bool:
        return any(self.restart_required(c) for c in updated)

    def run_update_loop(
        self,
        on_updates: Callable[[List[str]], None],
        initial_delay: float,
        interval: float,
        jitter: float,
    ) -> None:
        """Check for updates until stopped, handing staged components to ``on_updates``."""
        logger.info("Update thread started")
        if self.stop_event.wait(initial_delay):
            return
        while True:
            try:
                logger.info("Checking for updates")
                updated = self.check_all()
                if updated:
                    on_updates(updated)
            except Exception as e:
                logger.error(f"Exception: Can't check for update {e}", exc_info=True)
            if self.stop_event.wait(interval + random.uniform(0, jitter)):
                break
        logger.info("Update thread stopped")

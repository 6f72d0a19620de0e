from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from gwsession.config import GatewayConfig
from gwsession.errors import ErrorKind

LOGGER = logging.getLogger(__name__)

STOP_WAIT_SECONDS = 5.0


@dataclass(slots=True)
class GatewayLaunchConfig:
    host: str = "localhost"
    port: int = 5000
    executable_path: str = "bin/run.sh"
    install_dir: str = "clientportal.gw"
    args: list[str] = field(default_factory=list)
    auto_launch: bool = True
    startup_timeout_seconds: int = 30
    probe_timeout_seconds: float = 1.0
    log_path: str | None = None

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "GatewayLaunchConfig":
        return cls(
            host=config.host,
            port=config.port,
            executable_path=config.executable_path,
            install_dir=config.install_dir,
            args=list(config.args),
            auto_launch=config.auto_launch,
            startup_timeout_seconds=config.startup_timeout_seconds,
            probe_timeout_seconds=config.probe_timeout_seconds,
            log_path=config.log_path,
        )

    @property
    def key(self) -> tuple[str, int]:
        return self.host.strip().lower(), int(self.port)

    def resolved_executable(self) -> Path:
        executable = Path(self.executable_path).expanduser()
        if executable.is_absolute():
            return executable
        return Path(self.install_dir).expanduser() / executable

    def argv(self) -> list[str]:
        return [str(self.resolved_executable()), *self.args]


@dataclass(slots=True)
class GatewayProcessHandle:
    port: int
    launch: GatewayLaunchConfig
    process: subprocess.Popen | None = None
    started_at: datetime | None = None

    @property
    def managed(self) -> bool:
        return self.process is not None

    def has_exited(self) -> bool:
        if self.process is None:
            return False
        return self.process.poll() is not None


def probe_port(host: str, port: int, timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except (OSError, ValueError):
        return False


def _spawn_detached(argv: list[str], cwd: Path, log_path: str | None) -> subprocess.Popen:
    kwargs: dict[str, object] = {"cwd": str(cwd), "stdin": subprocess.DEVNULL}
    if os.name == "nt":
        kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0) | getattr(
            subprocess, "CREATE_NEW_PROCESS_GROUP", 0
        )
    else:
        kwargs["start_new_session"] = True

    if not log_path:
        return subprocess.Popen(argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, **kwargs)
    log_file = Path(log_path).expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    # The child keeps its own descriptor, so the parent copy can be closed right away.
    with log_file.open("ab") as out:
        return subprocess.Popen(argv, stdout=out, stderr=subprocess.STDOUT, **kwargs)


class GatewayProcessSupervisor:
    """
    Keeps one Client Portal Gateway reachable on host:port.

    - A listening port is the only signal used, so a gateway started by another
      process is reused as-is.
    - Only a process spawned by this instance can be stopped by it.
    """

    def __init__(
        self,
        launch: GatewayLaunchConfig,
        *,
        spawn: Callable[[list[str], Path, str | None], subprocess.Popen] | None = None,
        probe: Callable[[str, int, float], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.launch = launch
        self._spawn = spawn or _spawn_detached
        self._probe = probe or probe_port
        self._sleep = sleep
        self._launch_lock = threading.Lock()
        self.handle: GatewayProcessHandle | None = None
        self.spawn_count = 0
        self.last_error: ErrorKind | None = None

    @property
    def address(self) -> str:
        return f"{self.launch.host}:{self.launch.port}"

    def is_running(self) -> bool:
        try:
            return bool(self._probe(self.launch.host, self.launch.port, self.launch.probe_timeout_seconds))
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Port probe raised for %s: %s", self.address, exc)
            return False

    def ensure_running(self) -> bool:
        if self.is_running():
            LOGGER.debug("Gateway already listening on %s", self.address)
            self._adopt_external()
            return True

        with self._launch_lock:
            # Another thread may have finished a launch while we waited on the lock.
            if self.is_running():
                LOGGER.info("Gateway came up on %s while waiting for launch lock", self.address)
                self._adopt_external()
                return True

            if not self.launch.auto_launch:
                LOGGER.warning(
                    "Gateway not running on %s and auto_launch is disabled. Start it manually.",
                    self.address,
                )
                self.last_error = ErrorKind.PROCESS_LAUNCH_FAILURE
                return False

            executable = self.launch.resolved_executable()
            install_dir = Path(self.launch.install_dir).expanduser()
            if not executable.is_file():
                LOGGER.error("Gateway executable not found: %s", executable)
                self.last_error = ErrorKind.PROCESS_LAUNCH_FAILURE
                return False
            if not install_dir.is_dir():
                LOGGER.error("Gateway installation directory not found: %s", install_dir)
                self.last_error = ErrorKind.PROCESS_LAUNCH_FAILURE
                return False

            LOGGER.info("Starting Client Portal Gateway from %s", install_dir)
            try:
                process = self._spawn(self.launch.argv(), install_dir, self.launch.log_path)
            except (OSError, subprocess.SubprocessError) as exc:
                LOGGER.error("Failed to spawn gateway process: %s", exc)
                self.last_error = ErrorKind.PROCESS_LAUNCH_FAILURE
                return False

            self.spawn_count += 1
            self.handle = GatewayProcessHandle(
                port=self.launch.port,
                launch=self.launch,
                process=process,
                started_at=datetime.now(timezone.utc),
            )
            LOGGER.info("Gateway process started pid=%s, waiting for port %d", process.pid, self.launch.port)
            return self._wait_for_port(self.handle)

    def _adopt_external(self) -> None:
        handle = self.handle
        if handle is not None and not (handle.managed and handle.has_exited()):
            return
        self.handle = GatewayProcessHandle(port=self.launch.port, launch=self.launch)
        self.last_error = None

    def _wait_for_port(self, handle: GatewayProcessHandle) -> bool:
        for _ in range(self.launch.startup_timeout_seconds):
            self._sleep(1.0)
            if self.is_running():
                LOGGER.info("Gateway ready on https://%s", self.address)
                self.last_error = None
                return True
            if handle.has_exited():
                code = handle.process.returncode if handle.process is not None else None
                LOGGER.error("Gateway process exited early with code %s", code)
                self.last_error = ErrorKind.PROCESS_LAUNCH_FAILURE
                return False
        LOGGER.error(
            "Gateway did not open port %d within %d seconds",
            self.launch.port,
            self.launch.startup_timeout_seconds,
        )
        self.last_error = ErrorKind.GATEWAY_START_TIMEOUT
        return False

    def stop_running(self) -> None:
        handle = self.handle
        if handle is None or handle.process is None or handle.has_exited():
            return
        process = handle.process
        LOGGER.info("Stopping gateway process pid=%s", process.pid)
        try:
            if os.name == "nt":
                subprocess.run(
                    ["taskkill", "/F", "/T", "/PID", str(process.pid)],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    check=False,
                )
            else:
                os.killpg(process.pid, signal.SIGKILL)
            process.wait(timeout=STOP_WAIT_SECONDS)
            LOGGER.info("Gateway stopped")
        except (OSError, subprocess.SubprocessError) as exc:
            LOGGER.warning("Error stopping gateway: %s", exc)

    def status_text(self) -> str:
        port = self.launch.port
        if not self.is_running():
            return f"not running (port {port} closed)"
        if self.handle is not None and self.handle.managed and not self.handle.has_exited():
            return f"running (port {port} open, pid={self.handle.process.pid})"
        return f"running externally (port {port} open)"


class SupervisorRegistry:
    """One supervisor per host:port, handed to every collaborator that needs it."""

    def __init__(self, factory: Callable[[GatewayLaunchConfig], GatewayProcessSupervisor] | None = None):
        self._factory = factory or GatewayProcessSupervisor
        self._lock = threading.Lock()
        self._supervisors: dict[tuple[str, int], GatewayProcessSupervisor] = {}

    def get(self, launch: GatewayLaunchConfig) -> GatewayProcessSupervisor:
        with self._lock:
            supervisor = self._supervisors.get(launch.key)
            if supervisor is None:
                supervisor = self._factory(launch)
                self._supervisors[launch.key] = supervisor
            return supervisor

    def __len__(self) -> int:
        with self._lock:
            return len(self._supervisors)

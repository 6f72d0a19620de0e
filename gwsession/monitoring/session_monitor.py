from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from gwsession.gateway.supervisor import GatewayProcessSupervisor
from gwsession.monitoring.alerts import AlertDispatcher, GatewayEvent
from gwsession.monitoring.dashboard import StatusSnapshot, StatusWriter

if TYPE_CHECKING:
    from gwsession.connection import ConnectionFacade

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class MonitorStats:
    iterations: int = 0
    outages: int = 0
    restart_attempts: int = 0
    restarts_ok: int = 0
    errors: int = 0
    session_expiries: int = 0
    last_check_at: str | None = None
    gateway_up: bool | None = None
    session_ok: bool | None = None


class SessionMonitor:
    """
    Background health loop for long-running deployments.

    Every poll interval: if the gateway port is closed and auto-reconnect is
    on, wait the reconnect delay and call `ensure_running()` once. When the
    gateway is up and a connection is attached, probe its auth status and
    report expiry. The interactive login is never re-run from here.
    """

    def __init__(
        self,
        supervisor: GatewayProcessSupervisor,
        *,
        auto_reconnect: bool = True,
        reconnect_delay_seconds: float = 5.0,
        poll_interval_seconds: float = 30.0,
        error_pause_seconds: float = 10.0,
        connection: ConnectionFacade | None = None,
        alerts: AlertDispatcher | None = None,
        status_writer: StatusWriter | None = None,
        stop_event: threading.Event | None = None,
    ):
        self.supervisor = supervisor
        self.auto_reconnect = auto_reconnect
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.error_pause_seconds = error_pause_seconds
        self.connection = connection
        self.alerts = alerts
        self.status_writer = status_writer
        self.stop_event = stop_event or threading.Event()
        self.stats = MonitorStats()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self.run, name="gateway-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def run(self) -> None:
        LOGGER.info(
            "Gateway monitoring started (poll=%.0fs auto_reconnect=%s delay=%.0fs)",
            self.poll_interval_seconds,
            self.auto_reconnect,
            self.reconnect_delay_seconds,
        )
        while not self.stop_event.is_set():
            try:
                self.run_once()
                pause = self.poll_interval_seconds
            except Exception as exc:  # noqa: BLE001
                self.stats.errors += 1
                LOGGER.exception("Monitor error: %s", exc)
                pause = self.error_pause_seconds
            if self.stop_event.wait(pause):
                break
        LOGGER.info("Gateway monitoring stopped")

    def run_once(self) -> None:
        self.stats.iterations += 1
        self.stats.last_check_at = datetime.now(timezone.utc).isoformat()
        gateway_up = self.supervisor.is_running()
        if not gateway_up:
            gateway_up = self._handle_outage()
        self.stats.gateway_up = gateway_up

        if gateway_up and self.connection is not None:
            self.stats.session_ok = self._check_session(self.connection)
        self._write_status()

    def _handle_outage(self) -> bool:
        self.stats.outages += 1
        LOGGER.warning("Gateway connection lost on %s", self.supervisor.address)
        if self.alerts is not None:
            self.alerts.send(
                GatewayEvent.GATEWAY_DOWN,
                f"Gateway not listening on {self.supervisor.address}",
                level="warning",
                dedupe_key=f"gateway-down-{self.supervisor.address}",
            )
        if not self.auto_reconnect:
            return False

        LOGGER.info("Attempting to restart gateway in %.0fs", self.reconnect_delay_seconds)
        if self.stop_event.wait(self.reconnect_delay_seconds):
            return False
        self.stats.restart_attempts += 1
        restored = self.supervisor.ensure_running()
        if restored:
            self.stats.restarts_ok += 1
            LOGGER.info("Gateway restored on %s", self.supervisor.address)
            if self.alerts is not None:
                self.alerts.send(GatewayEvent.GATEWAY_RESTORED, f"Gateway listening again on {self.supervisor.address}")
        else:
            LOGGER.error(
                "Gateway restart failed (%s)",
                self.supervisor.last_error.value if self.supervisor.last_error else "unknown",
            )
        return restored

    def _check_session(self, connection: ConnectionFacade) -> bool:
        was_connected = connection.is_connected()
        ok = connection.check_session()
        if was_connected and not ok and not connection.is_connected():
            self.stats.session_expiries += 1
        return ok

    def _write_status(self) -> None:
        if self.status_writer is None:
            return
        snapshot = StatusSnapshot(
            gateway=self.supervisor.address,
            gateway_up=self.stats.gateway_up,
            gateway_status=self.supervisor.status_text() if self.stats.gateway_up else "not running",
            monitor=asdict(self.stats),
        )
        if self.connection is not None:
            snapshot.session = {
                "state": self.connection.state.value,
                "connected": self.connection.is_connected(),
                "account_id": self.connection.account_id,
                "last_error": self.connection.last_error.value if self.connection.last_error else None,
            }
        try:
            self.status_writer.write(snapshot)
        except OSError as exc:
            LOGGER.warning("Could not write status file %s: %s", self.status_writer.path, exc)

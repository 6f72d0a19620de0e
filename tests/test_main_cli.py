from __future__ import annotations

import signal
import threading
from pathlib import Path
from typing import Any

import pytest

import main
from gwsession.config import AppConfig
from main import (
    EXIT_INTERRUPTED,
    EXIT_OK,
    build_alert_dispatcher,
    build_launch_config,
    install_stop_handlers,
    parse_args,
    resolve_status_path,
)


def test_parse_args_flags() -> None:
    args = parse_args(["--connect", "--positions", "--headed", "--stop-gateway", "--secrets", "s.json"])
    assert args.positions is True
    assert args.headed is True
    assert args.stop_gateway is True
    assert args.secrets == "s.json"
    assert args.monitor is False


def test_build_launch_config_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GATEWAY_PORT", "5111")
    monkeypatch.setenv("GATEWAY_DIR", "/opt/clientportal.gw")
    monkeypatch.setenv("GATEWAY_AUTO_LAUNCH", "false")
    monkeypatch.delenv("GATEWAY_HOST", raising=False)
    launch = build_launch_config(AppConfig())
    assert launch.host == "localhost"
    assert launch.port == 5111
    assert launch.install_dir == "/opt/clientportal.gw"
    assert launch.auto_launch is False
    assert launch.args == ["root/conf.yaml"]


def test_resolve_status_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("STATUS_PATH", raising=False)
    assert resolve_status_path(tmp_path, AppConfig()) == str(tmp_path / "gateway_status.json")

    monkeypatch.setenv("STATUS_PATH", "   ")
    assert resolve_status_path(tmp_path, AppConfig()) is None


def test_alert_dispatcher_reads_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALERT_DISCORD_WEBHOOK", "https://discord.example/hook")
    monkeypatch.setenv("ALERT_COOLDOWN_SECONDS", "90")
    dispatcher = build_alert_dispatcher(AppConfig())
    assert dispatcher.config.discord_webhook == "https://discord.example/hook"
    assert dispatcher.config.cooldown_seconds == 90


def test_parse_args_api_login() -> None:
    assert parse_args(["--api-login"]).api_login is True
    assert parse_args([]).api_login is False


def test_stop_handlers_set_event(monkeypatch: pytest.MonkeyPatch) -> None:
    installed: dict[int, Any] = {}
    monkeypatch.setattr(main.signal, "signal", lambda signum, handler: installed.__setitem__(signum, handler))
    stop_event = threading.Event()

    install_stop_handlers(stop_event)
    assert signal.SIGINT in installed
    installed[signal.SIGINT](signal.SIGINT, None)
    assert stop_event.is_set()


class FakeSupervisor:
    address = "localhost:5000"

    def __init__(self) -> None:
        self.stopped = False

    def status_text(self) -> str:
        return "running externally (port 5000 open)"

    def is_running(self) -> bool:
        return True

    def stop_running(self) -> None:
        self.stopped = True


class FakeRegistry:
    def __init__(self) -> None:
        self.supervisor = FakeSupervisor()

    def get(self, launch: Any) -> FakeSupervisor:
        return self.supervisor


class FakeConnection:
    def __init__(self, on_connect: Any = None) -> None:
        self.on_connect = on_connect
        self.closed = False
        self.last_error = None

    def connect(self) -> bool:
        if self.on_connect is not None:
            self.on_connect()
        return True

    def is_connected(self) -> bool:
        return True

    def close(self) -> None:
        self.closed = True


def _patch_run(monkeypatch: pytest.MonkeyPatch, connection: FakeConnection) -> dict[str, Any]:
    seen: dict[str, Any] = {"signals": []}
    registry = FakeRegistry()
    seen["supervisor"] = registry.supervisor

    def _build_connection(config: AppConfig, **kwargs: Any) -> FakeConnection:
        seen["api_login"] = config.session.api_login
        return connection

    monkeypatch.setattr(main, "load_dotenv", lambda: None)
    monkeypatch.setattr(main, "load_config", lambda path: AppConfig())
    monkeypatch.setattr(main, "SupervisorRegistry", lambda: registry)
    monkeypatch.setattr(main, "build_connection", _build_connection)
    monkeypatch.setattr(main.signal, "signal", lambda signum, handler: seen["signals"].append(signum))
    return seen


def test_ctrl_c_during_connect_exits_and_cleans_up(monkeypatch: pytest.MonkeyPatch) -> None:
    def _interrupt() -> None:
        raise KeyboardInterrupt

    connection = FakeConnection(on_connect=_interrupt)
    seen = _patch_run(monkeypatch, connection)

    assert main.run(["--connect", "--stop-gateway"]) == EXIT_INTERRUPTED
    assert connection.closed is True
    assert seen["supervisor"].stopped is True
    assert seen["signals"] == []


def test_api_login_flag_reaches_connection(monkeypatch: pytest.MonkeyPatch) -> None:
    connection = FakeConnection()
    seen = _patch_run(monkeypatch, connection)

    assert main.run(["--connect", "--api-login"]) == EXIT_OK
    assert seen["api_login"] is True
    assert connection.closed is True

from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from pathlib import Path

from dotenv import load_dotenv

from gwsession.config import AppConfig, load_config, load_credentials
from gwsession.connection import ConnectionFacade
from gwsession.gateway.supervisor import GatewayLaunchConfig, GatewayProcessSupervisor, SupervisorRegistry
from gwsession.monitoring.alerts import AlertConfig, AlertDispatcher
from gwsession.monitoring.dashboard import StatusWriter
from gwsession.monitoring.session_monitor import SessionMonitor
from gwsession.session.handle import SessionHandle

LOGGER = logging.getLogger("gwsession")

EXIT_OK = 0
EXIT_GATEWAY_DOWN = 1
EXIT_NOT_CONNECTED = 2
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="IBKR Client Portal Gateway session manager")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--secrets", default=None, help="Path to secrets.json with IBKRCredentials")
    parser.add_argument("--status", action="store_true", help="Print gateway and session status and exit.")
    parser.add_argument(
        "--connect",
        action="store_true",
        help="Start the gateway if needed, log in and exit (default when no other action is given).",
    )
    parser.add_argument("--accounts", action="store_true", help="Print the account summary after connecting.")
    parser.add_argument("--positions", action="store_true", help="Print open positions after connecting.")
    parser.add_argument("--monitor", action="store_true", help="Keep running and monitor gateway health.")
    parser.add_argument("--headed", action="store_true", help="Show the browser window during login.")
    parser.add_argument(
        "--api-login",
        action="store_true",
        help="Log in through /iserver/auth/ssodh/init instead of the browser form.",
    )
    parser.add_argument(
        "--stop-gateway",
        action="store_true",
        help="Stop the gateway on exit if this run started it.",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("selenium").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def install_stop_handlers(stop_event: threading.Event) -> None:
    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def build_launch_config(config: AppConfig) -> GatewayLaunchConfig:
    launch = GatewayLaunchConfig.from_config(config.gateway)
    launch.host = os.getenv("GATEWAY_HOST", launch.host)
    launch.port = int(os.getenv("GATEWAY_PORT", str(launch.port)))
    launch.install_dir = os.getenv("GATEWAY_DIR", launch.install_dir)
    launch.executable_path = os.getenv("GATEWAY_EXECUTABLE", launch.executable_path)
    launch.auto_launch = _env_bool("GATEWAY_AUTO_LAUNCH", launch.auto_launch)
    launch.log_path = os.getenv("GATEWAY_LOG_PATH", launch.log_path or "") or None
    return launch


def build_alert_dispatcher(config: AppConfig) -> AlertDispatcher:
    return AlertDispatcher(
        AlertConfig(
            enabled=config.alerts.enabled,
            discord_webhook=os.getenv("ALERT_DISCORD_WEBHOOK"),
            telegram_bot_token=os.getenv("ALERT_TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("ALERT_TELEGRAM_CHAT_ID"),
            cooldown_seconds=int(os.getenv("ALERT_COOLDOWN_SECONDS", str(config.alerts.cooldown_seconds))),
        )
    )


def build_connection(
    config: AppConfig,
    *,
    supervisor: GatewayProcessSupervisor,
    alerts: AlertDispatcher,
    secrets_path: str | None,
) -> ConnectionFacade:
    launch = supervisor.launch
    origin = f"https://{launch.host}:{launch.port}"
    base_url = config.session.base_url or f"{origin}/v1/api"
    session = SessionHandle.from_config(base_url, config.session)
    return ConnectionFacade(
        session,
        credentials_provider=lambda: load_credentials(secrets_path),
        supervisor=supervisor,
        browser_config=config.browser,
        gateway_url=origin,
        verify_delay_seconds=config.session.verify_delay_seconds,
        api_login=config.session.api_login,
        alerts=alerts,
    )


def resolve_status_path(root: Path, config: AppConfig) -> str | None:
    raw_path = os.getenv("STATUS_PATH", config.monitor.status_path or "")
    if not raw_path.strip():
        return None
    path = Path(raw_path.strip())
    if not path.is_absolute():
        path = root / path
    return str(path)


def log_account_summary(connection: ConnectionFacade) -> None:
    account = connection.get_account_info()
    if account is None:
        LOGGER.warning("Failed to retrieve account data")
        return
    LOGGER.info(
        "Account %s title=%s currency=%s status=%s",
        account.account_id,
        account.title or "-",
        account.currency or "-",
        account.status or "-",
    )


def log_positions(connection: ConnectionFacade) -> None:
    positions = connection.get_positions()
    if not positions:
        LOGGER.info("No open positions")
        return
    LOGGER.info("Found %d position(s)", len(positions))
    for pos in sorted(positions, key=lambda p: p.symbol):
        if pos.sec_type == "OPT":
            LOGGER.info(
                "%-10s %-4s %s %.2f %s qty=%.0f avg=%.2f",
                pos.symbol,
                pos.sec_type,
                pos.right,
                pos.strike,
                pos.expiry,
                pos.position,
                pos.avg_cost,
            )
        else:
            LOGGER.info("%-10s %-4s qty=%.0f avg=%.2f", pos.symbol, pos.sec_type, pos.position, pos.avg_cost)


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = root / config_path
    config = load_config(config_path)
    if args.headed:
        config.browser.headless = False
    if args.api_login:
        config.session.api_login = True

    registry = SupervisorRegistry()
    supervisor = registry.get(build_launch_config(config))
    LOGGER.info("Gateway %s: %s", supervisor.address, supervisor.status_text())

    if args.status:
        if supervisor.is_running():
            with SessionHandle.from_config(
                config.session.base_url or f"https://{supervisor.address}/v1/api",
                config.session,
                start_keepalive=False,
            ) as session:
                status = session.get_auth_status()
            LOGGER.info("Auth status: %s", status if status is not None else "unreachable")
        return EXIT_OK if supervisor.is_running() else EXIT_GATEWAY_DOWN

    alerts = build_alert_dispatcher(config)
    connection = build_connection(config, supervisor=supervisor, alerts=alerts, secrets_path=args.secrets)

    monitor_enabled = args.monitor or config.monitor.enabled
    exit_code = EXIT_OK
    try:
        # Ctrl-C during connect raises KeyboardInterrupt; the long waits in there never poll an event.
        if not connection.connect():
            LOGGER.error(
                "Not connected (%s)",
                connection.last_error.value if connection.last_error else "unknown",
            )
            exit_code = EXIT_NOT_CONNECTED
            if not monitor_enabled:
                return exit_code

        if connection.is_connected():
            if args.accounts:
                log_account_summary(connection)
            if args.positions:
                log_positions(connection)

        if monitor_enabled:
            status_path = resolve_status_path(root, config)
            stop_event = threading.Event()
            monitor = SessionMonitor(
                supervisor,
                auto_reconnect=_env_bool("GATEWAY_AUTO_RECONNECT", config.gateway.auto_reconnect),
                reconnect_delay_seconds=float(
                    os.getenv("GATEWAY_RECONNECT_DELAY_SECONDS", str(config.gateway.reconnect_delay_seconds))
                ),
                poll_interval_seconds=config.monitor.poll_interval_seconds,
                error_pause_seconds=config.monitor.error_pause_seconds,
                connection=connection if config.monitor.check_session else None,
                alerts=alerts,
                status_writer=StatusWriter(status_path) if status_path else None,
                stop_event=stop_event,
            )
            install_stop_handlers(stop_event)
            monitor.run()
    except KeyboardInterrupt:
        LOGGER.info("Interrupted, shutting down.")
        exit_code = EXIT_INTERRUPTED
    finally:
        connection.close()
        if args.stop_gateway:
            supervisor.stop_running()
        LOGGER.info("Session manager stopped.")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(run())

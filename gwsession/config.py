from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from gwsession.errors import ConfigError


class GatewayConfig(BaseModel):
    host: str = "localhost"
    port: int = 5000
    executable_path: str = "bin/run.sh"
    install_dir: str = "clientportal.gw"
    args: list[str] = Field(default_factory=lambda: ["root/conf.yaml"])
    auto_launch: bool = True
    auto_reconnect: bool = True
    reconnect_delay_seconds: float = 5.0
    startup_timeout_seconds: int = 30
    probe_timeout_seconds: float = 1.0
    log_path: str | None = None

    @model_validator(mode="after")
    def validate_values(self) -> "GatewayConfig":
        self.host = self.host.strip() or "localhost"
        if not (0 < self.port < 65536):
            raise ValueError("gateway.port must be in (0,65535]")
        if self.reconnect_delay_seconds < 0:
            raise ValueError("gateway.reconnect_delay_seconds must be >= 0")
        if self.startup_timeout_seconds <= 0:
            raise ValueError("gateway.startup_timeout_seconds must be > 0")
        if self.probe_timeout_seconds <= 0:
            raise ValueError("gateway.probe_timeout_seconds must be > 0")
        self.args = [str(item) for item in self.args if str(item).strip()]
        return self


class BrowserConfig(BaseModel):
    headless: bool = True
    two_factor_timeout_seconds: float = 120.0
    keep_session_alive: bool = True
    settle_seconds: float = 5.0
    page_load_seconds: float = 2.0
    element_wait_seconds: float = 15.0
    poll_seconds: float = 0.5
    window_size: str = "1920,1080"
    login_path: str = "/sso/Login"
    audible_alert: bool = True

    @model_validator(mode="after")
    def validate_values(self) -> "BrowserConfig":
        if self.two_factor_timeout_seconds <= 0:
            raise ValueError("browser.two_factor_timeout_seconds must be > 0")
        if self.settle_seconds < 0 or self.page_load_seconds < 0:
            raise ValueError("browser settle/page_load seconds must be >= 0")
        if self.element_wait_seconds <= 0:
            raise ValueError("browser.element_wait_seconds must be > 0")
        if self.poll_seconds <= 0:
            raise ValueError("browser.poll_seconds must be > 0")
        parts = self.window_size.replace("x", ",").split(",")
        if len(parts) != 2 or not all(part.strip().isdigit() for part in parts):
            raise ValueError("browser.window_size must look like 1920,1080")
        self.window_size = ",".join(part.strip() for part in parts)
        if not self.login_path.startswith("/"):
            self.login_path = f"/{self.login_path}"
        return self


class SessionConfig(BaseModel):
    base_url: str | None = None
    request_timeout_seconds: float = 30.0
    tickle_interval_seconds: float = 60.0
    verify_delay_seconds: float = 2.0
    api_login: bool = False
    rate_limit_rps: float = 5.0
    rate_limit_burst: int = 10
    request_max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 5.0

    @model_validator(mode="after")
    def validate_values(self) -> "SessionConfig":
        if self.request_timeout_seconds <= 0:
            raise ValueError("session.request_timeout_seconds must be > 0")
        if self.tickle_interval_seconds <= 0:
            raise ValueError("session.tickle_interval_seconds must be > 0")
        if self.verify_delay_seconds < 0:
            raise ValueError("session.verify_delay_seconds must be >= 0")
        if self.request_max_attempts <= 0:
            raise ValueError("session.request_max_attempts must be > 0")
        return self


class MonitorConfig(BaseModel):
    enabled: bool = False
    poll_interval_seconds: float = 30.0
    error_pause_seconds: float = 10.0
    check_session: bool = True
    status_path: str | None = "gateway_status.json"

    @model_validator(mode="after")
    def validate_values(self) -> "MonitorConfig":
        if self.poll_interval_seconds <= 0:
            raise ValueError("monitor.poll_interval_seconds must be > 0")
        if self.error_pause_seconds < 0:
            raise ValueError("monitor.error_pause_seconds must be >= 0")
        return self


class AlertsConfig(BaseModel):
    enabled: bool = True
    cooldown_seconds: int = 30


class AppConfig(BaseModel):
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)

    @property
    def gateway_origin(self) -> str:
        return f"https://{self.gateway.host}:{self.gateway.port}"

    @property
    def api_base_url(self) -> str:
        if self.session.base_url:
            return self.session.base_url.strip().rstrip("/")
        return f"{self.gateway_origin}/v1/api"


def load_config(path: str | Path | None) -> AppConfig:
    if path is None:
        return AppConfig()
    config_path = Path(path)
    if not config_path.exists():
        return AppConfig()
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a YAML mapping")
    return AppConfig.model_validate(raw)


@dataclass(frozen=True, slots=True)
class Credentials:
    username: str
    password: str = field(repr=False)

    def is_complete(self) -> bool:
        return bool(self.username.strip()) and bool(self.password)


def _lower_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    return value


def load_credentials(secrets_path: str | Path | None = None) -> Credentials | None:
    """Read credentials from the environment, then from a secrets.json file.

    The JSON file uses the layout ``{"IBKRCredentials": {"Username": ..., "Password": ...}}``
    with case-insensitive keys. An explicitly given path that does not exist
    is a configuration error; an absent default file just yields ``None``.
    """
    username = os.getenv("IBKR_USERNAME", "").strip()
    password = os.getenv("IBKR_PASSWORD", "")
    if username and password:
        return Credentials(username=username, password=password)

    explicit = secrets_path is not None
    path = Path(secrets_path) if explicit else Path("secrets.json")
    if not path.exists():
        if explicit:
            raise ConfigError(
                f"secrets file not found at {path.resolve()}. Expected "
                '{"IBKRCredentials": {"Username": "...", "Password": "..."}}'
            )
        return None
    try:
        payload = _lower_keys(json.loads(path.read_text(encoding="utf-8")))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"secrets file {path} is not valid JSON: {exc}") from exc
    section = payload.get("ibkrcredentials") if isinstance(payload, dict) else None
    if not isinstance(section, dict):
        raise ConfigError(f"IBKRCredentials section missing in {path}")
    creds = Credentials(
        username=str(section.get("username") or "").strip(),
        password=str(section.get("password") or ""),
    )
    return creds if creds.is_complete() else None

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, Sequence

import requests

LOGGER = logging.getLogger(__name__)

DELIVERY_TIMEOUT_SECONDS = 10


def ring_terminal_bell(times: int = 2, gap_seconds: float = 0.1) -> None:
    stream = sys.stderr
    if not stream.isatty():
        return
    for index in range(max(1, times)):
        stream.write("\a")
        stream.flush()
        if index + 1 < times:
            time.sleep(gap_seconds)


class GatewayEvent(str, Enum):
    GATEWAY_DOWN = "GATEWAY_DOWN"
    GATEWAY_RESTORED = "GATEWAY_RESTORED"
    TWO_FACTOR_REQUIRED = "TWO_FACTOR_REQUIRED"
    SESSION_EXPIRED = "SESSION_EXPIRED"


@dataclass(frozen=True, slots=True)
class Alert:
    event: GatewayEvent
    message: str
    level: str = "info"
    context: dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        text = f"[{self.level.upper()}] {self.event.value}: {self.message}"
        if self.context:
            text += " | " + " ".join(f"{k}={v}" for k, v in self.context.items())
        return text


class AlertChannel(Protocol):
    name: str

    def deliver(self, text: str) -> None: ...


class DiscordWebhookChannel:
    name = "discord"

    def __init__(self, webhook_url: str, http: requests.Session | None = None):
        self.webhook_url = webhook_url
        self._http = http or requests.Session()

    def deliver(self, text: str) -> None:
        response = self._http.post(self.webhook_url, json={"content": text}, timeout=DELIVERY_TIMEOUT_SECONDS)
        response.raise_for_status()


class TelegramChannel:
    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str, http: requests.Session | None = None):
        self.url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        self.chat_id = chat_id
        self._http = http or requests.Session()

    def deliver(self, text: str) -> None:
        response = self._http.post(
            self.url,
            json={"chat_id": self.chat_id, "text": text},
            timeout=DELIVERY_TIMEOUT_SECONDS,
        )
        response.raise_for_status()


@dataclass(slots=True)
class AlertConfig:
    enabled: bool = True
    discord_webhook: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    cooldown_seconds: int = 30

    def channels(self) -> list[AlertChannel]:
        found: list[AlertChannel] = []
        webhook = (self.discord_webhook or "").strip()
        if webhook:
            found.append(DiscordWebhookChannel(webhook))
        token = (self.telegram_bot_token or "").strip()
        chat_id = (self.telegram_chat_id or "").strip()
        if token and chat_id:
            found.append(TelegramChannel(token, chat_id))
        return found


class AlertDispatcher:
    """Logs gateway events and forwards them to chat channels.

    Repeats of the same key inside the cooldown window are dropped. A
    channel that fails to deliver is logged and skipped; it never raises
    into the supervisor or monitor loop.
    """

    def __init__(self, config: AlertConfig, channels: Sequence[AlertChannel] | None = None):
        self.config = config
        self.channels = list(config.channels() if channels is None else channels)
        self._last_sent: dict[str, float] = {}
        self.sent = 0
        self.suppressed = 0

    def send(
        self,
        event: GatewayEvent,
        message: str,
        *,
        level: str = "info",
        context: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> bool:
        if not self.config.enabled:
            return False
        key = dedupe_key or event.value
        now = time.monotonic()
        previous = self._last_sent.get(key)
        if previous is not None and (now - previous) < self.config.cooldown_seconds:
            self.suppressed += 1
            return False
        self._last_sent[key] = now

        alert = Alert(event=event, message=message, level=level, context=dict(context or {}))
        text = alert.render()
        LOGGER.log(logging.WARNING if level in {"warning", "error"} else logging.INFO, "Alert %s", text)
        for channel in self.channels:
            try:
                channel.deliver(text)
            except requests.RequestException as exc:
                LOGGER.warning("%s alert failed: %s", channel.name, exc)
        self.sent += 1
        return True

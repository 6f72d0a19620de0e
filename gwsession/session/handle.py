from __future__ import annotations

import logging
import threading

from gwsession.config import Credentials, SessionConfig
from gwsession.data.gateway_client import AuthStatus, GatewayClient, SsoInitResponse
from gwsession.session.keepalive import KeepAliveTask

LOGGER = logging.getLogger(__name__)


class SessionHandle:
    """REST client bound to the gateway plus the /tickle keep-alive that stops it idling out.

    Closing the handle never touches the browser or the gateway process.
    """

    def __init__(
        self,
        client: GatewayClient,
        *,
        tickle_interval_seconds: float = 60.0,
        start_keepalive: bool = True,
    ):
        self.client = client
        self.keepalive = KeepAliveTask(self._tickle, tickle_interval_seconds, name="gateway-tickle")
        self._closed = False
        if start_keepalive:
            self.keepalive.start()

    @classmethod
    def from_config(cls, base_url: str, config: SessionConfig, *, start_keepalive: bool = True) -> "SessionHandle":
        client = GatewayClient(
            base_url=base_url,
            timeout_seconds=config.request_timeout_seconds,
            rate_limit_rps=config.rate_limit_rps,
            rate_limit_burst=config.rate_limit_burst,
            request_max_attempts=config.request_max_attempts,
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_max_seconds=config.backoff_max_seconds,
        )
        return cls(client, tickle_interval_seconds=config.tickle_interval_seconds, start_keepalive=start_keepalive)

    def _tickle(self) -> None:
        self.client.tickle()
        LOGGER.debug("Session tickle OK")

    def get_auth_status(self) -> AuthStatus | None:
        try:
            return self.client.get_auth_status()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Auth status probe raised: %s", exc)
            return None

    def initiate_login(self, credentials: Credentials) -> SsoInitResponse | None:
        return self.client.initiate_login(credentials)

    def wait_for_authentication(
        self,
        timeout_seconds: float = 120.0,
        *,
        stop_event: threading.Event | None = None,
    ) -> bool:
        return self.client.wait_for_authentication(timeout_seconds, stop_event=stop_event)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self.keepalive.stop()
        self.client.close()
        self._closed = True

    def __enter__(self) -> "SessionHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

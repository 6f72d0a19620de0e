from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from gwsession.auth.browser_login import AuthState, InteractiveAuthenticator
from gwsession.config import BrowserConfig, Credentials
from gwsession.data.gateway_client import GatewayAPIError, GatewayPosition
from gwsession.errors import ConfigError, ErrorKind
from gwsession.gateway.supervisor import GatewayProcessSupervisor
from gwsession.monitoring.alerts import AlertDispatcher, GatewayEvent
from gwsession.session.handle import SessionHandle

LOGGER = logging.getLogger(__name__)

CredentialsProvider = Callable[[], Credentials | None]
AuthenticatorFactory = Callable[[], InteractiveAuthenticator]


@dataclass(slots=True)
class AccountInfo:
    account_id: str
    title: str | None = None
    currency: str | None = None
    status: str | None = None
    type: str | None = None
    all_values: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PositionInfo:
    account: str
    symbol: str
    sec_type: str
    conid: int = 0
    right: str = ""
    strike: float = 0.0
    expiry: str = ""
    position: float = 0.0
    avg_cost: float = 0.0
    market_price: float = 0.0
    market_value: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0


def determine_sec_type(position: GatewayPosition) -> str:
    if position.put_or_call:
        return "OPT"
    if position.expiry:
        return "FUT"
    return "STK"


def to_position_info(position: GatewayPosition, default_account: str) -> PositionInfo:
    return PositionInfo(
        account=position.account_id or default_account,
        symbol=position.ticker or position.contract_desc or "",
        sec_type=determine_sec_type(position),
        conid=position.conid,
        right=position.put_or_call or "",
        strike=position.strike or 0.0,
        expiry=position.expiry or "",
        position=position.position,
        avg_cost=position.avg_cost or 0.0,
        market_price=position.market_price or 0.0,
        market_value=position.market_value or 0.0,
        unrealized_pnl=position.unrealized_pnl or 0.0,
        realized_pnl=position.realized_pnl or 0.0,
    )


class ConnectionFacade:
    """
    Entry point for callers that need an authenticated gateway.

    `connect()` checks the gateway's auth status first and only falls back to
    the browser login, or the ssodh API login when `api_login` is set (and only
    then reads credentials), when the session is not already authenticated. A failed login is never retried here.
    """

    def __init__(
        self,
        session: SessionHandle,
        *,
        credentials_provider: CredentialsProvider,
        supervisor: GatewayProcessSupervisor | None = None,
        authenticator_factory: AuthenticatorFactory | None = None,
        browser_config: BrowserConfig | None = None,
        gateway_url: str = "https://localhost:5000",
        verify_delay_seconds: float = 2.0,
        api_login: bool = False,
        alerts: AlertDispatcher | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.supervisor = supervisor
        self.browser_config = browser_config or BrowserConfig()
        self.gateway_url = gateway_url
        self.verify_delay_seconds = verify_delay_seconds
        self.api_login = api_login
        self.alerts = alerts
        self._credentials_provider = credentials_provider
        self._authenticator_factory = authenticator_factory or self._default_authenticator
        self._sleep = sleep
        self._authenticator: InteractiveAuthenticator | None = None
        self._connected = False
        self.account_id: str | None = None
        self.state = AuthState.UNAUTHENTICATED
        self.last_error: ErrorKind | None = None

    def _default_authenticator(self) -> InteractiveAuthenticator:
        return InteractiveAuthenticator(
            gateway_url=self.gateway_url,
            config=self.browser_config,
            on_two_factor_prompt=self._notify_two_factor,
        )

    def _notify_two_factor(self) -> None:
        if self.alerts is None:
            return
        self.alerts.send(
            GatewayEvent.TWO_FACTOR_REQUIRED,
            "Approve the gateway login in the IBKR mobile app",
            level="warning",
            context={"gateway": self.gateway_url},
        )

    def connect(self) -> bool:
        self.last_error = None
        try:
            status = self.session.get_auth_status()
            if status is not None and status.ready:
                LOGGER.info("Gateway session already authenticated, skipping browser login")
                self._mark_connected()
                return True

            if self.supervisor is not None:
                if not self.supervisor.ensure_running():
                    self.last_error = self.supervisor.last_error or ErrorKind.PROCESS_LAUNCH_FAILURE
                    LOGGER.error("Gateway is not reachable at %s", self.supervisor.address)
                    return False
                if status is None:
                    status = self.session.get_auth_status()
                    if status is not None and status.ready:
                        LOGGER.info("Gateway session already authenticated after startup")
                        self._mark_connected()
                        return True

            return self._interactive_login()
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Connect failed: %s", exc)
            self._connected = False
            self.state = AuthState.FAILED
            self.last_error = self.last_error or ErrorKind.TRANSPORT_ERROR
            return False

    def _interactive_login(self) -> bool:
        try:
            credentials = self._credentials_provider()
        except ConfigError as exc:
            LOGGER.error("Credentials could not be loaded: %s", exc)
            self.last_error = ErrorKind.CREDENTIALS_MISSING
            return False
        if credentials is None or not credentials.is_complete():
            LOGGER.error("Username or password not configured; cannot log in")
            self.last_error = ErrorKind.CREDENTIALS_MISSING
            return False

        self.state = AuthState.LOGGING_IN
        ok = self._api_login(credentials) if self.api_login else self._browser_login(credentials)
        if not ok:
            return False

        LOGGER.info("Verifying API authentication")
        self._sleep(self.verify_delay_seconds)
        verify = self.session.get_auth_status()
        if verify is None or not verify.ready:
            self.state = AuthState.FAILED
            self.last_error = ErrorKind.AUTH_VERIFICATION_FAILURE
            LOGGER.error("Login reported success but API status disagrees: %s", verify)
            return False

        self._mark_connected()
        LOGGER.info("Connected to IBKR gateway account=%s", self.account_id or "-")
        return True

    def _browser_login(self, credentials: Credentials) -> bool:
        if self._authenticator is None:
            self._authenticator = self._authenticator_factory()
        authenticator = self._authenticator
        LOGGER.info("Not authenticated, starting browser login")
        ok = authenticator.login(
            credentials,
            headless=self.browser_config.headless,
            two_factor_timeout_seconds=self.browser_config.two_factor_timeout_seconds,
            keep_session_alive=self.browser_config.keep_session_alive,
        )
        if not ok:
            self.state = authenticator.state
            self.last_error = authenticator.last_error or ErrorKind.LOGIN_FAILED
            LOGGER.error("Browser login failed (%s)", self.last_error.value)
            authenticator.close()
        return ok

    def _api_login(self, credentials: Credentials) -> bool:
        LOGGER.info("Not authenticated, starting API login")
        response = self.session.initiate_login(credentials)
        if response is None or response.fail:
            self.state = AuthState.FAILED
            self.last_error = ErrorKind.LOGIN_FAILED
            LOGGER.error("API login rejected: %s", response.fail if response is not None else "no response")
            return False
        self.state = AuthState.AWAITING_TWO_FACTOR
        self._notify_two_factor()
        timeout = self.browser_config.two_factor_timeout_seconds
        if not self.session.wait_for_authentication(timeout):
            self.state = AuthState.TIMED_OUT
            self.last_error = ErrorKind.TWO_FACTOR_TIMEOUT
            LOGGER.error("2FA not approved within %.0fs", timeout)
            return False
        return True

    def _mark_connected(self) -> None:
        self._connected = True
        self.state = AuthState.AUTHENTICATED
        try:
            accounts = self.session.client.get_accounts()
        except (GatewayAPIError, ValueError, TypeError) as exc:
            LOGGER.warning("Could not list accounts: %s", exc)
            return
        if accounts:
            self.account_id = accounts[0].account_id

    def check_session(self) -> bool:
        status = self.session.get_auth_status()
        if status is None:
            self.last_error = ErrorKind.TRANSPORT_ERROR
            return False
        if status.ready:
            return True
        if self._connected:
            LOGGER.warning("Gateway session expired: %s", status.message or "not authenticated")
            self._connected = False
            self.state = AuthState.EXPIRED
            self.last_error = ErrorKind.SESSION_EXPIRED
            if self._authenticator is not None:
                self._authenticator.mark_expired()
            if self.alerts is not None:
                self.alerts.send(
                    GatewayEvent.SESSION_EXPIRED,
                    "Gateway session is no longer authenticated; run connect to log in again",
                    level="warning",
                )
        return False

    def get_account_info(self) -> AccountInfo | None:
        if not self._connected or not self.account_id:
            return None
        try:
            summary = self.session.client.get_account_summary()
            if summary is None:
                return None
            return AccountInfo(
                account_id=summary.account_id or self.account_id,
                title=summary.account_title,
                currency=summary.currency,
                status=summary.account_status,
                type=summary.type,
                all_values={
                    str(k): str(v) for k, v in summary.raw.items() if isinstance(v, (str, int, float, bool))
                },
            )
        except (GatewayAPIError, ValueError, TypeError) as exc:
            LOGGER.warning("GetAccountInfo failed: %s", exc)
            return None

    def get_positions(self) -> list[PositionInfo]:
        if not self._connected or not self.account_id:
            return []
        try:
            positions = self.session.client.get_positions(self.account_id)
            return [to_position_info(item, self.account_id) for item in positions]
        except (GatewayAPIError, ValueError, TypeError) as exc:
            LOGGER.warning("GetPositions failed: %s", exc)
            return []

    def is_connected(self) -> bool:
        return self._connected

    def is_session_alive(self) -> bool:
        return self._authenticator is not None and self._authenticator.is_session_alive()

    def disconnect(self) -> None:
        self._connected = False

    def reset_session(self) -> None:
        if self._authenticator is not None:
            self._authenticator.reset_session()
        self._connected = False
        self.state = AuthState.UNAUTHENTICATED

    def close(self) -> None:
        self._connected = False
        self.session.close()
        if self._authenticator is not None:
            self._authenticator.close()
            self._authenticator = None

    def __enter__(self) -> "ConnectionFacade":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

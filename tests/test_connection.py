from __future__ import annotations

import json
from typing import Any

from gwsession.auth.browser_login import AuthState
from gwsession.config import BrowserConfig, Credentials
from gwsession.connection import ConnectionFacade, determine_sec_type
from gwsession.data.gateway_client import (
    AccountSummary,
    AuthStatus,
    GatewayAPIError,
    GatewayClient,
    GatewayPosition,
    PortfolioAccount,
    SsoInitResponse,
)
from gwsession.errors import ConfigError, ErrorKind
from gwsession.monitoring.alerts import GatewayEvent
from gwsession.session.handle import SessionHandle

READY = AuthStatus(authenticated=True, connected=True)
NOT_READY = AuthStatus.not_authenticated()


class FakeClient:
    def __init__(self) -> None:
        self.accounts = [PortfolioAccount(account_id="U7654321")]
        self.positions: list[GatewayPosition] = []
        self.fail_reads = False

    def get_accounts(self) -> list[PortfolioAccount]:
        if self.fail_reads:
            raise GatewayAPIError("HTTP 500")
        return self.accounts

    def get_positions(self, account_id: str, page: int = 0) -> list[GatewayPosition]:
        if self.fail_reads:
            raise GatewayAPIError("HTTP 500")
        return self.positions

    def get_account_summary(self) -> AccountSummary | None:
        if self.fail_reads:
            raise GatewayAPIError("HTTP 500")
        return AccountSummary(account_id="U7654321", account_title="Demo", currency="USD", raw={"currency": "USD"})


class FakeSession:
    def __init__(self, statuses: list[AuthStatus | None]):
        self.statuses = list(statuses)
        self.client = FakeClient()
        self.closed = False
        self.sso_response: SsoInitResponse | None = SsoInitResponse(authenticated=False, connected=True)
        self.approved = True
        self.sso_logins: list[Credentials] = []
        self.waits: list[float] = []

    def get_auth_status(self) -> AuthStatus | None:
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def initiate_login(self, credentials: Credentials) -> SsoInitResponse | None:
        self.sso_logins.append(credentials)
        return self.sso_response

    def wait_for_authentication(self, timeout_seconds: float = 120.0, *, stop_event: Any = None) -> bool:
        self.waits.append(timeout_seconds)
        return self.approved

    def close(self) -> None:
        self.closed = True


class FakeSupervisor:
    def __init__(self, ok: bool = True, error: ErrorKind | None = None):
        self.ok = ok
        self.last_error = error
        self.calls = 0
        self.address = "localhost:5000"

    def ensure_running(self) -> bool:
        self.calls += 1
        return self.ok


class FakeAuthenticator:
    def __init__(self, ok: bool = True, state: AuthState = AuthState.AUTHENTICATED, error: ErrorKind | None = None):
        self.ok = ok
        self.state = state
        self.last_error = error
        self.logins: list[dict[str, Any]] = []
        self.closed = False
        self.expired = False
        self.resets = 0

    def login(self, credentials: Credentials, **kwargs: Any) -> bool:
        self.logins.append({"credentials": credentials, **kwargs})
        return self.ok

    def close(self) -> None:
        self.closed = True

    def mark_expired(self) -> None:
        self.expired = True

    def is_session_alive(self) -> bool:
        return self.ok and not self.closed

    def reset_session(self) -> None:
        self.resets += 1


class FakeAlerts:
    def __init__(self) -> None:
        self.events: list[GatewayEvent] = []

    def send(self, event: GatewayEvent, message: str, **kwargs: Any) -> bool:
        self.events.append(event)
        return True


class Recorder:
    def __init__(self, value: Any = None):
        self.value = value
        self.calls = 0

    def __call__(self) -> Any:
        self.calls += 1
        if isinstance(self.value, Exception):
            raise self.value
        return self.value


def _facade(
    statuses: list[AuthStatus | None],
    *,
    credentials: Any = Credentials("demo", "pw"),
    supervisor: FakeSupervisor | None = None,
    authenticator: FakeAuthenticator | None = None,
    api_login: bool = False,
) -> tuple[ConnectionFacade, FakeSession, Recorder, Recorder, list[float]]:
    session = FakeSession(statuses)
    provider = Recorder(credentials)
    factory = Recorder(authenticator or FakeAuthenticator())
    sleeps: list[float] = []
    facade = ConnectionFacade(
        session,  # type: ignore[arg-type]
        credentials_provider=provider,
        supervisor=supervisor or FakeSupervisor(),  # type: ignore[arg-type]
        authenticator_factory=factory,
        browser_config=BrowserConfig(headless=False, two_factor_timeout_seconds=90),
        verify_delay_seconds=2.0,
        api_login=api_login,
        sleep=sleeps.append,
    )
    return facade, session, provider, factory, sleeps


def test_connect_fast_path_skips_browser_and_credentials() -> None:
    facade, _, provider, factory, _ = _facade([READY])
    assert facade.connect() is True
    assert facade.is_connected()
    assert facade.state is AuthState.AUTHENTICATED
    assert facade.account_id == "U7654321"
    assert provider.calls == 0
    assert factory.calls == 0


def test_connect_runs_browser_login_when_not_authenticated() -> None:
    authenticator = FakeAuthenticator()
    supervisor = FakeSupervisor()
    facade, _, provider, factory, sleeps = _facade(
        [NOT_READY, READY], supervisor=supervisor, authenticator=authenticator
    )
    assert facade.connect() is True
    assert supervisor.calls == 1
    assert provider.calls == 1
    assert factory.calls == 1
    assert sleeps == [2.0]
    assert authenticator.logins[0]["headless"] is False
    assert authenticator.logins[0]["two_factor_timeout_seconds"] == 90
    assert facade.account_id == "U7654321"


def test_connect_gateway_unreachable_and_cannot_start() -> None:
    supervisor = FakeSupervisor(ok=False, error=ErrorKind.GATEWAY_START_TIMEOUT)
    facade, _, provider, factory, _ = _facade([None], supervisor=supervisor)
    assert facade.connect() is False
    assert facade.last_error is ErrorKind.GATEWAY_START_TIMEOUT
    assert provider.calls == 0
    assert factory.calls == 0


def test_connect_after_gateway_start_already_authenticated() -> None:
    facade, _, provider, _, _ = _facade([None, READY])
    assert facade.connect() is True
    assert provider.calls == 0


def test_connect_missing_credentials() -> None:
    facade, _, _, factory, _ = _facade([NOT_READY], credentials=None)
    assert facade.connect() is False
    assert facade.last_error is ErrorKind.CREDENTIALS_MISSING
    assert factory.calls == 0


def test_connect_unreadable_secrets_file() -> None:
    facade, _, _, factory, _ = _facade([NOT_READY], credentials=ConfigError("secrets file not found"))
    assert facade.connect() is False
    assert facade.last_error is ErrorKind.CREDENTIALS_MISSING
    assert factory.calls == 0


def test_connect_two_factor_timeout_not_retried() -> None:
    authenticator = FakeAuthenticator(ok=False, state=AuthState.TIMED_OUT, error=ErrorKind.TWO_FACTOR_TIMEOUT)
    facade, _, _, _, _ = _facade([NOT_READY], authenticator=authenticator)
    assert facade.connect() is False
    assert facade.state is AuthState.TIMED_OUT
    assert facade.last_error is ErrorKind.TWO_FACTOR_TIMEOUT
    assert len(authenticator.logins) == 1
    assert authenticator.closed is True
    assert facade.is_connected() is False


def test_connect_verification_failure() -> None:
    facade, _, _, _, _ = _facade([NOT_READY, NOT_READY])
    assert facade.connect() is False
    assert facade.last_error is ErrorKind.AUTH_VERIFICATION_FAILURE
    assert facade.is_connected() is False


def test_reads_require_connection() -> None:
    facade, _, _, _, _ = _facade([NOT_READY])
    assert facade.get_account_info() is None
    assert facade.get_positions() == []


def test_reads_fail_soft_on_api_errors() -> None:
    facade, session, _, _, _ = _facade([READY])
    assert facade.connect() is True
    session.client.fail_reads = True
    assert facade.get_account_info() is None
    assert facade.get_positions() == []


def test_account_info_and_positions_mapping() -> None:
    facade, session, _, _, _ = _facade([READY])
    session.client.positions = [
        GatewayPosition(
            account_id="U7654321",
            conid=1,
            contract_desc="SPY",
            position=-2,
            avg_cost=120.0,
            put_or_call="P",
            strike=450.0,
            expiry="20261218",
            ticker="SPY",
        ),
        GatewayPosition(account_id=None, conid=2, contract_desc="MSFT", position=5, ticker="MSFT"),
    ]
    assert facade.connect() is True

    info = facade.get_account_info()
    assert info is not None
    assert info.account_id == "U7654321"
    assert info.currency == "USD"
    assert info.all_values == {"currency": "USD"}

    positions = facade.get_positions()
    assert [p.sec_type for p in positions] == ["OPT", "STK"]
    assert positions[0].right == "P"
    assert positions[0].strike == 450.0
    assert positions[1].account == "U7654321"


def test_determine_sec_type_future() -> None:
    position = GatewayPosition(account_id="U1", conid=3, expiry="20261219")
    assert determine_sec_type(position) == "FUT"


def test_check_session_detects_expiry() -> None:
    authenticator = FakeAuthenticator()
    facade, _, _, _, _ = _facade([NOT_READY, READY, NOT_READY], authenticator=authenticator)
    assert facade.connect() is True
    assert facade.check_session() is False
    assert facade.state is AuthState.EXPIRED
    assert facade.last_error is ErrorKind.SESSION_EXPIRED
    assert facade.is_connected() is False
    assert authenticator.expired is True


def test_check_session_transport_error() -> None:
    facade, _, _, _, _ = _facade([None])
    assert facade.check_session() is False
    assert facade.last_error is ErrorKind.TRANSPORT_ERROR


def test_disconnect_keeps_browser_but_clears_flag() -> None:
    authenticator = FakeAuthenticator()
    facade, _, _, _, _ = _facade([NOT_READY, READY], authenticator=authenticator)
    assert facade.connect() is True
    facade.disconnect()
    assert facade.is_connected() is False
    assert facade.is_session_alive() is True


def test_reset_session_and_close() -> None:
    authenticator = FakeAuthenticator()
    facade, session, _, _, _ = _facade([NOT_READY, READY], authenticator=authenticator)
    assert facade.connect() is True
    facade.reset_session()
    assert authenticator.resets == 1
    assert facade.state is AuthState.UNAUTHENTICATED
    facade.close()
    assert session.closed is True
    assert authenticator.closed is True


class _JsonResponse:
    def __init__(self, payload: Any):
        self.status_code = 200
        self._payload = payload
        self.text = json.dumps(payload)

    @property
    def ok(self) -> bool:
        return True

    def json(self) -> Any:
        return self._payload


class _ScriptedHttp:
    def __init__(self, payloads: list[Any]):
        self.payloads = list(payloads)
        self.headers: dict[str, str] = {}
        self.verify = True

    def request(self, method: str, url: str, json: Any = None, timeout: float | None = None) -> _JsonResponse:
        return _JsonResponse(self.payloads.pop(0))

    def close(self) -> None:
        pass


def test_malformed_position_rows_do_not_crash_reads() -> None:
    http = _ScriptedHttp(
        [
            {"authenticated": True, "connected": True},
            [{"accountId": "U1"}],
            [{"acctId": "U1", "conid": "n/a", "position": 1, "ticker": "XYZ"}],
        ]
    )
    client = GatewayClient("https://localhost:5000", rate_limit_rps=1000, session=http)  # type: ignore[arg-type]
    handle = SessionHandle(client, start_keepalive=False)
    facade = ConnectionFacade(handle, credentials_provider=lambda: None, sleep=lambda seconds: None)

    assert facade.connect() is True
    positions = facade.get_positions()
    assert [(p.symbol, p.conid) for p in positions] == [("XYZ", 0)]
    facade.close()


def test_reads_fail_soft_on_parse_errors() -> None:
    facade, session, _, _, _ = _facade([READY])
    assert facade.connect() is True

    def _bad_payload(*args: Any, **kwargs: Any) -> Any:
        raise ValueError("invalid literal for int() with base 10: 'n/a'")

    session.client.get_positions = _bad_payload  # type: ignore[method-assign]
    session.client.get_account_summary = _bad_payload  # type: ignore[method-assign]
    assert facade.get_positions() == []
    assert facade.get_account_info() is None


class TestApiLogin:
    def test_connect_through_ssodh_skips_browser(self) -> None:
        alerts = FakeAlerts()
        facade, session, provider, factory, sleeps = _facade([NOT_READY, READY], api_login=True)
        facade.alerts = alerts  # type: ignore[assignment]

        assert facade.connect() is True
        assert factory.calls == 0
        assert provider.calls == 1
        assert session.sso_logins == [Credentials("demo", "pw")]
        assert session.waits == [90]
        assert sleeps == [2.0]
        assert alerts.events == [GatewayEvent.TWO_FACTOR_REQUIRED]
        assert facade.state is AuthState.AUTHENTICATED
        assert facade.account_id == "U7654321"

    def test_rejected_ssodh_login_is_not_retried(self) -> None:
        facade, session, _, factory, _ = _facade([NOT_READY], api_login=True)
        session.sso_response = SsoInitResponse(authenticated=False, connected=False, fail="bad credentials")

        assert facade.connect() is False
        assert facade.state is AuthState.FAILED
        assert facade.last_error is ErrorKind.LOGIN_FAILED
        assert len(session.sso_logins) == 1
        assert session.waits == []
        assert factory.calls == 0

    def test_unreachable_ssodh_endpoint_is_login_failure(self) -> None:
        facade, session, _, _, _ = _facade([NOT_READY], api_login=True)
        session.sso_response = None

        assert facade.connect() is False
        assert facade.last_error is ErrorKind.LOGIN_FAILED

    def test_unapproved_two_factor_times_out(self) -> None:
        facade, session, _, _, sleeps = _facade([NOT_READY], api_login=True)
        session.approved = False

        assert facade.connect() is False
        assert facade.state is AuthState.TIMED_OUT
        assert facade.last_error is ErrorKind.TWO_FACTOR_TIMEOUT
        assert sleeps == []
        assert facade.is_connected() is False

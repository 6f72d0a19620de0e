from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any

import requests
import urllib3

from gwsession.config import Credentials

LOGGER = logging.getLogger(__name__)

# Client Portal Gateway serves a self-signed certificate on localhost.
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


class GatewayAPIError(RuntimeError):
    """Non-retryable gateway API error."""


class GatewayTransportError(GatewayAPIError):
    """Network/TLS failure talking to the gateway."""


@dataclass(slots=True)
class GatewayClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    transport_errors: int = 0
    tickles_ok: int = 0
    tickle_failures: int = 0


@dataclass(frozen=True, slots=True)
class AuthStatus:
    authenticated: bool
    connected: bool
    competing: bool = False
    message: str | None = None

    @property
    def ready(self) -> bool:
        return self.authenticated and self.connected

    @classmethod
    def not_authenticated(cls, message: str = "Not authenticated") -> "AuthStatus":
        return cls(authenticated=False, connected=False, competing=False, message=message)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AuthStatus":
        message = payload.get("message")
        return cls(
            authenticated=bool(payload.get("authenticated", False)),
            connected=bool(payload.get("connected", False)),
            competing=bool(payload.get("competing", False)),
            message=str(message) if message else None,
        )


@dataclass(frozen=True, slots=True)
class SsoInitResponse:
    authenticated: bool
    connected: bool
    competing: bool = False
    challenge: str | None = None
    message: str | None = None
    fail: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SsoInitResponse":
        return cls(
            authenticated=bool(payload.get("authenticated", False)),
            connected=bool(payload.get("connected", False)),
            competing=bool(payload.get("competing", False)),
            challenge=payload.get("challenge"),
            message=payload.get("message"),
            fail=payload.get("fail"),
        )


@dataclass(frozen=True, slots=True)
class PortfolioAccount:
    account_id: str
    id: str | None = None
    display_name: str | None = None
    account_alias: str | None = None
    account_title: str | None = None
    account_status: str | None = None
    currency: str | None = None
    type: str | None = None
    trading_type: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PortfolioAccount":
        return cls(
            account_id=str(payload.get("accountId") or payload.get("id") or ""),
            id=payload.get("id"),
            display_name=payload.get("displayName"),
            account_alias=payload.get("accountAlias"),
            account_title=payload.get("accountTitle"),
            account_status=payload.get("accountStatus"),
            currency=payload.get("currency"),
            type=payload.get("type"),
            trading_type=payload.get("tradingType"),
        )


def _opt_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int_or_zero(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True, slots=True)
class GatewayPosition:
    account_id: str | None
    conid: int
    contract_desc: str | None = None
    position: float = 0.0
    market_price: float | None = None
    market_value: float | None = None
    currency: str | None = None
    avg_cost: float | None = None
    avg_price: float | None = None
    realized_pnl: float | None = None
    unrealized_pnl: float | None = None
    expiry: str | None = None
    put_or_call: str | None = None
    strike: float | None = None
    multiplier: float | None = None
    ticker: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "GatewayPosition":
        return cls(
            account_id=payload.get("acctId"),
            conid=_int_or_zero(payload.get("conid")),
            contract_desc=payload.get("contractDesc"),
            position=_opt_float(payload.get("position")) or 0.0,
            market_price=_opt_float(payload.get("mktPrice")),
            market_value=_opt_float(payload.get("mktValue")),
            currency=payload.get("currency"),
            avg_cost=_opt_float(payload.get("avgCost")),
            avg_price=_opt_float(payload.get("avgPrice")),
            realized_pnl=_opt_float(payload.get("realizedPnl")),
            unrealized_pnl=_opt_float(payload.get("unrealizedPnl")),
            expiry=payload.get("expiry") or None,
            put_or_call=payload.get("putOrCall") or None,
            strike=_opt_float(payload.get("strike")),
            multiplier=_opt_float(payload.get("multiplier")),
            ticker=payload.get("ticker"),
            raw=dict(payload),
        )


@dataclass(frozen=True, slots=True)
class AccountSummary:
    account_id: str | None
    account_title: str | None = None
    account_status: str | None = None
    currency: str | None = None
    type: str | None = None
    description: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccountSummary":
        return cls(
            account_id=payload.get("accountId") or payload.get("id"),
            account_title=payload.get("accountTitle"),
            account_status=payload.get("accountStatus"),
            currency=payload.get("currency"),
            type=payload.get("type"),
            description=payload.get("desc"),
            raw=dict(payload),
        )


class TokenBucketLimiter:
    def __init__(self, rate_per_second: float, burst: int):
        self.rate_per_second = max(0.1, float(rate_per_second))
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            with self.lock:
                now = time.monotonic()
                elapsed = max(0.0, now - self.last_refill)
                self.tokens = min(
                    float(self.capacity),
                    self.tokens + elapsed * self.rate_per_second,
                )
                self.last_refill = now
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait_seconds = (1.0 - self.tokens) / self.rate_per_second
            time.sleep(wait_seconds)


class GatewayClient:
    """
    Client Portal Gateway REST client.

    Session flow:
    - The gateway keeps the brokerage session; this client holds no token.
    - Login happens elsewhere (browser form or /iserver/auth/ssodh/init).
    - POST /tickle keeps the session from idling out.
    """

    def __init__(
        self,
        base_url: str = "https://localhost:5000/v1/api",
        timeout_seconds: float = 30.0,
        *,
        rate_limit_rps: float = 5.0,
        rate_limit_burst: int = 10,
        request_max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 5.0,
        session: requests.Session | None = None,
    ):
        self.base_url = self._normalize_base_url(base_url)
        self.timeout_seconds = timeout_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.05, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))

        self.session = session or requests.Session()
        self.session.verify = False
        self.session.headers.update(
            {
                "Accept": "application/json",
                "User-Agent": "gwsession/0.1",
            }
        )
        self._limiter = TokenBucketLimiter(rate_per_second=rate_limit_rps, burst=rate_limit_burst)
        self._metrics = GatewayClientMetrics()
        self._metrics_lock = threading.Lock()

    @staticmethod
    def _normalize_base_url(base_url: str) -> str:
        normalized = base_url.strip().rstrip("/")
        if normalized.endswith("/v1/api"):
            return normalized
        return f"{normalized}/v1/api"

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            return asdict(self._metrics)

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str) -> None:
        exponential = min(
            self.backoff_max_seconds,
            self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
        )
        jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
        sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        self._metric_add("total_retries", 1)
        LOGGER.warning(
            "Retrying gateway call endpoint=%s attempt=%d/%d sleep=%.2fs reason=%s",
            endpoint,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        time.sleep(sleep_seconds)

    def _send_http(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
    ) -> requests.Response:
        self._limiter.acquire()
        self._metric_add("total_requests", 1)
        return self.session.request(
            method=method,
            url=f"{self.base_url}{path}",
            json=json_payload,
            timeout=self.timeout_seconds,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        max_attempts: int | None = None,
    ) -> Any:
        attempts = max_attempts or self.request_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                response = self._send_http(method, path, json_payload=json)
            except requests.RequestException as exc:
                self._metric_add("transport_errors", 1)
                if attempt >= attempts:
                    raise GatewayTransportError(f"Network error {method} {path}: {exc}") from exc
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            if response.status_code in (500, 502, 503, 504):
                if attempt >= attempts:
                    raise GatewayAPIError(
                        f"Gateway error {method} {path}: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"http_{response.status_code}")
                continue

            if response.status_code >= 400:
                raise GatewayAPIError(
                    f"API error {method} {path}: HTTP {response.status_code} {response.text}"
                )
            if not response.text:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                raise GatewayAPIError(f"Invalid JSON from {method} {path}") from exc

        raise GatewayAPIError(f"Could not complete request {method} {path}")

    def get_auth_status(self) -> AuthStatus | None:
        # 401/403 is how the gateway says "not logged in", so it is a status, not an error.
        try:
            response = self._send_http("POST", "/iserver/auth/status")
        except requests.RequestException as exc:
            self._metric_add("transport_errors", 1)
            LOGGER.warning("Auth status check failed: %s", exc)
            return None
        if not response.ok:
            return AuthStatus.not_authenticated()
        try:
            payload = response.json()
        except ValueError:
            LOGGER.warning("Auth status returned non-JSON body")
            return None
        if not isinstance(payload, dict):
            return None
        return AuthStatus.from_payload(payload)

    def tickle(self) -> None:
        try:
            response = self._send_http("POST", "/tickle")
        except requests.RequestException as exc:
            self._metric_add("tickle_failures", 1)
            raise GatewayTransportError(f"Tickle failed: {exc}") from exc
        if not response.ok:
            self._metric_add("tickle_failures", 1)
            raise GatewayAPIError(f"Tickle failed: HTTP {response.status_code}")
        self._metric_add("tickles_ok", 1)

    def initiate_login(self, credentials: Credentials) -> SsoInitResponse | None:
        try:
            payload = self._request(
                "POST",
                "/iserver/auth/ssodh/init",
                json={"username": credentials.username, "password": credentials.password},
                # A resubmitted login would push a second 2FA prompt.
                max_attempts=1,
            )
        except GatewayAPIError as exc:
            LOGGER.warning("Login initiation failed: %s", exc)
            return None
        if not isinstance(payload, dict):
            return None
        LOGGER.info("Login initiated. Check the IBKR mobile app for the 2FA notification.")
        return SsoInitResponse.from_payload(payload)

    def wait_for_authentication(
        self,
        timeout_seconds: float = 120.0,
        poll_seconds: float = 3.0,
        *,
        stop_event: threading.Event | None = None,
    ) -> bool:
        deadline = time.monotonic() + timeout_seconds
        waiter = stop_event or threading.Event()
        LOGGER.info("Waiting up to %.0fs for 2FA approval", timeout_seconds)
        while time.monotonic() < deadline:
            status = self.get_auth_status()
            if status is not None and status.ready:
                LOGGER.info("Authentication successful")
                return True
            remaining = max(0.0, deadline - time.monotonic())
            LOGGER.info("Waiting for 2FA... (%.0fs remaining)", remaining)
            if waiter.wait(min(poll_seconds, remaining)):
                return False
        LOGGER.warning("Authentication timeout after %.0fs", timeout_seconds)
        return False

    def get_accounts(self) -> list[PortfolioAccount]:
        payload = self._request("GET", "/portfolio/accounts")
        if not isinstance(payload, list):
            return []
        return [PortfolioAccount.from_payload(item) for item in payload if isinstance(item, dict)]

    def get_positions(self, account_id: str, page: int = 0) -> list[GatewayPosition]:
        payload = self._request("GET", f"/portfolio/{account_id}/positions/{page}")
        if not isinstance(payload, list):
            return []
        return [GatewayPosition.from_payload(item) for item in payload if isinstance(item, dict)]

    def get_account_summary(self) -> AccountSummary | None:
        payload = self._request("GET", "/iserver/account")
        if not isinstance(payload, dict) or not payload:
            return None
        return AccountSummary.from_payload(payload)

    def close(self) -> None:
        self.session.close()

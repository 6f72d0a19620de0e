from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlsplit

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.support.ui import WebDriverWait

from gwsession.auth.locators import (
    PASSWORD_LOCATOR,
    SUBMIT_LOCATOR,
    USERNAME_LOCATOR,
    FieldLocator,
    LocatedField,
    visible_error_text,
)
from gwsession.config import BrowserConfig, Credentials
from gwsession.errors import ErrorKind
from gwsession.monitoring.alerts import ring_terminal_bell

LOGGER = logging.getLogger(__name__)

PAGE_SOURCE_PREVIEW_CHARS = 1000


class AuthState(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    LOGGING_IN = "LOGGING_IN"
    AWAITING_TWO_FACTOR = "AWAITING_TWO_FACTOR"
    AUTHENTICATED = "AUTHENTICATED"
    TIMED_OUT = "TIMED_OUT"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class LoginStep(str, Enum):
    INIT = "INIT"
    NAVIGATE_TO_LOGIN = "NAVIGATE_TO_LOGIN"
    FILL_CREDENTIALS = "FILL_CREDENTIALS"
    SUBMIT_FORM = "SUBMIT_FORM"
    AWAITING_TWO_FACTOR = "AWAITING_TWO_FACTOR"
    DONE = "DONE"


DriverFactory = Callable[[bool, str], Any]

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin(url: str) -> tuple[str, str, int | None]:
    try:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        return scheme, parts.hostname or "", parts.port or _DEFAULT_PORTS.get(scheme)
    except ValueError:
        return "", "", None


def build_chrome_driver(headless: bool, window_size: str = "1920,1080") -> Any:
    options = ChromeOptions()
    if headless:
        options.add_argument("--headless=new")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--ignore-certificate-errors")
    options.add_argument("--disable-gpu")
    options.add_argument(f"--window-size={window_size}")
    options.accept_insecure_certs = True
    return webdriver.Chrome(options=options)


class InteractiveAuthenticator:
    """
    Logs in to the Client Portal Gateway through its own web form.

    Flow:
    - open the gateway root page in Chrome (self-signed cert tolerated)
    - fill username/password, submit
    - wait for the user to approve the push notification on the phone
    - success is the browser leaving the login path; a visible `.error` is failure

    After a successful login the driver is kept open (unless told otherwise)
    so the gateway session cookie stays valid and later runs skip 2FA.
    """

    def __init__(
        self,
        *,
        gateway_url: str = "https://localhost:5000",
        config: BrowserConfig | None = None,
        driver_factory: DriverFactory | None = None,
        on_two_factor_prompt: Callable[[], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway_url = gateway_url.strip().rstrip("/")
        self.config = config or BrowserConfig()
        self._driver_factory = driver_factory or build_chrome_driver
        self._on_two_factor_prompt = on_two_factor_prompt
        self._sleep = sleep
        self._driver: Any | None = None
        self._keep_session_alive = False
        self.state = AuthState.UNAUTHENTICATED
        self.step = LoginStep.INIT
        self.last_error: ErrorKind | None = None
        self.last_error_message: str | None = None
        self.driver_launches = 0

    @property
    def is_authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED

    def login(
        self,
        credentials: Credentials,
        *,
        headless: bool | None = None,
        two_factor_timeout_seconds: float | None = None,
        keep_session_alive: bool | None = None,
    ) -> bool:
        headless = self.config.headless if headless is None else headless
        timeout = self.config.two_factor_timeout_seconds if two_factor_timeout_seconds is None else two_factor_timeout_seconds
        keep = self.config.keep_session_alive if keep_session_alive is None else keep_session_alive

        if self._driver is not None:
            LOGGER.info("Discarding previous browser session before a fresh login")
            self.close()
        self._keep_session_alive = False
        self.last_error = None
        self.last_error_message = None
        self.state = AuthState.LOGGING_IN
        LOGGER.info("Starting automated browser login (headless=%s)", headless)

        try:
            self.step = LoginStep.NAVIGATE_TO_LOGIN
            driver = self._driver_factory(headless, self.config.window_size)
            self._driver = driver
            self.driver_launches += 1
            driver.get(self.gateway_url)
            self._sleep(self.config.page_load_seconds)
            LOGGER.info("Login page url=%s title=%s", driver.current_url, getattr(driver, "title", ""))

            self.step = LoginStep.FILL_CREDENTIALS
            username_field = self._locate(USERNAME_LOCATOR, driver, self.config.element_wait_seconds)
            if username_field is None:
                return self._fail(ErrorKind.LOGIN_ELEMENT_NOT_FOUND, "username field not found")
            username_field.element.send_keys(credentials.username)

            password_field = self._locate(PASSWORD_LOCATOR, driver)
            if password_field is None:
                return self._fail(ErrorKind.LOGIN_ELEMENT_NOT_FOUND, "password field not found")
            password_field.element.send_keys(credentials.password)

            self.step = LoginStep.SUBMIT_FORM
            submit = self._locate(SUBMIT_LOCATOR, driver)
            if submit is None:
                return self._fail(ErrorKind.LOGIN_ELEMENT_NOT_FOUND, "login button not found")
            submit.element.click()

            self.step = LoginStep.AWAITING_TWO_FACTOR
            self.state = AuthState.AWAITING_TWO_FACTOR
            self._announce_two_factor(timeout)
            redirected, error_text = self._await_two_factor(driver, timeout)
        except TimeoutException as exc:
            if self.step is not LoginStep.AWAITING_TWO_FACTOR:
                LOGGER.error("Browser timed out during %s: %s", self.step.value, exc)
                return self._fail(ErrorKind.LOGIN_FAILED, f"timeout during {self.step.value}")
            self.step = LoginStep.DONE
            self.state = AuthState.TIMED_OUT
            self.last_error = ErrorKind.TWO_FACTOR_TIMEOUT
            self.last_error_message = f"2FA not approved within {timeout:.0f}s"
            LOGGER.warning("2FA timeout after %.0fs", timeout)
            return False
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Browser login error during %s: %s", self.step.value, exc)
            return self._fail(ErrorKind.LOGIN_FAILED, str(exc))

        self.step = LoginStep.DONE
        if not redirected:
            LOGGER.warning("Login rejected by gateway: %s", error_text or "unknown error")
            return self._fail(ErrorKind.LOGIN_FAILED, error_text or "login rejected", dump_page=False)

        LOGGER.info("Login successful, letting the session settle for %.0fs", self.config.settle_seconds)
        self._sleep(self.config.settle_seconds)
        self.state = AuthState.AUTHENTICATED
        if keep:
            self._keep_session_alive = True
            LOGGER.info("Keeping browser session alive; call reset_session() to force a fresh 2FA login")
        else:
            self.close()
        return True

    def _locate(self, locator: FieldLocator, driver: Any, timeout: float = 0.0) -> LocatedField | None:
        return locator.locate(driver, timeout_seconds=timeout, poll_seconds=self.config.poll_seconds)

    def _is_past_login(self, url: str) -> bool:
        if _origin(url) != _origin(self.gateway_url):
            return False
        return self.config.login_path.lower() not in urlsplit(url).path.lower()

    def _await_two_factor(self, driver: Any, timeout: float) -> tuple[bool, str | None]:
        def _settled(d: Any) -> tuple[bool, str | None] | None:
            if self._is_past_login(d.current_url or ""):
                return True, None
            error_text = visible_error_text(d)
            if error_text:
                return False, error_text
            return None

        # Raises TimeoutException when neither outcome shows up in time.
        return WebDriverWait(driver, timeout, poll_frequency=self.config.poll_seconds).until(_settled)

    def _announce_two_factor(self, timeout: float) -> None:
        LOGGER.warning("=" * 60)
        LOGGER.warning("2FA APPROVAL REQUIRED - waiting up to %.0fs", timeout)
        LOGGER.warning("Approve the login in the IBKR mobile app")
        LOGGER.warning("=" * 60)
        if self.config.audible_alert:
            ring_terminal_bell()
        if self._on_two_factor_prompt is not None:
            try:
                self._on_two_factor_prompt()
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("2FA prompt hook failed: %s", exc)

    def _fail(self, kind: ErrorKind, message: str, *, dump_page: bool = True) -> bool:
        self.step = LoginStep.DONE
        self.state = AuthState.FAILED
        self.last_error = kind
        self.last_error_message = message
        LOGGER.error("Browser login failed kind=%s: %s", kind.value, message)
        if dump_page:
            self._log_page_source()
        return False

    def _log_page_source(self) -> None:
        if self._driver is None:
            return
        try:
            source = self._driver.page_source or ""
        except WebDriverException as exc:
            LOGGER.debug("Could not read page source: %s", exc)
            return
        LOGGER.info("Page source (first %d chars):\n%s", PAGE_SOURCE_PREVIEW_CHARS, source[:PAGE_SOURCE_PREVIEW_CHARS])

    def is_session_alive(self) -> bool:
        if self._driver is None or not self._keep_session_alive:
            return False
        try:
            _ = self._driver.current_url
        except Exception:  # noqa: BLE001
            return False
        return True

    def mark_expired(self) -> None:
        if self.state is AuthState.AUTHENTICATED:
            self.state = AuthState.EXPIRED

    def reset_session(self) -> None:
        LOGGER.info("Resetting browser session; next login will require fresh 2FA approval")
        self.close()
        self._keep_session_alive = False
        self.state = AuthState.UNAUTHENTICATED
        self.step = LoginStep.INIT

    def close(self) -> None:
        driver = self._driver
        self._driver = None
        if driver is None:
            return
        LOGGER.info("Closing browser session")
        try:
            driver.quit()
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Ignoring browser shutdown error: %s", exc)

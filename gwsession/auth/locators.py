from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from selenium.common.exceptions import NoSuchElementException, StaleElementReferenceException, TimeoutException
from selenium.webdriver.common.by import By
from selenium.webdriver.support.ui import WebDriverWait

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LocatorStrategy:
    name: str
    by: str
    value: str


@dataclass(frozen=True, slots=True)
class LocatedField:
    element: Any
    strategy: LocatorStrategy


class FieldLocator:
    """Ordered selector strategies for one form control; the first match wins."""

    def __init__(self, field_name: str, strategies: Sequence[LocatorStrategy]):
        if not strategies:
            raise ValueError(f"{field_name} locator needs at least one strategy")
        self.field_name = field_name
        self.strategies = tuple(strategies)

    def try_locate(self, driver: Any) -> LocatedField | None:
        for strategy in self.strategies:
            try:
                element = driver.find_element(strategy.by, strategy.value)
            except NoSuchElementException:
                continue
            if element is None:
                continue
            return LocatedField(element=element, strategy=strategy)
        return None

    def locate(self, driver: Any, timeout_seconds: float = 0.0, poll_seconds: float = 0.5) -> LocatedField | None:
        if timeout_seconds <= 0:
            found = self.try_locate(driver)
        else:
            try:
                found = WebDriverWait(driver, timeout_seconds, poll_frequency=poll_seconds).until(
                    self.try_locate
                )
            except TimeoutException:
                found = None
        if found is None:
            LOGGER.warning("Could not find %s field (tried %s)", self.field_name, self.describe())
        else:
            LOGGER.info("Found %s field via %s", self.field_name, found.strategy.name)
        return found

    def describe(self) -> str:
        return ", ".join(strategy.name for strategy in self.strategies)


USERNAME_LOCATOR = FieldLocator(
    "username",
    (
        LocatorStrategy("id:user_name", By.ID, "user_name"),
        LocatorStrategy("id:username", By.ID, "username"),
        LocatorStrategy("name:username", By.NAME, "username"),
        LocatorStrategy("css:text-input", By.CSS_SELECTOR, "input[type='text']"),
        LocatorStrategy("css:name-contains-user", By.CSS_SELECTOR, "input[name*='user']"),
    ),
)

PASSWORD_LOCATOR = FieldLocator(
    "password",
    (
        LocatorStrategy("id:password", By.ID, "password"),
        LocatorStrategy("name:password", By.NAME, "password"),
        LocatorStrategy("css:password-input", By.CSS_SELECTOR, "input[type='password']"),
    ),
)

SUBMIT_LOCATOR = FieldLocator(
    "submit",
    (
        LocatorStrategy("id:submitForm", By.ID, "submitForm"),
        LocatorStrategy("css:submit-button", By.CSS_SELECTOR, "button[type='submit']"),
        LocatorStrategy("css:submit-input", By.CSS_SELECTOR, "input[type='submit']"),
        LocatorStrategy(
            "xpath:log-button",
            By.XPATH,
            "//button[contains(text(), 'Log') or contains(text(), 'log')]",
        ),
    ),
)


def visible_error_text(driver: Any, class_name: str = "error") -> str | None:
    try:
        element = driver.find_element(By.CLASS_NAME, class_name)
        if not element.is_displayed():
            return None
        text = (element.text or "").strip()
    except (NoSuchElementException, StaleElementReferenceException):
        return None
    return text or None

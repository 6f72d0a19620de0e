from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    PROCESS_LAUNCH_FAILURE = "PROCESS_LAUNCH_FAILURE"
    GATEWAY_START_TIMEOUT = "GATEWAY_START_TIMEOUT"
    LOGIN_ELEMENT_NOT_FOUND = "LOGIN_ELEMENT_NOT_FOUND"
    TWO_FACTOR_TIMEOUT = "TWO_FACTOR_TIMEOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    AUTH_VERIFICATION_FAILURE = "AUTH_VERIFICATION_FAILURE"
    CREDENTIALS_MISSING = "CREDENTIALS_MISSING"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    SESSION_EXPIRED = "SESSION_EXPIRED"


class ConfigError(ValueError):
    """Malformed or missing configuration."""

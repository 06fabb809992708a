"""Configuration validation utilities for billing-sync."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any


class ConfigValidationError(ValueError):
    """Raised when configuration validation fails."""


def validate_session_token(config: dict[str, Any], *, allow_missing: bool = True) -> None:
    """Validate the session token when it is given inline."""
    if "session_token" not in config:
        if allow_missing:
            return
        raise ConfigValidationError("Missing required field: session_token")

    token = config["session_token"]
    if not isinstance(token, str) or not token.strip():
        raise ConfigValidationError("session_token must be a non-empty string")


def validate_email(config: dict[str, Any], field: str = "email", *, required: bool = False) -> None:
    if field not in config:
        if required:
            raise ConfigValidationError(f"Missing required field: {field}")
        return

    email = config[field]
    if not isinstance(email, str) or not re.match(r"^[^@\s]+@[^@\s]+$", email.strip()):
        raise ConfigValidationError(f"{field} must be an email address, got: {email}")


def validate_positive_decimal(
    config: dict[str, Any], field: str, *, required: bool = True
) -> None:
    """Validate that a field is a positive decimal value."""
    if field not in config:
        if required:
            raise ConfigValidationError(f"Missing required field: {field}")
        return

    value = config[field]
    try:
        decimal_value = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ConfigValidationError(
            f"{field} must be a valid number, got: {value}"
        ) from exc

    if decimal_value <= 0:
        raise ConfigValidationError(f"{field} must be positive, got: {decimal_value}")


def validate_non_negative_decimal(
    config: dict[str, Any], field: str, *, required: bool = True
) -> None:
    """Validate that a field is a non-negative decimal value."""
    if field not in config:
        if required:
            raise ConfigValidationError(f"Missing required field: {field}")
        return

    value = config[field]
    try:
        decimal_value = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ConfigValidationError(
            f"{field} must be a valid number, got: {value}"
        ) from exc

    if decimal_value < 0:
        raise ConfigValidationError(
            f"{field} must be non-negative, got: {decimal_value}"
        )


def validate_positive_integer(
    config: dict[str, Any], field: str, *, required: bool = True, minimum: int = 1
) -> None:
    """Validate that a field is an integer of at least ``minimum``."""
    if field not in config:
        if required:
            raise ConfigValidationError(f"Missing required field: {field}")
        return

    value = config[field]
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigValidationError(
            f"{field} must be an integer, got: {type(value).__name__}"
        )

    if value < minimum:
        raise ConfigValidationError(f"{field} must be >= {minimum}, got: {value}")


def validate_url(config: dict[str, Any], field: str = "api_base_url") -> None:
    """Validate that a URL field is properly formatted."""
    if field not in config:
        return  # URL is optional with a sensible default

    url = config[field]
    if not isinstance(url, str) or not url.strip():
        raise ConfigValidationError(f"{field} must be a non-empty string")

    if not re.match(r"^https?://", url, re.IGNORECASE):
        raise ConfigValidationError(
            f"{field} must start with http:// or https://, got: {url}"
        )


def validate_poll_delays(config: dict[str, Any]) -> None:
    if "poll_delays" not in config:
        return

    delays = config["poll_delays"]
    if not isinstance(delays, (list, tuple)) or not delays:
        raise ConfigValidationError("poll_delays must be a non-empty list of seconds")
    for index, delay in enumerate(delays):
        validate_positive_decimal({"delay": delay}, "delay")
        if index and Decimal(str(delay)) < Decimal(str(delays[index - 1])):
            raise ConfigValidationError(
                f"poll_delays must be in ascending order, got: {list(delays)}"
            )


def validate_config(config: dict[str, Any]) -> None:
    """Validate a raw billing-sync configuration mapping."""
    if not isinstance(config, dict):
        raise ConfigValidationError("Configuration must be a mapping")

    validate_session_token(config)
    validate_email(config)
    validate_url(config)

    validate_positive_decimal(config, "request_timeout", required=False)
    validate_positive_decimal(config, "cache_ttl", required=False)
    validate_positive_integer(config, "request_retries", required=False, minimum=0)
    validate_non_negative_decimal(config, "retry_backoff", required=False)
    validate_non_negative_decimal(config, "recency_window", required=False)
    validate_non_negative_decimal(config, "debounce_delay", required=False)
    validate_positive_decimal(config, "handoff_ttl", required=False)
    validate_positive_integer(config, "page_size", required=False, minimum=1)
    validate_poll_delays(config)

    if "storage_namespace" in config:
        namespace = config["storage_namespace"]
        if not isinstance(namespace, str) or not namespace.strip() or ":" in namespace:
            raise ConfigValidationError(
                "storage_namespace must be a non-empty string without ':'"
            )
    if "verify_ssl" in config and not isinstance(config["verify_ssl"], bool):
        raise ConfigValidationError("verify_ssl must be a boolean if provided.")

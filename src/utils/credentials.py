"""Session token loading helpers for billing-sync."""

from __future__ import annotations

import os
import re
from typing import Mapping

import keyring
from keyring.errors import KeyringError

from billing_client.auth import SessionCredentials

DEFAULT_SERVICE_NAME = "billing-sync"
DEFAULT_SESSION_TOKEN_ENV = "BILLING_SYNC_SESSION_TOKEN"
DEFAULT_SESSION_TOKEN_USERNAME = "session_token"
_ENV_PATTERN = re.compile(r"^\$\{([A-Z0-9_]+)\}$")


def load_session_token(
    service_name: str,
    config: Mapping[str, object] | None = None,
    *,
    token_env: str = DEFAULT_SESSION_TOKEN_ENV,
    token_username: str = DEFAULT_SESSION_TOKEN_USERNAME,
    required: bool = True,
) -> SessionCredentials | None:
    """Load the session token from config, env var, or keyring in order."""
    token = _resolve_value(config, "session_token")
    if not token:
        token = _clean_value(os.getenv(token_env))
    if not token:
        token = _get_keyring_value(service_name, token_username)

    if not token:
        if not required:
            return None
        raise ValueError(
            "Session token is missing. Provide session_token in the config, "
            f"set {token_env}, or store it in the keychain for service '{service_name}'."
        )
    return SessionCredentials(session_token=token)


def store_session_token(
    service_name: str,
    session_token: str,
    *,
    token_username: str = DEFAULT_SESSION_TOKEN_USERNAME,
) -> None:
    """Store the session token in the OS keychain via keyring."""
    token_value = _clean_value(session_token)
    if not token_value:
        raise ValueError("session_token must be a non-empty string.")
    try:
        keyring.set_password(service_name, token_username, token_value)
    except KeyringError as exc:
        raise RuntimeError(
            "Failed to store the session token in the OS keychain. "
            "Ensure a keyring backend is available."
        ) from exc


def _resolve_value(config: Mapping[str, object] | None, key: str) -> str | None:
    if not config or key not in config:
        return None
    raw = config.get(key)
    if not isinstance(raw, str):
        return _clean_value(str(raw)) if raw is not None else None
    raw = raw.strip()
    if not raw:
        return None
    match = _ENV_PATTERN.match(raw)
    if match:
        return _clean_value(os.getenv(match.group(1)))
    return _clean_value(raw)


def _clean_value(value: str | None) -> str | None:
    if value is None:
        return None
    candidate = value.strip()
    return candidate or None


def _get_keyring_value(service_name: str, username: str) -> str | None:
    try:
        return _clean_value(keyring.get_password(service_name, username))
    except KeyringError as exc:
        raise RuntimeError(
            "Failed to access the OS keychain. "
            "Ensure a keyring backend is available."
        ) from exc

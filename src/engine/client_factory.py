"""
REST client and engine factory for the billing dashboard API.

The CLI and any embedding application build their clients here so the session
cookie, timeouts and base URL are resolved in one place.
"""

from __future__ import annotations

from typing import Any, Mapping

from billing_client.async_rest import AsyncRestClient
from billing_client.identity import StaticIdentity
from engine.config import SyncEngineConfig
from engine.pending_store import KeyValueStorage
from engine.sync_engine import SyncEngine
from utils.credentials import DEFAULT_SERVICE_NAME, load_session_token


def build_rest_client(config: Mapping[str, Any]) -> AsyncRestClient:
    """
    Build the async REST client from a raw config mapping.

    Args:
        config: Configuration dict containing:
            - api_base_url: str (default: billing REST URL)
            - request_timeout: float (default: 10.0)
            - verify_ssl: bool (default: True)
            - session_token: str (optional, ``${ENV}`` placeholders allowed)
            - require_session: bool (default: True) - fail when no token is found

    Example:
        >>> client = build_rest_client({"api_base_url": "https://billing.example.com"})
    """
    engine_config = SyncEngineConfig.from_mapping(config)
    credentials = load_session_token(
        str(config.get("keyring_service", DEFAULT_SERVICE_NAME)),
        config,
        required=bool(config.get("require_session", True)),
    )
    return AsyncRestClient(
        base_url=engine_config.api_base_url,
        credentials=credentials,
        timeout=engine_config.request_timeout,
        verify_ssl=bool(config.get("verify_ssl", True)),
    )


def build_sync_engine(
    config: Mapping[str, Any],
    email: str,
    storage: KeyValueStorage | None = None,
) -> SyncEngine:
    """Build a ``SyncEngine`` for a fixed principal, as used by command line runs."""
    return SyncEngine(
        build_rest_client(config),
        StaticIdentity(email),
        storage,
        config=SyncEngineConfig.from_mapping(config),
    )

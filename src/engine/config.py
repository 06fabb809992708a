"""Runtime configuration for the billing sync engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from billing_client.constants import DEFAULT_PAGE_SIZE, default_rest_base_url


@dataclass(frozen=True)
class SyncEngineConfig:
    api_base_url: str = default_rest_base_url()
    request_timeout: float = 10.0
    cache_ttl: float = 30.0
    request_retries: int = 2
    retry_backoff: float = 1.0
    recency_window: float = 5.0
    debounce_delay: float = 0.3
    poll_delays: tuple[float, ...] = (3.0, 5.0, 8.0)
    handoff_ttl: float = 600.0
    page_size: int = DEFAULT_PAGE_SIZE
    storage_namespace: str = "billing_sync"

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any] | None) -> "SyncEngineConfig":
        """Build a config from a loaded JSON/TOML/YAML mapping; unknown keys are ignored."""
        if not config:
            return cls()
        defaults = cls()
        poll_delays = config.get("poll_delays")
        return cls(
            api_base_url=str(config.get("api_base_url", defaults.api_base_url)),
            request_timeout=float(config.get("request_timeout", defaults.request_timeout)),
            cache_ttl=float(config.get("cache_ttl", defaults.cache_ttl)),
            request_retries=int(config.get("request_retries", defaults.request_retries)),
            retry_backoff=float(config.get("retry_backoff", defaults.retry_backoff)),
            recency_window=float(config.get("recency_window", defaults.recency_window)),
            debounce_delay=float(config.get("debounce_delay", defaults.debounce_delay)),
            poll_delays=(
                tuple(float(delay) for delay in poll_delays)
                if poll_delays
                else defaults.poll_delays
            ),
            handoff_ttl=float(config.get("handoff_ttl", defaults.handoff_ttl)),
            page_size=int(config.get("page_size", defaults.page_size)),
            storage_namespace=str(
                config.get("storage_namespace", defaults.storage_namespace)
            ),
        )

"""Async REST client implementation for the billing dashboard API."""

from __future__ import annotations

import json
import logging
import ssl
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import aiohttp

from billing_client.auth import SessionCredentials, build_session_headers
from billing_client.constants import (
    ACTIVATE_LICENSE_PATH,
    ADD_SITES_BATCH_PATH,
    CREATE_CHECKOUT_PATH,
    DASHBOARD_PATH,
    DEACTIVATE_LICENSE_PATH,
    DEFAULT_PAGE_SIZE,
    LICENSES_PATH,
    PURCHASE_QUANTITY_PATH,
    REMOVE_PENDING_SITE_PATH,
    REMOVE_SITE_PATH,
)
from billing_client.models import BillingPeriod, CheckoutSession, PendingSiteEntry
from billing_client.schemas import LicenseActionResponse, PendingSitesEcho, RemoveSiteResponse

LOGGER = logging.getLogger("billing_sync.rest")

# Guards against a backend that keeps answering hasMore=true.
MAX_PAGES = 50


@dataclass
class AsyncRestRequest:
    method: str
    path: str
    params: Mapping[str, Any] | None = None
    body: Mapping[str, Any] | None = None


class AsyncRestError(Exception):
    """Base exception for async REST client errors."""


class AsyncTransientApiError(AsyncRestError):
    """Raised for transport failures and 5xx responses that may succeed on retry."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AsyncClientError(AsyncRestError):
    """Raised for 4xx responses; carries the response body as context."""

    def __init__(self, status: int, payload: str) -> None:
        super().__init__(_build_http_error_message(status, payload))
        self.status = status
        self.payload = payload
        data = _decode_json(payload)
        self.details: dict[str, Any] = data if isinstance(data, dict) else {}
        self.error_code = _extract_field(data, ("error", "code", "error_code"))
        self.error_message = _extract_field(data, ("message", "errorMessage"))


class AsyncRestClient:
    """Async REST client for the billing API."""

    def __init__(
        self,
        base_url: str,
        credentials: SessionCredentials | None = None,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
        verify_ssl: bool = True,  # Enable SSL certificate verification
        ssl_context: ssl.SSLContext | None = None,  # Custom SSL context
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self._ssl_context = ssl_context
        if ssl_context is None and verify_ssl:
            self._ssl_context = ssl.create_default_context()
        elif ssl_context is None and not verify_ssl:
            # Disable certificate verification (NOT recommended for production)
            self._ssl_context = ssl._create_unverified_context()
            LOGGER.warning(
                "SSL certificate verification is DISABLED. "
                "This should NEVER be used in production environments."
            )
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def build_url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def send(self, request: AsyncRestRequest) -> dict[str, Any]:
        """Issue one HTTP call. Retries are the caller's concern."""
        url = self.build_url(request.path)
        params = {
            key: value for key, value in (request.params or {}).items() if value is not None
        }
        headers = {"Accept": "application/json"}
        headers.update(build_session_headers(self.credentials))

        data_bytes = None
        if request.method.upper() != "GET" and request.body:
            data_bytes = json.dumps(dict(request.body), separators=(",", ":")).encode("utf8")
            headers["Content-Type"] = "application/json"

        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with session.request(
                request.method.upper(),
                url,
                params=params or None,
                headers=headers,
                data=data_bytes,
                timeout=timeout,
            ) as response:
                payload = await response.text()
                if response.status >= 500:
                    raise AsyncTransientApiError(
                        f"Transient HTTP error {response.status}", status=response.status
                    )
                if response.status >= 400:
                    raise AsyncClientError(response.status, payload)
        except aiohttp.ClientError as exc:
            raise AsyncTransientApiError("Network error while contacting API") from exc

        if not payload:
            return {}
        decoded = _decode_json(payload)
        if not isinstance(decoded, dict):
            raise AsyncRestError(f"Unexpected response body from {request.path}")
        return decoded

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
            self._owns_session = False

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            connector = aiohttp.TCPConnector(ssl=self._ssl_context)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self._session

    # ------------------------------------------------------------------
    # Read endpoints
    # ------------------------------------------------------------------

    async def get_dashboard(
        self,
        email: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        type: str | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        return await self.send(
            AsyncRestRequest(
                method="GET",
                path=DASHBOARD_PATH,
                params=read_params(email, limit=limit, offset=offset, type=type, status=status),
            )
        )

    async def get_licenses(
        self,
        email: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        type: str | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        return await self.send(
            AsyncRestRequest(
                method="GET",
                path=LICENSES_PATH,
                params=read_params(email, limit=limit, offset=offset, type=type, status=status),
            )
        )

    async def get_dashboard_all(
        self,
        email: str,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        type: str | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        pages = []
        offset = 0
        for _ in range(MAX_PAGES):
            page = await self.get_dashboard(
                email, limit=page_size, offset=offset, type=type, status=status
            )
            pages.append(page)
            if not page.get("hasMore"):
                break
            offset += page_size
        return merge_dashboard_pages(pages)

    async def get_licenses_all(
        self,
        email: str,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        type: str | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        pages = []
        offset = 0
        for _ in range(MAX_PAGES):
            page = await self.get_licenses(
                email, limit=page_size, offset=offset, type=type, status=status
            )
            pages.append(page)
            if not page.get("hasMore"):
                break
            offset += page_size
        return merge_license_pages(pages)

    # ------------------------------------------------------------------
    # Write endpoints
    # ------------------------------------------------------------------

    async def add_pending_sites(
        self, email: str, entries: Iterable[PendingSiteEntry]
    ) -> PendingSitesEcho:
        """
        Queue sites on the backend's pending list.

        The endpoint takes plain domain strings with one billing period and
        subscription for the whole batch, so entries are sent in one request per
        distinct (billing period, subscription) pair. The last response is returned.
        """
        echo = PendingSitesEcho()
        for body in add_sites_batch_bodies(email, entries):
            response = await self.send(
                AsyncRestRequest(method="POST", path=ADD_SITES_BATCH_PATH, body=body)
            )
            echo = PendingSitesEcho.model_validate(response)
        return echo

    async def remove_pending_site(self, email: str, site: str) -> PendingSitesEcho:
        response = await self.send(
            AsyncRestRequest(
                method="POST",
                path=REMOVE_PENDING_SITE_PATH,
                body={"email": email, "site": site},
            )
        )
        return PendingSitesEcho.model_validate(response)

    async def create_checkout(
        self, email: str, billing_period: BillingPeriod | None = None
    ) -> CheckoutSession:
        body: dict[str, Any] = {"email": email}
        if billing_period is not None:
            body["billing_period"] = billing_period.value
        response = await self.send(
            AsyncRestRequest(method="POST", path=CREATE_CHECKOUT_PATH, body=body)
        )
        return _checkout_session(response)

    async def purchase_quantity(self, email: str, quantity: int) -> CheckoutSession:
        response = await self.send(
            AsyncRestRequest(
                method="POST",
                path=PURCHASE_QUANTITY_PATH,
                body={"email": email, "quantity": int(quantity)},
            )
        )
        return _checkout_session(response)

    async def activate_license(
        self, email: str, license_key: str, site_domain: str
    ) -> LicenseActionResponse:
        response = await self.send(
            AsyncRestRequest(
                method="POST",
                path=ACTIVATE_LICENSE_PATH,
                body={
                    "license_key": license_key,
                    "site_domain": site_domain.strip(),
                    "email": email,
                },
            )
        )
        return LicenseActionResponse.model_validate(response)

    async def deactivate_license(self, email: str, license_key: str) -> LicenseActionResponse:
        response = await self.send(
            AsyncRestRequest(
                method="POST",
                path=DEACTIVATE_LICENSE_PATH,
                body={"license_key": license_key, "email": email},
            )
        )
        return LicenseActionResponse.model_validate(response)

    async def remove_site(
        self, email: str, site: str, subscription_id: str | None = None
    ) -> RemoveSiteResponse:
        body = {
            "email": email,
            "site": site.strip(),
            "subscription_id": subscription_id.strip() if subscription_id else None,
        }
        response = await self.send(
            AsyncRestRequest(method="POST", path=REMOVE_SITE_PATH, body=body)
        )
        return RemoveSiteResponse.model_validate(response)


def read_params(
    email: str,
    *,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
    type: str | None = None,
    status: str | None = None,
) -> dict[str, Any]:
    """Query parameters shared by the read endpoints, without unset filters."""
    params: dict[str, Any] = {"email": email, "limit": limit, "offset": offset}
    if type:
        params["type"] = type
    if status:
        params["status"] = status
    return params


def add_sites_batch_bodies(
    email: str, entries: Iterable[PendingSiteEntry]
) -> list[dict[str, Any]]:
    groups: dict[tuple[BillingPeriod, str | None], list[str]] = {}
    for entry in entries:
        groups.setdefault((entry.billing_period, entry.subscription_id), []).append(entry.site)
    bodies = []
    for (billing_period, subscription_id), sites in groups.items():
        body: dict[str, Any] = {
            "email": email,
            "sites": sites,
            "billing_period": billing_period.value,
        }
        if subscription_id:
            body["subscriptionId"] = subscription_id
        bodies.append(body)
    return bodies


def merge_dashboard_pages(pages: list[dict[str, Any]]) -> dict[str, Any]:
    if not pages:
        return {}
    merged: dict[str, Any] = {
        key: value
        for key, value in pages[0].items()
        if key not in {"subscriptions", "sites", "pendingSites"}
    }
    subscriptions: dict[str, Any] = {}
    sites: dict[str, Any] = {}
    pending: list[Any] = []
    for page in pages:
        subscriptions.update(page.get("subscriptions") or {})
        sites.update(page.get("sites") or {})
        pending.extend(page.get("pendingSites") or [])
    merged["subscriptions"] = subscriptions
    merged["sites"] = sites
    merged["pendingSites"] = pending
    merged["hasMore"] = bool(pages[-1].get("hasMore", False))
    return merged


def merge_license_pages(pages: list[dict[str, Any]]) -> dict[str, Any]:
    if not pages:
        return {}
    licenses: list[Any] = []
    for page in pages:
        licenses.extend(page.get("licenses") or [])
    return {
        "licenses": licenses,
        "total": pages[0].get("total", len(licenses)),
        "hasMore": bool(pages[-1].get("hasMore", False)),
    }


def _checkout_session(response: dict[str, Any]) -> CheckoutSession:
    url = response.get("url") or response.get("checkout_url")
    if not url:
        raise AsyncRestError("Checkout response did not include a redirect URL")
    session_id = response.get("sessionId") or response.get("session_id")
    return CheckoutSession(
        url=str(url),
        session_id=str(session_id) if session_id else None,
        raw_payload=response,
    )


def _decode_json(payload: str) -> Any:
    if not payload:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return None


def _extract_field(payload: Any, keys: tuple[str, ...]) -> str | None:
    if isinstance(payload, dict):
        for key in keys:
            if key in payload and payload[key] is not None:
                return str(payload[key])
    return None


def _build_http_error_message(status_code: int, payload: str) -> str:
    if payload:
        return f"HTTP error {status_code}: {payload}"
    return f"HTTP error {status_code}"

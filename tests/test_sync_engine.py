from __future__ import annotations

import asyncio
from typing import Any

import pytest

from billing_client.async_rest import AsyncClientError, AsyncTransientApiError
from billing_client.identity import StaticIdentity
from billing_client.models import CheckoutSession, EntityStatus
from billing_client.schemas import LicenseActionResponse, PendingSitesEcho, RemoveSiteResponse
from engine.config import SyncEngineConfig
from engine.errors import ForegroundActionError, NotAuthenticatedError, PendingEditError
from engine.pending_store import MemoryStorage
from engine.reconciler import ReconcileSource
from engine.sync_engine import SyncEngine, removal_error_message

EMAIL = "user@example.com"

DASHBOARD = {
    "subscriptions": {
        "sub_1": {
            "status": "active",
            "items": [{"site": "a.com"}, {"site": "b.com"}],
        }
    },
    "pendingSites": [{"site": "new.com", "billing_period": "monthly"}],
    "hasMore": False,
}
LICENSES = {
    "licenses": [
        {"license_key": "K1", "purchase_type": "quantity", "subscription_id": "sub_q"},
    ]
}


class FakeBillingApi:
    def __init__(self, dashboard: dict | None = None, licenses: dict | None = None) -> None:
        self.dashboard = dashboard if dashboard is not None else DASHBOARD
        self.licenses = licenses if licenses is not None else LICENSES
        self.dashboard_calls = 0
        self.license_calls = 0
        self.added: list[list[str]] = []
        self.removed_pending: list[str] = []
        self.checkout_calls: list[Any] = []
        self.checkout_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.remove_gate: asyncio.Event | None = None
        self.license_error: Exception | None = None
        self.license_gate: asyncio.Event | None = None
        self.license_calls_made: list[tuple[str, ...]] = []
        self.added_at_checkout: list[list[str]] | None = None

    async def get_dashboard_all(self, email: str, *, page_size: int = 100) -> dict:
        self.dashboard_calls += 1
        return self.dashboard

    async def get_licenses_all(self, email: str, *, page_size: int = 100) -> dict:
        self.license_calls += 1
        return self.licenses

    async def add_pending_sites(self, email, entries) -> PendingSitesEcho:
        await asyncio.sleep(0)
        self.added.append([entry.site for entry in entries])
        return PendingSitesEcho()

    async def remove_pending_site(self, email, site) -> PendingSitesEcho:
        self.removed_pending.append(site)
        return PendingSitesEcho()

    async def create_checkout(self, email, billing_period=None) -> CheckoutSession:
        self.checkout_calls.append(billing_period)
        self.added_at_checkout = list(self.added)
        if self.checkout_error is not None:
            raise self.checkout_error
        return CheckoutSession(url="https://pay.example.com/c/1", session_id="cs_1")

    async def remove_site(self, email, site, subscription_id=None) -> RemoveSiteResponse:
        if self.remove_gate is not None:
            await self.remove_gate.wait()
        if self.remove_error is not None:
            raise self.remove_error
        return RemoveSiteResponse(success=True)

    async def _license_call(self, *call: str) -> None:
        self.license_calls_made.append(call)
        if self.license_gate is not None:
            await self.license_gate.wait()
        if self.license_error is not None:
            raise self.license_error

    async def activate_license(self, email, license_key, site_domain) -> LicenseActionResponse:
        await self._license_call("activate", license_key, site_domain)
        return LicenseActionResponse(success=True)

    async def deactivate_license(self, email, license_key) -> LicenseActionResponse:
        await self._license_call("deactivate", license_key)
        return LicenseActionResponse(success=True, cancel_at_period_end=True)

    async def purchase_quantity(self, email, quantity) -> CheckoutSession:
        await self._license_call("purchase", str(quantity))
        return CheckoutSession(url="https://pay.example.com/q/1")


def _engine(client=None, storage=None, email: str | None = EMAIL, **config) -> SyncEngine:
    return SyncEngine(
        client or FakeBillingApi(),
        StaticIdentity(email),
        storage if storage is not None else MemoryStorage(),
        config=SyncEngineConfig(**config),
    )


@pytest.mark.asyncio
async def test_refresh_builds_view_and_notifies_listeners() -> None:
    engine = _engine()
    seen = []
    engine.subscribe(seen.append)

    view = await engine.refresh()

    assert view is engine.current_view
    assert seen == [view]
    assert [entity.identity for entity in view.domains] == ["a.com", "b.com"]
    assert [entity.identity for entity in view.license_keys] == ["unassigned:K1"]
    assert [entry.site for entry in view.pending] == ["new.com"]
    assert view.pending_source is ReconcileSource.BACKEND
    assert view.sequence == 1


@pytest.mark.asyncio
async def test_unsubscribe_listener() -> None:
    engine = _engine()
    seen = []
    unsubscribe = engine.subscribe(seen.append)
    unsubscribe()

    await engine.refresh()

    assert seen == []


@pytest.mark.asyncio
async def test_refresh_reads_through_cache() -> None:
    client = FakeBillingApi()
    engine = _engine(client)

    await engine.refresh()
    await engine.refresh()
    assert client.dashboard_calls == 1
    assert client.license_calls == 1

    await engine.refresh(use_cache=False)
    assert client.dashboard_calls == 2


@pytest.mark.asyncio
async def test_refresh_requires_signed_in_principal() -> None:
    engine = _engine(email=None)

    with pytest.raises(NotAuthenticatedError):
        await engine.refresh()


@pytest.mark.asyncio
async def test_older_pass_finishing_late_is_dropped(monkeypatch) -> None:
    engine = _engine()
    gates = [asyncio.Event(), asyncio.Event()]
    payloads = [
        {"subscriptions": {"s": {"items": [{"site": "old.com"}]}}, "pendingSites": []},
        {"subscriptions": {"s": {"items": [{"site": "fresh.com"}]}}, "pendingSites": []},
    ]
    calls = 0

    async def gated_fetch(email: str, use_cache: bool) -> dict:
        nonlocal calls
        index = calls
        calls += 1
        await gates[index].wait()
        return payloads[index]

    monkeypatch.setattr(engine, "_fetch_billing", gated_fetch)
    older = asyncio.ensure_future(engine.refresh())
    newer = asyncio.ensure_future(engine.refresh())
    await asyncio.sleep(0)

    gates[1].set()
    newer_view = await newer
    gates[0].set()
    older_result = await older

    assert newer_view.sequence == 2
    assert older_result is newer_view
    assert [entity.identity for entity in engine.current_view.domains] == ["fresh.com"]


@pytest.mark.asyncio
async def test_transient_failure_propagates_after_retries() -> None:
    class FailingApi(FakeBillingApi):
        async def get_dashboard_all(self, email, *, page_size=100):
            self.dashboard_calls += 1
            raise AsyncTransientApiError("down", status=503)

    client = FailingApi()
    engine = _engine(client, retry_backoff=0.0, request_retries=2)

    with pytest.raises(AsyncTransientApiError):
        await engine.refresh()
    assert client.dashboard_calls == 3


@pytest.mark.asyncio
async def test_add_pending_site_publishes_immediately() -> None:
    client = FakeBillingApi()
    engine = _engine(client)
    await engine.refresh()
    seen = []
    engine.subscribe(seen.append)

    entry = engine.add_pending_site("https://Shop.example.org/", "yearly")
    await engine.drain()

    assert entry.site == "Shop.example.org"
    assert [e.site for e in seen[-1].pending] == ["new.com", "Shop.example.org"]
    assert ["Shop.example.org"] in client.added

    with pytest.raises(PendingEditError):
        engine.add_pending_site("shop.EXAMPLE.org")


@pytest.mark.asyncio
async def test_remove_pending_site_by_index() -> None:
    client = FakeBillingApi()
    engine = _engine(client)
    await engine.refresh()

    removed = engine.remove_pending_site(0)
    await engine.drain()

    assert removed.site == "new.com"
    assert engine.pending_sites() == ()
    assert client.removed_pending == ["new.com"]


@pytest.mark.asyncio
async def test_begin_checkout_writes_handoff() -> None:
    client = FakeBillingApi()
    engine = _engine(client)
    await engine.refresh()

    checkout = await engine.begin_checkout()

    assert checkout.url == "https://pay.example.com/c/1"
    handoff = engine.load_handoff()
    assert handoff is not None
    assert [entry.site for entry in handoff.entries] == ["new.com"]
    assert client.checkout_calls[0].value == "monthly"


@pytest.mark.asyncio
async def test_begin_checkout_failure_clears_handoff() -> None:
    client = FakeBillingApi()
    client.checkout_error = AsyncClientError(400, '{"error": "no_pending", "message": "Nothing to buy"}')
    engine = _engine(client)
    await engine.refresh()

    with pytest.raises(ForegroundActionError) as excinfo:
        await engine.begin_checkout()

    assert excinfo.value.user_message == "Nothing to buy"
    assert excinfo.value.error_code == "no_pending"
    assert engine.load_handoff() is None


@pytest.mark.asyncio
async def test_begin_checkout_requires_pending_sites() -> None:
    engine = _engine(FakeBillingApi(dashboard={"subscriptions": {}, "pendingSites": []}))
    await engine.refresh()

    with pytest.raises(ForegroundActionError, match="at least one site"):
        await engine.begin_checkout()


@pytest.mark.asyncio
async def test_unsubscribe_failure_reverts_optimistic_status() -> None:
    client = FakeBillingApi()
    client.remove_gate = asyncio.Event()
    client.remove_error = AsyncClientError(404, '{"error": "subscription_not_found"}')
    engine = _engine(client)
    await engine.refresh()

    pending = asyncio.ensure_future(engine.unsubscribe_site("A.com", "sub_1"))
    await asyncio.sleep(0)
    optimistic = {entity.identity: entity.status for entity in engine.current_view.domains}
    client.remove_gate.set()

    with pytest.raises(ForegroundActionError) as excinfo:
        await pending

    assert optimistic["a.com"] is EntityStatus.CANCELLING
    assert excinfo.value.error_code == "subscription_not_found"
    assert "may have already been canceled" in excinfo.value.user_message
    statuses = {entity.identity: entity.status for entity in engine.current_view.domains}
    assert statuses["a.com"] is EntityStatus.ACTIVE


@pytest.mark.asyncio
async def test_unsubscribe_success_invalidates_and_refreshes() -> None:
    client = FakeBillingApi()
    engine = _engine(client, debounce_delay=0.0)
    await engine.refresh()

    response = await engine.unsubscribe_site("a.com", "sub_1")
    await asyncio.sleep(0.01)

    assert response.success is True
    assert client.dashboard_calls == 2


def test_removal_error_messages() -> None:
    assert removal_error_message("a.com", "site_not_found", None) == (
        'Site "a.com" was not found in your subscriptions.'
    )
    assert removal_error_message("a.com", "unknown_code", "Backend says no") == "Backend says no"
    assert removal_error_message("a.com", None, None) == "Failed to unsubscribe site"


@pytest.mark.asyncio
async def test_handle_payment_return_ignores_other_urls() -> None:
    engine = _engine()

    assert await engine.handle_payment_return("https://app.example.com/dashboard") is None


@pytest.mark.asyncio
async def test_aclose_drains_background_writes() -> None:
    client = FakeBillingApi()
    engine = _engine(client)
    await engine.refresh()
    engine.add_pending_site("later.com")

    await engine.aclose()

    assert ["later.com"] in client.added


def test_reconcilers_share_engine_background_tasks() -> None:
    engine = _engine()

    reconciler = engine._reconciler(EMAIL)

    assert reconciler.background is engine.background


@pytest.mark.asyncio
async def test_begin_checkout_waits_for_pending_write() -> None:
    client = FakeBillingApi()
    engine = _engine(client)
    await engine.refresh()

    engine.add_pending_site("later.com")
    await engine.begin_checkout()

    assert client.added_at_checkout == [["later.com"]]


@pytest.mark.asyncio
async def test_refresh_logs_carry_sequence(caplog) -> None:
    engine = _engine()

    with caplog.at_level("DEBUG", logger="billing_sync.engine"):
        await engine.refresh()

    rendered = [record for record in caplog.records if "rendered" in record.getMessage()]
    assert rendered and rendered[0].sequence == 1


@pytest.mark.asyncio
async def test_activate_license_moves_key_optimistically() -> None:
    client = FakeBillingApi()
    client.license_gate = asyncio.Event()
    engine = _engine(client, debounce_delay=0.0)
    await engine.refresh()

    pending = asyncio.ensure_future(engine.activate_license("K1", "https://B.com/"))
    await asyncio.sleep(0)
    optimistic = engine.current_view
    client.license_gate.set()
    response = await pending
    await asyncio.sleep(0.01)

    assert response.success is True
    assert client.license_calls_made == [("activate", "K1", "B.com")]
    assert optimistic.license_keys == ()
    assert [(e.identity, e.license_key) for e in optimistic.activated_licenses] == [("b.com", "K1")]
    assert [e.identity for e in optimistic.domains] == ["a.com"]
    assert client.license_calls == 2
    assert client.dashboard_calls == 1


@pytest.mark.asyncio
async def test_activate_license_failure_reverts_and_maps_error() -> None:
    client = FakeBillingApi()
    client.license_error = AsyncClientError(
        400,
        '{"error": "subscription_ended", "subscription_end_date_formatted": "March 1, 2025"}',
    )
    engine = _engine(client)
    before = await engine.refresh()

    with pytest.raises(ForegroundActionError) as excinfo:
        await engine.activate_license("K1", "b.com")

    assert excinfo.value.error_code == "subscription_ended"
    assert "ended on March 1, 2025" in excinfo.value.user_message
    assert engine.current_view is before
    assert [e.identity for e in engine.current_view.license_keys] == ["unassigned:K1"]


@pytest.mark.asyncio
async def test_activate_license_rejects_invalid_site() -> None:
    client = FakeBillingApi()
    engine = _engine(client)
    await engine.refresh()

    with pytest.raises(PendingEditError):
        await engine.activate_license("K1", "not a domain")
    assert client.license_calls_made == []


@pytest.mark.asyncio
async def test_deactivate_license_marks_cancelling_and_reverts_on_network_error() -> None:
    client = FakeBillingApi()
    client.license_gate = asyncio.Event()
    client.license_error = AsyncTransientApiError("down", status=503)
    engine = _engine(client)
    await engine.refresh()

    pending = asyncio.ensure_future(engine.deactivate_license("K1"))
    await asyncio.sleep(0)
    optimistic_status = engine.current_view.license_keys[0].status
    client.license_gate.set()

    with pytest.raises(ForegroundActionError, match="Could not reach"):
        await pending

    assert optimistic_status is EntityStatus.CANCELLING
    assert engine.current_view.license_keys[0].status is EntityStatus.ACTIVE


@pytest.mark.asyncio
async def test_deactivate_license_success_refreshes_both_snapshots() -> None:
    client = FakeBillingApi()
    engine = _engine(client, debounce_delay=0.0)
    await engine.refresh()

    response = await engine.deactivate_license("K1")
    await asyncio.sleep(0.01)

    assert response.cancel_at_period_end is True
    assert client.dashboard_calls == 2
    assert client.license_calls == 2


@pytest.mark.asyncio
async def test_purchase_quantity() -> None:
    client = FakeBillingApi()
    engine = _engine(client)

    checkout = await engine.purchase_quantity(3)

    assert checkout.url == "https://pay.example.com/q/1"
    assert client.license_calls_made == [("purchase", "3")]
    with pytest.raises(ForegroundActionError, match="at least 1"):
        await engine.purchase_quantity(0)


@pytest.mark.asyncio
async def test_purchase_quantity_maps_client_error() -> None:
    client = FakeBillingApi()
    client.license_error = AsyncClientError(400, '{"error": "price required"}')
    engine = _engine(client)

    with pytest.raises(ForegroundActionError, match="price required"):
        await engine.purchase_quantity(2)

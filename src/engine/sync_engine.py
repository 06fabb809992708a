"""Session object tying the cache, reconciler, unifier and poller together."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Protocol

from billing_client.async_rest import AsyncClientError, AsyncRestError
from billing_client.constants import DASHBOARD_PATH, LICENSES_PATH
from billing_client.models import (
    BillingEntity,
    BillingPeriod,
    CheckoutSession,
    EntityStatus,
    PaymentHandoff,
    PendingSiteEntry,
    site_key,
)
from billing_client.schemas import (
    BillingSnapshot,
    LicenseActionResponse,
    LicenseSnapshot,
    PendingSitesEcho,
    RemoveSiteResponse,
)
from engine.background import BackgroundTasks
from engine.config import SyncEngineConfig
from engine.debounce import DebounceScheduler
from engine.errors import (
    ForegroundActionError,
    NotAuthenticatedError,
    StaleDataGuardViolation,
)
from engine.pending_store import KeyValueStorage, MemoryStorage, PendingEditStore
from engine.poller import ConvergencePoller, PollOutcome, is_payment_return
from engine.reconciler import PendingEditReconciler, ReconcileSource, validate_site
from engine.request_cache import RequestCache, cache_key
from engine.unifier import Catalogue, build_catalogue

LOGGER = logging.getLogger("billing_sync.engine")

REFRESH_KEY = "refresh"
UNREACHABLE_MESSAGE = "Could not reach the billing service. Please try again."

REMOVE_SITE_MESSAGES = {
    "memberstack_authentication_failed": "Authentication failed. Please sign out and sign back in.",
    "memberstack_email_missing": "Your account email is missing. Please contact support.",
    "email_mismatch": "Email verification failed. Make sure you are signed in with the right account.",
    "memberstack_account_deleted": "Your account has been deleted. Please contact support.",
    "memberstack_account_inactive": "Your account is inactive. Please contact support.",
    "memberstack_verification_failed": "Account verification failed. Please sign out and sign back in.",
    "subscription_not_found": "Subscription not found. The subscription may have already been canceled.",
    "unauthorized": "You are not authorized to perform this action. Please sign in again.",
}


def removal_error_message(site: str, error_code: str | None, message: str | None) -> str:
    """Map a ``/remove-site`` error code onto a message safe to show the user."""
    if error_code == "site_not_found":
        return f'Site "{site}" was not found in your subscriptions.'
    if error_code in REMOVE_SITE_MESSAGES:
        return REMOVE_SITE_MESSAGES[error_code]
    return message or "Failed to unsubscribe site"


def activation_error_message(
    error_code: str | None, message: str | None, details: dict[str, Any] | None = None
) -> str:
    """Map an ``/activate-license`` error code onto a message safe to show the user."""
    details = details or {}
    if error_code == "license_not_found":
        return "License key not found. Please check the license key and try again."
    if error_code == "subscription_ended":
        ended = details.get("subscription_end_date_formatted") or "the end date"
        return (
            f"This license key's subscription ended on {ended}. "
            "Renew your subscription to keep using this license."
        )
    if error_code == "subscription_cancelled":
        ends = details.get("subscription_cancel_date_formatted") or "the cancellation date"
        return (
            f"This license key's subscription was cancelled and ends on {ends}. "
            "Reactivate your subscription to keep using this license."
        )
    if error_code == "subscription_inactive":
        status = details.get("subscription_status") or "inactive"
        return (
            f"This license key's subscription is {status}. "
            "Make sure your subscription is active to use this license."
        )
    if error_code == "inactive_license":
        return "This license is not active."
    if error_code == "unauthorized":
        return "This license key does not belong to your account."
    return message or "Failed to activate license"


class BillingApi(Protocol):
    async def get_dashboard_all(self, email: str, *, page_size: int = ...) -> dict[str, Any]:
        ...

    async def get_licenses_all(self, email: str, *, page_size: int = ...) -> dict[str, Any]:
        ...

    async def add_pending_sites(self, email: str, entries: Any) -> PendingSitesEcho:
        ...

    async def remove_pending_site(self, email: str, site: str) -> PendingSitesEcho:
        ...

    async def create_checkout(
        self, email: str, billing_period: BillingPeriod | None = None
    ) -> CheckoutSession:
        ...

    async def remove_site(
        self, email: str, site: str, subscription_id: str | None = None
    ) -> RemoveSiteResponse:
        ...

    async def purchase_quantity(self, email: str, quantity: int) -> CheckoutSession:
        ...

    async def activate_license(
        self, email: str, license_key: str, site_domain: str
    ) -> LicenseActionResponse:
        ...

    async def deactivate_license(self, email: str, license_key: str) -> LicenseActionResponse:
        ...


class PrincipalSource(Protocol):
    def current_principal_email(self) -> str | None:
        ...


@dataclass(frozen=True)
class DashboardView:
    """Everything a renderer needs after one reconciliation pass."""

    sequence: int
    email: str
    pending: tuple[PendingSiteEntry, ...] = ()
    pending_source: ReconcileSource | None = None
    backend_pending: tuple[PendingSiteEntry, ...] = ()
    catalogue: Catalogue = field(default_factory=Catalogue)
    processing: tuple[PendingSiteEntry, ...] = ()

    @property
    def domains(self) -> tuple[BillingEntity, ...]:
        return self.catalogue.purchased_domains

    @property
    def license_keys(self) -> tuple[BillingEntity, ...]:
        return self.catalogue.license_keys

    @property
    def activated_licenses(self) -> tuple[BillingEntity, ...]:
        return self.catalogue.activated_licenses

    def with_status(self, identity: str, status: EntityStatus) -> "DashboardView":
        return self._with_updated(lambda entity: entity.identity == identity, status)

    def with_license_status(self, license_key: str, status: EntityStatus) -> "DashboardView":
        return self._with_updated(lambda entity: entity.license_key == license_key, status)

    def _with_updated(
        self, match: Callable[[BillingEntity], bool], status: EntityStatus
    ) -> "DashboardView":
        def update(entities: tuple[BillingEntity, ...]) -> tuple[BillingEntity, ...]:
            return tuple(
                entity.model_copy(update={"status": status}) if match(entity) else entity
                for entity in entities
            )

        catalogue = Catalogue(
            purchased_domains=update(self.catalogue.purchased_domains),
            license_keys=update(self.catalogue.license_keys),
            activated_licenses=update(self.catalogue.activated_licenses),
        )
        return replace(self, catalogue=catalogue)

    def with_license_site(self, license_key: str, site: str) -> "DashboardView":
        """Move a license key onto ``site`` in the activated list."""
        current = next(
            (
                entity
                for entity in self.license_keys + self.activated_licenses
                if entity.license_key == license_key
            ),
            None,
        )
        if current is None:
            return self
        identity = site_key(site)
        activated = [
            entity for entity in self.activated_licenses if entity.license_key != license_key
        ]
        activated.append(current.model_copy(update={"identity": identity, "site": site}))
        catalogue = Catalogue(
            # Sites activated by a quantity license leave the purchased domains.
            purchased_domains=tuple(
                entity for entity in self.domains if entity.identity != identity
            ),
            license_keys=tuple(
                entity for entity in self.license_keys if entity.license_key != license_key
            ),
            activated_licenses=tuple(sorted(activated, key=lambda entity: entity.identity)),
        )
        return replace(self, catalogue=catalogue)

    def to_payload(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "email": self.email,
            "pending": [entry.to_payload() for entry in self.pending],
            "pending_source": self.pending_source.value if self.pending_source else None,
            "processing": [entry.to_payload() for entry in self.processing],
            "domains": [entity.to_payload() for entity in self.domains],
            "license_keys": [entity.to_payload() for entity in self.license_keys],
            "activated_licenses": [entity.to_payload() for entity in self.activated_licenses],
        }


Listener = Callable[[DashboardView], Any]


def backend_pending_entries(billing: BillingSnapshot) -> tuple[PendingSiteEntry, ...]:
    entries = []
    for pending in billing.pending_sites:
        if not pending.site:
            continue
        entries.append(
            PendingSiteEntry(
                site=pending.site,
                billing_period=pending.billing_period,
                subscription_id=pending.subscription_id,
            )
        )
    return tuple(entries)


class SyncEngine:
    """
    Billing dashboard session for one signed-in user at a time.

    All state (cache, timers, pending set, last rendered view) is held on the
    instance; clock, sleep and storage are injected so passes can be replayed
    deterministically.

    Example:
        engine = SyncEngine(client, StaticIdentity("user@example.com"))
        view = await engine.refresh()
        engine.add_pending_site("example.com")
        checkout = await engine.begin_checkout()
    """

    def __init__(
        self,
        client: BillingApi,
        identity: PrincipalSource,
        storage: KeyValueStorage | None = None,
        *,
        config: SyncEngineConfig | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.client = client
        self.identity = identity
        self.config = config if config is not None else SyncEngineConfig()
        self.storage = storage if storage is not None else MemoryStorage()
        self._clock = clock or time.time
        self._sleep = sleep or asyncio.sleep
        self.cache = RequestCache(
            ttl=self.config.cache_ttl,
            retry_backoff=self.config.retry_backoff,
            default_retries=self.config.request_retries,
            time_provider=self._clock,
            sleep=self._sleep,
        )
        self.debounce = DebounceScheduler(sleep=self._sleep)
        self.background = BackgroundTasks()
        self._reconcilers: dict[str, PendingEditReconciler] = {}
        self._listeners: list[Listener] = []
        self._sequence = 0
        self._rendered_sequence = 0
        self._view: DashboardView | None = None
        self._processing: tuple[PendingSiteEntry, ...] = ()

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def current_view(self) -> DashboardView | None:
        return self._view

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a render callback; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _require_email(self) -> str:
        email = self.identity.current_principal_email()
        if not email:
            raise NotAuthenticatedError("Sign in to manage your billing.")
        return email

    def _store(self, email: str) -> PendingEditStore:
        return self._reconciler(email).store

    def _reconciler(self, email: str) -> PendingEditReconciler:
        reconciler = self._reconcilers.get(email)
        if reconciler is None:
            store = PendingEditStore(
                self.storage,
                email,
                namespace=self.config.storage_namespace,
                time_provider=self._clock,
            )
            reconciler = PendingEditReconciler(
                store,
                self.client,
                recency_window=self.config.recency_window,
                time_provider=self._clock,
                background=self.background,
                on_change=self._on_pending_change,
            )
            self._reconcilers[email] = reconciler
        return reconciler

    def _publish(self, view: DashboardView) -> None:
        self._view = view
        for listener in list(self._listeners):
            try:
                result = listener(view)
                if inspect.isawaitable(result):
                    self.background.spawn(result, "view listener")
            except Exception as exc:
                LOGGER.exception("View listener failed: %s", exc)

    def _on_pending_change(self, entries: tuple[PendingSiteEntry, ...]) -> None:
        if self._view is not None:
            self._publish(replace(self._view, pending=entries))

    # ------------------------------------------------------------------
    # Reconciliation passes
    # ------------------------------------------------------------------

    async def _fetch_billing(self, email: str, use_cache: bool) -> dict[str, Any]:
        key = cache_key(DASHBOARD_PATH, {"email": email, "limit": self.config.page_size})
        return await self.cache.request(
            key,
            lambda: self.client.get_dashboard_all(email, page_size=self.config.page_size),
            use_cache=use_cache,
        )

    async def _fetch_licenses(self, email: str, use_cache: bool) -> dict[str, Any]:
        key = cache_key(LICENSES_PATH, {"email": email, "limit": self.config.page_size})
        return await self.cache.request(
            key,
            lambda: self.client.get_licenses_all(email, page_size=self.config.page_size),
            use_cache=use_cache,
        )

    def _check_sequence(self, sequence: int) -> None:
        if sequence < self._rendered_sequence:
            raise StaleDataGuardViolation(sequence, self._rendered_sequence)

    async def refresh(self, use_cache: bool = True) -> DashboardView | None:
        """Run one pass; returns the rendered view (the newer one if this pass was stale)."""
        email = self._require_email()
        self._sequence += 1
        sequence = self._sequence
        billing_raw, license_raw = await asyncio.gather(
            self._fetch_billing(email, use_cache),
            self._fetch_licenses(email, use_cache),
        )
        try:
            self._check_sequence(sequence)
        except StaleDataGuardViolation as exc:
            LOGGER.debug("%s", exc, extra={"sequence": sequence})
            return self._view

        billing = BillingSnapshot.model_validate(billing_raw)
        licenses = LicenseSnapshot.model_validate(license_raw)
        backend_pending = backend_pending_entries(billing)
        outcome = self._reconciler(email).reconcile(backend_pending)
        catalogue = build_catalogue(billing, licenses)
        view = DashboardView(
            sequence=sequence,
            email=email,
            pending=outcome.entries,
            pending_source=outcome.source,
            backend_pending=backend_pending,
            catalogue=catalogue,
            processing=self._processing,
        )
        self._rendered_sequence = sequence
        LOGGER.debug(
            "Pass %s rendered: %s domain(s), %s pending.",
            sequence,
            len(catalogue.purchased_domains),
            len(outcome.entries),
            extra={"sequence": sequence},
        )
        self._publish(view)
        return view

    def schedule_refresh(self, delay: float | None = None) -> asyncio.Task[None]:
        return self.debounce.schedule(
            REFRESH_KEY,
            self.refresh,
            self.config.debounce_delay if delay is None else delay,
        )

    def invalidate_reads(self) -> None:
        self.cache.invalidate(DASHBOARD_PATH)
        self.cache.invalidate(LICENSES_PATH)

    # ------------------------------------------------------------------
    # Pending edits
    # ------------------------------------------------------------------

    def add_pending_site(
        self,
        site: str,
        billing_period: BillingPeriod | str = BillingPeriod.MONTHLY,
        subscription_id: str | None = None,
    ) -> PendingSiteEntry:
        email = self._require_email()
        entry = self._reconciler(email).add(site, billing_period, subscription_id)
        self.cache.invalidate(DASHBOARD_PATH)
        return entry

    def remove_pending_site(self, index: int) -> PendingSiteEntry:
        email = self._require_email()
        entry = self._reconciler(email).remove(index)
        self.cache.invalidate(DASHBOARD_PATH)
        return entry

    def pending_sites(self) -> tuple[PendingSiteEntry, ...]:
        return self._reconciler(self._require_email()).entries

    # ------------------------------------------------------------------
    # Foreground actions
    # ------------------------------------------------------------------

    async def begin_checkout(
        self, billing_period: BillingPeriod | str | None = None
    ) -> CheckoutSession:
        email = self._require_email()
        reconciler = self._reconciler(email)
        entries = reconciler.entries
        if not entries:
            raise ForegroundActionError("Add at least one site before checking out.")
        # The backend builds the checkout from its own pending list.
        await self.background.drain()
        period = BillingPeriod.parse(billing_period, entries[0].billing_period)
        reconciler.store.save_handoff(entries)
        try:
            checkout = await self.client.create_checkout(email, period)
        except AsyncClientError as exc:
            reconciler.store.clear_handoff()
            raise ForegroundActionError(
                exc.error_message or "Failed to create checkout session",
                error_code=exc.error_code,
            ) from exc
        except AsyncRestError as exc:
            reconciler.store.clear_handoff()
            raise ForegroundActionError(UNREACHABLE_MESSAGE) from exc
        LOGGER.info("Checkout created for %s pending site(s).", len(entries))
        return checkout

    async def unsubscribe_site(
        self, site: str, subscription_id: str | None = None
    ) -> RemoveSiteResponse:
        email = self._require_email()
        previous = self._view
        optimistic = (
            previous.with_status(site_key(site), EntityStatus.CANCELLING)
            if previous is not None
            else None
        )
        response = await self._foreground(
            lambda: self.client.remove_site(email, site, subscription_id),
            previous,
            optimistic,
            lambda exc: removal_error_message(site, exc.error_code, exc.error_message),
        )
        if not response.success:
            self._revert(previous, optimistic)
            raise ForegroundActionError(response.message or "Failed to unsubscribe site")
        LOGGER.info("Unsubscribed %s (individual=%s).", site, response.is_individual_subscription)
        self.invalidate_reads()
        self.schedule_refresh()
        return response

    async def activate_license(self, license_key: str, site: str) -> LicenseActionResponse:
        """Assign a license key to ``site`` (or move it to a new site)."""
        email = self._require_email()
        cleaned = validate_site(site)
        previous = self._view
        optimistic = (
            previous.with_license_site(license_key, cleaned) if previous is not None else None
        )
        response = await self._foreground(
            lambda: self.client.activate_license(email, license_key, cleaned),
            previous,
            optimistic,
            lambda exc: activation_error_message(exc.error_code, exc.error_message, exc.details),
        )
        if not response.success:
            self._revert(previous, optimistic)
            raise ForegroundActionError(response.message or "Failed to activate license")
        LOGGER.info("License %s activated for %s.", license_key, cleaned)
        self.cache.invalidate(LICENSES_PATH)
        self.schedule_refresh()
        return response

    async def deactivate_license(self, license_key: str) -> LicenseActionResponse:
        """Remove a quantity license from its subscription."""
        email = self._require_email()
        previous = self._view
        optimistic = (
            previous.with_license_status(license_key, EntityStatus.CANCELLING)
            if previous is not None
            else None
        )
        response = await self._foreground(
            lambda: self.client.deactivate_license(email, license_key),
            previous,
            optimistic,
            lambda exc: exc.error_message or exc.error_code or "Failed to deactivate license",
        )
        if not response.success:
            self._revert(previous, optimistic)
            raise ForegroundActionError(response.message or "Failed to deactivate license")
        LOGGER.info(
            "License %s deactivated (cancel_at_period_end=%s).",
            license_key,
            response.cancel_at_period_end,
        )
        # Quantity and billing change along with the license list.
        self.invalidate_reads()
        self.schedule_refresh()
        return response

    async def purchase_quantity(self, quantity: int) -> CheckoutSession:
        """Create a checkout session for ``quantity`` new license keys."""
        email = self._require_email()
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ForegroundActionError("Enter a quantity of at least 1.")
        checkout = await self._foreground(
            lambda: self.client.purchase_quantity(email, quantity),
            None,
            None,
            lambda exc: exc.error_message or exc.error_code or "Purchase failed",
        )
        LOGGER.info("Quantity checkout created for %s license(s).", quantity)
        return checkout

    async def _foreground(
        self,
        call: Callable[[], Awaitable[Any]],
        previous: DashboardView | None,
        optimistic: DashboardView | None,
        describe: Callable[[AsyncClientError], str],
    ) -> Any:
        if optimistic is not None:
            self._publish(optimistic)
        try:
            return await call()
        except AsyncClientError as exc:
            self._revert(previous, optimistic)
            raise ForegroundActionError(describe(exc), error_code=exc.error_code) from exc
        except AsyncRestError as exc:
            self._revert(previous, optimistic)
            raise ForegroundActionError(UNREACHABLE_MESSAGE) from exc

    def _revert(self, previous: DashboardView | None, optimistic: DashboardView | None) -> None:
        # A newer pass may have rendered meanwhile; leave it alone.
        if previous is not None and self._view is optimistic:
            self._publish(previous)

    # ------------------------------------------------------------------
    # Payment return
    # ------------------------------------------------------------------

    def load_handoff(self) -> PaymentHandoff | None:
        return self._store(self._require_email()).load_handoff(self.config.handoff_ttl)

    def show_processing(self, entries: tuple[PendingSiteEntry, ...]) -> None:
        self._processing = tuple(entries)
        if self._view is not None:
            self._publish(replace(self._view, processing=self._processing))

    def finish_payment(self) -> None:
        """Clear the processing placeholder, then the handoff and durable copy."""
        self._processing = ()
        if self._view is not None:
            self._publish(replace(self._view, processing=()))
        reconciler = self._reconciler(self._require_email())
        reconciler.store.clear_handoff()
        reconciler.clear()

    async def handle_payment_return(self, url: str) -> PollOutcome | None:
        if not is_payment_return(url):
            return None
        self._require_email()
        poller = ConvergencePoller(self, self.config.poll_delays, sleep=self._sleep)
        return await poller.run()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        await self.background.drain()

    async def aclose(self) -> None:
        self.debounce.cancel_all()
        await self.background.drain()
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()

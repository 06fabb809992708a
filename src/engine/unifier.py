"""Unify sites, subscriptions and licenses into provenance-tagged catalogues.

Three purchase flows produce site records with different shapes: a direct
multi-site subscription, one subscription per site, and quantity licenses that
are later activated on a site. The catalogue is rebuilt from the two backend
snapshots on every pass; nothing carries over from a previous catalogue.

Order matters: direct items are emitted first, site subscriptions then replace
direct entries for the same domain, and license records only fill gaps.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from billing_client.models import (
    BillingEntity,
    EntityStatus,
    Provenance,
    site_key,
)
from billing_client.schemas import (
    CANCELLED_STATUSES,
    INACTIVE_STATUSES,
    BillingSnapshot,
    LicenseRecordSchema,
    LicenseSnapshot,
    SubscriptionItemSchema,
    SubscriptionSchema,
)

QUANTITY_PURCHASE = "quantity"
SITE_PURCHASE = "site"
RESERVED_SITE_PREFIXES = ("license_", "quantity_")
UNASSIGNED_IDENTITY_PREFIX = "unassigned:"


class CatalogueView(str, Enum):
    PURCHASED_DOMAINS = "purchased_domains"
    LICENSE_KEYS = "license_keys"
    ACTIVATED_LICENSES = "activated_licenses"


@dataclass(frozen=True)
class Catalogue:
    purchased_domains: tuple[BillingEntity, ...] = ()
    license_keys: tuple[BillingEntity, ...] = ()
    activated_licenses: tuple[BillingEntity, ...] = ()

    def view(self, view: CatalogueView) -> tuple[BillingEntity, ...]:
        return getattr(self, view.value)


def _purchase_type(value: str | None) -> str:
    return (value or "").strip().lower()


def is_placeholder_site(site: str | None) -> bool:
    key = site_key(site)
    return not key or key.startswith(RESERVED_SITE_PREFIXES)


def classify_subscription(
    subscription_id: str,
    subscription: SubscriptionSchema,
    licenses: LicenseSnapshot,
    extra_items: list[SubscriptionItemSchema] | None = None,
) -> Provenance:
    items = subscription.line_items() + list(extra_items or [])
    if any(
        _purchase_type(item.purchase_type) == QUANTITY_PURCHASE or item.license_key
        for item in items
    ):
        return Provenance.QUANTITY_LICENSE
    if any(
        record.subscription_id == subscription_id
        and _purchase_type(record.purchase_type) == QUANTITY_PURCHASE
        for record in licenses.licenses
    ):
        return Provenance.QUANTITY_LICENSE
    if _purchase_type(subscription.purchase_type) == SITE_PURCHASE or any(
        _purchase_type(item.purchase_type) == SITE_PURCHASE for item in items
    ):
        return Provenance.SITE_SUBSCRIPTION
    return Provenance.DIRECT


def compute_status(
    subscription: SubscriptionSchema | None, item_status: str | None = None
) -> EntityStatus:
    """Derive the lifecycle status from the owning subscription's flags."""
    item = (item_status or "").strip().lower()
    if subscription is None:
        if item in CANCELLED_STATUSES:
            return EntityStatus.CANCELLED
        if item == "cancelling":
            return EntityStatus.CANCELLING
        if item in INACTIVE_STATUSES:
            return EntityStatus.INACTIVE
        if item == "trialing":
            return EntityStatus.TRIALING
        return EntityStatus.ACTIVE
    status = (subscription.status or "").strip().lower()
    if status in CANCELLED_STATUSES or item in CANCELLED_STATUSES:
        return EntityStatus.CANCELLED
    if subscription.canceled_at is not None and not subscription.cancel_at_period_end:
        return EntityStatus.CANCELLED
    if subscription.cancel_at_period_end or "cancelling" in (status, item):
        return EntityStatus.CANCELLING
    if status in INACTIVE_STATUSES or item in INACTIVE_STATUSES:
        return EntityStatus.INACTIVE
    if status == "trialing":
        return EntityStatus.TRIALING
    return EntityStatus.ACTIVE


def license_status(
    record: LicenseRecordSchema, subscription: SubscriptionSchema | None
) -> EntityStatus:
    if subscription is not None:
        return compute_status(subscription, record.status)
    if record.subscription_cancelled:
        return EntityStatus.CANCELLED
    if record.subscription_cancel_at_period_end:
        return EntityStatus.CANCELLING
    return compute_status(None, record.status or record.subscription_status)


class _Unifier:
    def __init__(self, billing: BillingSnapshot, licenses: LicenseSnapshot) -> None:
        self.billing = billing
        self.licenses = licenses
        self.legacy_items, self.orphans = self._split_legacy_sites()
        self.provenance = {
            sub_id: classify_subscription(
                sub_id, sub, licenses, self.legacy_items.get(sub_id)
            )
            for sub_id, sub in billing.subscriptions.items()
        }

    def _split_legacy_sites(
        self,
    ) -> tuple[dict[str, list[SubscriptionItemSchema]], list[SubscriptionItemSchema]]:
        legacy: dict[str, list[SubscriptionItemSchema]] = {}
        orphans: list[SubscriptionItemSchema] = []
        for site, record in self.billing.sites.items():
            subscription = self.billing.subscription(record.subscription_id)
            if subscription is None:
                orphans.append(record.to_item(site))
                continue
            listed = {site_key(item.site) for item in subscription.line_items()}
            if site_key(site) not in listed:
                legacy.setdefault(record.subscription_id or "", []).append(
                    record.to_item(site)
                )
        return legacy, orphans

    def _items(self, sub_id: str, subscription: SubscriptionSchema) -> list[SubscriptionItemSchema]:
        return subscription.line_items() + self.legacy_items.get(sub_id, [])

    def _site_entity(
        self,
        item: SubscriptionItemSchema,
        sub_id: str | None,
        subscription: SubscriptionSchema | None,
        provenance: Provenance,
    ) -> BillingEntity:
        return BillingEntity(
            identity=site_key(item.site),
            site=(item.site or "").strip(),
            subscription_id=sub_id,
            license_key=item.license_key,
            status=compute_status(subscription, item.status),
            provenance=provenance,
            billing_period=subscription.billing_period if subscription else None,
            period_end=subscription.current_period_end if subscription else None,
            created_at=item.created_at
            or (subscription.created_at if subscription else None),
        )

    def domains(self) -> dict[str, BillingEntity]:
        entities: dict[str, BillingEntity] = {}

        for sub_id, subscription in self.billing.subscriptions.items():
            if self.provenance[sub_id] is not Provenance.DIRECT:
                continue
            for item in self._items(sub_id, subscription):
                if is_placeholder_site(item.site):
                    continue
                identity = site_key(item.site)
                if identity not in entities:
                    entities[identity] = self._site_entity(
                        item, sub_id, subscription, Provenance.DIRECT
                    )
        for item in self.orphans:
            if is_placeholder_site(item.site):
                continue
            purchase = _purchase_type(item.purchase_type)
            if purchase == QUANTITY_PURCHASE or site_key(item.site) in entities:
                continue
            if purchase != SITE_PURCHASE:
                entities[site_key(item.site)] = self._site_entity(
                    item, None, None, Provenance.DIRECT
                )

        for sub_id, subscription in self.billing.subscriptions.items():
            if self.provenance[sub_id] is not Provenance.SITE_SUBSCRIPTION:
                continue
            for item in self._items(sub_id, subscription):
                if is_placeholder_site(item.site):
                    continue
                entities[site_key(item.site)] = self._site_entity(
                    item, sub_id, subscription, Provenance.SITE_SUBSCRIPTION
                )
        for item in self.orphans:
            if is_placeholder_site(item.site):
                continue
            if _purchase_type(item.purchase_type) == SITE_PURCHASE:
                entities[site_key(item.site)] = self._site_entity(
                    item, None, None, Provenance.SITE_SUBSCRIPTION
                )

        for record in self.licenses.licenses:
            site = record.assigned_site
            if is_placeholder_site(site):
                continue
            if _purchase_type(record.purchase_type) == QUANTITY_PURCHASE:
                continue
            identity = site_key(site)
            if identity in entities:
                continue
            if self.provenance.get(record.subscription_id or "") is Provenance.QUANTITY_LICENSE:
                continue
            subscription = self.billing.subscription(record.subscription_id)
            entities[identity] = BillingEntity(
                identity=identity,
                site=(site or "").strip(),
                subscription_id=record.subscription_id,
                license_key=record.license_key,
                status=license_status(record, subscription),
                provenance=(
                    Provenance.SITE_SUBSCRIPTION
                    if _purchase_type(record.purchase_type) == SITE_PURCHASE
                    else Provenance.DIRECT
                ),
                billing_period=record.billing_period
                or (subscription.billing_period if subscription else None),
                period_end=(
                    subscription.current_period_end
                    if subscription
                    else record.subscription_current_period_end
                ),
                created_at=record.created_at,
            )
        return entities

    def quantity_activated_sites(self) -> set[str]:
        return {
            site_key(record.assigned_site)
            for record in self._quantity_licenses()
            if not is_placeholder_site(record.assigned_site)
        }

    def _quantity_licenses(self) -> list[LicenseRecordSchema]:
        return [
            record
            for record in self.licenses.licenses
            if record.license_key
            and (
                _purchase_type(record.purchase_type) == QUANTITY_PURCHASE
                or self.provenance.get(record.subscription_id or "")
                is Provenance.QUANTITY_LICENSE
            )
        ]

    def license_entities(self) -> list[BillingEntity]:
        entities: list[BillingEntity] = []
        known_keys: set[str] = set()
        for record in self._quantity_licenses():
            known_keys.add(record.license_key or "")
            subscription = self.billing.subscription(record.subscription_id)
            assigned = None if is_placeholder_site(record.assigned_site) else record.assigned_site
            entities.append(
                BillingEntity(
                    identity=(
                        site_key(assigned)
                        if assigned
                        else f"{UNASSIGNED_IDENTITY_PREFIX}{record.license_key}"
                    ),
                    site=assigned.strip() if assigned else None,
                    subscription_id=record.subscription_id,
                    license_key=record.license_key,
                    status=license_status(record, subscription),
                    provenance=Provenance.QUANTITY_LICENSE,
                    billing_period=record.billing_period
                    or (subscription.billing_period if subscription else None),
                    period_end=(
                        subscription.current_period_end
                        if subscription
                        else record.subscription_current_period_end
                    ),
                    created_at=record.created_at,
                )
            )
        # Quantity line items whose license record has not been written yet.
        for sub_id, subscription in self.billing.subscriptions.items():
            if self.provenance[sub_id] is not Provenance.QUANTITY_LICENSE:
                continue
            for item in self._items(sub_id, subscription):
                if not item.license_key or item.license_key in known_keys:
                    continue
                known_keys.add(item.license_key)
                assigned = None if is_placeholder_site(item.site) else item.site
                entities.append(
                    BillingEntity(
                        identity=(
                            site_key(assigned)
                            if assigned
                            else f"{UNASSIGNED_IDENTITY_PREFIX}{item.license_key}"
                        ),
                        site=assigned.strip() if assigned else None,
                        subscription_id=sub_id,
                        license_key=item.license_key,
                        status=compute_status(subscription, item.status),
                        provenance=Provenance.QUANTITY_LICENSE,
                        billing_period=subscription.billing_period,
                        period_end=subscription.current_period_end,
                        created_at=item.created_at or subscription.created_at,
                    )
                )
        return entities


def _unique_sorted(entities: list[BillingEntity]) -> tuple[BillingEntity, ...]:
    unique: dict[str, BillingEntity] = {}
    for entity in entities:
        unique.setdefault(entity.identity, entity)
    return tuple(unique[identity] for identity in sorted(unique))


def unify(
    billing: BillingSnapshot,
    licenses: LicenseSnapshot,
    view: CatalogueView = CatalogueView.PURCHASED_DOMAINS,
) -> tuple[BillingEntity, ...]:
    """Build the deduplicated catalogue for one view."""
    unifier = _Unifier(billing, licenses)
    if view is CatalogueView.PURCHASED_DOMAINS:
        excluded = unifier.quantity_activated_sites()
        return _unique_sorted(
            [
                entity
                for entity in unifier.domains().values()
                if entity.provenance
                in (Provenance.DIRECT, Provenance.SITE_SUBSCRIPTION)
                and entity.identity not in excluded
            ]
        )
    license_entities = unifier.license_entities()
    if view is CatalogueView.LICENSE_KEYS:
        return _unique_sorted([entity for entity in license_entities if entity.site is None])
    return _unique_sorted([entity for entity in license_entities if entity.site is not None])


def build_catalogue(billing: BillingSnapshot, licenses: LicenseSnapshot) -> Catalogue:
    return Catalogue(
        purchased_domains=unify(billing, licenses, CatalogueView.PURCHASED_DOMAINS),
        license_keys=unify(billing, licenses, CatalogueView.LICENSE_KEYS),
        activated_licenses=unify(billing, licenses, CatalogueView.ACTIVATED_LICENSES),
    )

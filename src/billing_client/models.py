"""Shared data models for the billing sync engine.

Pydantic-based models for pending edits, unified billing entities and principals.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BillingPeriod(str, Enum):
    """Billing period enum."""

    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value: Any, default: "BillingPeriod | None" = None) -> "BillingPeriod | None":
        """Map loose API spellings (``month``, ``annual``...) onto the enum."""
        if isinstance(value, cls):
            return value
        if value in (None, ""):
            return default
        normalized = str(value).strip().lower()
        if normalized in {"monthly", "month", "mo"}:
            return cls.MONTHLY
        if normalized in {"yearly", "year", "annual", "annually", "yr"}:
            return cls.YEARLY
        return default


class EntityStatus(str, Enum):
    """Lifecycle status of a unified billing entity."""

    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"


class Provenance(str, Enum):
    """Purchase flow that produced a billing entity."""

    DIRECT = "direct"
    SITE_SUBSCRIPTION = "siteSubscription"
    QUANTITY_LICENSE = "quantityLicense"


def site_key(site: str | None) -> str:
    """Return the case-insensitive identity of a site domain."""
    return (site or "").strip().lower()


class PendingSiteEntry(BaseModel):
    """A site queued for purchase but not yet paid for."""

    model_config = ConfigDict(frozen=True)

    site: str
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    subscription_id: str | None = None

    @field_validator("site", mode="before")
    @classmethod
    def validate_site(cls, v: Any) -> str:
        if v is None:
            raise ValueError("site is required")
        cleaned = str(v).strip()
        if not cleaned:
            raise ValueError("site must be a non-empty string")
        return cleaned

    @field_validator("billing_period", mode="before")
    @classmethod
    def validate_billing_period(cls, v: Any) -> BillingPeriod:
        return BillingPeriod.parse(v, BillingPeriod.MONTHLY)

    @property
    def key(self) -> str:
        return site_key(self.site)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "site": self.site,
            "billing_period": self.billing_period.value,
        }
        if self.subscription_id is not None:
            payload["subscription_id"] = self.subscription_id
        return payload


def dedupe_entries(entries: Iterable[PendingSiteEntry]) -> list[PendingSiteEntry]:
    """Drop case-insensitive duplicate sites, keeping the first occurrence."""
    seen: set[str] = set()
    unique: list[PendingSiteEntry] = []
    for entry in entries:
        if entry.key in seen:
            continue
        seen.add(entry.key)
        unique.append(entry)
    return unique


class PendingEditRecord(BaseModel):
    """Durable record of the user's pending edits."""

    model_config = ConfigDict(frozen=True)

    entries: tuple[PendingSiteEntry, ...] = ()
    last_modified_at: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def keys(self) -> set[str]:
        return {entry.key for entry in self.entries}


class PaymentHandoff(BaseModel):
    """Snapshot of pending entries written just before a checkout redirect."""

    model_config = ConfigDict(frozen=True)

    entries: tuple[PendingSiteEntry, ...] = ()
    created_at: float = 0.0

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.created_at > ttl


class BillingEntity(BaseModel):
    """Render-ready site, subscription or license record."""

    model_config = ConfigDict(frozen=True)

    identity: str
    subscription_id: str | None = None
    license_key: str | None = None
    status: EntityStatus = EntityStatus.ACTIVE
    provenance: Provenance
    billing_period: BillingPeriod | None = None
    period_end: float | None = None
    created_at: float | None = None
    site: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Principal(BaseModel):
    """Normalized identity of the signed-in user."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    email: str

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: Any) -> str:
        cleaned = str(v or "").strip().lower()
        if "@" not in cleaned:
            raise ValueError(f"Invalid email address: {v!r}")
        return cleaned


class CheckoutSession(BaseModel):
    """Checkout session created from the pending list."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    url: str
    session_id: str | None = None
    raw_payload: Mapping[str, Any] = Field(default_factory=dict)

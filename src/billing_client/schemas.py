"""Pydantic schemas for billing API responses."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from billing_client.models import BillingPeriod

INACTIVE_STATUSES = frozenset(
    {"inactive", "removed", "expired", "incomplete_expired", "unpaid"}
)
CANCELLED_STATUSES = frozenset({"canceled", "cancelled", "deleted"})


def _parse_timestamp(value: Any) -> float | None:
    if value in (None, "", 0):
        return None
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


# ============================================================================
# Billing snapshot schemas (GET /dashboard)
# ============================================================================


class SubscriptionItemSchema(BaseModel):
    """Line item of a subscription."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    item_id: str | None = None
    site: str | None = Field(
        None, validation_alias=AliasChoices("site", "site_domain", "domain")
    )
    purchase_type: str | None = None
    license_key: str | None = None
    status: str | None = None
    created_at: float | None = None
    price: str | None = None
    quantity: int = 1

    @field_validator("item_id", "site", "purchase_type", "license_key", "status", "price", mode="before")
    @classmethod
    def validate_optional_strings(cls, v: Any) -> str | None:
        return _parse_optional_str(v)

    @field_validator("created_at", mode="before")
    @classmethod
    def validate_created_at(cls, v: Any) -> float | None:
        return _parse_timestamp(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def validate_quantity(cls, v: Any) -> int:
        try:
            return max(int(v), 1)
        except (TypeError, ValueError):
            return 1


class SiteRecordSchema(BaseModel):
    """Site record in the legacy flat ``sites`` mapping."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    item_id: str | None = None
    status: str | None = None
    subscription_id: str | None = None
    purchase_type: str | None = None
    license_key: str | None = None
    created_at: float | None = None
    renewal_date: float | None = None
    current_period_end: float | None = None

    @field_validator("item_id", "status", "subscription_id", "purchase_type", "license_key", mode="before")
    @classmethod
    def validate_optional_strings(cls, v: Any) -> str | None:
        return _parse_optional_str(v)

    @field_validator("created_at", "renewal_date", "current_period_end", mode="before")
    @classmethod
    def validate_timestamps(cls, v: Any) -> float | None:
        return _parse_timestamp(v)

    def to_item(self, site: str) -> SubscriptionItemSchema:
        return SubscriptionItemSchema(
            item_id=self.item_id,
            site=site,
            purchase_type=self.purchase_type,
            license_key=self.license_key,
            status=self.status,
            created_at=self.created_at,
        )


class SubscriptionSchema(BaseModel):
    """Subscription with embedded line items."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    subscription_id: str | None = Field(
        None, validation_alias=AliasChoices("subscriptionId", "subscription_id", "id")
    )
    status: str | None = None
    cancel_at_period_end: bool = False
    canceled_at: float | None = Field(
        None, validation_alias=AliasChoices("canceled_at", "cancelled_at")
    )
    current_period_end: float | None = None
    billing_period: BillingPeriod | None = Field(
        None, validation_alias=AliasChoices("billingPeriod", "billing_period")
    )
    created_at: float | None = None
    purchase_type: str | None = None
    items: list[SubscriptionItemSchema] = Field(default_factory=list)
    sites: dict[str, SiteRecordSchema] = Field(default_factory=dict)

    @field_validator("status", "purchase_type", "subscription_id", mode="before")
    @classmethod
    def validate_optional_strings(cls, v: Any) -> str | None:
        return _parse_optional_str(v)

    @field_validator("canceled_at", "current_period_end", "created_at", mode="before")
    @classmethod
    def validate_timestamps(cls, v: Any) -> float | None:
        return _parse_timestamp(v)

    @field_validator("billing_period", mode="before")
    @classmethod
    def validate_billing_period(cls, v: Any) -> BillingPeriod | None:
        return BillingPeriod.parse(v)

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def validate_cancel_flag(cls, v: Any) -> bool:
        return bool(v)

    def line_items(self) -> list[SubscriptionItemSchema]:
        """Return ``items`` followed by entries of the ``sites`` mapping not already listed."""
        resolved = list(self.items)
        listed = {(item.site or "").strip().lower() for item in resolved if item.site}
        for site, record in self.sites.items():
            if site.strip().lower() in listed:
                continue
            resolved.append(record.to_item(site))
        return resolved


class PendingSiteSchema(BaseModel):
    """Pending site as reported by the backend."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    site: str | None = None
    subscription_id: str | None = Field(
        None, validation_alias=AliasChoices("subscription_id", "subscriptionId")
    )
    billing_period: str | None = Field(
        None, validation_alias=AliasChoices("billing_period", "billingPeriod")
    )

    @field_validator("site", "subscription_id", "billing_period", mode="before")
    @classmethod
    def validate_optional_strings(cls, v: Any) -> str | None:
        return _parse_optional_str(v)


class BillingSnapshot(BaseModel):
    """Backend billing snapshot."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    email: str | None = None
    subscriptions: dict[str, SubscriptionSchema] = Field(default_factory=dict)
    sites: dict[str, SiteRecordSchema] = Field(default_factory=dict)
    pending_sites: list[PendingSiteSchema] = Field(
        default_factory=list, validation_alias=AliasChoices("pendingSites", "pending_sites")
    )
    total: int | None = None
    has_more: bool = Field(False, validation_alias=AliasChoices("hasMore", "has_more"))

    @field_validator("pending_sites", mode="before")
    @classmethod
    def validate_pending_sites(cls, v: Any) -> list[Any]:
        if not v:
            return []
        # Older payloads list pending sites as bare strings.
        return [{"site": item} if isinstance(item, str) else item for item in v]

    def subscription(self, subscription_id: str | None) -> SubscriptionSchema | None:
        if not subscription_id:
            return None
        return self.subscriptions.get(subscription_id)


# ============================================================================
# License snapshot schemas (GET /licenses)
# ============================================================================


class LicenseRecordSchema(BaseModel):
    """License key record."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    license_key: str | None = None
    site_domain: str | None = None
    used_site_domain: str | None = None
    status: str | None = None
    purchase_type: str | None = None
    subscription_id: str | None = None
    created_at: float | None = None
    billing_period: BillingPeriod | None = None
    subscription_status: str | None = None
    subscription_cancel_at_period_end: bool = False
    subscription_cancelled: bool = False
    subscription_current_period_end: float | None = None

    @field_validator(
        "license_key",
        "site_domain",
        "used_site_domain",
        "status",
        "purchase_type",
        "subscription_id",
        "subscription_status",
        mode="before",
    )
    @classmethod
    def validate_optional_strings(cls, v: Any) -> str | None:
        return _parse_optional_str(v)

    @field_validator("created_at", "subscription_current_period_end", mode="before")
    @classmethod
    def validate_timestamps(cls, v: Any) -> float | None:
        return _parse_timestamp(v)

    @field_validator("billing_period", mode="before")
    @classmethod
    def validate_billing_period(cls, v: Any) -> BillingPeriod | None:
        return BillingPeriod.parse(v)

    @field_validator("subscription_cancel_at_period_end", "subscription_cancelled", mode="before")
    @classmethod
    def validate_flags(cls, v: Any) -> bool:
        return bool(v)

    @property
    def assigned_site(self) -> str | None:
        return self.site_domain or self.used_site_domain


class LicenseSnapshot(BaseModel):
    """Backend license snapshot."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    licenses: list[LicenseRecordSchema] = Field(default_factory=list)
    total: int | None = None
    has_more: bool = Field(False, validation_alias=AliasChoices("hasMore", "has_more"))


# ============================================================================
# Write endpoint responses
# ============================================================================


class PendingSitesEcho(BaseModel):
    """Response of the pending-site write endpoints."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool = True
    message: str | None = None
    sites: list[PendingSiteSchema] = Field(default_factory=list)

    @field_validator("sites", mode="before")
    @classmethod
    def validate_sites(cls, v: Any) -> list[Any]:
        if not v:
            return []
        return [{"site": item} if isinstance(item, str) else item for item in v]


class RemoveSiteResponse(BaseModel):
    """Response of ``POST /remove-site``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool = True
    message: str | None = None
    is_individual_subscription: bool = False


class LicenseActionResponse(BaseModel):
    """Response of ``POST /activate-license`` and ``POST /deactivate-license``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool = True
    message: str | None = None
    cancel_at_period_end: bool = False

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def validate_cancel_flag(cls, v: Any) -> bool:
        return bool(v)

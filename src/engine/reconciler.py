"""Reconcile locally pending edits with the backend's pending list."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Protocol, Sequence

from billing_client.models import (
    BillingPeriod,
    PendingEditRecord,
    PendingSiteEntry,
    dedupe_entries,
    site_key,
)
from engine.background import BackgroundTasks
from engine.errors import PendingEditError
from engine.pending_store import PendingEditStore

LOGGER = logging.getLogger("billing_sync.reconciler")

_SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_DOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9-]{2,63}$",
    re.IGNORECASE,
)


class ReconcileSource(str, Enum):
    BACKEND_EMPTY = "backend_empty"
    IN_MEMORY = "in_memory"
    RECENT_DURABLE = "recent_durable"
    DURABLE_SUBSET = "durable_subset"
    BACKEND = "backend"


@dataclass(frozen=True)
class ReconcileOutcome:
    entries: tuple[PendingSiteEntry, ...]
    source: ReconcileSource
    ambiguous: bool = False


class PendingWriter(Protocol):
    async def add_pending_sites(self, email: str, entries: Iterable[PendingSiteEntry]) -> Any:
        ...

    async def remove_pending_site(self, email: str, site: str) -> Any:
        ...


def is_case_insensitive_subset(
    candidate: Iterable[PendingSiteEntry], reference: Iterable[PendingSiteEntry]
) -> bool:
    reference_keys = {entry.key for entry in reference}
    return all(entry.key in reference_keys for entry in candidate)


def choose_pending(
    in_memory: Sequence[PendingSiteEntry],
    durable: PendingEditRecord,
    backend: Sequence[PendingSiteEntry],
    now: float,
    recency_window: float,
) -> ReconcileOutcome:
    """
    Pick the authoritative pending list.

    Rules apply in order: an empty backend list clears everything; a non-empty
    in-memory set wins; a recently modified durable copy wins; a durable copy that
    is a case-insensitive subset of the backend (and no larger) wins; otherwise the
    backend wins.
    """
    backend_entries = tuple(dedupe_entries(backend))
    if not backend_entries:
        return ReconcileOutcome(entries=(), source=ReconcileSource.BACKEND_EMPTY)
    if in_memory:
        return ReconcileOutcome(
            entries=tuple(dedupe_entries(in_memory)), source=ReconcileSource.IN_MEMORY
        )
    durable_entries = tuple(dedupe_entries(durable.entries))
    if durable_entries and now - durable.last_modified_at <= recency_window:
        return ReconcileOutcome(entries=durable_entries, source=ReconcileSource.RECENT_DURABLE)
    if (
        durable_entries
        and len(durable_entries) <= len(backend_entries)
        and is_case_insensitive_subset(durable_entries, backend_entries)
    ):
        return ReconcileOutcome(entries=durable_entries, source=ReconcileSource.DURABLE_SUBSET)
    ambiguous = bool(durable_entries) and {e.key for e in durable_entries} != {
        e.key for e in backend_entries
    }
    return ReconcileOutcome(
        entries=backend_entries, source=ReconcileSource.BACKEND, ambiguous=ambiguous
    )


def normalize_site(site: str) -> str:
    """Strip whitespace, scheme and trailing path from a user-entered domain."""
    cleaned = (site or "").strip()
    cleaned = _SCHEME_PATTERN.sub("", cleaned)
    cleaned = cleaned.split("/", 1)[0]
    return cleaned.strip()


def validate_site(site: str) -> str:
    """Return the normalized domain or raise ``PendingEditError``."""
    cleaned = normalize_site(site)
    if not cleaned:
        raise PendingEditError("Please enter a site domain")
    if not _DOMAIN_PATTERN.match(cleaned):
        raise PendingEditError(f"'{cleaned}' is not a valid site domain")
    return cleaned


class PendingEditReconciler:
    """Own the in-memory pending set and keep it consistent with the durable copy."""

    def __init__(
        self,
        store: PendingEditStore,
        writer: PendingWriter,
        *,
        recency_window: float = 5.0,
        time_provider: Callable[[], float] | None = None,
        background: BackgroundTasks | None = None,
        on_change: Callable[[tuple[PendingSiteEntry, ...]], None] | None = None,
    ) -> None:
        self.store = store
        self.writer = writer
        self.recency_window = recency_window
        self._time_provider = time_provider or time.time
        self.background = background if background is not None else BackgroundTasks()
        self.on_change = on_change
        self._entries: tuple[PendingSiteEntry, ...] = ()
        self._last_modified_at = 0.0
        # False until the first reconcile or edit; until then the durable copy is current.
        self._loaded = False

    @property
    def email(self) -> str:
        return self.store.email

    @property
    def entries(self) -> tuple[PendingSiteEntry, ...]:
        if not self._loaded:
            return tuple(dedupe_entries(self.store.load().entries))
        return self._entries

    def reconcile(self, backend: Sequence[PendingSiteEntry]) -> ReconcileOutcome:
        durable = self.store.load()
        backend_entries = tuple(dedupe_entries(backend))
        outcome = choose_pending(
            self._entries,
            durable,
            backend_entries,
            self._time_provider(),
            self.recency_window,
        )
        if outcome.ambiguous:
            LOGGER.info(
                "Pending list for %s is ambiguous (durable=%s, backend=%s); trusting backend.",
                self.email,
                sorted(durable.keys()),
                sorted(entry.key for entry in backend_entries),
            )
        else:
            LOGGER.debug("Pending list for %s resolved from %s.", self.email, outcome.source.value)

        self._loaded = True
        if outcome.source is ReconcileSource.BACKEND_EMPTY:
            self.store.clear()
            self._entries = ()
            self._last_modified_at = 0.0
            return outcome

        if outcome.source is ReconcileSource.IN_MEMORY:
            modified_at = self._last_modified_at
        else:
            modified_at = durable.last_modified_at
        self.store.save(outcome.entries, modified_at=modified_at)
        self._entries = outcome.entries
        self._last_modified_at = modified_at
        self._echo(outcome.entries, backend_entries)
        return outcome

    def add(
        self,
        site: str,
        billing_period: BillingPeriod | str = BillingPeriod.MONTHLY,
        subscription_id: str | None = None,
    ) -> PendingSiteEntry:
        cleaned = validate_site(site)
        current = self.entries
        if site_key(cleaned) in {entry.key for entry in current}:
            raise PendingEditError("This site is already in the pending list")
        entry = PendingSiteEntry(
            site=cleaned,
            billing_period=BillingPeriod.parse(billing_period, BillingPeriod.MONTHLY),
            subscription_id=subscription_id,
        )
        self._commit(current + (entry,))
        self.background.spawn(
            self.writer.add_pending_sites(self.email, [entry]),
            f"pending add of {entry.site}",
        )
        return entry

    def remove(self, index: int) -> PendingSiteEntry:
        current = self.entries
        if index < 0 or index >= len(current):
            raise PendingEditError(f"No pending site at position {index}")
        entry = current[index]
        remaining = current[:index] + current[index + 1 :]
        self._commit(remaining)
        self.background.spawn(
            self.writer.remove_pending_site(self.email, entry.site),
            f"pending removal of {entry.site}",
        )
        return entry

    def clear(self) -> None:
        self.store.clear()
        self._entries = ()
        self._last_modified_at = 0.0
        self._loaded = True

    def _commit(self, entries: tuple[PendingSiteEntry, ...]) -> None:
        now = self._time_provider()
        self.store.save(entries, modified_at=now)
        self._entries = entries
        self._last_modified_at = now
        self._loaded = True
        if self.on_change is not None:
            self.on_change(entries)

    def _echo(
        self,
        result: tuple[PendingSiteEntry, ...],
        backend: tuple[PendingSiteEntry, ...],
    ) -> None:
        backend_keys = {entry.key for entry in backend}
        result_keys = {entry.key for entry in result}
        missing = [entry for entry in result if entry.key not in backend_keys]
        extra = [entry for entry in backend if entry.key not in result_keys]
        if missing:
            self.background.spawn(
                self.writer.add_pending_sites(self.email, missing),
                f"pending echo of {len(missing)} site(s)",
            )
        for entry in extra:
            self.background.spawn(
                self.writer.remove_pending_site(self.email, entry.site),
                f"pending echo removal of {entry.site}",
            )

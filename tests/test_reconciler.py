from __future__ import annotations

import pytest

from billing_client.models import PendingEditRecord, PendingSiteEntry
from engine.background import BackgroundTasks
from engine.errors import PendingEditError
from engine.pending_store import MemoryStorage, PendingEditStore
from engine.reconciler import (
    PendingEditReconciler,
    ReconcileSource,
    choose_pending,
    normalize_site,
)


def entries(*sites: str) -> tuple[PendingSiteEntry, ...]:
    return tuple(PendingSiteEntry(site=site) for site in sites)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeWriter:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.added: list[list[str]] = []
        self.removed: list[str] = []

    async def add_pending_sites(self, email, batch):
        self.added.append([entry.site for entry in batch])
        if self.fail:
            raise RuntimeError("backend down")
        return None

    async def remove_pending_site(self, email, site):
        self.removed.append(site)
        if self.fail:
            raise RuntimeError("backend down")
        return None


def _reconciler(storage=None, clock=None, writer=None, changes=None):
    clock = clock or FakeClock()
    store = PendingEditStore(
        storage if storage is not None else MemoryStorage(),
        "user@example.com",
        time_provider=clock,
    )
    return PendingEditReconciler(
        store,
        writer or FakeWriter(),
        recency_window=5.0,
        time_provider=clock,
        background=BackgroundTasks(),
        on_change=changes.append if changes is not None else None,
    )


# ---------------------------------------------------------------------------
# choose_pending precedence
# ---------------------------------------------------------------------------


def test_empty_backend_clears_everything() -> None:
    outcome = choose_pending(
        entries("a.com"),
        PendingEditRecord(entries=entries("b.com"), last_modified_at=999.0),
        (),
        now=1000.0,
        recency_window=5.0,
    )

    assert outcome.entries == ()
    assert outcome.source is ReconcileSource.BACKEND_EMPTY


def test_in_memory_wins_over_durable_and_backend() -> None:
    outcome = choose_pending(
        entries("a.com", "new.com"),
        PendingEditRecord(entries=entries("a.com"), last_modified_at=999.0),
        entries("a.com"),
        now=1000.0,
        recency_window=5.0,
    )

    assert [entry.site for entry in outcome.entries] == ["a.com", "new.com"]
    assert outcome.source is ReconcileSource.IN_MEMORY


def test_recent_durable_wins_within_window() -> None:
    durable = PendingEditRecord(entries=entries("a.com", "b.com"), last_modified_at=995.0)

    outcome = choose_pending((), durable, entries("a.com"), now=1000.0, recency_window=5.0)

    assert outcome.source is ReconcileSource.RECENT_DURABLE
    assert [entry.site for entry in outcome.entries] == ["a.com", "b.com"]


def test_durable_subset_of_backend_wins() -> None:
    durable = PendingEditRecord(entries=entries("A.com"), last_modified_at=0.0)

    outcome = choose_pending(
        (), durable, entries("a.com", "b.com"), now=1000.0, recency_window=5.0
    )

    assert outcome.source is ReconcileSource.DURABLE_SUBSET
    assert [entry.site for entry in outcome.entries] == ["A.com"]


def test_backend_wins_when_durable_stale_and_not_subset() -> None:
    durable = PendingEditRecord(entries=entries("a.com", "gone.com"), last_modified_at=0.0)

    outcome = choose_pending((), durable, entries("a.com"), now=1000.0, recency_window=5.0)

    assert outcome.source is ReconcileSource.BACKEND
    assert outcome.ambiguous is True
    assert [entry.site for entry in outcome.entries] == ["a.com"]


def test_backend_wins_without_durable_copy() -> None:
    outcome = choose_pending(
        (), PendingEditRecord(), entries("a.com"), now=1000.0, recency_window=5.0
    )

    assert outcome.source is ReconcileSource.BACKEND
    assert outcome.ambiguous is False


def test_normalize_site_strips_scheme_and_path() -> None:
    assert normalize_site("  https://Example.com/pricing ") == "Example.com"
    assert normalize_site("") == ""


# ---------------------------------------------------------------------------
# PendingEditReconciler
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_empty_backend_clears_stale_durable_copy() -> None:
    storage = MemoryStorage()
    reconciler = _reconciler(storage)
    reconciler.store.save(entries("old.com"), modified_at=0.0)

    outcome = reconciler.reconcile(())

    assert outcome.source is ReconcileSource.BACKEND_EMPTY
    assert reconciler.entries == ()
    assert storage.data == {}


@pytest.mark.asyncio
async def test_add_is_kept_when_backend_lags() -> None:
    changes: list = []
    writer = FakeWriter()
    reconciler = _reconciler(writer=writer, changes=changes)
    reconciler.reconcile(entries("a.com"))

    reconciler.add("new.com")
    outcome = reconciler.reconcile(entries("a.com"))
    await reconciler.background.drain()

    assert outcome.source is ReconcileSource.IN_MEMORY
    assert [entry.site for entry in outcome.entries] == ["a.com", "new.com"]
    assert [[entry.site for entry in change] for change in changes] == [["a.com", "new.com"]]
    assert ["new.com"] in writer.added


@pytest.mark.asyncio
async def test_recent_durable_copy_survives_reload() -> None:
    storage = MemoryStorage()
    clock = FakeClock()
    first = _reconciler(storage, clock)
    first.reconcile(entries("a.com"))
    first.add("b.com")
    await first.background.drain()

    clock.now += 2.0
    reloaded = _reconciler(storage, clock)
    outcome = reloaded.reconcile(entries("a.com"))
    await reloaded.background.drain()

    assert outcome.source is ReconcileSource.RECENT_DURABLE
    assert [entry.site for entry in reloaded.entries] == ["a.com", "b.com"]


@pytest.mark.asyncio
async def test_reconcile_twice_is_idempotent() -> None:
    storage = MemoryStorage()
    reconciler = _reconciler(storage)

    first = reconciler.reconcile(entries("a.com", "b.com"))
    snapshot = dict(storage.data)
    second = reconciler.reconcile(entries("a.com", "b.com"))
    await reconciler.background.drain()

    assert first.entries == second.entries
    assert storage.data == snapshot


@pytest.mark.asyncio
async def test_echo_adds_missing_and_removes_extra_sites() -> None:
    writer = FakeWriter()
    storage = MemoryStorage()
    clock = FakeClock()
    reconciler = _reconciler(storage, clock, writer)
    reconciler.store.save(entries("a.com", "mine.com"), modified_at=clock.now)

    reconciler.reconcile(entries("a.com", "theirs.com"))
    await reconciler.background.drain()

    assert writer.added == [["mine.com"]]
    assert writer.removed == ["theirs.com"]


@pytest.mark.asyncio
async def test_add_rejects_invalid_input_without_changes() -> None:
    storage = MemoryStorage()
    reconciler = _reconciler(storage)
    reconciler.reconcile(entries("a.com"))
    before = dict(storage.data)

    with pytest.raises(PendingEditError, match="enter a site"):
        reconciler.add("   ")
    with pytest.raises(PendingEditError, match="already in the pending list"):
        reconciler.add("A.COM")
    with pytest.raises(PendingEditError, match="not a valid site domain"):
        reconciler.add("not a domain")

    assert storage.data == before
    assert [entry.site for entry in reconciler.entries] == ["a.com"]


@pytest.mark.asyncio
async def test_remove_by_index() -> None:
    writer = FakeWriter()
    reconciler = _reconciler(writer=writer)
    reconciler.reconcile(entries("a.com", "b.com"))

    removed = reconciler.remove(0)
    await reconciler.background.drain()

    assert removed.site == "a.com"
    assert [entry.site for entry in reconciler.entries] == ["b.com"]
    assert writer.removed == ["a.com"]
    with pytest.raises(PendingEditError):
        reconciler.remove(5)


@pytest.mark.asyncio
async def test_background_failure_does_not_roll_back() -> None:
    writer = FakeWriter(fail=True)
    reconciler = _reconciler(writer=writer)
    reconciler.reconcile(entries("a.com"))

    reconciler.add("b.com")
    await reconciler.background.drain()

    assert [entry.site for entry in reconciler.entries] == ["a.com", "b.com"]
    assert reconciler.background.failures == 1
    assert reconciler.store.load().keys() == {"a.com", "b.com"}


@pytest.mark.asyncio
async def test_add_before_first_reconcile_keeps_queued_sites() -> None:
    storage = MemoryStorage()
    clock = FakeClock()
    writer = FakeWriter()
    earlier = _reconciler(storage, clock)
    earlier.store.save(entries("a.com"), modified_at=clock.now - 600.0)

    fresh = _reconciler(storage, clock, writer)
    fresh.add("b.com")
    outcome = fresh.reconcile(entries("a.com"))
    await fresh.background.drain()

    assert fresh.store.load().keys() == {"a.com", "b.com"}
    assert [entry.site for entry in outcome.entries] == ["a.com", "b.com"]
    assert writer.removed == []
    assert writer.added == [["b.com"], ["b.com"]]


def test_entries_read_durable_copy_until_first_reconcile() -> None:
    reconciler = _reconciler()
    reconciler.store.save(entries("a.com"), modified_at=0.0)

    assert [entry.site for entry in reconciler.entries] == ["a.com"]


def test_empty_shared_background_is_kept() -> None:
    shared = BackgroundTasks()
    store = PendingEditStore(MemoryStorage(), "user@example.com")

    reconciler = PendingEditReconciler(store, FakeWriter(), background=shared)

    assert len(shared) == 0
    assert reconciler.background is shared

"""Durable storage for pending edits and the payment handoff record."""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from pydantic import ValidationError

from billing_client.models import PaymentHandoff, PendingEditRecord, PendingSiteEntry

LOGGER = logging.getLogger("billing_sync.pending_store")


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None:
        """Return the stored value or ``None``."""

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``."""

    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""


class MemoryStorage:
    """In-process storage; survives engine rebuilds but not the process."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStorage:
    """Key-value storage persisted to a single JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get(self, key: str) -> str | None:
        value = self._read().get(key)
        return None if value is None else str(value)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring unreadable storage file %s: %s", self.path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self.path)


class PendingEditStore:
    """
    Namespaced, per-principal view over a ``KeyValueStorage``.

    The serialized record and its last-modified timestamp live under two keys that
    are always written together and cleared together.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        email: str,
        *,
        namespace: str = "billing_sync",
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self.storage = storage
        self.email = email
        self.namespace = namespace
        self._time_provider = time_provider or time.time

    @property
    def record_key(self) -> str:
        return f"{self.namespace}:pending:{self.email}"

    @property
    def modified_key(self) -> str:
        return f"{self.namespace}:pending_modified:{self.email}"

    @property
    def handoff_key(self) -> str:
        return f"{self.namespace}:handoff:{self.email}"

    def load(self) -> PendingEditRecord:
        raw_record = self.storage.get(self.record_key)
        if raw_record is None:
            return PendingEditRecord()
        try:
            payload = json.loads(raw_record)
            entries = tuple(
                PendingSiteEntry.model_validate(item)
                for item in payload.get("entries", [])
            )
            modified_at = float(self.storage.get(self.modified_key) or 0.0)
        except (json.JSONDecodeError, ValidationError, AttributeError, ValueError) as exc:
            LOGGER.warning("Discarding corrupt pending-edit record for %s: %s", self.email, exc)
            self.clear()
            return PendingEditRecord()
        return PendingEditRecord(entries=entries, last_modified_at=modified_at)

    def save(
        self,
        entries: Iterable[PendingSiteEntry],
        modified_at: float | None = None,
    ) -> PendingEditRecord:
        record = PendingEditRecord(
            entries=tuple(entries),
            last_modified_at=self._time_provider() if modified_at is None else modified_at,
        )
        payload = {"entries": [entry.to_payload() for entry in record.entries]}
        self.storage.set(self.record_key, json.dumps(payload, sort_keys=True))
        self.storage.set(self.modified_key, repr(record.last_modified_at))
        return record

    def clear(self) -> None:
        self.storage.delete(self.record_key)
        self.storage.delete(self.modified_key)

    def save_handoff(self, entries: Iterable[PendingSiteEntry]) -> PaymentHandoff:
        handoff = PaymentHandoff(entries=tuple(entries), created_at=self._time_provider())
        payload = {
            "entries": [entry.to_payload() for entry in handoff.entries],
            "created_at": handoff.created_at,
        }
        self.storage.set(self.handoff_key, json.dumps(payload, sort_keys=True))
        return handoff

    def load_handoff(self, ttl: float) -> PaymentHandoff | None:
        raw = self.storage.get(self.handoff_key)
        if raw is None:
            return None
        try:
            handoff = PaymentHandoff.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            LOGGER.warning("Discarding corrupt payment handoff for %s: %s", self.email, exc)
            self.clear_handoff()
            return None
        if handoff.is_expired(self._time_provider(), ttl):
            LOGGER.info("Payment handoff for %s expired; discarding.", self.email)
            self.clear_handoff()
            return None
        return handoff

    def clear_handoff(self) -> None:
        self.storage.delete(self.handoff_key)

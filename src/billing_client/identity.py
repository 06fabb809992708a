"""Identity collaborator boundary.

The identity SDK hands back session objects whose shape varies between SDK versions
(``email`` at the top level, nested under ``data`` or ``data.auth``, sometimes a
private ``_email``). ``normalize_principal`` is the single place that understands
those shapes; everything past this module only sees ``Principal`` or ``None``.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from pydantic import ValidationError

from billing_client.models import Principal

LOGGER = logging.getLogger("billing_sync.identity")

_EMAIL_PATHS: tuple[tuple[str, ...], ...] = (
    ("normalizedEmail",),
    ("email",),
    ("_email",),
    ("data", "email"),
    ("data", "_email"),
    ("data", "auth", "email"),
    ("auth", "email"),
)
_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("id",),
    ("_id",),
    ("memberId",),
    ("data", "id"),
)


class IdentityProvider(Protocol):
    def get_current_session(self) -> Any:
        """Return the raw session object, or ``None`` when signed out."""


def _lookup(raw: Any, path: tuple[str, ...]) -> Any:
    current = raw
    for part in path:
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def _first(raw: Any, paths: tuple[tuple[str, ...], ...]) -> str | None:
    for path in paths:
        value = _lookup(raw, path)
        if value not in (None, ""):
            return str(value)
    return None


def normalize_principal(raw: Any) -> Principal | None:
    """Convert a raw identity-SDK session into a strict ``Principal``."""
    if raw is None:
        return None
    if isinstance(raw, Principal):
        return raw
    email = _first(raw, _EMAIL_PATHS)
    if email is None:
        LOGGER.warning("Identity session has no email address; treating as signed out.")
        return None
    try:
        return Principal(id=_first(raw, _ID_PATHS), email=email)
    except ValidationError as exc:
        LOGGER.warning("Identity session has an invalid email address: %s", exc)
        return None


class SessionIdentity:
    """Adapter over an identity SDK exposing ``get_current_session()``."""

    def __init__(self, provider: IdentityProvider) -> None:
        self._provider = provider

    def current_principal(self) -> Principal | None:
        return normalize_principal(self._provider.get_current_session())

    def current_principal_email(self) -> str | None:
        principal = self.current_principal()
        return principal.email if principal else None


class StaticIdentity:
    """Identity fixed at construction time (CLI runs, tests)."""

    def __init__(self, email: str | None, principal_id: str | None = None) -> None:
        self._principal = (
            normalize_principal({"email": email, "id": principal_id}) if email else None
        )

    def current_principal(self) -> Principal | None:
        return self._principal

    def current_principal_email(self) -> str | None:
        return self._principal.email if self._principal else None

"""Poll the backend after a checkout redirect until the pending list settles."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence
from urllib.parse import parse_qs, urlsplit

from billing_client.models import PendingSiteEntry

if TYPE_CHECKING:
    from engine.sync_engine import SyncEngine

LOGGER = logging.getLogger("billing_sync.poller")

DEFAULT_POLL_DELAYS = (3.0, 5.0, 8.0)


@dataclass(frozen=True)
class PollOutcome:
    converged: bool
    passes_run: int
    failures: int
    placeholder: tuple[PendingSiteEntry, ...] = ()


def is_payment_return(url_or_query: str | None) -> bool:
    """Return True when the URL (or bare query string) marks a checkout return."""
    if not url_or_query:
        return False
    text = url_or_query.strip()
    if "?" in text or "://" in text:
        query = urlsplit(text).query
    else:
        query = text.lstrip("?")
    params = parse_qs(query)
    if any(value.strip().lower() == "success" for value in params.get("payment", [])):
        return True
    return any(value.strip() for value in params.get("session_id", []))


class ConvergencePoller:
    """
    Run a fixed set of delayed refresh passes after a payment redirect.

    Each pass is scheduled relative to the start of ``run`` and bypasses the
    cache. The first pass that sees an empty backend pending list clears the
    processing placeholder and the handoff record; passes that wake up after that
    are skipped. Failed passes are counted and otherwise ignored.
    """

    def __init__(
        self,
        engine: "SyncEngine",
        delays: Sequence[float] = DEFAULT_POLL_DELAYS,
        *,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.engine = engine
        self.delays = tuple(delays)
        self._sleep = sleep or asyncio.sleep
        self._converged = False
        self._passes_run = 0
        self._failures = 0

    async def run(self) -> PollOutcome:
        handoff = self.engine.load_handoff()
        placeholder = handoff.entries if handoff is not None else ()
        if placeholder:
            self.engine.show_processing(placeholder)
        else:
            LOGGER.info("Payment return without a handoff record; polling anyway.")
        self.engine.invalidate_reads()

        await asyncio.gather(
            *(self._pass(index, delay) for index, delay in enumerate(self.delays, start=1))
        )
        if not self._converged:
            LOGGER.warning(
                "Backend did not converge after %s pass(es); keeping processing placeholder.",
                self._passes_run,
            )
        return PollOutcome(
            converged=self._converged,
            passes_run=self._passes_run,
            failures=self._failures,
            placeholder=placeholder,
        )

    async def _pass(self, index: int, delay: float) -> None:
        await self._sleep(delay)
        if self._converged:
            LOGGER.debug("Skipping poll pass %s; already converged.", index)
            return
        self._passes_run += 1
        try:
            view = await self.engine.refresh(use_cache=False)
        except Exception as exc:
            self._failures += 1
            LOGGER.warning("Poll pass %s failed: %s", index, exc)
            return
        if self._converged or view is None:
            return
        if not view.backend_pending:
            self._converged = True
            LOGGER.info("Backend converged on poll pass %s.", index)
            self.engine.finish_payment()
        else:
            LOGGER.debug(
                "Poll pass %s still sees %s pending site(s).", index, len(view.backend_pending)
            )

"""Refresh policy on top of the fetch pipeline.

SetFetcher.fetch_set makes one attempt; SetRefresher owns retries with
exponential backoff, version checks and the store upsert.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from cardquery.card_store import SetStore
from cardquery.set_fetcher import (
    EmptySet,
    SetFetcher,
    SourceRef,
    Unreachable,
    VersionUnchanged,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0

STATUS_UPDATED = "updated"
STATUS_UNCHANGED = "unchanged"
STATUS_EMPTY = "empty"
STATUS_FAILED = "failed"


@dataclass
class RefreshResult:
    """Outcome of refreshing one set."""

    set_id: str
    status: str
    card_count: int = 0
    attempts: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "set_id": self.set_id,
            "status": self.status,
            "card_count": self.card_count,
            "attempts": self.attempts,
        }
        if self.error:
            result["error"] = self.error
        return result


class SetRefresher:
    """Keeps a SetStore in step with its sources."""

    def __init__(
        self,
        fetcher: SetFetcher,
        store: SetStore,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ):
        """Initialize refresher.

        Args:
            fetcher: Fetch pipeline used for each attempt
            store: Store that receives refreshed sets
            max_retries: Retries after the first attempt for Unreachable sources
            base_delay: Backoff before the first retry, in seconds
            max_delay: Upper bound for any single backoff
        """
        self.fetcher = fetcher
        self.store = store
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def backoff_delay(self, retry: int) -> float:
        """Delay before the given retry (1-based): base, 2*base, 4*base, ..."""
        return min(self.base_delay * 2 ** (retry - 1), self.max_delay)

    async def refresh(self, source: SourceRef) -> RefreshResult:
        """Fetch one set, retrying Unreachable sources, and upsert it.

        The store is left untouched unless a new, non-empty version arrives.
        Cancellation propagates to the caller.

        Args:
            source: Set to refresh

        Returns:
            RefreshResult describing what happened
        """
        last_error: Unreachable | None = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Fetch attempt %d/%d for set %s failed: %s. Retrying in %.1fs...",
                    attempt, self.max_retries + 1, source.set_id, last_error, delay,
                )
                await asyncio.sleep(delay)

            try:
                card_set = await self.fetcher.fetch_set(
                    source, known_version=self.store.get_version(source.set_id)
                )
            except Unreachable as e:
                last_error = e
                continue
            except VersionUnchanged:
                logger.info("Set %s is already current", source.set_id)
                return RefreshResult(
                    set_id=source.set_id,
                    status=STATUS_UNCHANGED,
                    card_count=len(self.store.get_set(source.set_id) or ()),
                    attempts=attempt + 1,
                )
            except EmptySet as e:
                logger.warning("Set %s not updated: %s", source.set_id, e.message)
                return RefreshResult(
                    set_id=source.set_id,
                    status=STATUS_EMPTY,
                    attempts=attempt + 1,
                    error=e.message,
                )

            self.store.upsert_set(card_set)
            if attempt > 0:
                logger.info(
                    "Fetch for set %s succeeded on attempt %d/%d",
                    source.set_id, attempt + 1, self.max_retries + 1,
                )
            return RefreshResult(
                set_id=source.set_id,
                status=STATUS_UPDATED,
                card_count=len(card_set),
                attempts=attempt + 1,
            )

        logger.error(
            "Giving up on set %s after %d attempts: %s",
            source.set_id, self.max_retries + 1, last_error,
        )
        return RefreshResult(
            set_id=source.set_id,
            status=STATUS_FAILED,
            attempts=self.max_retries + 1,
            error=str(last_error),
        )

    async def refresh_all(self, sources: Iterable[SourceRef]) -> list[RefreshResult]:
        """Refresh several sets concurrently.

        Returns:
            One result per source, in source order
        """
        return list(await asyncio.gather(*(self.refresh(s) for s in sources)))

    async def run_periodic(
        self,
        sources: list[SourceRef],
        interval: float,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Refresh every interval seconds until stop_event is set or cancelled.

        Args:
            sources: Sets to keep fresh
            interval: Seconds between the end of one round and the next
            stop_event: Optional event that ends the loop
        """
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            results = await self.refresh_all(sources)
            updated = sum(1 for r in results if r.status == STATUS_UPDATED)
            logger.info("Refresh round done: %d/%d sets updated", updated, len(results))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

"""In-memory set store with copy-on-write snapshots.

Sets are replaced wholesale. Every upsert builds a new immutable snapshot
(sets plus secondary index) and publishes it with a single reference
assignment, so readers never lock and never see a half-updated set.
"""

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

from cardquery.card_model import Card
from cardquery.fuzzy import normalize_text

logger = logging.getLogger(__name__)

# Attributes covered by the secondary index
INDEXED_ATTRIBUTES = ("name", "tags", "rarity")

# (set_id, position within the set)
CardKey = tuple[str, int]


@dataclass(frozen=True)
class CardSet:
    """A named collection of cards fetched from one source."""

    set_id: str
    name: str
    source_version: str
    cards: tuple[Card, ...] = ()

    def __post_init__(self) -> None:
        if not self.set_id:
            raise ValueError("Set id must be non-empty")
        if not isinstance(self.cards, tuple):
            object.__setattr__(self, "cards", tuple(self.cards))
        for card in self.cards:
            if card.set_id != self.set_id:
                raise ValueError(
                    f"Card {card.name!r} belongs to set {card.set_id!r}, "
                    f"not {self.set_id!r}"
                )

    def __len__(self) -> int:
        return len(self.cards)


@dataclass(frozen=True)
class Scope:
    """Restricts a query to one set, a list of sets, or every set.

    set_ids of None means all sets.
    """

    set_ids: tuple[str, ...] | None = None

    @classmethod
    def all(cls) -> "Scope":
        return cls(None)

    @classmethod
    def one(cls, set_id: str) -> "Scope":
        return cls((set_id,))

    @classmethod
    def of(cls, set_ids: Iterable[str]) -> "Scope":
        return cls(tuple(set_ids))

    @classmethod
    def parse(cls, set_ids: list[str] | None) -> "Scope":
        """Build a scope from caller input; missing or empty means all sets."""
        if not set_ids:
            return cls.all()
        return cls.of(set_ids)

    @property
    def is_all(self) -> bool:
        return self.set_ids is None


@dataclass
class StoreStats:
    """Counts for observability."""

    set_count: int
    card_count: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "set_count": self.set_count,
            "card_count": self.card_count,
        }


def _index_values(card: Card, attribute: str) -> Iterable[str]:
    if attribute == "name":
        return (normalize_text(card.name),)
    if attribute == "tags":
        return {normalize_text(tag) for tag in card.tags}
    if attribute == "rarity":
        return (card.rarity.value,)
    raise ValueError(f"Attribute is not indexed: {attribute}")


def _build_index(
    sets: Mapping[str, CardSet],
) -> dict[str, dict[str, tuple[CardKey, ...]]]:
    """Build attribute -> normalized value -> card keys over all sets."""
    building: dict[str, dict[str, list[CardKey]]] = {
        attribute: {} for attribute in INDEXED_ATTRIBUTES
    }
    for set_id in sorted(sets):
        for position, card in enumerate(sets[set_id].cards):
            for attribute in INDEXED_ATTRIBUTES:
                entries = building[attribute]
                for value in _index_values(card, attribute):
                    entries.setdefault(value, []).append((set_id, position))

    return {
        attribute: {value: tuple(keys) for value, keys in entries.items()}
        for attribute, entries in building.items()
    }


@dataclass(frozen=True)
class StoreSnapshot:
    """Immutable view of the store at one point in time."""

    sets: Mapping[str, CardSet] = field(default_factory=dict)
    index: Mapping[str, Mapping[str, tuple[CardKey, ...]]] = field(default_factory=dict)

    def set_ids(self, scope: Scope) -> list[str]:
        """Set ids covered by scope, in iteration order."""
        if scope.is_all:
            return sorted(self.sets)
        seen: set[str] = set()
        ordered = []
        for set_id in scope.set_ids:
            if set_id in self.sets and set_id not in seen:
                seen.add(set_id)
                ordered.append(set_id)
        return ordered

    def iter_cards(self, scope: Scope) -> Iterator[Card]:
        """Lazily yield the cards covered by scope."""
        for set_id in self.set_ids(scope):
            yield from self.sets[set_id].cards

    def lookup(self, attribute: str, value: str, scope: Scope) -> list[Card]:
        """Cards whose indexed attribute equals value, restricted to scope.

        Args:
            attribute: One of INDEXED_ATTRIBUTES
            value: Value to look up (normalized before lookup)
            scope: Sets to restrict the result to

        Returns:
            Matching cards in iteration order
        """
        if attribute not in INDEXED_ATTRIBUTES:
            raise ValueError(f"Attribute is not indexed: {attribute}")
        keys = self.index.get(attribute, {}).get(normalize_text(value), ())
        allowed = self.set_ids(scope)
        order = {set_id: i for i, set_id in enumerate(allowed)}
        hits = sorted(
            (key for key in keys if key[0] in order),
            key=lambda key: (order[key[0]], key[1]),
        )
        return [self.sets[set_id].cards[position] for set_id, position in hits]

    @property
    def card_count(self) -> int:
        return sum(len(s) for s in self.sets.values())


class SetStore:
    """Concurrent-read, serialized-write store of card sets."""

    def __init__(self, sets: Iterable[CardSet] = ()):
        """Initialize set store.

        Args:
            sets: Optional sets to load before the store is shared
        """
        self._write_lock = threading.Lock()
        self._snapshot = StoreSnapshot(
            sets=MappingProxyType({}),
            index=MappingProxyType(_build_index({})),
        )
        for card_set in sets:
            self.upsert_set(card_set)

    def __enter__(self) -> "SetStore":
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager and drop all sets."""
        self.clear()

    def snapshot(self) -> StoreSnapshot:
        """Current snapshot; stays valid and unchanged after later upserts."""
        return self._snapshot

    def _publish(self, sets: dict[str, CardSet]) -> None:
        # Caller holds the write lock. One assignment makes the new view visible.
        self._snapshot = StoreSnapshot(
            sets=MappingProxyType(sets),
            index=MappingProxyType(_build_index(sets)),
        )

    def upsert_set(self, card_set: CardSet) -> None:
        """Insert or replace a set in one atomic step.

        Readers that already hold a snapshot keep seeing the old set; new
        readers see the new set in its entirety.

        Args:
            card_set: Set to insert; replaces any set with the same set_id
        """
        with self._write_lock:
            sets = dict(self._snapshot.sets)
            previous = sets.get(card_set.set_id)
            sets[card_set.set_id] = card_set
            self._publish(sets)

        if previous is None:
            logger.info(
                "Inserted set %s (%d cards, version %s)",
                card_set.set_id, len(card_set), card_set.source_version,
            )
        else:
            logger.info(
                "Replaced set %s: %d -> %d cards, version %s -> %s",
                card_set.set_id, len(previous), len(card_set),
                previous.source_version, card_set.source_version,
            )

    def remove_set(self, set_id: str) -> bool:
        """Remove a set.

        Returns:
            True if the set existed
        """
        with self._write_lock:
            if set_id not in self._snapshot.sets:
                return False
            sets = dict(self._snapshot.sets)
            del sets[set_id]
            self._publish(sets)
        logger.info("Removed set %s", set_id)
        return True

    def clear(self) -> None:
        """Drop every set."""
        with self._write_lock:
            self._publish({})

    def get_set(self, set_id: str) -> CardSet | None:
        return self._snapshot.sets.get(set_id)

    def get_version(self, set_id: str) -> str | None:
        """Source version of a stored set, or None if the set is not loaded."""
        card_set = self._snapshot.sets.get(set_id)
        return card_set.source_version if card_set else None

    def get_card_iterator(self, scope: Scope | None = None) -> Iterator[Card]:
        """Lazy sequence of the cards in scope.

        The snapshot is captured when this method is called, not when the
        iterator is first advanced.

        Args:
            scope: Sets to iterate (defaults to all sets)

        Returns:
            Iterator over cards, one pass only
        """
        snapshot = self._snapshot
        return snapshot.iter_cards(scope or Scope.all())

    def get_cards_by_name(self, name: str, scope: Scope | None = None) -> list[Card]:
        """Get cards by exact name (case- and diacritic-insensitive)."""
        return self._snapshot.lookup("name", name, scope or Scope.all())

    def cards_with_tag(self, tag: str, scope: Scope | None = None) -> list[Card]:
        """Get cards carrying a tag (case- and diacritic-insensitive)."""
        return self._snapshot.lookup("tags", tag, scope or Scope.all())

    def stats(self) -> StoreStats:
        """Get set and card counts."""
        snapshot = self._snapshot
        return StoreStats(set_count=len(snapshot.sets), card_count=snapshot.card_count)

    def versions(self) -> dict[str, str]:
        """Map of set_id -> source_version for every stored set."""
        return {s.set_id: s.source_version for s in self._snapshot.sets.values()}

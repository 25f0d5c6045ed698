"""Shared test fixtures for cardquery."""

from decimal import Decimal
from typing import Any

import pytest

from cardquery.card_model import Card, Rarity
from cardquery.card_store import CardSet, SetStore


@pytest.fixture
def sample_records() -> list[dict[str, Any]]:
    """Raw records as they appear in a set file.

    Covers the layouts the normalizer accepts: explicit cost, component
    costs (blood/bone/energy plus mox gems), sigils and trait flags, the
    "rare" boolean and Decimal numbers as produced by ijson.
    """
    return [
        {
            "name": "Stoat",
            "blood_cost": Decimal("1"),
            "attack": Decimal("1"),
            "health": Decimal("3"),
            "description": "A common stoat.",
            "pixport_url": "https://example.com/stoat.png",
        },
        {
            "name": "Raven",
            "blood_cost": 2,
            "attack": 2,
            "health": 3,
            "sigils": ["Airborne"],
            "rarity": "uncommon",
        },
        {
            "name": "Adder",
            "blood_cost": 2,
            "attack": 1,
            "health": 1,
            "sigils": ["Touch of Death"],
        },
        {
            "name": "Emerald Mox",
            "mox_cost": ["Green", "Orange"],
            "attack": 0,
            "health": 1,
            "conduit": True,
            "rare": True,
        },
        {
            "name": "Boulder",
            "attack": 0,
            "health": 5,
            "nosac": True,
            "rarity": "s",
        },
    ]


@pytest.fixture
def sample_cards() -> list[Card]:
    """Normalized cards for the "base" set."""
    return [
        Card(
            name="Stoat", set_id="base", cost=1, attack=1, health=3,
            text="A common stoat.", rarity=Rarity.COMMON,
        ),
        Card(name="Wolf", set_id="base", cost=2, attack=3, health=2),
        Card(
            name="Raven", set_id="base", cost=2, attack=2, health=3,
            tags=frozenset({"Airborne"}), rarity=Rarity.UNCOMMON,
        ),
        Card(
            name="Grizzly", set_id="base", cost=3, attack=4, health=6,
            tags=frozenset({"Mighty Leap"}), rarity=Rarity.RARE,
        ),
        Card(
            name="Mantis God", set_id="base", cost=1, attack=1, health=1,
            tags=frozenset({"Trifurcated Strike"}), rarity=Rarity.RARE,
            text="Strikes each opposing space to the left, right and center of it.",
        ),
        Card(
            name="Boulder", set_id="base", attack=0, health=5,
            tags=frozenset({"terrain"}), rarity=Rarity.SIDE,
        ),
        Card(
            name="Ouroboros", set_id="base", cost=2, attack=1, health=1,
            tags=frozenset({"Unkillable"}), rarity=Rarity.UNIQUE,
            text="Gains 1 Power and Health each time it dies.",
        ),
    ]


@pytest.fixture
def beast_cards() -> list[Card]:
    """Cards for a second set; Stoat appears here too."""
    return [
        Card(name="Stoat", set_id="beast", cost=1, attack=1, health=2),
        Card(
            name="Séance Moth", set_id="beast", cost=1, attack=0, health=1,
            tags=frozenset({"Airborne"}),
        ),
        Card(
            name="Wyrm", set_id="beast", cost=2, attack=3, health=3,
            tags=frozenset({"rare"}), rarity=Rarity.RARE,
        ),
    ]


@pytest.fixture
def base_set(sample_cards: list[Card]) -> CardSet:
    """The "base" set at version v1."""
    return CardSet(set_id="base", name="Base Set", source_version="v1", cards=tuple(sample_cards))


@pytest.fixture
def beast_set(beast_cards: list[Card]) -> CardSet:
    """The "beast" set at version v1."""
    return CardSet(set_id="beast", name="Beasts", source_version="v1", cards=tuple(beast_cards))


@pytest.fixture
def store(base_set: CardSet, beast_set: CardSet) -> SetStore:
    """Store holding both sample sets."""
    return SetStore([base_set, beast_set])


@pytest.fixture
def set_document(sample_records: list[dict[str, Any]]) -> dict[str, Any]:
    """A set file as served by a source: records under "cards"."""
    records = []
    for record in sample_records:
        # Decimal is not JSON serializable; ijson restores it on the way back
        records.append({k: int(v) if isinstance(v, Decimal) else v for k, v in record.items()})
    return {"name": "Inscryption Sample", "cards": records}

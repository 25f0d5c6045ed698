"""Card model and attribute schema.

Cards are immutable once normalized. Queries never touch card attributes
directly: they go through get_field, which returns a FieldValue tagged with
the attribute's FieldType so the evaluator can treat every field uniformly.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Rarity(str, Enum):
    """Rarity tiers a card can belong to."""

    SIDE = "side"
    COMMON = "common"
    UNCOMMON = "uncommon"
    RARE = "rare"
    UNIQUE = "unique"

    @classmethod
    def parse(cls, value: str) -> "Rarity":
        """Parse a rarity name or its one-letter alias.

        Args:
            value: Rarity string (case-insensitive), e.g. "rare" or "r"

        Returns:
            Matching Rarity

        Raises:
            ValueError: If the value is not a known rarity
        """
        key = value.strip().lower()
        rarity = RARITY_MAP.get(key)
        if rarity is None:
            valid = ", ".join(r.value for r in cls)
            raise ValueError(f"Unknown rarity: {value}. Valid rarities are: {valid}")
        return rarity


# Rarity short to full mapping
RARITY_MAP = {
    "s": Rarity.SIDE,
    "c": Rarity.COMMON,
    "u": Rarity.UNCOMMON,
    "r": Rarity.RARE,
    "n": Rarity.UNIQUE,
    **{r.value: r for r in Rarity},
}


class Temple(str, Enum):
    """Temples (archetypes) a card can belong to."""

    BEAST = "beast"
    UNDEAD = "undead"
    TECH = "tech"
    MAGICK = "magick"
    FOOL = "fool"
    ARTISTRY = "artistry"

    @classmethod
    def parse(cls, value: str) -> "Temple":
        """Parse a temple name or one of its aliases ("b", "technology", ...).

        Raises:
            ValueError: If the value is not a known temple
        """
        temple = TEMPLE_MAP.get(value.strip().lower())
        if temple is None:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown temple: {value}. Valid temples are: {valid}")
        return temple


TEMPLE_MAP = {
    "b": Temple.BEAST,
    "u": Temple.UNDEAD,
    "t": Temple.TECH,
    "technology": Temple.TECH,
    "m": Temple.MAGICK,
    "f": Temple.FOOL,
    "a": Temple.ARTISTRY,
    **{t.value: t for t in Temple},
}

# Resource a card is paid with, keyed by its one-letter query alias
COST_TYPES = {
    "b": "blood",
    "o": "bone",
    "e": "energy",
    "m": "mox",
}

# Mox gem letter -> gem colour
MOX_COLOURS = {
    "r": "orange",
    "g": "green",
    "u": "blue",
    "y": "gray",
}

# Temple implied by each resource when a record names no temple
COST_TEMPLES = {
    "blood": Temple.BEAST,
    "bone": Temple.UNDEAD,
    "energy": Temple.TECH,
    "mox": Temple.MAGICK,
}


class FieldType(str, Enum):
    """Kinds of value a queryable attribute holds."""

    NUMBER = "number"
    TEXT = "text"
    TAGSET = "tagset"
    RARITY = "rarity"


# Canonical attribute name -> type
FIELD_SCHEMA: dict[str, FieldType] = {
    "name": FieldType.TEXT,
    "set": FieldType.TEXT,
    "cost": FieldType.NUMBER,
    "attack": FieldType.NUMBER,
    "health": FieldType.NUMBER,
    "tags": FieldType.TAGSET,
    "text": FieldType.TEXT,
    "rarity": FieldType.RARITY,
    "image": FieldType.TEXT,
    "temple": FieldType.TAGSET,
    "tribe": FieldType.TAGSET,
    "spatk": FieldType.TEXT,
    "blood": FieldType.NUMBER,
    "bone": FieldType.NUMBER,
    "energy": FieldType.NUMBER,
    "mox": FieldType.TAGSET,
    "costtype": FieldType.TAGSET,
}

# Query alias -> canonical attribute name
FIELD_ALIASES: dict[str, str] = {
    "n": "name",
    "s": "set",
    "e": "set",
    "set_id": "set",
    "edition": "set",
    "c": "cost",
    "cmc": "cost",
    "a": "attack",
    "atk": "attack",
    "power": "attack",
    "pow": "attack",
    "h": "health",
    "hp": "health",
    "toughness": "health",
    "tou": "health",
    "t": "tags",
    "tag": "tags",
    "sigil": "tags",
    "sigils": "tags",
    "trait": "tags",
    "traits": "tags",
    "tr": "tags",
    "keyword": "tags",
    "d": "text",
    "o": "text",
    "desc": "text",
    "description": "text",
    "oracle": "text",
    "r": "rarity",
    "img": "image",
    "image_ref": "image",
    "portrait": "image",
    "tp": "temple",
    "temples": "temple",
    "tb": "tribe",
    "tribes": "tribe",
    "sp": "spatk",
    "sp_atk": "spatk",
    "atkspecial": "spatk",
    "blood_cost": "blood",
    "bones": "bone",
    "bone_cost": "bone",
    "energy_cost": "energy",
    "gem": "mox",
    "gems": "mox",
    "mox_cost": "mox",
    "ct": "costtype",
    "cost_type": "costtype",
}


class UnknownAttributeError(KeyError):
    """Raised when an attribute name is not part of the card schema."""

    def __init__(self, field_name: str):
        super().__init__(field_name)
        self.field_name = field_name

    def __str__(self) -> str:
        return f"Unknown card attribute: {self.field_name}"


def resolve_field(name: str, schema: dict[str, FieldType] | None = None) -> str:
    """Resolve a query field name or alias to its canonical attribute name.

    Args:
        name: Field name as written in a query (case-insensitive)
        schema: Attribute schema to validate against (defaults to FIELD_SCHEMA)

    Returns:
        Canonical attribute name

    Raises:
        UnknownAttributeError: If the name matches no attribute in the schema
    """
    schema = FIELD_SCHEMA if schema is None else schema
    key = name.lower()
    canonical = FIELD_ALIASES.get(key, key)
    if canonical not in schema:
        raise UnknownAttributeError(name)
    return canonical


@dataclass(frozen=True)
class Card:
    """A single card as normalized from a fetch source."""

    name: str
    set_id: str
    cost: int | float | None = None
    attack: int | float | None = None
    health: int | float | None = None
    tags: frozenset[str] = field(default_factory=frozenset)
    text: str = ""
    rarity: Rarity = Rarity.COMMON
    image_ref: str = ""
    temples: frozenset[str] = field(default_factory=frozenset)
    tribes: frozenset[str] = field(default_factory=frozenset)
    sp_atk: str = ""
    blood: int | float | None = None
    bone: int | float | None = None
    energy: int | float | None = None
    mox: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Card name must be non-empty")
        if not self.set_id:
            raise ValueError(f"Card {self.name!r} has an empty set_id")
        for stat in ("cost", "attack", "health", "blood", "bone", "energy"):
            value = getattr(self, stat)
            if value is not None and value < 0:
                raise ValueError(f"Card {self.name!r} has negative {stat}: {value}")
        for name in ("tags", "temples", "tribes", "mox"):
            value = getattr(self, name)
            if isinstance(value, str):
                raise TypeError(f"Card {self.name!r} {name} must be a collection, got a string")
            if not isinstance(value, frozenset):
                object.__setattr__(self, name, frozenset(value))

    @property
    def key(self) -> tuple[str, str]:
        """Identity used for deduplicating query results."""
        return (self.set_id, self.name)

    @property
    def cost_types(self) -> frozenset[str]:
        """Resources the card is paid with ("blood", "bone", "energy", "mox")."""
        types = {name for name in ("blood", "bone", "energy") if getattr(self, name)}
        if self.mox:
            types.add("mox")
        return frozenset(types)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "set": self.set_id,
            "cost": self.cost,
            "attack": self.attack,
            "health": self.health,
            "tags": sorted(self.tags),
            "text": self.text,
            "rarity": self.rarity.value,
            "image": self.image_ref,
            "temples": sorted(self.temples),
            "tribes": sorted(self.tribes),
            "sp_atk": self.sp_atk,
            "blood": self.blood,
            "bone": self.bone,
            "energy": self.energy,
            "mox": sorted(self.mox),
        }


@dataclass(frozen=True)
class FieldValue:
    """A card attribute value tagged with its type."""

    kind: FieldType
    value: Any


# Schema attribute -> Card attribute, where the names differ
_CARD_ATTRIBUTES = {
    "set": "set_id",
    "image": "image_ref",
    "temple": "temples",
    "tribe": "tribes",
    "spatk": "sp_atk",
    "costtype": "cost_types",
}


def _card_attribute(card: Card, field_name: str) -> Any:
    return getattr(card, _CARD_ATTRIBUTES.get(field_name, field_name))


def get_field(card: Card, field_name: str) -> FieldValue | None:
    """Read a card attribute through the schema.

    Args:
        card: Card to read from
        field_name: Canonical attribute name

    Returns:
        Tagged value, or None if the card has no such stat

    Raises:
        UnknownAttributeError: If field_name is not a known attribute
    """
    kind = FIELD_SCHEMA.get(field_name)
    if kind is None:
        raise UnknownAttributeError(field_name)

    value = _card_attribute(card, field_name)
    if value is None:
        return None
    return FieldValue(kind=kind, value=value)

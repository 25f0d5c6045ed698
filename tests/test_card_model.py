"""Tests for the card model and attribute schema."""

import pytest

from cardquery.card_model import (
    FIELD_SCHEMA,
    Card,
    FieldType,
    Rarity,
    Temple,
    UnknownAttributeError,
    get_field,
    resolve_field,
)


class TestRarity:
    """Test rarity parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("rare", Rarity.RARE),
        ("R", Rarity.RARE),
        ("n", Rarity.UNIQUE),
        ("s", Rarity.SIDE),
        (" Uncommon ", Rarity.UNCOMMON),
    ])
    def test_parse(self, value: str, expected: Rarity):
        """Should accept full names and one-letter aliases, any case."""
        assert Rarity.parse(value) == expected

    def test_parse_unknown(self):
        """Unknown rarities should be rejected with the valid list."""
        with pytest.raises(ValueError, match="Valid rarities"):
            Rarity.parse("mythic")


class TestTemple:
    """Test temple parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("beast", Temple.BEAST),
        ("B", Temple.BEAST),
        ("u", Temple.UNDEAD),
        ("technology", Temple.TECH),
        ("t", Temple.TECH),
        ("m", Temple.MAGICK),
        ("f", Temple.FOOL),
        (" Artistry ", Temple.ARTISTRY),
    ])
    def test_parse(self, value: str, expected: Temple):
        assert Temple.parse(value) == expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Valid temples"):
            Temple.parse("leshy")


class TestResolveField:
    """Test field name and alias resolution."""

    @pytest.mark.parametrize("alias,canonical", [
        ("cost", "cost"),
        ("c", "cost"),
        ("POWER", "attack"),
        ("hp", "health"),
        ("sigil", "tags"),
        ("d", "text"),
        ("r", "rarity"),
        ("e", "set"),
        ("tp", "temple"),
        ("tb", "tribe"),
        ("tribes", "tribe"),
        ("sp", "spatk"),
        ("atkspecial", "spatk"),
        ("bones", "bone"),
        ("gems", "mox"),
        ("ct", "costtype"),
    ])
    def test_aliases(self, alias: str, canonical: str):
        """Should map aliases to canonical attribute names."""
        assert resolve_field(alias) == canonical

    def test_unknown_field(self):
        """Should raise UnknownAttributeError carrying the field name."""
        with pytest.raises(UnknownAttributeError) as exc_info:
            resolve_field("colour")
        assert exc_info.value.field_name == "colour"

    def test_custom_schema(self):
        """A schema without the attribute should reject it."""
        with pytest.raises(UnknownAttributeError):
            resolve_field("cost", {"name": FieldType.TEXT})


class TestCard:
    """Test card invariants."""

    def test_tags_become_frozenset(self):
        """Lists of tags should be stored as a frozenset."""
        card = Card(name="Raven", set_id="base", tags=["Airborne"])
        assert card.tags == frozenset({"Airborne"})

    def test_empty_name_rejected(self):
        with pytest.raises(ValueError):
            Card(name="", set_id="base")

    def test_empty_set_rejected(self):
        with pytest.raises(ValueError):
            Card(name="Stoat", set_id="")

    def test_negative_stat_rejected(self):
        """Stats must be non-negative when present."""
        with pytest.raises(ValueError, match="negative health"):
            Card(name="Stoat", set_id="base", health=-1)

    def test_string_tags_rejected(self):
        """A bare string would silently become a set of characters."""
        with pytest.raises(TypeError):
            Card(name="Raven", set_id="base", tags="Airborne")

    def test_negative_component_cost_rejected(self):
        with pytest.raises(ValueError, match="negative bone"):
            Card(name="Skeleton", set_id="base", bone=-1)

    def test_key(self):
        card = Card(name="Stoat", set_id="base")
        assert card.key == ("base", "Stoat")

    def test_cost_types(self):
        """Only resources with a non-zero amount count as cost types."""
        card = Card(name="Mole Man", set_id="base", blood=1, bone=0, mox=["green"])
        assert card.cost_types == frozenset({"blood", "mox"})
        assert Card(name="Boulder", set_id="base").cost_types == frozenset()

    def test_to_dict(self, sample_cards: list[Card]):
        """Should serialize with sorted tags and rarity value."""
        raven = sample_cards[2]
        data = raven.to_dict()

        assert data["name"] == "Raven"
        assert data["set"] == "base"
        assert data["tags"] == ["Airborne"]
        assert data["rarity"] == "uncommon"
        assert data["cost"] == 2
        assert data["temples"] == []
        assert data["blood"] is None

    def test_to_dict_game_attributes(self):
        card = Card(
            name="Amalgam", set_id="imf", blood=2, mox=["orange", "blue"],
            temples=["beast", "magick"], tribes=["canine", "avian"], sp_atk="mirror",
        )
        data = card.to_dict()

        assert data["temples"] == ["beast", "magick"]
        assert data["tribes"] == ["avian", "canine"]
        assert data["sp_atk"] == "mirror"
        assert data["blood"] == 2
        assert data["mox"] == ["blue", "orange"]


class TestGetField:
    """Test the tagged attribute accessor."""

    def test_every_schema_field_readable(self, sample_cards: list[Card]):
        """Every attribute in the schema should be readable from a card."""
        stoat = sample_cards[0]
        for name in FIELD_SCHEMA:
            value = get_field(stoat, name)
            assert value is None or value.kind == FIELD_SCHEMA[name]

    def test_values(self, sample_cards: list[Card]):
        stoat = sample_cards[0]

        assert get_field(stoat, "cost").value == 1
        assert get_field(stoat, "set").value == "base"
        assert get_field(stoat, "rarity").value == Rarity.COMMON
        assert get_field(stoat, "tags").kind == FieldType.TAGSET

    def test_absent_stat_is_none(self, sample_cards: list[Card]):
        """A card without a cost should have no cost value."""
        boulder = sample_cards[5]
        assert get_field(boulder, "cost") is None

    def test_renamed_attributes(self):
        """Schema names that differ from the Card attribute should still resolve."""
        card = Card(
            name="Amalgam", set_id="imf", blood=2, temples=["beast"],
            tribes=["canine"], sp_atk="mirror",
        )

        assert get_field(card, "temple").value == frozenset({"beast"})
        assert get_field(card, "tribe").value == frozenset({"canine"})
        assert get_field(card, "spatk").value == "mirror"
        assert get_field(card, "costtype").value == frozenset({"blood"})
        assert get_field(card, "bone") is None

    def test_unknown_attribute(self, sample_cards: list[Card]):
        with pytest.raises(UnknownAttributeError):
            get_field(sample_cards[0], "mana")

"""Evaluate filter expression trees against cards.

Each card is matched against the tree and tagged with a relevance
category: EXACT when every term matched on exact field semantics, FUZZY
when at least one bare term only matched approximately. Results are
ordered exact-first, then by name, and deduplicated by (set_id, name).
"""

import operator as op
from enum import IntEnum
from typing import Any, Callable, Iterable

from cardquery.card_model import Card, FieldType, get_field
from cardquery.fuzzy import normalize_text, similarity, word_windows
from cardquery.query_parser import (
    FUZZY_FIELD,
    And,
    Comparison,
    FilterExpression,
    FuzzyText,
    Not,
    Or,
)


# Minimum normalized Levenshtein similarity for a bare term to match
DEFAULT_FUZZY_THRESHOLD = 0.7

NUMERIC_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ":": op.eq,
    "=": op.eq,
    "!=": op.ne,
    "<": op.lt,
    "<=": op.le,
    ">": op.gt,
    ">=": op.ge,
}


class MatchKind(IntEnum):
    """Relevance category; lower sorts first."""

    EXACT = 0
    FUZZY = 1


def _compare_text(operator: str, actual: str, expected: str) -> bool:
    actual = normalize_text(actual)
    expected = normalize_text(expected)
    if operator == ":":
        return bool(expected) and expected in actual
    if operator == "=":
        return actual == expected
    if operator == "!=":
        return actual != expected
    raise ValueError(f"Operator {operator!r} does not apply to text")


def _compare_tags(operator: str, tags: frozenset[str], expected: str) -> bool:
    wanted = normalize_text(expected)
    present = any(normalize_text(tag) == wanted for tag in tags)
    if operator in (":", "="):
        return present
    if operator == "!=":
        return not present
    raise ValueError(f"Operator {operator!r} does not apply to tags")


def _compare_rarity(operator: str, actual: Any, expected: Any) -> bool:
    if operator in (":", "="):
        return actual == expected
    if operator == "!=":
        return actual != expected
    raise ValueError(f"Operator {operator!r} does not apply to rarity")


class QueryEvaluator:
    """Runs parsed expressions over a sequence of cards."""

    def __init__(self, fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD):
        """Initialize evaluator.

        Args:
            fuzzy_threshold: Minimum similarity (0-1) for a bare term to
                match a card approximately
        """
        self.fuzzy_threshold = fuzzy_threshold

    def evaluate(self, expr: FilterExpression, cards: Iterable[Card]) -> list[Card]:
        """Filter, order and deduplicate cards.

        Args:
            expr: Parsed filter expression
            cards: Cards to test; consumed once

        Returns:
            Matching cards, exact matches first, then by name

        Raises:
            UnknownAttributeError: If expr names a field the card model
                does not know
        """
        matched: list[tuple[MatchKind, Card]] = []
        for card in cards:
            kind = self.match(expr, card)
            if kind is not None:
                matched.append((kind, card))

        matched.sort(key=lambda m: (m[0], normalize_text(m[1].name), m[1].name, m[1].set_id))

        seen: set[tuple[str, str]] = set()
        results = []
        for _, card in matched:
            if card.key in seen:
                continue
            seen.add(card.key)
            results.append(card)
        return results

    def match(self, expr: FilterExpression, card: Card) -> MatchKind | None:
        """Test one card; returns its relevance category or None."""
        if isinstance(expr, Comparison):
            return MatchKind.EXACT if self._compare(expr, card) else None

        if isinstance(expr, FuzzyText):
            return self._fuzzy(expr, card)

        if isinstance(expr, And):
            worst = MatchKind.EXACT
            for child in expr.children:
                kind = self.match(child, card)
                if kind is None:
                    return None
                worst = max(worst, kind)
            return worst

        if isinstance(expr, Or):
            best = None
            for child in expr.children:
                kind = self.match(child, card)
                if kind == MatchKind.EXACT:
                    return kind
                if kind is not None:
                    best = kind
            return best

        if isinstance(expr, Not):
            return None if self.match(expr.child, card) is not None else MatchKind.EXACT

        raise TypeError(f"Not a filter expression: {expr!r}")

    def _compare(self, expr: Comparison, card: Card) -> bool:
        field_value = get_field(card, expr.field)
        if field_value is None:
            # Absent stats satisfy no comparison, not even !=
            return False

        kind = field_value.kind
        if kind == FieldType.NUMBER:
            return NUMERIC_OPERATORS[expr.operator](field_value.value, expr.value)
        if kind == FieldType.TEXT:
            return _compare_text(expr.operator, field_value.value, str(expr.value))
        if kind == FieldType.TAGSET:
            return _compare_tags(expr.operator, field_value.value, str(expr.value))
        if kind == FieldType.RARITY:
            return _compare_rarity(expr.operator, field_value.value, expr.value)
        raise ValueError(f"Unsupported field type: {kind}")

    def _fuzzy_targets(self, expr: FuzzyText, card: Card) -> list[str]:
        if expr.field == FUZZY_FIELD:
            fields = ("name", "text")
        else:
            fields = (expr.field,)

        targets = []
        for name in fields:
            field_value = get_field(card, name)
            if field_value is not None and field_value.value:
                targets.append(normalize_text(str(field_value.value)))
        return targets

    def _fuzzy(self, expr: FuzzyText, card: Card) -> MatchKind | None:
        pattern = normalize_text(expr.pattern).strip()
        if not pattern:
            # Nothing left after folding (e.g. only combining marks)
            return None
        targets = self._fuzzy_targets(expr, card)

        if any(pattern in target for target in targets):
            return MatchKind.EXACT

        size = len(pattern.split())
        for i, target in enumerate(targets):
            # The first target is the whole name when searching name_or_text
            if i == 0 and similarity(pattern, target) >= self.fuzzy_threshold:
                return MatchKind.FUZZY
            for window in word_windows(target, size):
                if similarity(pattern, window) >= self.fuzzy_threshold:
                    return MatchKind.FUZZY
        return None


def evaluate(
    expr: FilterExpression,
    cards: Iterable[Card],
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> list[Card]:
    """Evaluate expr over cards with a default evaluator."""
    return QueryEvaluator(fuzzy_threshold).evaluate(expr, cards)

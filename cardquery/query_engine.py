"""Query engine facade: parse, snapshot, evaluate."""

import logging
import time
from typing import Iterable

from cardquery.card_model import Card, UnknownAttributeError
from cardquery.card_store import Scope, SetStore, StoreSnapshot
from cardquery.fuzzy import FuzzyMatch, fuzzy_best
from cardquery.query_evaluator import QueryEvaluator
from cardquery.query_parser import (
    And,
    Comparison,
    FilterExpression,
    QueryError,
    QueryParser,
)

logger = logging.getLogger(__name__)

# Minimum similarity for single-card name lookups
DEFAULT_LOOKUP_THRESHOLD = 0.5


class ConsistencyFault(QueryError):
    """Internal invariant violation, e.g. schema drift between parse and evaluate.

    Indicates a bug; never a user error.
    """

    def __init__(self, message: str):
        super().__init__(message, hint="This is an internal error, please report it")


def _required_tag(expr: FilterExpression) -> str | None:
    """A tag every match must carry, if the top level of expr demands one."""
    candidates = expr.children if isinstance(expr, And) else (expr,)
    for child in candidates:
        if (
            isinstance(child, Comparison)
            and child.field == "tags"
            and child.operator in (":", "=")
        ):
            return str(child.value)
    return None


class QueryEngine:
    """Stateless search entry point over an owned SetStore."""

    def __init__(
        self,
        store: SetStore,
        parser: QueryParser | None = None,
        evaluator: QueryEvaluator | None = None,
    ):
        """Initialize query engine.

        Args:
            store: Store to search
            parser: Query parser (defaults to one over the card schema)
            evaluator: Query evaluator (defaults to the standard fuzzy threshold)
        """
        self.store = store
        self.parser = parser or QueryParser()
        self.evaluator = evaluator or QueryEvaluator()

    def parse(self, query_text: str) -> FilterExpression:
        """Parse query text without running it.

        Raises:
            ParseError: If the query is invalid
        """
        return self.parser.parse(query_text)

    def _candidates(
        self, expr: FilterExpression, snapshot: StoreSnapshot, scope: Scope
    ) -> Iterable[Card]:
        tag = _required_tag(expr)
        if tag is None:
            return snapshot.iter_cards(scope)
        cards = snapshot.lookup("tags", tag, scope)
        logger.debug("Tag index narrowed search to %d cards for tag %r", len(cards), tag)
        return cards

    def search(self, query_text: str, scope: Scope | None = None) -> list[Card]:
        """Search the store.

        Args:
            query_text: Query in the filter language
            scope: Sets to search (defaults to all sets)

        Returns:
            Ordered, deduplicated matching cards; empty when nothing matches

        Raises:
            ParseError: If the query is invalid (user-correctable)
            ConsistencyFault: If the parsed tree no longer fits the card model
        """
        scope = scope or Scope.all()
        start_time = time.perf_counter()

        expr = self.parser.parse(query_text)
        snapshot = self.store.snapshot()

        try:
            results = self.evaluator.evaluate(expr, self._candidates(expr, snapshot, scope))
        except UnknownAttributeError as e:
            logger.error("Consistency fault evaluating %r: %s", query_text, e)
            raise ConsistencyFault(
                f"Query {query_text!r} references attribute '{e.field_name}' "
                "that the card model does not provide"
            ) from e

        logger.debug(
            "Query %r matched %d cards in %.1fms",
            query_text, len(results), (time.perf_counter() - start_time) * 1000,
        )
        return results

    def lookup(
        self,
        name: str,
        scope: Scope | None = None,
        threshold: float = DEFAULT_LOOKUP_THRESHOLD,
    ) -> FuzzyMatch[Card] | None:
        """Find the single card whose name best matches name.

        Exact (case- and diacritic-insensitive) name hits win outright;
        otherwise the closest name above threshold is returned.

        Args:
            name: Card name, possibly misspelled
            scope: Sets to search (defaults to all sets)
            threshold: Minimum similarity for a fuzzy hit

        Returns:
            Best match with its rank (1.0 for exact), or None
        """
        scope = scope or Scope.all()
        snapshot = self.store.snapshot()

        exact = snapshot.lookup("name", name, scope)
        if exact:
            return FuzzyMatch(rank=1.0, item=exact[0])

        return fuzzy_best(name, snapshot.iter_cards(scope), threshold, key=lambda c: c.name)

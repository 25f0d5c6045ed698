"""Fuzzy text helpers shared by the evaluator and name lookups."""

import unicodedata
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, TypeVar

T = TypeVar("T")


def normalize_text(value: str) -> str:
    """Casefold and strip diacritics so "Pâté" compares equal to "pate"."""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings (single-row dynamic programming)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    prev = list(range(len(a) + 1))
    for row, cb in enumerate(b, start=1):
        diag = prev[0]
        prev[0] = row
        for col, ca in enumerate(a, start=1):
            above = prev[col]
            prev[col] = min(
                prev[col - 1] + 1,
                above + 1,
                diag + (ca != cb),
            )
            diag = above
    return prev[len(a)]


def similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1]; 1.0 means identical."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein(a, b)) / longest


def word_windows(text: str, size: int) -> Iterable[str]:
    """Yield every run of `size` consecutive words in text."""
    words = text.split()
    if size <= 0 or not words:
        return
    if len(words) <= size:
        yield " ".join(words)
        return
    for start in range(len(words) - size + 1):
        yield " ".join(words[start:start + size])


@dataclass
class FuzzyMatch(Generic[T]):
    """Best fuzzy candidate together with its similarity rank."""

    rank: float
    item: T


def fuzzy_best(
    value: str,
    items: Iterable[T],
    threshold: float,
    key: Callable[[T], str],
) -> FuzzyMatch[T] | None:
    """Return the item whose key is most similar to value.

    Ties go to the later item, and items below threshold are ignored.

    Args:
        value: Text to look for
        items: Candidates
        threshold: Minimum similarity for a candidate to count
        key: Extracts the text to compare from a candidate

    Returns:
        Best match, or None when nothing reaches the threshold
    """
    target = normalize_text(value)
    best: FuzzyMatch[T] | None = None

    for item in items:
        rank = similarity(normalize_text(key(item)), target)
        if rank < threshold:
            continue
        if best is None or rank >= best.rank:
            best = FuzzyMatch(rank=rank, item=item)

    return best

"""Shared utilities for decoding raw card records."""

import io
import math
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, BinaryIO, Iterator

import ijson

# Default ijson prefix: {"cards": [ {...}, {...} ]}
DEFAULT_RECORDS_PREFIX = "cards.item"


def iter_raw_records(
    source: bytes | BinaryIO,
    prefix: str = DEFAULT_RECORDS_PREFIX,
) -> Iterator[Any]:
    """Stream records out of a JSON document.

    Uses ijson to walk the document incrementally, so large set files never
    have to be materialized as one Python object. Numbers come back as
    Decimal; see to_number.

    Args:
        source: Raw JSON bytes or a binary file object
        prefix: ijson prefix of the records (e.g. "cards.item", or "item"
            for a top-level array)

    Yields:
        Each record at prefix, usually a dict

    Raises:
        ijson.JSONError: If the document is malformed or truncated
    """
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)
    yield from ijson.items(source, prefix)


def read_records_file(
    json_file: Path,
    prefix: str = DEFAULT_RECORDS_PREFIX,
) -> list[Any]:
    """Read every record from a local JSON file.

    Args:
        json_file: Path to the JSON file containing card records
        prefix: ijson prefix of the records

    Returns:
        List of raw records

    Raises:
        FileNotFoundError: If json_file does not exist
        ijson.JSONError: If the file is malformed
    """
    with open(json_file, "rb") as f:
        return list(iter_raw_records(f, prefix))


def to_number(value: Any) -> int | float:
    """Convert a JSON number (Decimal from ijson, int, float or numeric str).

    Integral values come back as int.

    Raises:
        ValueError: If value is not a finite number
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, str):
        try:
            value = Decimal(value.strip())
        except InvalidOperation as e:
            raise ValueError(f"Not a number: {value!r}") from e
    if isinstance(value, (int, float, Decimal)):
        if not math.isfinite(value):
            raise ValueError(f"Not a number: {value}")
        if isinstance(value, int):
            return value
        return int(value) if value == int(value) else float(value)
    raise ValueError(f"Not a number: {value!r}")

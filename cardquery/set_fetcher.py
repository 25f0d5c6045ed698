"""Fetch pipeline: download raw set records and normalize them into cards.

fetch_set performs exactly one attempt. Retrying Unreachable sources is
the job of the caller (see refresher.SetRefresher).
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx
import ijson

from cardquery.card_model import COST_TEMPLES, Card, Rarity, Temple
from cardquery.card_store import CardSet
from cardquery.import_utils import DEFAULT_RECORDS_PREFIX, iter_raw_records, to_number

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(30.0, read=120.0)
MAX_REDIRECTS = 5

# Boolean trait flags found in raw records -> tag name
TRAIT_FLAGS = {
    "conduit": "conductive",
    "banned": "ban",
    "nosac": "terrain",
    "nohammer": "hard",
}

# Component costs summed into a single cost when "cost" is absent
COST_COMPONENTS = ("blood_cost", "bone_cost", "energy_cost")


class FetchError(Exception):
    """Base class for fetch pipeline errors."""

    def __init__(self, message: str, set_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.set_id = set_id


class Unreachable(FetchError):
    """Source unavailable or returned an unusable payload. Retryable."""

    def __init__(self, message: str, set_id: str | None = None, status_code: int | None = None):
        super().__init__(message, set_id)
        self.status_code = status_code


class MalformedRecord(FetchError):
    """A single record could not be normalized into a Card."""

    def __init__(self, message: str, set_id: str | None = None, record_index: int | None = None):
        super().__init__(message, set_id)
        self.record_index = record_index


class EmptySet(FetchError):
    """No record of the source survived normalization."""


class VersionUnchanged(FetchError):
    """The source reports the version that is already stored."""

    def __init__(self, message: str, set_id: str | None = None, version: str | None = None):
        super().__init__(message, set_id)
        self.version = version


@dataclass(frozen=True)
class SourceRef:
    """Where to fetch one set from.

    Exactly one of url or path is set. path reads a local JSON file, which
    is mostly useful for offline use and tests.
    """

    set_id: str
    url: str | None = None
    path: str | None = None
    name: str | None = None
    records_prefix: str = DEFAULT_RECORDS_PREFIX

    def __post_init__(self) -> None:
        if not self.set_id:
            raise ValueError("Source set_id must be non-empty")
        if (self.url is None) == (self.path is None):
            raise ValueError(f"Source {self.set_id!r} needs exactly one of url or path")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SourceRef":
        """Build a source from a sources-file entry."""
        return cls(
            set_id=data["set_id"],
            url=data.get("url"),
            path=data.get("path"),
            name=data.get("name"),
            records_prefix=data.get("records_prefix", DEFAULT_RECORDS_PREFIX),
        )

    @property
    def display_name(self) -> str:
        return self.name or self.set_id


def _optional_stat(record: dict[str, Any], *keys: str) -> int | float | None:
    for key in keys:
        if key not in record:
            continue
        value = record[key]
        if value is None or value == "":
            return None
        number = to_number(value)
        if number < 0:
            raise ValueError(f"{key} is negative: {number}")
        return number
    return None


def _cost(record: dict[str, Any]) -> int | float | None:
    if "cost" in record:
        return _optional_stat(record, "cost")

    total: int | float = 0
    found = False
    for key in COST_COMPONENTS:
        component = _optional_stat(record, key)
        if component is not None:
            total += component
            found = True
    mox = record.get("mox_cost")
    if mox:
        if not isinstance(mox, list):
            raise ValueError(f"mox_cost must be a list, got {type(mox).__name__}")
        total += len(mox)
        found = True
    return total if found else None


def _strings(record: dict[str, Any], *keys: str, split: bool = False) -> set[str]:
    """Collect the non-blank strings stored under keys (a list or one string)."""
    found: set[str] = set()
    for key in keys:
        values = record.get(key)
        if values is None:
            continue
        if isinstance(values, str):
            values = values.split(",") if split else [values]
        if not isinstance(values, list):
            raise ValueError(f"{key} must be a list, got {type(values).__name__}")
        for value in values:
            if not isinstance(value, str):
                raise ValueError(f"{key} entries must be strings, got {value!r}")
            if value.strip():
                found.add(value.strip())
    return found


def _tags(record: dict[str, Any]) -> frozenset[str]:
    tags = _strings(record, "tags", "sigils", "keywords", "traits")
    for flag, tag in TRAIT_FLAGS.items():
        if record.get(flag) is True:
            tags.add(tag)
    return frozenset(tags)


def _mox(record: dict[str, Any]) -> frozenset[str]:
    return frozenset(gem.lower() for gem in _strings(record, "mox_cost"))


def _temples(record: dict[str, Any], costs: dict[str, Any]) -> frozenset[str]:
    named = _strings(record, "temple", "temples", split=True)
    if named:
        return frozenset(Temple.parse(name).value for name in named)
    # Without an explicit temple, each resource the card costs implies one
    return frozenset(
        COST_TEMPLES[resource].value for resource, amount in costs.items() if amount
    )


def _rarity(record: dict[str, Any]) -> Rarity:
    value = record.get("rarity")
    if value:
        if not isinstance(value, str):
            raise ValueError(f"rarity must be a string, got {value!r}")
        return Rarity.parse(value)
    if record.get("rare") is True:
        return Rarity.RARE
    return Rarity.COMMON


def _first_text(record: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = record.get(key)
        if value:
            if not isinstance(value, str):
                raise ValueError(f"{key} must be a string, got {value!r}")
            return value
    return ""


def normalize_record(record: Any, set_id: str, index: int | None = None) -> Card:
    """Normalize one raw record into a Card.

    Args:
        record: Raw record (a mapping of field name to value)
        set_id: Set the card belongs to
        index: Position of the record in the source, for error reporting

    Returns:
        Normalized card

    Raises:
        MalformedRecord: If the record cannot be turned into a valid Card
    """
    if not isinstance(record, dict):
        raise MalformedRecord(
            f"Record {index} is not an object: {type(record).__name__}",
            set_id=set_id, record_index=index,
        )

    name = record.get("name")
    if not isinstance(name, str) or not name.strip():
        raise MalformedRecord(
            f"Record {index} has no name", set_id=set_id, record_index=index
        )

    try:
        costs = {
            "blood": _optional_stat(record, "blood_cost"),
            "bone": _optional_stat(record, "bone_cost"),
            "energy": _optional_stat(record, "energy_cost"),
            "mox": _mox(record),
        }
        return Card(
            name=name.strip(),
            set_id=set_id,
            cost=_cost(record),
            attack=_optional_stat(record, "attack", "power"),
            health=_optional_stat(record, "health", "toughness"),
            tags=_tags(record),
            text=_first_text(record, "text", "description", "oracle_text"),
            rarity=_rarity(record),
            image_ref=_first_text(record, "image_ref", "image", "portrait", "pixport_url"),
            temples=_temples(record, costs),
            tribes=frozenset(_strings(record, "tribes", "tribe", split=True)),
            sp_atk=_first_text(record, "atkspecial", "sp_atk", "spatk"),
            **costs,
        )
    except (TypeError, ValueError) as e:
        raise MalformedRecord(
            f"Record {index} ({name!r}) is malformed: {e}",
            set_id=set_id, record_index=index,
        ) from e


class SetFetcher:
    """Fetches card sets over HTTPS (or from local files) with httpx."""

    def __init__(
        self,
        allowed_domains: list[str] | None = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ):
        """Initialize set fetcher.

        Args:
            allowed_domains: Hosts sources may be fetched from; None allows
                any HTTPS host
            timeout: httpx timeout for each request
        """
        self.allowed_domains = allowed_domains
        self._timeout = timeout
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                # Redirects are followed by hand so every hop is validated
                follow_redirects=False,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def __aenter__(self) -> "SetFetcher":
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager and close HTTP client."""
        await self.close()

    def is_valid_source_url(self, url: str) -> bool:
        """Validate that a URL is HTTPS and, if configured, from an allowed host.

        Args:
            url: URL to validate

        Returns:
            True if URL is valid and allowed
        """
        if not url:
            return False

        try:
            parsed = urlparse(url)
        except ValueError:
            return False

        if parsed.scheme != "https" or not parsed.netloc:
            return False

        if self.allowed_domains is not None and parsed.netloc not in self.allowed_domains:
            return False

        return True

    async def _validated_get(self, url: str) -> httpx.Response:
        """Perform GET request, following redirects only to valid URLs.

        Raises:
            ValueError: If a redirect leaves the allowed URLs
            httpx.HTTPError: On transport failure
        """
        client = await self._get_client()

        for _ in range(MAX_REDIRECTS):
            response = await client.get(url)

            if response.is_redirect:
                redirect_url = response.headers.get("location")
                if not redirect_url:
                    raise ValueError("Redirect response missing location header")

                # Handle relative URLs
                if redirect_url.startswith("/"):
                    parsed = urlparse(url)
                    redirect_url = f"{parsed.scheme}://{parsed.netloc}{redirect_url}"

                if not self.is_valid_source_url(redirect_url):
                    raise ValueError(f"Redirect to non-allowed URL: {redirect_url}")

                url = redirect_url
                continue

            return response

        raise ValueError(f"Too many redirects (max {MAX_REDIRECTS})")

    async def _download(self, source: SourceRef) -> tuple[bytes, str | None]:
        """Return (body, etag) for a source. Any failure is Unreachable."""
        if source.path is not None:
            try:
                body = await asyncio.to_thread(Path(source.path).read_bytes)
            except OSError as e:
                raise Unreachable(
                    f"Cannot read {source.path}: {e}", set_id=source.set_id
                ) from e
            return body, None

        if not self.is_valid_source_url(source.url):
            raise Unreachable(f"Invalid source URL: {source.url}", set_id=source.set_id)

        try:
            response = await self._validated_get(source.url)
        except (httpx.HTTPError, ValueError) as e:
            raise Unreachable(
                f"Cannot fetch {source.url}: {e}", set_id=source.set_id
            ) from e

        if not response.is_success:
            raise Unreachable(
                f"Source {source.url} answered HTTP {response.status_code}",
                set_id=source.set_id, status_code=response.status_code,
            )

        return response.content, response.headers.get("etag")

    async def fetch_set(self, source: SourceRef, known_version: str | None = None) -> CardSet:
        """Fetch and normalize one set. Performs a single attempt.

        Args:
            source: Where to fetch the set from
            known_version: Version currently stored for this set, if any

        Returns:
            The normalized set

        Raises:
            Unreachable: Source unavailable, or payload truncated/undecodable
            VersionUnchanged: Source version equals known_version
            EmptySet: No record survived normalization
        """
        body, etag = await self._download(source)
        version = etag or hashlib.sha1(body).hexdigest()

        if known_version is not None and version == known_version:
            raise VersionUnchanged(
                f"Set {source.set_id} is already at version {version}",
                set_id=source.set_id, version=version,
            )

        cards: list[Card] = []
        skipped = 0
        try:
            for index, record in enumerate(iter_raw_records(body, source.records_prefix)):
                try:
                    cards.append(normalize_record(record, source.set_id, index))
                except MalformedRecord as e:
                    skipped += 1
                    logger.warning("Skipping record in set %s: %s", source.set_id, e.message)
        except ijson.JSONError as e:
            raise Unreachable(
                f"Payload for set {source.set_id} could not be decoded: {e}",
                set_id=source.set_id,
            ) from e

        if not cards:
            raise EmptySet(
                f"Set {source.set_id} has no valid records ({skipped} skipped)",
                set_id=source.set_id,
            )

        logger.debug(
            "Fetched set %s: %d cards, %d skipped, version %s",
            source.set_id, len(cards), skipped, version,
        )
        return CardSet(
            set_id=source.set_id,
            name=source.display_name,
            source_version=version,
            cards=tuple(cards),
        )

"""Card set search engine with a Scryfall-style query language."""

__version__ = "0.1.0"

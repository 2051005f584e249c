"""Mailflow kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, freeze_json

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "freeze_json",
]

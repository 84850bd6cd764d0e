"""Street-name normalization helpers.

Two flavours are used on purpose:

* :func:`normalize_street` keeps the user's accents and casing; it is the
  value sent to the feature layer.
* :func:`canonical_street` folds Slovak (and neighbouring) diacritics through a
  fixed table into a lowercase comparison key used by the gazetteer.
"""

from __future__ import annotations

import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")

_FOLD_GROUPS = {
    "a": "áä",
    "c": "čć",
    "d": "ďđ",
    "e": "éěë",
    "i": "í",
    "l": "ľĺ",
    "n": "ňń",
    "o": "óôö",
    "r": "ŕř",
    "s": "šś",
    "t": "ť",
    "u": "úůü",
    "y": "ýÿ",
    "z": "žź",
}
_FOLD_TABLE = str.maketrans({char: base for base, chars in _FOLD_GROUPS.items() for char in chars})


def collapse_whitespace(value: str) -> str:
    """Trim ``value`` and squeeze internal whitespace runs to one space."""

    return _WHITESPACE.sub(" ", value).strip()


def normalize_street(value: str) -> str:
    """Return the street name as it should be queried (NFC, trimmed, single-spaced)."""

    return collapse_whitespace(unicodedata.normalize("NFC", value or ""))


def strip_diacritics(value: str) -> str:
    """Remove combining marks, e.g. ``Ružinovská`` -> ``Ruzinovska``."""

    decomposed = unicodedata.normalize("NFD", value or "")
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return unicodedata.normalize("NFC", stripped.translate(_FOLD_TABLE))


def has_diacritics(value: str) -> bool:
    """bool: True when :func:`strip_diacritics` would change ``value``."""

    return strip_diacritics(value) != value


def canonical_street(value: str) -> str:
    """Comparable form of a street name: lowercase, single-spaced, diacritics folded."""

    lowered = collapse_whitespace(unicodedata.normalize("NFC", value or "").lower())
    return lowered.translate(_FOLD_TABLE)


__all__ = [
    "canonical_street",
    "collapse_whitespace",
    "has_diacritics",
    "normalize_street",
    "strip_diacritics",
]

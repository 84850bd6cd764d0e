"""Tests for street-name normalization helpers."""

from __future__ import annotations

import pytest

from lampfinder.geo.text import canonical_street, has_diacritics, normalize_street, strip_diacritics
from lampfinder.services.gazetteer import FALLBACK_STREETS


@pytest.mark.parametrize("name", [*FALLBACK_STREETS, "  Lamačská   cesta ", "ŠTÚROVA"])
def test_canonical_street_is_idempotent(name: str) -> None:
    once = canonical_street(name)
    assert canonical_street(once) == once


def test_canonical_street_folds_case_whitespace_and_accents() -> None:
    assert canonical_street("  Lamačská   Cesta ") == "lamacska cesta"
    assert canonical_street("Ďumbierska") == "dumbierska"


def test_normalize_street_keeps_accents() -> None:
    assert normalize_street("  Ružinovská\t ulica ") == "Ružinovská ulica"


def test_strip_diacritics_changes_accented_input_only() -> None:
    assert strip_diacritics("Ružinovská") == "Ruzinovska"
    assert has_diacritics("Ružinovská")
    assert not has_diacritics("Hlavna")
    assert strip_diacritics("Hlavna") == "Hlavna"

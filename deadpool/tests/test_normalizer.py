"""Tests for candidate normalization, deduplication and cause mapping."""
from __future__ import annotations

from datetime import date

import pytest

from deadpool.models import CandidateDeath
from deadpool.normalizer import categorize_cause, normalize

TODAY = date(2025, 3, 10)


def _cand(name="John Smith", dod=date(2025, 3, 3), source="tabular", **kw) -> CandidateDeath:
    return CandidateDeath(name=name, date_of_death=dod, source_tag=source, **kw)


class TestNormalize:
    def test_duplicate_name_and_date_keeps_first(self):
        out = normalize([
            _cand(age=82, cause_text="cancer"),
            _cand(age=82, cause_text="car crash"),
        ], today=TODAY)
        assert len(out) == 1
        assert out[0].cause_category == "Natural"

    def test_duplicate_is_case_and_space_insensitive(self):
        out = normalize([_cand(age=70), _cand(name="john   SMITH", age=70)], today=TODAY)
        assert len(out) == 1

    def test_source_priority_decides_the_winner(self):
        out = normalize([
            _cand(source="feed", age=82, cause_text="car crash"),
            _cand(source="structured", age=82, cause_text="stroke"),
        ], today=TODAY)
        assert [c.source_tag for c in out] == ["structured"]
        assert out[0].cause_category == "Natural"

    def test_same_name_different_dates_are_distinct(self):
        out = normalize([_cand(age=60), _cand(age=60, dod=date(2025, 3, 4))], today=TODAY)
        assert len(out) == 2

    def test_age_derived_from_birth_date(self):
        out = normalize([_cand(date_of_birth=date(1940, 5, 1))], today=TODAY)
        assert out[0].age == 84

    def test_short_name_without_age_dropped(self):
        assert normalize([_cand(name="Cher X")], today=TODAY) == []
        assert len(normalize([_cand(name="Cher X", age=79)], today=TODAY)) == 1

    def test_long_name_without_age_kept(self):
        out = normalize([_cand(name="Johnny Example")], today=TODAY)
        assert out[0].age is None

    @pytest.mark.parametrize("age", [0, 121, 150])
    def test_implausible_age_dropped(self, age):
        assert normalize([_cand(age=age)], today=TODAY) == []

    def test_future_date_dropped(self):
        assert normalize([_cand(age=50, dod=date(2025, 3, 11))], today=TODAY) == []

    def test_invalid_first_sighting_does_not_hide_valid_one(self):
        out = normalize([
            _cand(source="structured", age=150),
            _cand(source="feed", age=80),
        ], today=TODAY)
        assert len(out) == 1
        assert out[0].age == 80

    def test_whitespace_collapsed_in_name(self):
        out = normalize([_cand(name="  Jane   Doe ", age=70)], today=TODAY)
        assert out[0].name == "Jane Doe"


class TestCategorizeCause:
    @pytest.mark.parametrize("text, expected", [
        ("pancreatic cancer", "Natural"),
        ("heart attack", "Natural"),
        ("killed in a car crash", "Accidental"),
        ("drowning", "Accidental"),
        ("shot by an intruder", "Violent"),
        ("suicide", "Suicide"),
        ("COVID-19", "PandemicOrOutbreak"),
        ("drug overdose", "RareOrUnusual"),
        ("fell from a balcony", "Accidental"),
        ("assassinated", "Violent"),
        ("Jimmy Fallon", "Unknown"),
        ("Heartland Festival host", "Unknown"),
        ("Violent", "Violent"),
        ("undisclosed", "Unknown"),
        ("", "Unknown"),
        (None, "Unknown"),
    ])
    def test_mapping(self, text, expected):
        assert categorize_cause(text) == expected

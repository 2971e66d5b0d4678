"""Tests for obit_pipeline.pipeline.extraction module."""

from datetime import date

import pytest

from obit_pipeline.pipeline.extraction import (
    check_age,
    check_birth_date,
    check_death_date,
    check_location,
    check_organization,
    extract_fields,
    parse_calendar_date,
    years_between,
)
from obit_pipeline.pipeline.schemas import RewritePayload

TODAY = date(2025, 3, 10)


def payload(**fields):
    fields.setdefault("rewritten_text", "Jane Doe died.")
    return RewritePayload(**fields)


class TestFieldChecks:
    """Each field rule on its own."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("2024-02-29", date(2024, 2, 29)),
            ("2023-02-29", None),
            ("2024-13-01", None),
            ("03/02/2025", None),
            ("2025-3-2", None),
            (20250302, None),
            (None, None),
        ],
    )
    def test_parse_calendar_date(self, value, expected):
        assert parse_calendar_date(value) == expected

    def test_death_date_range(self):
        assert check_death_date("2025-03-10", TODAY) == TODAY
        assert check_death_date("2025-03-11", TODAY) is None
        assert check_death_date("1999-12-31", TODAY) is None
        assert check_death_date("2000-01-01", TODAY) == date(2000, 1, 1)

    def test_birth_date_range(self):
        death = date(2025, 3, 2)
        assert check_birth_date("1946-07-14", death) == date(1946, 7, 14)
        assert check_birth_date("1879-12-31", death) is None
        assert check_birth_date("2025-03-02", death) is None

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(78, 78), ("78", 78), (0, None), (121, None), (120, 120), (1, 1), (True, None), (78.0, None)],
    )
    def test_age(self, value, expected):
        assert check_age(value) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("Toronto", "Toronto"), ("  Ottawa ", "Ottawa"), ("X", None), ("[city]", None), ("<b>Hull</b>", None), ("a" * 61, None)],
    )
    def test_location(self, value, expected):
        assert check_location(value) == expected

    def test_organization(self):
        assert check_organization("Ridley Funeral Home") == "Ridley Funeral Home"
        assert check_organization("RF") is None
        assert check_organization("x" * 151) is None

    def test_years_between(self):
        assert years_between(date(1946, 7, 14), date(2025, 3, 2)) == 78
        assert years_between(date(1946, 3, 2), date(2025, 3, 2)) == 79


class TestExtractFields:
    """Apply every rule to a parsed payload."""

    def test_valid_payload(self):
        fields = extract_fields(
            payload(date_of_death="2025-03-02", age=78, location="Toronto", organization="Ridley Funeral Home"),
            TODAY,
        )
        assert fields.non_empty() == {
            "date_of_death": "2025-03-02",
            "age": 78,
            "location": "Toronto",
            "organization": "Ridley Funeral Home",
        }
        assert fields.rejected == []
        assert fields.corrections == []

    def test_each_field_rejected_independently(self):
        fields = extract_fields(payload(date_of_death="2031-01-01", age=78, location="{loc}"), TODAY)
        assert fields.date_of_death is None
        assert fields.location is None
        assert fields.age == 78
        assert fields.rejected == ["date_of_death '2031-01-01'", "location '{loc}'"]

    def test_age_zero_dropped(self):
        fields = extract_fields(payload(age=0), TODAY)
        assert fields.age is None
        assert "age" not in fields.non_empty()

    def test_age_computed_from_dates(self):
        fields = extract_fields(payload(date_of_birth="1946-07-14", date_of_death="2025-03-02"), TODAY)
        assert fields.age == 78
        assert fields.corrections == ["age computed from dates: 78"]

    def test_age_within_tolerance_kept(self):
        fields = extract_fields(
            payload(date_of_birth="1946-07-14", date_of_death="2025-03-02", age=79), TODAY
        )
        assert fields.age == 79
        assert fields.corrections == []

    def test_conflicting_age_replaced(self):
        fields = extract_fields(
            payload(date_of_birth="1946-07-14", date_of_death="2025-03-02", age=70), TODAY
        )
        assert fields.age == 78
        assert fields.corrections == ["age 70 conflicts with dates; using computed 78"]

    def test_birth_after_death_cleared(self):
        fields = extract_fields(payload(date_of_birth="2025-03-05", date_of_death="2025-03-02"), TODAY)
        assert fields.date_of_birth is None
        assert "birth date on or after death date; cleared" in fields.corrections

    def test_known_death_used_for_cross_check(self):
        fields = extract_fields(payload(date_of_birth="1946-07-14"), TODAY, known_death="2025-03-02")
        assert fields.age == 78
        assert fields.date_of_death is None

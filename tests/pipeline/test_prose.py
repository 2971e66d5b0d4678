"""Tests for obit_pipeline.pipeline.prose module."""

import pytest

from obit_pipeline.pipeline.extraction import ExtractedFields
from obit_pipeline.pipeline.prose import mentions_name, name_candidates, validate_rewrite

GOOD = (
    "Jane Margaret Doe died peacefully in Toronto on March 2, 2025, at the age of 78. "
    "She is remembered by her children, Anne and Paul."
)


class TestNameCandidates:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Jane Doe", ["Doe", "Jane"]),
            ("Dr. Robert Smith Jr.", ["Smith", "Robert"]),
            ('Margaret "Peggy" Lane', ["Lane", "Margaret", "Peggy"]),
            ("William (Bill) O'Neil", ["O'Neil", "William", "Bill"]),
            ("Cher", ["Cher"]),
            ("", []),
        ],
    )
    def test_candidates(self, name, expected):
        assert name_candidates(name) == expected

    def test_mentions_name_matches_whole_words(self):
        assert mentions_name("Mr. Lee was a carpenter.", "Bruce Lee")
        assert not mentions_name("He loved the leeward shore.", "Lee")

    def test_nickname_is_enough(self):
        assert mentions_name("Peggy was a nurse for forty years.", 'Margaret "Peggy" Lane')


class TestValidateRewrite:
    """Hard rejects and soft warnings."""

    def test_accepts_good_text(self):
        check = validate_rewrite(GOOD, "Jane Doe")
        assert check.ok
        assert check.reason is None

    @pytest.mark.parametrize(
        ("text", "reason"),
        [
            ("Jane Doe died.", "too_short"),
            ("Jane Doe " + "x" * 6000, "too_long"),
            (GOOD.replace("78", "0"), "implausible_data"),
            ("Jane Doe died aged 1946 in Toronto after a long and well-lived life.", "implausible_data"),
            ("Certainly! " + GOOD, "llm_artifact"),
            ("Here is the rewritten obituary. " + GOOD, "llm_artifact"),
            (GOOD + " Note: some details were unclear.", "llm_artifact"),
            (GOOD.replace("Jane Margaret Doe", "The deceased"), "name_missing"),
        ],
    )
    def test_hard_rejects(self, text, reason):
        check = validate_rewrite(text, "Jane Doe")
        assert not check.ok
        assert check.reason == reason

    def test_custom_bounds(self):
        assert not validate_rewrite(GOOD, "Jane Doe", max_chars=50).ok
        assert validate_rewrite("Jane Doe died in Toronto.", "Jane Doe", min_chars=10).ok

    def test_warnings_do_not_reject(self):
        fields = ExtractedFields(
            rewritten_text=GOOD, date_of_death="2024-03-02", age=81, location="Ottawa, Ontario"
        )
        check = validate_rewrite(GOOD, "Jane Doe", fields)
        assert check.ok
        assert check.warnings == [
            "death year 2024 not mentioned",
            "age 81 not mentioned",
            "location Ottawa not mentioned",
        ]

    def test_no_warnings_when_facts_present(self):
        fields = ExtractedFields(rewritten_text=GOOD, date_of_death="2025-03-02", age=78, location="Toronto")
        assert validate_rewrite(GOOD, "Jane Doe", fields).warnings == []

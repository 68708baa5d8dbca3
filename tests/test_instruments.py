"""Tests for the instrument registry, label matching and detection."""

import pytest

from psyscore.instruments import (
    REGISTRY,
    InstrumentSelection,
    detect_instruments,
    find_all_mentions,
    find_mentions,
    match_label,
    parse_age_months,
    select_cognitive_instrument,
)
from psyscore.models import SCALE_BOUNDS, InstrumentKind, ScoreKind


class TestRegistry:
    """Tests for static registry data."""

    def test_every_family_registered(self):
        assert set(REGISTRY) == set(InstrumentKind)

    def test_abbreviations_unique_per_instrument(self):
        for definition in REGISTRY.values():
            abbrevs = [f.abbrev for f in definition.fields]
            assert len(abbrevs) == len(set(abbrevs)), definition.kind

    def test_every_kind_has_bands(self):
        """Each scale an instrument reports on has a band table."""
        for definition in REGISTRY.values():
            for field in definition.fields:
                assert definition.scale_for(field.kind) in definition.bands

    def test_bounds(self):
        wisc = REGISTRY[InstrumentKind.WISC]
        assert wisc.bounds_for(ScoreKind.SUBTEST) == SCALE_BOUNDS[wisc.scale_for(ScoreKind.SUBTEST)]
        assert wisc.bounds_for(ScoreKind.INDEX).contains(160)
        assert not wisc.bounds_for(ScoreKind.SUBTEST).contains(20)


class TestMatchLabel:
    """Tests for table label matching."""

    def test_name(self):
        assert [f.abbrev for f in match_label("Similarities", InstrumentKind.WISC)] == ["SI"]

    def test_alias_and_hyphenation(self):
        assert [f.abbrev for f in match_label("Letter Number Sequencing", InstrumentKind.WISC)] == ["LN"]
        assert [f.abbrev for f in match_label("Letter-Number Sequencing", InstrumentKind.WISC)] == ["LN"]

    def test_name_with_abbreviation(self):
        assert [f.abbrev for f in match_label("Verbal Comprehension Index (VCI)", InstrumentKind.WISC)] == ["VCI"]

    def test_footnote_markers(self):
        assert [f.abbrev for f in match_label("Symbol Search*", InstrumentKind.WISC)] == ["SS"]

    def test_shared_name(self):
        """An adaptive skill area and composite sharing a name both match."""
        assert {f.abbrev for f in match_label("Social", InstrumentKind.ABAS)} == {"SO", "SOC"}

    def test_no_match(self):
        assert match_label("Reading Comprehension", InstrumentKind.WISC) == []
        assert match_label("", InstrumentKind.WISC) == []


class TestMentions:
    """Tests for field mentions in running text."""

    def test_longest_match_within_instrument(self):
        mentions = find_mentions("Her Full Scale IQ was 96.", InstrumentKind.WISC)

        assert len(mentions) == 1
        assert mentions[0].field.abbrev == "FSIQ"

    def test_longest_match_across_instruments(self):
        """Reading Comprehension is never the cognitive Comprehension subtest."""
        mentions = find_all_mentions(
            "Reading Comprehension was weaker than Comprehension.",
            [InstrumentKind.WISC, InstrumentKind.WIAT],
        )

        found = [(kind, mention.field.abbrev) for mention, kind in mentions]
        assert found == [(InstrumentKind.WIAT, "RC"), (InstrumentKind.WISC, "CO")]

    def test_two_letter_codes_ignored_in_text(self):
        assert find_mentions("IN the end", InstrumentKind.WISC) == []

    def test_index_abbreviation(self):
        mentions = find_mentions("The VCI was strong.", InstrumentKind.WISC)
        assert [m.field.abbrev for m in mentions] == ["VCI"]


class TestDetection:
    """Tests for instrument family detection."""

    def test_detect_pair(self):
        text = "The WISC-V and the WIAT-4 were administered."
        assert detect_instruments(text) == [InstrumentKind.WISC, InstrumentKind.WIAT]

    def test_single_cognitive_battery(self):
        """Only the most-mentioned Wechsler cognitive battery is reported."""
        text = "WISC-V results. WISC-V indexes. Prior WAIS-IV testing was reviewed."
        assert detect_instruments(text) == [InstrumentKind.WISC]

    def test_full_names(self):
        text = "Behavior Assessment System for Children, Third Edition (parent form)"
        assert detect_instruments(text) == [InstrumentKind.BASC]

    def test_nothing_detected(self):
        assert detect_instruments("No standardized testing was completed.") == []


class TestAgeRouting:
    """Tests for age parsing and cognitive battery selection."""

    @pytest.mark.parametrize(
        "age,months",
        [
            ("10 years, 2 months", 122),
            ("16:0", 192),
            ("5 yrs 11 mos", 71),
            ("7 years", 84),
            (None, None),
            ("unknown", None),
        ],
    )
    def test_parse_age_months(self, age, months):
        assert parse_age_months(age) == months

    @pytest.mark.parametrize(
        "months,expected",
        [
            (192, InstrumentKind.WAIS),
            (191, InstrumentKind.WISC),
            (72, InstrumentKind.WISC),
            (71, InstrumentKind.WPPSI),
            (None, InstrumentKind.WISC),
        ],
    )
    def test_select_cognitive_instrument(self, months, expected):
        assert select_cognitive_instrument(months) == expected

    def test_selection_from_detected(self):
        selection = InstrumentSelection.from_detected(
            [InstrumentKind.WAIS, InstrumentKind.WIAT, InstrumentKind.BASC]
        )

        assert selection.cognitive == InstrumentKind.WAIS
        assert selection.achievement == InstrumentKind.WIAT
        assert selection.optional == [InstrumentKind.BASC]
        assert selection.instruments == [InstrumentKind.WAIS, InstrumentKind.WIAT, InstrumentKind.BASC]

    def test_age_overrides_detection(self):
        selection = InstrumentSelection.from_detected([InstrumentKind.WAIS], age_months=122)
        assert selection.cognitive == InstrumentKind.WISC

"""Segment Stage - Locate named report sections in normalized text.

Sections are found with ordered anchor-pattern tiers. Start patterns run
from most specific (exact heading lines) to most general (loose phrases);
the first pattern in priority order that matches anywhere wins, so a broad
phrase can only claim a section when every specific heading failed.

Tiers, in order:
1. strict   - exact heading lines
2. medium   - heading phrases anywhere on a line
3. fallback - a hallmark numeric field (e.g. "Full Scale IQ ... 96")
4. last_resort - first mention of the instrument family through the next
   major heading, so reviewers still get text instead of nothing
"""

import logging
import re
from typing import Optional

from pydantic import BaseModel, Field

from psyscore.instruments import COGNITIVE_KINDS, family_pattern
from psyscore.models import InstrumentKind, SectionExtract, SectionStatus

logger = logging.getLogger(__name__)


def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE | re.MULTILINE)


def extract_between(
    text: str,
    start_patterns: list[str],
    end_patterns: list[str],
) -> Optional[str]:
    """Text from the first matching start pattern up to the first end pattern.

    Start patterns are tried in list order and the first one with any match
    wins, at the position of its first match. The span ends just before the
    earliest end-pattern match after the start match, or at end of text.

    Returns:
        The stripped span, or None when no start pattern matches or the span
        is empty.
    """
    start_match = None
    for pattern in start_patterns:
        start_match = _compile(pattern).search(text)
        if start_match:
            break
    if start_match is None:
        return None

    end = len(text)
    for pattern in end_patterns:
        end_match = _compile(pattern).search(text, start_match.end())
        if end_match and end_match.start() < end:
            end = end_match.start()

    section = text[start_match.start():end].strip()
    return section or None


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

_BOILERPLATE_LINES = [
    re.compile(r"^\s*page\s+\d+(?:\s+of\s+\d+)?\s*$", re.IGNORECASE),
    re.compile(r"^\s*\d+\s+of\s+\d+\s*$", re.IGNORECASE),
    re.compile(r"^\s*-\s*\d+\s*-\s*$"),
    re.compile(r"copyright|©|\(c\)\s*\d{4}|all rights reserved", re.IGNORECASE),
    re.compile(r"^\s*(?:strictly\s+)?confidential\b.{0,60}$", re.IGNORECASE),
]

_PRONOUNS = (
    "he|she|they|him|her|them|his|hers|their|theirs|"
    "himself|herself|themselves|themself|he/she|his/her|him/her"
)
_WRAPPED_PRONOUN = re.compile(
    rf"\(\s*({_PRONOUNS})\s*\)|\[\s*({_PRONOUNS})\s*\]",
    re.IGNORECASE,
)

# A short line seen this many times is a running header or footer
_RUNNING_LINE_REPEATS = 3


def _is_boilerplate(line: str) -> bool:
    return any(p.search(line) for p in _BOILERPLATE_LINES)


def clean_section_text(text: str) -> str:
    """Strip running headers/footers, page counters and copyright lines.

    Also collapses consecutive duplicate lines and unwraps templating
    markers around a lone pronoun: "(he)" -> "he".
    """
    lines = text.splitlines()
    counts: dict[str, int] = {}
    for line in lines:
        key = line.strip().lower()
        if key and len(key) < 80 and re.search(r"[a-z]", key):
            counts[key] = counts.get(key, 0) + 1

    kept: list[str] = []
    for line in lines:
        key = line.strip().lower()
        if _is_boilerplate(line):
            continue
        if counts.get(key, 0) >= _RUNNING_LINE_REPEATS:
            continue
        if key and kept and kept[-1].strip().lower() == key:
            continue
        kept.append(line.rstrip())

    cleaned = "\n".join(kept)
    cleaned = _WRAPPED_PRONOUN.sub(lambda m: m.group(1) or m.group(2), cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


# ---------------------------------------------------------------------------
# Section definitions
# ---------------------------------------------------------------------------

# Major report headings; any of them closes a last-resort span
HARD_ANCHORS = [
    r"^\s*(?:Background\s+Information|Reason\s+for\s+Referral|Tests?\s+Administered|"
    r"Behavio(?:u)?ral\s+Observations|Cognitive\s+(?:Functioning|Abilities)|"
    r"Intellectual\s+Functioning|Academic\s+(?:Achievement|Functioning)|"
    r"Memory\s+and\s+Learning|Adaptive\s+(?:Behavio(?:u)?r|Functioning)|"
    r"Social[\s\-]+Emotional(?:\s+Functioning)?|Behavio(?:u)?r\s+Rating\s+Scales?|"
    r"Summary(?:\s+and\s+(?:Impressions|Conclusions))?|Diagnostic\s+Impressions|"
    r"Recommendations|Score\s+Summary|Summary\s+of\s+Scores|Appendix)\s*:?\s*$",
]


class SectionSpec(BaseModel):
    """Anchor patterns for one named section."""

    section_id: str
    strict: list[str] = Field(default_factory=list)
    medium: list[str] = Field(default_factory=list)
    fallback: list[str] = Field(default_factory=list, description="Hallmark field patterns")
    end: list[str] = Field(default_factory=list)
    families: list[InstrumentKind] = Field(
        default_factory=list, description="Families whose first mention opens a last-resort span"
    )
    hard_anchors: list[str] = Field(default_factory=lambda: list(HARD_ANCHORS))

    class Config:
        frozen = True

    def tiers(self) -> list[tuple[str, list[str]]]:
        return [("strict", self.strict), ("medium", self.medium), ("fallback", self.fallback)]


COGNITIVE_SECTION = SectionSpec(
    section_id="cognitive",
    strict=[
        r"^\s*(?:Cognitive|Intellectual)\s+(?:Functioning|Abilities|Assessment)\s*:?\s*$",
    ],
    medium=[
        r"^.*\b(?:Cognitive|Intellectual)\s+(?:Functioning|Abilities)\b",
        r"^.*\bWechsler\s+(?:Intelligence|Adult\s+Intelligence|Preschool)\b",
    ],
    fallback=[
        r"^.*\bFull[\s\-]+Scale(?:\s+IQ)?\b\D{0,30}\d{2,3}\b",
    ],
    end=[
        r"^\s*(?:Academic\s+(?:Achievement|Functioning)|Achievement\s+Testing|"
        r"Memory\s+and\s+Learning|Adaptive\s+(?:Behavio(?:u)?r|Functioning)|"
        r"Social[\s\-]+Emotional|Behavio(?:u)?r\s+Rating|Summary(?:\s+and\s+\w+)?|"
        r"Diagnostic\s+Impressions|Recommendations)\s*:?\s*$",
    ],
    families=list(COGNITIVE_KINDS),
)

ACHIEVEMENT_SECTION = SectionSpec(
    section_id="achievement",
    strict=[
        r"^\s*Academic\s+(?:Achievement|Functioning)\s*:?\s*$",
        r"^\s*Achievement\s+Testing\s*:?\s*$",
    ],
    medium=[
        r"^.*\bAcademic\s+(?:Achievement|Functioning|Skills)\b",
        r"^.*\bWechsler\s+Individual\s+Achievement\s+Test\b",
    ],
    fallback=[
        r"^.*\bTotal\s+Achievement\b\D{0,30}\d{2,3}\b",
    ],
    end=[
        r"^\s*(?:Memory\s+and\s+Learning|Adaptive\s+(?:Behavio(?:u)?r|Functioning)|"
        r"Social[\s\-]+Emotional|Behavio(?:u)?r\s+Rating|Summary(?:\s+and\s+\w+)?|"
        r"Diagnostic\s+Impressions|Recommendations)\s*:?\s*$",
    ],
    families=[InstrumentKind.WIAT],
)

SCORE_SUMMARY_SECTION = SectionSpec(
    section_id="score_summary",
    strict=[
        r"^\s*(?:Score|Test)\s+Summary\s*:?\s*$",
        r"^\s*Summary\s+of\s+(?:Test\s+)?Scores\s*:?\s*$",
        r"^\s*Psychometric\s+Summary\s*:?\s*$",
    ],
    medium=[
        r"^.*\b(?:Subtest|Composite|Index)\s+Score\s+Summary\b",
        r"^.*\bScore\s+Summary\b",
    ],
    fallback=[
        r"^.*\bScaled\s+Score\b.*$",
    ],
    end=[
        r"^\s*(?:Recommendations|Signature|Respectfully\s+submitted|Sincerely)\b",
    ],
)

RECOMMENDATIONS_SECTION = SectionSpec(
    section_id="recommendations",
    strict=[
        r"^\s*Recommendations\s*:?\s*$",
    ],
    medium=[
        r"^.*\bRecommendations\b",
    ],
    end=[
        r"^\s*(?:Signature|Respectfully\s+submitted|Sincerely|Appendix|"
        r"Score\s+Summary|Summary\s+of\s+Scores|Psychometric\s+Summary)\b",
    ],
)

SECTION_SPECS: dict[str, SectionSpec] = {
    spec.section_id: spec
    for spec in (
        COGNITIVE_SECTION,
        ACHIEVEMENT_SECTION,
        SCORE_SUMMARY_SECTION,
        RECOMMENDATIONS_SECTION,
    )
}


def _last_resort(text: str, spec: SectionSpec) -> Optional[str]:
    """First family mention through the next hard anchor."""
    if not spec.families:
        return None
    mentions = []
    for kind in spec.families:
        match = _compile(family_pattern(kind)).search(text)
        if match:
            mentions.append(match)
    if not mentions:
        return None
    first = min(mentions, key=lambda m: m.start())

    start = text.rfind("\n", 0, first.start()) + 1
    end = len(text)
    for pattern in spec.hard_anchors:
        anchor = _compile(pattern).search(text, first.end())
        if anchor and anchor.start() < end:
            end = anchor.start()
    section = text[start:end].strip()
    return section or None


def segment_section(
    text: str,
    spec: SectionSpec,
    source_document: Optional[str] = None,
) -> SectionExtract:
    """Find one section, escalating through the anchor tiers.

    Returns:
        SectionExtract with status ``ok`` and the tier that matched,
        ``no_content`` for empty input, ``missing_anchor`` when every tier
        failed, or ``parse_error`` when a pattern could not be evaluated.
    """
    if not text or not text.strip():
        return SectionExtract(
            section_id=spec.section_id,
            status=SectionStatus.NO_CONTENT,
            source_document=source_document,
        )

    try:
        for tier, patterns in spec.tiers():
            if not patterns:
                continue
            found = extract_between(text, patterns, spec.end)
            if found:
                return _extract(spec, clean_section_text(found), tier, source_document)

        logger.debug("No anchor for section %s in %s", spec.section_id, source_document)
        found = _last_resort(text, spec)
        if found:
            return _extract(spec, clean_section_text(found), "last_resort", source_document)
    except re.error as e:
        logger.error("Bad anchor pattern for section %s: %s", spec.section_id, e)
        return SectionExtract(
            section_id=spec.section_id,
            status=SectionStatus.PARSE_ERROR,
            source_document=source_document,
        )

    return SectionExtract(
        section_id=spec.section_id,
        status=SectionStatus.MISSING_ANCHOR,
        source_document=source_document,
    )


def _extract(
    spec: SectionSpec,
    text: str,
    tier: str,
    source_document: Optional[str],
) -> SectionExtract:
    if not text:
        return SectionExtract(
            section_id=spec.section_id,
            status=SectionStatus.NO_CONTENT,
            tier=tier,
            source_document=source_document,
        )
    return SectionExtract(
        section_id=spec.section_id,
        status=SectionStatus.OK,
        text=text,
        tier=tier,
        source_document=source_document,
    )


def segment_document(
    text: str,
    specs: Optional[dict[str, SectionSpec]] = None,
    source_document: Optional[str] = None,
) -> dict[str, SectionExtract]:
    """Segment every configured section of one document."""
    specs = specs if specs is not None else SECTION_SPECS
    return {
        section_id: segment_section(text, spec, source_document)
        for section_id, spec in specs.items()
    }

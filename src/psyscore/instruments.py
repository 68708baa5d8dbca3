"""Instrument registry, field-name matching and instrument detection.

Every test family the engine understands is declared once here as an
``InstrumentDefinition``. Extraction, classification and rendering look
fields, bounds and bands up from this registry instead of hard-coding them
at call sites.

Field names are matched per instrument: a mention resolves to the longest
field name that covers it, so "Reading Comprehension" never also counts as
the cognitive "Comprehension" subtest.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field

from psyscore.models import (
    ClassificationBand,
    FieldDefinition,
    InstrumentDefinition,
    InstrumentKind,
    ScoreKind,
    ScoreScale,
)


def _bands(*pairs: tuple[float, str]) -> list[ClassificationBand]:
    return [ClassificationBand(minimum=minimum, label=label) for minimum, label in pairs]


SCALED_BANDS = _bands(
    (16, "Very High"),
    (13, "High Average"),
    (8, "Average"),
    (6, "Low Average"),
    (4, "Low"),
    (0, "Very Low"),
)

# WISC-V / WPPSI-IV descriptors
WECHSLER_STANDARD_BANDS = _bands(
    (130, "Extremely High"),
    (120, "Very High"),
    (110, "High Average"),
    (90, "Average"),
    (80, "Low Average"),
    (70, "Low"),
    (0, "Extremely Low"),
)

# WAIS-IV / WRAML descriptors
TRADITIONAL_STANDARD_BANDS = _bands(
    (130, "Very Superior"),
    (120, "Superior"),
    (110, "High Average"),
    (90, "Average"),
    (80, "Low Average"),
    (70, "Borderline"),
    (0, "Extremely Low"),
)

ACHIEVEMENT_STANDARD_BANDS = _bands(
    (130, "Extremely High"),
    (120, "Very High"),
    (110, "High Average"),
    (90, "Average"),
    (80, "Low Average"),
    (70, "Low"),
    (0, "Very Low"),
)

T_SCORE_BANDS = _bands(
    (70, "Clinically Significant"),
    (60, "At-Risk"),
    (41, "Average"),
    (31, "Low"),
    (0, "Very Low"),
)


def _f(abbrev: str, name: str, kind: ScoreKind, *aliases: str) -> FieldDefinition:
    return FieldDefinition(abbrev=abbrev, name=name, kind=kind, aliases=list(aliases))


SUB, CMP, IDX = ScoreKind.SUBTEST, ScoreKind.COMPOSITE, ScoreKind.INDEX

WECHSLER_SCALES = {SUB: ScoreScale.SCALED, CMP: ScoreScale.STANDARD, IDX: ScoreScale.STANDARD}

WISC = InstrumentDefinition(
    kind=InstrumentKind.WISC,
    display_name="WISC-V",
    full_name="Wechsler Intelligence Scale for Children, Fifth Edition",
    role="cognitive",
    family_patterns=[
        r"\bWISC(?:[\s-]?(?:V|5|IV))?\b",
        r"Wechsler\s+Intelligence\s+Scale\s+for\s+Children",
    ],
    fields=[
        _f("SI", "Similarities", SUB),
        _f("VC", "Vocabulary", SUB),
        _f("IN", "Information", SUB),
        _f("CO", "Comprehension", SUB),
        _f("BD", "Block Design", SUB),
        _f("VP", "Visual Puzzles", SUB),
        _f("MR", "Matrix Reasoning", SUB),
        _f("FW", "Figure Weights", SUB),
        _f("PCn", "Picture Concepts", SUB),
        _f("AR", "Arithmetic", SUB),
        _f("DS", "Digit Span", SUB),
        _f("PS", "Picture Span", SUB),
        _f("LN", "Letter-Number Sequencing", SUB, "Letter Number Sequencing"),
        _f("CD", "Coding", SUB),
        _f("SS", "Symbol Search", SUB),
        _f("CA", "Cancellation", SUB),
        _f("VCI", "Verbal Comprehension", IDX, "Verbal Comprehension Index"),
        _f("VSI", "Visual Spatial", IDX, "Visual Spatial Index", "Visual-Spatial Index"),
        _f("FRI", "Fluid Reasoning", IDX, "Fluid Reasoning Index"),
        _f("WMI", "Working Memory", IDX, "Working Memory Index"),
        _f("PSI", "Processing Speed", IDX, "Processing Speed Index"),
        _f("FSIQ", "Full Scale IQ", CMP, "Full Scale Intelligence Quotient", "Full Scale"),
        _f("GAI", "General Ability Index", CMP, "General Ability"),
        _f("CPI", "Cognitive Proficiency Index", CMP, "Cognitive Proficiency"),
    ],
    scales=WECHSLER_SCALES,
    bands={ScoreScale.SCALED: SCALED_BANDS, ScoreScale.STANDARD: WECHSLER_STANDARD_BANDS},
)

WAIS = InstrumentDefinition(
    kind=InstrumentKind.WAIS,
    display_name="WAIS-IV",
    full_name="Wechsler Adult Intelligence Scale, Fourth Edition",
    role="cognitive",
    family_patterns=[
        r"\bWAIS(?:[\s-]?(?:IV|4|V|5))?\b",
        r"Wechsler\s+Adult\s+Intelligence\s+Scale",
    ],
    fields=[
        _f("SI", "Similarities", SUB),
        _f("VC", "Vocabulary", SUB),
        _f("IN", "Information", SUB),
        _f("CO", "Comprehension", SUB),
        _f("BD", "Block Design", SUB),
        _f("MR", "Matrix Reasoning", SUB),
        _f("VP", "Visual Puzzles", SUB),
        _f("FW", "Figure Weights", SUB),
        _f("PCm", "Picture Completion", SUB),
        _f("DS", "Digit Span", SUB),
        _f("AR", "Arithmetic", SUB),
        _f("LN", "Letter-Number Sequencing", SUB, "Letter Number Sequencing"),
        _f("SS", "Symbol Search", SUB),
        _f("CD", "Coding", SUB),
        _f("CA", "Cancellation", SUB),
        _f("VCI", "Verbal Comprehension", IDX, "Verbal Comprehension Index"),
        _f("PRI", "Perceptual Reasoning", IDX, "Perceptual Reasoning Index"),
        _f("WMI", "Working Memory", IDX, "Working Memory Index"),
        _f("PSI", "Processing Speed", IDX, "Processing Speed Index"),
        _f("FSIQ", "Full Scale IQ", CMP, "Full Scale Intelligence Quotient", "Full Scale"),
        _f("GAI", "General Ability Index", CMP, "General Ability"),
    ],
    scales=WECHSLER_SCALES,
    bands={ScoreScale.SCALED: SCALED_BANDS, ScoreScale.STANDARD: TRADITIONAL_STANDARD_BANDS},
)

WPPSI = InstrumentDefinition(
    kind=InstrumentKind.WPPSI,
    display_name="WPPSI-IV",
    full_name="Wechsler Preschool and Primary Scale of Intelligence, Fourth Edition",
    role="cognitive",
    family_patterns=[
        r"\bWPPSI(?:[\s-]?(?:IV|4))?\b",
        r"Wechsler\s+Preschool\s+and\s+Primary\s+Scale",
    ],
    fields=[
        _f("RV", "Receptive Vocabulary", SUB),
        _f("IN", "Information", SUB),
        _f("PN", "Picture Naming", SUB),
        _f("SI", "Similarities", SUB),
        _f("VC", "Vocabulary", SUB),
        _f("CO", "Comprehension", SUB),
        _f("BD", "Block Design", SUB),
        _f("OA", "Object Assembly", SUB),
        _f("MR", "Matrix Reasoning", SUB),
        _f("PCn", "Picture Concepts", SUB),
        _f("PM", "Picture Memory", SUB),
        _f("ZL", "Zoo Locations", SUB),
        _f("BS", "Bug Search", SUB),
        _f("CA", "Cancellation", SUB),
        _f("AC", "Animal Coding", SUB),
        _f("VCI", "Verbal Comprehension", IDX, "Verbal Comprehension Index"),
        _f("VSI", "Visual Spatial", IDX, "Visual Spatial Index", "Visual-Spatial Index"),
        _f("FRI", "Fluid Reasoning", IDX, "Fluid Reasoning Index"),
        _f("WMI", "Working Memory", IDX, "Working Memory Index"),
        _f("PSI", "Processing Speed", IDX, "Processing Speed Index"),
        _f("FSIQ", "Full Scale IQ", CMP, "Full Scale Intelligence Quotient", "Full Scale"),
    ],
    scales=WECHSLER_SCALES,
    bands={ScoreScale.SCALED: SCALED_BANDS, ScoreScale.STANDARD: WECHSLER_STANDARD_BANDS},
)

WIAT = InstrumentDefinition(
    kind=InstrumentKind.WIAT,
    display_name="WIAT-4",
    full_name="Wechsler Individual Achievement Test, Fourth Edition",
    role="achievement",
    family_patterns=[
        r"\bWIAT(?:[\s-]?(?:4|IV|III|3))?\b",
        r"Wechsler\s+Individual\s+Achievement\s+Test",
    ],
    fields=[
        _f("WR", "Word Reading", SUB),
        _f("PD", "Pseudoword Decoding", SUB),
        _f("RC", "Reading Comprehension", SUB),
        _f("ORF", "Oral Reading Fluency", SUB),
        _f("SP", "Spelling", SUB),
        _f("SC", "Sentence Composition", SUB),
        _f("EC", "Essay Composition", SUB),
        _f("NO", "Numerical Operations", SUB),
        _f("MPS", "Math Problem Solving", SUB),
        _f("LC", "Listening Comprehension", SUB),
        _f("OE", "Oral Expression", SUB),
        _f("TA", "Total Achievement", CMP),
        _f("RD", "Reading", CMP, "Reading Composite"),
        _f("BR", "Basic Reading", CMP, "Basic Reading Composite"),
        _f("WE", "Written Expression", CMP, "Written Expression Composite"),
        _f("MA", "Mathematics", CMP, "Mathematics Composite"),
        _f("OL", "Oral Language", CMP, "Oral Language Composite"),
    ],
    scales={SUB: ScoreScale.STANDARD, CMP: ScoreScale.STANDARD, IDX: ScoreScale.STANDARD},
    bands={ScoreScale.STANDARD: ACHIEVEMENT_STANDARD_BANDS},
)

WRAML = InstrumentDefinition(
    kind=InstrumentKind.WRAML,
    display_name="WRAML3",
    full_name="Wide Range Assessment of Memory and Learning, Third Edition",
    role="memory",
    family_patterns=[
        r"\bWRAML\s*-?\s*(?:2|3)?\b",
        r"Wide\s+Range\s+Assessment\s+of\s+Memory\s+and\s+Learning",
    ],
    fields=[
        _f("PM", "Picture Memory", SUB),
        _f("DL", "Design Learning", SUB),
        _f("SM", "Story Memory", SUB),
        _f("VL", "Verbal Learning", SUB),
        _f("FWi", "Finger Windows", SUB),
        _f("NL", "Number Letter", SUB, "Number/Letter"),
        _f("GIM", "General Immediate Memory", IDX, "General Memory Index", "General Memory"),
        _f("VIM", "Visual Immediate Memory", IDX, "Visual Memory Index", "Visual Memory"),
        _f("VBM", "Verbal Immediate Memory", IDX, "Verbal Memory Index", "Verbal Memory"),
        _f(
            "ACI",
            "Attention/Concentration",
            IDX,
            "Attention/Concentration Index",
            "Attention Concentration",
        ),
    ],
    scales={SUB: ScoreScale.SCALED, CMP: ScoreScale.STANDARD, IDX: ScoreScale.STANDARD},
    bands={ScoreScale.SCALED: SCALED_BANDS, ScoreScale.STANDARD: TRADITIONAL_STANDARD_BANDS},
)

ABAS = InstrumentDefinition(
    kind=InstrumentKind.ABAS,
    display_name="ABAS-3",
    full_name="Adaptive Behavior Assessment System, Third Edition",
    role="adaptive",
    family_patterns=[
        r"\bABAS(?:[\s-]?(?:3|II|III))?\b",
        r"Adaptive\s+Behavior\s+Assessment\s+System",
    ],
    fields=[
        _f("COM", "Communication", SUB),
        _f("CU", "Community Use", SUB),
        _f("FA", "Functional Academics", SUB),
        _f("HL", "Home Living", SUB),
        _f("HS", "Health and Safety", SUB),
        _f("LS", "Leisure", SUB),
        _f("SC", "Self-Care", SUB, "Self Care"),
        _f("SD", "Self-Direction", SUB, "Self Direction"),
        _f("SO", "Social", SUB),
        _f("GAC", "General Adaptive Composite", CMP),
        _f("CON", "Conceptual", CMP, "Conceptual Composite"),
        _f("SOC", "Social Composite", CMP, "Social"),
        _f("PRA", "Practical", CMP, "Practical Composite"),
    ],
    scales={SUB: ScoreScale.SCALED, CMP: ScoreScale.STANDARD, IDX: ScoreScale.STANDARD},
    bands={ScoreScale.SCALED: SCALED_BANDS, ScoreScale.STANDARD: ACHIEVEMENT_STANDARD_BANDS},
)

BASC = InstrumentDefinition(
    kind=InstrumentKind.BASC,
    display_name="BASC-3",
    full_name="Behavior Assessment System for Children, Third Edition",
    role="rating",
    family_patterns=[
        r"\bBASC(?:[\s-]?(?:3|2))?\b",
        r"Behavior\s+Assessment\s+System\s+for\s+Children",
    ],
    fields=[
        _f("HY", "Hyperactivity", SUB),
        _f("AG", "Aggression", SUB),
        _f("CP", "Conduct Problems", SUB),
        _f("AX", "Anxiety", SUB),
        _f("DP", "Depression", SUB),
        _f("SM", "Somatization", SUB),
        _f("AT", "Atypicality", SUB),
        _f("WD", "Withdrawal", SUB),
        _f("AP", "Attention Problems", SUB),
        _f("AD", "Adaptability", SUB),
        _f("SS", "Social Skills", SUB),
        _f("LD", "Leadership", SUB),
        _f("ADL", "Activities of Daily Living", SUB),
        _f("FC", "Functional Communication", SUB),
        _f("EXT", "Externalizing Problems", CMP),
        _f("INT", "Internalizing Problems", CMP),
        _f("BSI", "Behavioral Symptoms Index", CMP),
        _f("ASK", "Adaptive Skills", CMP),
    ],
    scales={SUB: ScoreScale.T_SCORE, CMP: ScoreScale.T_SCORE, IDX: ScoreScale.T_SCORE},
    bands={ScoreScale.T_SCORE: T_SCORE_BANDS},
)

REGISTRY: dict[InstrumentKind, InstrumentDefinition] = {
    definition.kind: definition
    for definition in (WISC, WAIS, WPPSI, WIAT, WRAML, ABAS, BASC)
}

COGNITIVE_KINDS = (InstrumentKind.WISC, InstrumentKind.WAIS, InstrumentKind.WPPSI)

# Age routing for the cognitive battery, in months
WAIS_MIN_AGE_MONTHS = 16 * 12
WISC_MIN_AGE_MONTHS = 6 * 12


def get_instrument(kind: InstrumentKind) -> InstrumentDefinition:
    """Look up a registry entry."""
    return REGISTRY[kind]


# ---------------------------------------------------------------------------
# Field-name matching
# ---------------------------------------------------------------------------

_TOKEN_SPLIT = re.compile(r"[\s\-–]+")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def name_pattern(name: str) -> str:
    """Regex for a spelled-out field name tolerant of spacing and hyphens."""
    tokens = [re.escape(t) for t in _TOKEN_SPLIT.split(name.strip()) if t]
    return r"(?<![A-Za-z])" + r"[\s\-–]+".join(tokens) + r"(?![A-Za-z])"


def normalize_label(label: str) -> str:
    """Lower-case a cell label and collapse punctuation to single spaces."""
    return _NON_ALNUM.sub(" ", label.lower()).strip()


def allows_text_abbrev(definition: FieldDefinition) -> bool:
    """Whether the abbreviation alone may identify the field in running text.

    Two-letter subtest codes ("IN", "SI") collide with ordinary words and
    headings, so only longer composite/index codes qualify.
    """
    return definition.kind != ScoreKind.SUBTEST and len(definition.abbrev) >= 3


def field_regex(definition: FieldDefinition, include_abbrev: bool = True) -> str:
    """Alternation of a field's names (and abbreviation where safe)."""
    parts = [name_pattern(n) for n in definition.names]
    if include_abbrev and allows_text_abbrev(definition):
        parts.append(r"\b" + re.escape(definition.abbrev) + r"\b")
    return "(?:" + "|".join(parts) + ")"


@dataclass(frozen=True)
class FieldMention:
    """A field name found in text."""

    field: FieldDefinition
    start: int
    end: int


@lru_cache(maxsize=None)
def _mention_patterns(kind: InstrumentKind) -> tuple[tuple[FieldDefinition, re.Pattern], ...]:
    definition = get_instrument(kind)
    compiled = []
    for field in definition.fields:
        names = "|".join(name_pattern(n) for n in field.names)
        pattern = re.compile(names, re.IGNORECASE)
        compiled.append((field, pattern))
        if allows_text_abbrev(field):
            compiled.append((field, re.compile(r"\b" + re.escape(field.abbrev) + r"\b")))
    return tuple(compiled)


def find_mentions(text: str, kind: InstrumentKind) -> list[FieldMention]:
    """Non-overlapping field mentions, longest match winning at each position.

    Fields sharing an identical name (e.g. an adaptive skill area and the
    composite of the same name) are all reported for that span; the bounds
    check downstream decides which one a number belongs to.
    """
    candidates: list[FieldMention] = []
    for field, pattern in _mention_patterns(kind):
        for match in pattern.finditer(text):
            candidates.append(FieldMention(field, match.start(), match.end()))

    candidates.sort(key=lambda m: (m.start, -(m.end - m.start)))
    chosen: list[FieldMention] = []
    for mention in candidates:
        if chosen and mention.start < chosen[-1].end:
            last = chosen[-1]
            if (mention.start, mention.end) == (last.start, last.end) and mention.field != last.field:
                chosen.append(mention)
            continue
        chosen.append(mention)
    return chosen


def find_all_mentions(
    text: str,
    kinds: list[InstrumentKind],
) -> list[tuple[FieldMention, InstrumentKind]]:
    """Field mentions across several instruments, longest match winning.

    Resolving across instruments keeps the achievement "Reading
    Comprehension" from also counting as the cognitive "Comprehension".
    """
    tagged = [(mention, kind) for kind in kinds for mention in find_mentions(text, kind)]
    tagged.sort(key=lambda t: (t[0].start, -(t[0].end - t[0].start)))
    chosen: list[tuple[FieldMention, InstrumentKind]] = []
    for mention, kind in tagged:
        if chosen and mention.start < chosen[-1][0].end:
            last = chosen[-1][0]
            if (mention.start, mention.end) == (last.start, last.end):
                chosen.append((mention, kind))
            continue
        chosen.append((mention, kind))
    return chosen


@lru_cache(maxsize=None)
def _label_index(kind: InstrumentKind, kinds: tuple[ScoreKind, ...]) -> dict[str, list[FieldDefinition]]:
    index: dict[str, list[FieldDefinition]] = {}
    for field in get_instrument(kind).fields_of(*kinds):
        keys = {field.abbrev.lower()}
        for name in field.names:
            keys.add(normalize_label(name))
            keys.add(normalize_label(f"{name} {field.abbrev}"))
        for key in keys:
            index.setdefault(key, []).append(field)
    return index


def match_label(
    label: str,
    kind: InstrumentKind,
    kinds: tuple[ScoreKind, ...] = (),
) -> list[FieldDefinition]:
    """Fields whose name, abbreviation or "Name (ABBR)" equals a table label."""
    key = normalize_label(re.sub(r"[*†‡]+", "", label))
    if not key:
        return []
    return list(_label_index(kind, tuple(kinds)).get(key, []))


# ---------------------------------------------------------------------------
# Instrument detection
# ---------------------------------------------------------------------------


@lru_cache(maxsize=None)
def _family_patterns(kind: InstrumentKind) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in get_instrument(kind).family_patterns)


def family_hits(text: str, kind: InstrumentKind) -> int:
    """Number of mentions of an instrument family in ``text``."""
    return sum(len(p.findall(text)) for p in _family_patterns(kind))


def family_pattern(kind: InstrumentKind) -> str:
    """Combined regex source for an instrument family's names."""
    return "|".join(f"(?:{p})" for p in get_instrument(kind).family_patterns)


def detect_instruments(text: str) -> list[InstrumentKind]:
    """Prioritized classification of the families a document reports.

    At most one cognitive battery is returned (the most-mentioned one, ties
    broken by registry order) because the Wechsler batteries share subtest
    names. Other families follow in registry order.
    """
    hits = {kind: family_hits(text, kind) for kind in REGISTRY}
    cognitive = [k for k in COGNITIVE_KINDS if hits[k] > 0]
    detected: list[InstrumentKind] = []
    if cognitive:
        detected.append(max(cognitive, key=lambda k: (hits[k], -COGNITIVE_KINDS.index(k))))
    detected.extend(k for k in REGISTRY if k not in COGNITIVE_KINDS and hits[k] > 0)
    return detected


_AGE_YEARS = re.compile(r"(\d+)\s*(?:years?|yrs?|y)\b", re.IGNORECASE)
_AGE_MONTHS = re.compile(r"(\d+)\s*(?:months?|mos?|m)\b", re.IGNORECASE)
_AGE_COLON = re.compile(r"^\s*(\d+)\s*[:;]\s*(\d+)\s*$")


def parse_age_months(age: Optional[str]) -> Optional[int]:
    """Total months from an age string such as "10 years, 2 months" or "10:2"."""
    if not age:
        return None
    colon = _AGE_COLON.match(age)
    if colon:
        return int(colon.group(1)) * 12 + int(colon.group(2))
    years = _AGE_YEARS.search(age)
    months = _AGE_MONTHS.search(age)
    if not years and not months:
        return None
    return (int(years.group(1)) if years else 0) * 12 + (int(months.group(1)) if months else 0)


def select_cognitive_instrument(age_months: Optional[int]) -> InstrumentKind:
    """Route the cognitive battery by age at testing.

    16:0 and older uses WAIS, younger than 6:0 uses WPPSI, otherwise WISC.
    """
    if age_months is None:
        return InstrumentKind.WISC
    if age_months >= WAIS_MIN_AGE_MONTHS:
        return InstrumentKind.WAIS
    if age_months < WISC_MIN_AGE_MONTHS:
        return InstrumentKind.WPPSI
    return InstrumentKind.WISC


class InstrumentSelection(BaseModel):
    """Instruments a report covers: the mandatory pair plus optional families."""

    cognitive: InstrumentKind = InstrumentKind.WISC
    achievement: InstrumentKind = InstrumentKind.WIAT
    optional: list[InstrumentKind] = Field(default_factory=list)

    @property
    def instruments(self) -> list[InstrumentKind]:
        ordered = [self.cognitive, self.achievement]
        ordered.extend(k for k in self.optional if k not in ordered)
        return ordered

    def includes(self, kind: InstrumentKind) -> bool:
        return kind in self.instruments

    @classmethod
    def from_detected(
        cls,
        detected: list[InstrumentKind],
        age_months: Optional[int] = None,
    ) -> "InstrumentSelection":
        """Build a selection from detected families and, if known, the student's age.

        A known age decides the cognitive battery; otherwise the first
        detected cognitive family is used, falling back to WISC.
        """
        if age_months is not None:
            cognitive = select_cognitive_instrument(age_months)
        else:
            cognitive = next((k for k in detected if k in COGNITIVE_KINDS), InstrumentKind.WISC)
        optional = [
            k
            for k in detected
            if k not in COGNITIVE_KINDS and k != InstrumentKind.WIAT
        ]
        return cls(cognitive=cognitive, optional=optional)

"""Narrative Stage - Deterministic cognitive sections for WAIS-IV and WPPSI-IV.

WISC-V narratives are written by an external language service. Adult and
preschool batteries instead fill a fixed template from the merged scores
(usually manual entries). Every index and FSIQ needs a score and a
percentile; a partial section is never produced.
"""

import re
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from psyscore.errors import MissingFieldsError
from psyscore.instruments import get_instrument
from psyscore.models import InstrumentKind, ScoreMap
from psyscore.pipeline.stage_classify import (
    descriptor_to_strength_label,
    percentile_to_descriptor,
)

_TEMPLATE_ROOT = Path(__file__).resolve().parent.parent / "templates"

_ENV = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_ROOT)),
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=False,
)

TEMPLATES = {
    InstrumentKind.WAIS: "wais_cognitive.txt.jinja",
    InstrumentKind.WPPSI: "wppsi_cognitive.txt.jinja",
}

REQUIRED_FIELDS: dict[InstrumentKind, list[str]] = {
    InstrumentKind.WAIS: ["FSIQ", "VCI", "PRI", "WMI", "PSI"],
    InstrumentKind.WPPSI: ["FSIQ", "VCI", "VSI", "FRI", "WMI", "PSI"],
}

SCORE_NOT_AVAILABLE = "[score not available]"

PRONOUNS = {
    "he": {"pronoun": "he", "object": "him", "possessive": "his", "reflexive": "himself"},
    "she": {"pronoun": "she", "object": "her", "possessive": "her", "reflexive": "herself"},
    "they": {"pronoun": "they", "object": "them", "possessive": "their", "reflexive": "themselves"},
}


def ordinal(value: float) -> str:
    """39 -> "39th", 1 -> "1st", 99.9 -> "99.9th"."""
    if not float(value).is_integer():
        return f"{value:g}th"
    number = int(value)
    if 10 <= number % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(number % 10, "th")
    return f"{number}{suffix}"


def pronoun_set(pronouns: Optional[str]) -> dict[str, str]:
    """Pronoun forms for "he/him", "she", "they/them" and similar."""
    key = (pronouns or "they").split("/")[0].strip().lower()
    return PRONOUNS.get(key, PRONOUNS["they"])


def personalize(text: str, first_name: str, pronouns: Optional[str] = None) -> str:
    """Replace name and pronoun tokens.

    Tokens: ``[firstName]``, ``[pronoun]``, ``[object]``, ``[possessive]``
    and ``[reflexive]``. A token written with a capital first letter
    (``[Pronoun]``) yields a capitalised form.
    """
    forms = pronoun_set(pronouns)

    def replace(match: re.Match) -> str:
        token = match.group(1)
        if token == "firstName":
            return first_name
        value = forms.get(token.lower())
        if value is None:
            return match.group(0)
        return value.capitalize() if token[0].isupper() else value

    return re.sub(r"\[(firstName|[Pp]ronoun|[Oo]bject|[Pp]ossessive|[Rr]eflexive)\]", replace, text)


_SENTENCE_START = re.compile(r"(^|[.!?]\s+|\n\s*)([a-z])")


def capitalize_sentences(text: str) -> str:
    """Upper-case the first letter of each sentence and line."""
    return _SENTENCE_START.sub(lambda m: m.group(1) + m.group(2).upper(), text)


def missing_required(instrument: InstrumentKind, score_map: ScoreMap) -> list[str]:
    """Flat keys of required scores and percentiles the map lacks."""
    definition = get_instrument(instrument)
    missing = []
    for abbrev in REQUIRED_FIELDS[instrument]:
        key = definition.field_key(abbrev)
        record = score_map.get(key)
        if record is None:
            missing.extend([f"{key}.score", f"{key}.percentile"])
        elif record.percentile is None:
            missing.append(f"{key}.percentile")
    return missing


def fill_cognitive_template(
    instrument: InstrumentKind,
    first_name: str,
    score_map: ScoreMap,
    pronouns: Optional[str] = None,
    strengths: Optional[str] = None,
    weaker_areas: Optional[str] = None,
) -> str:
    """Cognitive Functioning section for a WAIS-IV or WPPSI-IV administration.

    Args:
        instrument: ``InstrumentKind.WAIS`` or ``InstrumentKind.WPPSI``.
        first_name: Student's first name.
        score_map: Merged scores including any manual entries.
        pronouns: "he", "she" or "they" (optionally "he/him" style).
        strengths: Free text for the summary; placeholder when blank.
        weaker_areas: Free text for the summary; placeholder when blank.

    Returns:
        Section text with headings as plain lines.

    Raises:
        ValueError: If ``instrument`` has no deterministic template.
        MissingFieldsError: If a required score or percentile is absent.
    """
    if instrument not in TEMPLATES:
        raise ValueError(f"No cognitive template for {instrument.value}")

    missing = missing_required(instrument, score_map)
    if missing:
        raise MissingFieldsError(missing)

    definition = get_instrument(instrument)
    context: dict = {
        "first_name": "[firstName]",
        "strengths": (strengths or "").strip() or SCORE_NOT_AVAILABLE,
        "weaker_areas": (weaker_areas or "").strip() or SCORE_NOT_AVAILABLE,
    }
    for abbrev in REQUIRED_FIELDS[instrument]:
        record = score_map.get(definition.field_key(abbrev))
        descriptor = percentile_to_descriptor(record.percentile)
        context[abbrev] = {
            "score": record.score,
            "percentile": ordinal(record.percentile),
            "descriptor": descriptor,
            "strength": descriptor_to_strength_label(descriptor),
        }

    text = _ENV.get_template(TEMPLATES[instrument]).render(**context)
    return capitalize_sentences(personalize(text, first_name, pronouns))

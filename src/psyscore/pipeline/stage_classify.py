"""Classification Stage - Map scores and percentiles to qualitative labels.

Pure lookups. Band tables live on each ``InstrumentDefinition`` so label
sets can differ by family (e.g. "Extremely Low" vs "Borderline" wording)
without per-call-site branching.
"""

from typing import Optional

from psyscore.instruments import SCALED_BANDS, get_instrument
from psyscore.models import (
    PERCENTILE_BOUNDS,
    SCALE_BOUNDS,
    ClassificationBand,
    FieldDefinition,
    InstrumentKind,
    ScoreRecord,
    ScoreScale,
    SourceStrategy,
)


# Approximate percentile for each scaled score (mean 10, SD 3)
SCALED_PERCENTILES: dict[int, float] = {
    1: 0.1,
    2: 0.4,
    3: 1,
    4: 2,
    5: 5,
    6: 9,
    7: 16,
    8: 25,
    9: 37,
    10: 50,
    11: 63,
    12: 75,
    13: 84,
    14: 91,
    15: 95,
    16: 98,
    17: 99,
    18: 99.6,
    19: 99.9,
}

PERCENTILE_DESCRIPTORS: list[tuple[float, str]] = [
    (98, "Very High"),
    (91, "High"),
    (75, "Above Average"),
    (25, "Average"),
    (9, "Low Average"),
    (3, "Low"),
    (0, "Very Low"),
]

STRENGTH_DESCRIPTORS = {"Very High", "High", "Above Average"}
WEAKER_DESCRIPTORS = {"Low Average", "Low", "Very Low"}

# Default band tables when no instrument is given
DEFAULT_BANDS: dict[ScoreScale, list[ClassificationBand]] = {
    ScoreScale.SCALED: SCALED_BANDS,
    ScoreScale.STANDARD: get_instrument(InstrumentKind.WISC).bands_for(ScoreScale.STANDARD),
    ScoreScale.T_SCORE: get_instrument(InstrumentKind.BASC).bands_for(ScoreScale.T_SCORE),
}


def bands_for(scale: ScoreScale, instrument: Optional[InstrumentKind] = None) -> list[ClassificationBand]:
    """Band table for a scale, preferring the instrument's own labels."""
    if instrument is not None:
        definition = get_instrument(instrument)
        if scale in definition.bands:
            return definition.bands_for(scale)
    return DEFAULT_BANDS[scale]


def classify(
    value: float,
    scale: ScoreScale,
    instrument: Optional[InstrumentKind] = None,
) -> str:
    """Qualitative label for a score.

    Args:
        value: Score on ``scale``.
        scale: Scaled (1-19), standard (40-160) or T (20-120).
        instrument: Family whose label set applies. Defaults to Wechsler labels.

    Returns:
        Label from the closed set for that scale and family.

    Raises:
        ValueError: If ``value`` is outside the scale's bounds.
    """
    if not SCALE_BOUNDS[scale].contains(value):
        raise ValueError(f"{value} outside {scale.value} bounds")
    for band in bands_for(scale, instrument):
        if value >= band.minimum:
            return band.label
    # Bands always end with a catch-all minimum of 0
    raise ValueError(f"No band for {value}")


def label_rank(label: str, scale: ScoreScale, instrument: Optional[InstrumentKind] = None) -> int:
    """Ordinal position of a label, 0 for the lowest band."""
    labels = [band.label for band in reversed(bands_for(scale, instrument))]
    return labels.index(label)


def scaled_to_percentile(value: int) -> float:
    """Approximate percentile rank for a scaled score."""
    if value not in SCALED_PERCENTILES:
        raise ValueError(f"{value} outside scaled bounds")
    return SCALED_PERCENTILES[value]


def percentile_to_descriptor(percentile: float) -> str:
    """Percentile-based descriptor used by the cognitive narrative templates."""
    if not PERCENTILE_BOUNDS.contains(percentile):
        raise ValueError(f"{percentile} is not a percentile")
    for minimum, label in PERCENTILE_DESCRIPTORS:
        if percentile >= minimum:
            return label
    raise ValueError(f"No descriptor for {percentile}")


def descriptor_to_strength_label(descriptor: str) -> str:
    """Phrase describing a domain as a relative strength or weaker area."""
    if descriptor in STRENGTH_DESCRIPTORS:
        return "a relative strength"
    if descriptor in WEAKER_DESCRIPTORS:
        return "an area of somewhat weaker development"
    return "an area of expected development"


def annotate(record: ScoreRecord) -> ScoreRecord:
    """Fill classification and, for scaled-only reports, an estimated percentile.

    A classification copied from the source is kept as-is.
    """
    update: dict = {}
    if not record.classification:
        update["classification"] = classify(record.score, record.scale, record.instrument)
    if record.percentile is None and record.scale == ScoreScale.SCALED:
        update["percentile"] = scaled_to_percentile(record.score)
        update["percentile_estimated"] = True
    if not update:
        return record
    return record.model_copy(update=update)


def canonical_label(
    label: Optional[str],
    scale: ScoreScale,
    instrument: Optional[InstrumentKind] = None,
) -> Optional[str]:
    """Band label matching ``label`` case-insensitively, or None."""
    if not label:
        return None
    wanted = " ".join(label.split()).lower()
    for band in bands_for(scale, instrument):
        if band.label.lower() == wanted:
            return band.label
    return None


def make_record(
    instrument: InstrumentKind,
    field: FieldDefinition,
    score: Optional[int],
    strategy: SourceStrategy,
    percentile: Optional[float] = None,
    classification: Optional[str] = None,
    confidence_interval: Optional[str] = None,
    source_document: Optional[str] = None,
) -> Optional[ScoreRecord]:
    """Validated, annotated record, or None when a value is out of bounds.

    A source classification is kept only when it names one of the
    instrument's bands for the field's scale; otherwise it is derived.
    """
    definition = get_instrument(instrument)
    scale = definition.scale_for(field.kind)
    if score is None or not SCALE_BOUNDS[scale].contains(score):
        return None
    if percentile is not None and not PERCENTILE_BOUNDS.contains(percentile):
        return None

    record = ScoreRecord(
        field_key=definition.field_key(field.abbrev),
        instrument=instrument,
        field_abbrev=field.abbrev,
        kind=field.kind,
        scale=scale,
        score=score,
        percentile=percentile,
        classification=canonical_label(classification, scale, instrument),
        confidence_interval=confidence_interval,
        source_strategy=strategy,
        source_document=source_document,
    )
    return annotate(record)

"""Merge Stage - Fold score batches into one write-once ScoreMap.

Batches are ordered by strategy precedence, then by document upload order,
and each record is written only if its field key is still free. A clean
structural table therefore beats a narrative match for the same field no
matter which document was processed first. Manual overrides are the
lowest tier: they fill gaps and never replace a recovered score.
"""

import logging
from typing import Iterable, Optional

from psyscore.instruments import get_instrument
from psyscore.models import (
    InstrumentKind,
    ManualOverride,
    ScoreBatch,
    ScoreKind,
    ScoreMap,
    SourceStrategy,
)
from psyscore.pipeline.stage_classify import make_record

logger = logging.getLogger(__name__)


def batch_order(batch: ScoreBatch) -> tuple[int, int]:
    return batch.strategy.precedence, batch.document_index


def merge_batches(batches: Iterable[ScoreBatch]) -> ScoreMap:
    """Build a fresh ScoreMap from ``batches``.

    Args:
        batches: Any number of batches, in any order.

    Returns:
        ScoreMap holding, per field key, the record from the highest
        precedence strategy (earliest document within a tier).
    """
    score_map = ScoreMap()
    for batch in sorted(batches, key=batch_order):
        for record in batch.records:
            if not score_map.add(record):
                logger.debug(
                    "Kept existing %s; ignored %s value from %s",
                    record.field_key,
                    batch.strategy.value,
                    batch.source_document,
                )
    return score_map


def overrides_to_batch(
    overrides: Iterable[ManualOverride],
    document_index: int = 0,
) -> Optional[ScoreBatch]:
    """Turn user-entered values into a manual-tier batch.

    Overrides with an unknown field key or out-of-bounds value are dropped
    with a warning.
    """
    records = []
    for override in overrides:
        instrument_name, _, abbrev = override.field_key.partition(".")
        try:
            instrument = InstrumentKind(instrument_name)
        except ValueError:
            logger.warning("Unknown instrument in override %s", override.field_key)
            continue
        field = get_instrument(instrument).field(abbrev)
        if field is None:
            logger.warning("Unknown field in override %s", override.field_key)
            continue
        record = make_record(
            instrument,
            field,
            override.score,
            SourceStrategy.MANUAL,
            percentile=override.percentile,
            classification=override.classification,
            source_document="manual",
        )
        if record is None:
            logger.warning("Override %s is out of bounds", override.field_key)
            continue
        records.append(record)

    if not records:
        return None
    return ScoreBatch(
        strategy=SourceStrategy.MANUAL,
        document_index=document_index,
        source_document="manual",
        records=records,
    )


def apply_overrides(
    batches: Iterable[ScoreBatch],
    overrides: Iterable[ManualOverride],
) -> ScoreMap:
    """Merge ``batches`` with ``overrides`` as the lowest-precedence tier."""
    all_batches = list(batches)
    manual = overrides_to_batch(overrides)
    if manual is not None:
        all_batches.append(manual)
    return merge_batches(all_batches)


def missing_fields(
    score_map: ScoreMap,
    instrument: InstrumentKind,
    kinds: Iterable[ScoreKind] = (),
) -> list[str]:
    """Field keys of ``instrument`` (optionally only ``kinds``) with no score."""
    definition = get_instrument(instrument)
    return [
        definition.field_key(field.abbrev)
        for field in definition.fields_of(*kinds)
        if definition.field_key(field.abbrev) not in score_map
    ]

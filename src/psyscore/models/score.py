"""Score IR models: records, batches and the write-once score map."""

from typing import Iterator, Optional, Union

from pydantic import BaseModel, Field

from .base import InstrumentKind, ScoreKind, ScoreScale, SourceStrategy


class ScoreRecord(BaseModel):
    """
    One validated score recovered from a source.

    ``score`` is the value on the instrument's reporting scale (scaled,
    standard or T). Records are only constructed after the value has passed
    the instrument/kind bounds check, so every instance is usable.
    """

    field_key: str = Field(..., description="Instrument-qualified key, e.g. 'WISC.VCI'")
    instrument: InstrumentKind
    field_abbrev: str
    kind: ScoreKind
    scale: ScoreScale
    score: int
    percentile: Optional[float] = Field(None, ge=0.0, le=100.0)
    percentile_estimated: bool = Field(
        default=False, description="Percentile looked up from the scaled score, not read"
    )
    classification: Optional[str] = None
    confidence_interval: Optional[str] = None
    source_strategy: SourceStrategy
    source_document: Optional[str] = None

    class Config:
        frozen = True

    @property
    def score_suffix(self) -> str:
        """Flat-key suffix for the score value."""
        return "scaled" if self.scale == ScoreScale.SCALED else "score"


class ScoreBatch(BaseModel):
    """Records produced by one strategy on one document."""

    strategy: SourceStrategy
    document_index: int = Field(default=0, ge=0, description="Upload order of the source")
    source_document: Optional[str] = None
    records: list[ScoreRecord] = Field(default_factory=list)


class ManualOverride(BaseModel):
    """User-entered value for a field no document yielded."""

    field_key: str
    score: Optional[int] = None
    percentile: Optional[float] = Field(None, ge=0.0, le=100.0)
    classification: Optional[str] = None


FlatValue = Union[int, float, str]


class ScoreMap:
    """Mapping from field key to record; each key is written at most once.

    Precedence is decided by the order records are offered (see
    ``stage_merge``), never by recency: ``add`` ignores a key that is
    already present.
    """

    def __init__(self) -> None:
        self._records: dict[str, ScoreRecord] = {}

    def add(self, record: ScoreRecord) -> bool:
        """Store ``record`` unless its key is already set. Returns True if stored."""
        if record.field_key in self._records:
            return False
        self._records[record.field_key] = record
        return True

    def get(self, field_key: str) -> Optional[ScoreRecord]:
        return self._records.get(field_key)

    def __contains__(self, field_key: object) -> bool:
        return field_key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def keys(self) -> list[str]:
        return list(self._records)

    def records(self) -> list[ScoreRecord]:
        return list(self._records.values())

    def for_instrument(self, instrument: InstrumentKind) -> list[ScoreRecord]:
        return [r for r in self._records.values() if r.instrument == instrument]

    def to_flat(self) -> dict[str, FlatValue]:
        """Stable ``<Inst>.<Field>.<scaled|score|percentile|qualitative>`` keys."""
        flat: dict[str, FlatValue] = {}
        for key, record in self._records.items():
            flat[f"{key}.{record.score_suffix}"] = record.score
            if record.percentile is not None:
                flat[f"{key}.percentile"] = record.percentile
            if record.classification:
                flat[f"{key}.qualitative"] = record.classification
        return flat

    def to_dict(self) -> dict[str, dict]:
        return {key: record.model_dump(mode="json") for key, record in self._records.items()}

"""Instrument registry models: fields, bounds and classification bands."""

from typing import Optional

from pydantic import BaseModel, Field

from .base import InstrumentKind, ScoreKind, ScoreScale


class ScoreBounds(BaseModel):
    """Inclusive numeric validation range."""

    low: float
    high: float

    class Config:
        frozen = True

    def contains(self, value: Optional[float]) -> bool:
        return value is not None and self.low <= value <= self.high


SCALE_BOUNDS: dict[ScoreScale, ScoreBounds] = {
    ScoreScale.SCALED: ScoreBounds(low=1, high=19),
    ScoreScale.STANDARD: ScoreBounds(low=40, high=160),
    ScoreScale.T_SCORE: ScoreBounds(low=20, high=120),
}

PERCENTILE_BOUNDS = ScoreBounds(low=0, high=100)


class ClassificationBand(BaseModel):
    """Qualitative label for scores at or above ``minimum``."""

    minimum: float
    label: str

    class Config:
        frozen = True


class FieldDefinition(BaseModel):
    """One subtest, composite or index known to an instrument."""

    abbrev: str = Field(..., description="Short code used in field keys, e.g. 'SI'")
    name: str = Field(..., description="Canonical display name, e.g. 'Similarities'")
    kind: ScoreKind
    aliases: list[str] = Field(default_factory=list)

    class Config:
        frozen = True

    @property
    def names(self) -> list[str]:
        """Spelled-out names, longest first."""
        return sorted([self.name, *self.aliases], key=len, reverse=True)


class InstrumentDefinition(BaseModel):
    """
    Static registry entry for one test family.

    Read-only for the lifetime of the process. Bands are stored per scale in
    descending ``minimum`` order; the last band catches everything below.
    """

    kind: InstrumentKind
    display_name: str
    full_name: str
    role: str = Field(..., description="cognitive, achievement, memory, adaptive or rating")
    family_patterns: list[str] = Field(
        default_factory=list, description="Regexes that identify the family in text"
    )
    fields: list[FieldDefinition]
    scales: dict[ScoreKind, ScoreScale]
    bands: dict[ScoreScale, list[ClassificationBand]]

    class Config:
        frozen = True

    def field(self, abbrev: str) -> Optional[FieldDefinition]:
        for definition in self.fields:
            if definition.abbrev == abbrev:
                return definition
        return None

    def fields_of(self, *kinds: ScoreKind) -> list[FieldDefinition]:
        """Fields of the given kinds in registry (presentation) order."""
        return [f for f in self.fields if not kinds or f.kind in kinds]

    def scale_for(self, kind: ScoreKind) -> ScoreScale:
        return self.scales[kind]

    def bounds_for(self, kind: ScoreKind) -> ScoreBounds:
        return SCALE_BOUNDS[self.scale_for(kind)]

    def bands_for(self, scale: ScoreScale) -> list[ClassificationBand]:
        return self.bands[scale]

    def labels(self, scale: ScoreScale) -> list[str]:
        """Closed label set for a scale, lowest band first."""
        return [band.label for band in reversed(self.bands[scale])]

    def field_key(self, abbrev: str) -> str:
        return f"{self.kind.value}.{abbrev}"

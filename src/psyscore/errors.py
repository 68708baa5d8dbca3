"""Exception types raised by the engine.

Only caller mistakes and unavailable decoders raise. Everything that goes
wrong while reading a document is recovered inside the pipeline and surfaces
as a status value (see ``SectionStatus``) or as a missing score.
"""


class PsyscoreError(Exception):
    """Base class for engine errors."""


class UnsupportedMediaError(PsyscoreError):
    """Raised when bytes cannot be routed to any decoder."""


class DecoderUnavailableError(PsyscoreError):
    """Raised when a decoder library or binary cannot be initialized."""

    def __init__(self, decoder: str, reason: str):
        super().__init__(f"{decoder} decoder unavailable: {reason}")
        self.decoder = decoder
        self.reason = reason


class MissingFieldsError(PsyscoreError):
    """Raised when a template cannot be filled because required scores are absent."""

    def __init__(self, missing: list[str]):
        super().__init__("Missing fields: " + ", ".join(missing))
        self.missing = list(missing)

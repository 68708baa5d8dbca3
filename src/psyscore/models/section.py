"""Section segmentation result model."""

from typing import Optional

from pydantic import BaseModel

from .base import SectionStatus


class SectionExtract(BaseModel):
    """One named section recovered (or not) from one document attempt."""

    section_id: str
    status: SectionStatus
    text: Optional[str] = None
    tier: Optional[str] = None
    source_document: Optional[str] = None

    class Config:
        frozen = True

    @property
    def ok(self) -> bool:
        return self.status == SectionStatus.OK and bool(self.text)

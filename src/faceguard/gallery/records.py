"""Enrolled identity records and their persisted form."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, StrictBool

from faceguard.ml.embedding import Descriptor

SELF_RECORD_ID = "self"


class RecordOrigin(StrEnum):
    SEED = "seed"
    SELF = "self"


@dataclass(frozen=True)
class FaceRecord:
    id: str
    display_name: str
    role: str
    descriptor: Descriptor
    authorized: bool
    enrolled_at: datetime
    source_image_ref: str | None = None
    origin: RecordOrigin = RecordOrigin.SEED

    def with_descriptor(self, descriptor: Descriptor) -> FaceRecord:
        return replace(self, descriptor=descriptor)


class StoredFaceRecord(BaseModel):
    """JSON document kept in the store for a self-enrolled record.

    Validation is strict where a lenient coercion would change meaning: the
    ``authorized`` flag must be a JSON boolean and timestamps must carry a
    zone. Anything malformed raises ``pydantic.ValidationError``.
    """

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    id: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    role: str = ""
    descriptor: list[float] = Field(min_length=1)
    descriptor_source: str = Field(min_length=1)
    authorized: StrictBool
    enrolled_at: AwareDatetime
    source_image_ref: str | None = None
    origin: RecordOrigin = RecordOrigin.SELF

    @classmethod
    def from_record(cls, record: FaceRecord) -> StoredFaceRecord:
        return cls(
            id=record.id,
            display_name=record.display_name,
            role=record.role,
            descriptor=record.descriptor.to_list(),
            descriptor_source=record.descriptor.source,
            authorized=record.authorized,
            enrolled_at=record.enrolled_at,
            source_image_ref=record.source_image_ref,
            origin=record.origin,
        )

    def to_record(self) -> FaceRecord:
        return FaceRecord(
            id=self.id,
            display_name=self.display_name,
            role=self.role,
            descriptor=Descriptor.from_list(self.descriptor, self.descriptor_source),
            authorized=self.authorized,
            enrolled_at=self.enrolled_at,
            source_image_ref=self.source_image_ref,
            origin=self.origin,
        )

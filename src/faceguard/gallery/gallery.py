"""In-memory gallery of enrolled identities with a persisted self-enrollment.

``add`` and ``update`` are the only mutation paths besides ``remove``. All
writes go through an ``asyncio.Lock`` so readers using ``snapshot()`` never
observe a half-finished enrollment. ``list()`` orders the self-enrolled record
first so it wins confidence ties against seeded identities.
"""

from __future__ import annotations

import asyncio
import builtins
import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from faceguard.errors import DuplicateRecordError, RecordNotFoundError
from faceguard.gallery.records import SELF_RECORD_ID, FaceRecord, RecordOrigin, StoredFaceRecord

if TYPE_CHECKING:
    from collections.abc import Iterable

    from faceguard.gallery.storage import ImageStore, KeyValueStore

logger = logging.getLogger(__name__)

SELF_ENROLLMENT_KEY = "faceguard.self_enrollment"


def _name_key(name: str) -> str:
    return name.strip().casefold()


class FaceGallery:
    def __init__(self, store: KeyValueStore, images: ImageStore) -> None:
        self._store = store
        self._images = images
        self._records: dict[str, FaceRecord] = {}
        self._lock = asyncio.Lock()

    @property
    def images(self) -> ImageStore:
        return self._images

    # -- Reads --------------------------------------------------------------

    def list(self) -> builtins.list[FaceRecord]:
        records = list(self._records.values())
        return sorted(records, key=lambda record: record.origin is not RecordOrigin.SELF)

    async def snapshot(self) -> builtins.list[FaceRecord]:
        """``list()`` after any in-flight write has completed."""
        async with self._lock:
            return self.list()

    def get(self, record_id: str) -> FaceRecord | None:
        return self._records.get(record_id)

    @property
    def self_record(self) -> FaceRecord | None:
        return self._records.get(SELF_RECORD_ID)

    def name_taken(self, name: str, *, ignore_id: str | None = None) -> bool:
        key = _name_key(name)
        return any(_name_key(r.display_name) == key for r in self._records.values() if r.id != ignore_id)

    def __len__(self) -> int:
        return len(self._records)

    # -- Writes -------------------------------------------------------------

    async def add(self, record: FaceRecord) -> None:
        async with self._lock:
            self._add_locked(record)

    async def update(self, record_id: str, record: FaceRecord) -> None:
        async with self._lock:
            self._update_locked(record_id, record)

    async def remove(self, record_id: str) -> FaceRecord:
        async with self._lock:
            record = self._records.pop(record_id, None)
            if record is None:
                raise RecordNotFoundError(record_id)
            if record.origin is RecordOrigin.SELF:
                self._store.delete(SELF_ENROLLMENT_KEY)
                if record.source_image_ref:
                    self._images.delete(record.source_image_ref)
            logger.info("Removed %s from gallery", record.display_name)
            return record

    async def upsert_self(self, record: FaceRecord) -> None:
        """Insert or replace the single self-enrolled record.

        The replaced record's still is deleted only once the new record is in
        place, so a rejected upsert leaves the previous enrollment intact.
        """
        if record.id != SELF_RECORD_ID or record.origin is not RecordOrigin.SELF:
            raise ValueError("Self-enrollment records must use the self id and origin")
        async with self._lock:
            previous = self._records.get(SELF_RECORD_ID)
            if previous is None:
                self._add_locked(record)
                return
            self._update_locked(SELF_RECORD_ID, record)
            if previous.source_image_ref and previous.source_image_ref != record.source_image_ref:
                self._images.delete(previous.source_image_ref)

    async def clear_self(self) -> bool:
        """Remove the self-enrolled record if present."""
        if self.self_record is None:
            return False
        try:
            await self.remove(SELF_RECORD_ID)
        except RecordNotFoundError:
            return False
        return True

    def seed(self, records: Iterable[FaceRecord]) -> None:
        """Install seeded records at startup; they are never persisted."""
        for record in records:
            if record.origin is not RecordOrigin.SEED:
                raise ValueError(f"Record {record.id} is not a seed record")
            if record.id in self._records or self.name_taken(record.display_name):
                logger.warning("Skipping duplicate seed %s", record.display_name)
                continue
            self._records[record.id] = record

    def load_persisted(self) -> FaceRecord | None:
        """Restore the self-enrolled record from the store, if any."""
        payload = self._store.get(SELF_ENROLLMENT_KEY)
        if payload is None:
            return None
        try:
            record = StoredFaceRecord.model_validate_json(payload).to_record()
        except ValidationError as exc:
            logger.warning("Ignoring corrupt self-enrollment entry: %s", exc)
            return None
        if record.id != SELF_RECORD_ID or record.origin is not RecordOrigin.SELF:
            logger.warning("Ignoring persisted record with unexpected id %s", record.id)
            return None
        self._records[SELF_RECORD_ID] = record
        logger.info("Restored self-enrollment for %s", record.display_name)
        return record

    def close(self) -> None:
        self._store.close()

    # -- Internal -----------------------------------------------------------

    def _add_locked(self, record: FaceRecord) -> None:
        if record.id in self._records:
            raise DuplicateRecordError(f"Record id {record.id!r} already exists")
        if self.name_taken(record.display_name):
            raise DuplicateRecordError(f"{record.display_name!r} is already enrolled")
        self._persist(record)
        self._records[record.id] = record
        logger.info("Added %s to gallery", record.display_name)

    def _update_locked(self, record_id: str, record: FaceRecord) -> None:
        if record_id not in self._records:
            raise RecordNotFoundError(record_id)
        if record.id != record_id:
            raise ValueError(f"Cannot change record id from {record_id!r} to {record.id!r}")
        if self.name_taken(record.display_name, ignore_id=record_id):
            raise DuplicateRecordError(f"{record.display_name!r} is already enrolled")
        self._persist(record)
        self._records[record_id] = record
        logger.info("Updated %s in gallery", record.display_name)

    def _persist(self, record: FaceRecord) -> None:
        if record.origin is RecordOrigin.SELF:
            self._store.set(SELF_ENROLLMENT_KEY, StoredFaceRecord.from_record(record).model_dump_json())

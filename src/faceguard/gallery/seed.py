"""Demo identities installed at startup.

Descriptors are computed once per process from ``<samples_dir>/face-<id>.jpg``
and cached in the gallery, so authentication never re-embeds the seeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from faceguard.camera.frames import CaptureFrame, FrameSource
from faceguard.errors import ImageDecodeError
from faceguard.gallery.records import FaceRecord, RecordOrigin

if TYPE_CHECKING:
    from pathlib import Path

    from faceguard.ml.embedder import FaceEmbedder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeedIdentity:
    id: str
    display_name: str
    role: str
    authorized: bool

    @property
    def sample_name(self) -> str:
        return f"face-{self.id}.jpg"


DEMO_IDENTITIES: tuple[SeedIdentity, ...] = (
    SeedIdentity("1", "Alex Johnson", "Marketing Director", authorized=True),
    SeedIdentity("2", "Taylor Rodriguez", "Software Engineer", authorized=True),
    SeedIdentity("3", "Morgan Chen", "Product Manager", authorized=True),
    SeedIdentity("4", "Jamie Smith", "UX Designer", authorized=False),
    SeedIdentity("5", "Casey Williams", "Data Scientist", authorized=True),
)


def load_sample(samples_dir: Path, identity: SeedIdentity) -> CaptureFrame | None:
    path = samples_dir / identity.sample_name
    if not path.is_file():
        return None
    return CaptureFrame(data=path.read_bytes(), source=FrameSource.SAMPLE)


async def build_seed_records(
    embedder: FaceEmbedder,
    samples_dir: Path,
    identities: tuple[SeedIdentity, ...] = DEMO_IDENTITIES,
) -> list[FaceRecord]:
    """Embed each seed's sample image, falling back to a name-derived descriptor."""
    enrolled_at = datetime.now(UTC)
    records: list[FaceRecord] = []
    for identity in identities:
        frame = load_sample(samples_dir, identity)
        embedding = None
        if frame is not None:
            try:
                embedding = await embedder.embed(frame, identity_hint=identity.display_name)
            except ImageDecodeError as exc:
                logger.warning("Unreadable sample for %s (%s); using name descriptor", identity.display_name, exc)
                frame = None
            if frame is not None and embedding is None:
                logger.warning("No face found in sample for %s; using fallback descriptor", identity.display_name)
                embedding = await embedder.embed_fallback(frame, identity.display_name)
        if embedding is None:
            descriptor = embedder.fallback.embed_name(identity.display_name)
        else:
            descriptor = embedding.descriptor

        records.append(
            FaceRecord(
                id=identity.id,
                display_name=identity.display_name,
                role=identity.role,
                descriptor=descriptor,
                authorized=identity.authorized,
                enrolled_at=enrolled_at,
                source_image_ref=identity.sample_name if frame is not None else None,
                origin=RecordOrigin.SEED,
            )
        )
    logger.info("Built %d seed records", len(records))
    return records

"""Durable local storage for self-enrollment.

``KeyValueStore`` is the persistence boundary. ``SqlStore`` keeps each key as
one row of a SQLAlchemy table (sqlite by default); values are JSON documents
produced and validated by the pydantic models in ``faceguard.gallery.records``.
Enrollment stills go to an ``ImageStore`` and are referenced by file name.
"""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from sqlalchemy import DateTime, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def close(self) -> None: ...


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StoreEntry(Base):
    __tablename__ = "store_entries"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class SqlStore:
    """Key-value store backed by the ``store_entries`` table."""

    def __init__(self, url: str) -> None:
        self._engine = create_engine(url, pool_pre_ping=True)
        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)
        logger.info("Opened store at %s", self._engine.url.render_as_string(hide_password=True))

    @classmethod
    def sqlite(cls, path: Path) -> SqlStore:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(f"sqlite:///{path}")

    def get(self, key: str) -> str | None:
        with self._sessions() as session:
            return session.execute(select(StoreEntry.value).where(StoreEntry.key == key)).scalar_one_or_none()

    def set(self, key: str, value: str) -> None:
        with self._sessions.begin() as session:
            entry = session.get(StoreEntry, key)
            if entry is None:
                session.add(StoreEntry(key=key, value=value))
            else:
                entry.value = value

    def delete(self, key: str) -> None:
        with self._sessions.begin() as session:
            entry = session.get(StoreEntry, key)
            if entry is not None:
                session.delete(entry)

    def close(self) -> None:
        self._engine.dispose()


class ImageStore:
    """Stores enrollment stills as ``<prefix>-<token>.jpg`` under a directory."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def save(self, prefix: str, data: bytes) -> str:
        """Write a new file and return its reference; never overwrites."""
        self._directory.mkdir(parents=True, exist_ok=True)
        name = f"{prefix}-{secrets.token_hex(6)}.jpg"
        (self._directory / name).write_bytes(data)
        return name

    def load(self, ref: str) -> bytes | None:
        path = self._resolve(ref)
        if path is None or not path.exists():
            return None
        return path.read_bytes()

    def delete(self, ref: str) -> None:
        path = self._resolve(ref)
        if path is not None:
            path.unlink(missing_ok=True)

    def _resolve(self, ref: str) -> Path | None:
        # References are bare file names; anything else is not ours.
        if Path(ref).name != ref:
            logger.warning("Refusing image reference outside the store: %s", ref)
            return None
        return self._directory / ref

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from erpsync.db.models import KeyValueEntry


@dataclass(frozen=True, slots=True)
class KeyValueRecord:
    key: str
    value: Any
    version: int
    expires_at: datetime | None


class KeyValueStore:
    """Durable key-value store with per-key TTL on top of the ``kv_entries`` table.

    Expired rows are invisible to every read and are physically removed either
    lazily (before an insert-if-absent) or by :meth:`purge_expired`. Each write
    bumps ``version`` so callers can do optimistic compare-and-set through
    :meth:`replace`.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _expires_at(self, now: datetime, ttl_seconds: int | None) -> datetime | None:
        if ttl_seconds is None:
            return None
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        return now + timedelta(seconds=ttl_seconds)

    def _live(self, now: datetime):
        return or_(KeyValueEntry.expires_at.is_(None), KeyValueEntry.expires_at > now)

    def get_entry(self, key: str) -> KeyValueRecord | None:
        now = self._now()
        with self._session_factory() as session:
            row = session.scalar(select(KeyValueEntry).where(KeyValueEntry.key == key, self._live(now)))
            if row is None:
                return None
            return KeyValueRecord(
                key=row.key,
                value=row.value,
                version=row.version,
                expires_at=self._coerce_utc(row.expires_at),
            )

    def get(self, key: str) -> Any | None:
        entry = self.get_entry(key)
        return None if entry is None else entry.value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        now = self._now()
        expires_at = self._expires_at(now, ttl_seconds)
        with self._session_factory() as session:
            row = session.get(KeyValueEntry, key)
            if row is None:
                session.add(KeyValueEntry(key=key, value=value, version=1, expires_at=expires_at, updated_at=now))
                try:
                    session.commit()
                    return
                except IntegrityError:
                    session.rollback()
                    row = session.get(KeyValueEntry, key)
                    if row is None:
                        raise
            row.value = value
            row.version = row.version + 1
            row.expires_at = expires_at
            row.updated_at = now
            session.commit()

    def add(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """Insert ``key`` only if no live entry exists. Returns False on contention."""
        now = self._now()
        expires_at = self._expires_at(now, ttl_seconds)
        with self._session_factory() as session:
            session.execute(
                delete(KeyValueEntry).where(
                    KeyValueEntry.key == key,
                    KeyValueEntry.expires_at.is_not(None),
                    KeyValueEntry.expires_at <= now,
                )
            )
            session.add(KeyValueEntry(key=key, value=value, version=1, expires_at=expires_at, updated_at=now))
            try:
                session.commit()
                return True
            except IntegrityError:
                session.rollback()
                return False

    def replace(self, key: str, value: Any, *, expected_version: int, ttl_seconds: int | None = None) -> bool:
        """Overwrite a live entry only if it is still at ``expected_version``."""
        now = self._now()
        expires_at = self._expires_at(now, ttl_seconds)
        with self._session_factory() as session:
            result = session.execute(
                update(KeyValueEntry)
                .where(
                    KeyValueEntry.key == key,
                    KeyValueEntry.version == expected_version,
                    self._live(now),
                )
                .values(value=value, version=expected_version + 1, expires_at=expires_at, updated_at=now)
            )
            session.commit()
            return int(result.rowcount or 0) == 1

    def delete(self, key: str, *, expected_version: int | None = None) -> bool:
        with self._session_factory() as session:
            stmt = delete(KeyValueEntry).where(KeyValueEntry.key == key)
            if expected_version is not None:
                stmt = stmt.where(KeyValueEntry.version == expected_version)
            result = session.execute(stmt)
            session.commit()
            return int(result.rowcount or 0) > 0

    def purge_expired(self) -> int:
        now = self._now()
        with self._session_factory() as session:
            result = session.execute(
                delete(KeyValueEntry).where(
                    KeyValueEntry.expires_at.is_not(None),
                    KeyValueEntry.expires_at <= now,
                )
            )
            session.commit()
            return int(result.rowcount or 0)


def lock_key(entity: str) -> str:
    return f"lock:{entity}"


def checkpoint_key(entity: str) -> str:
    return f"checkpoint:{entity}"


def progress_key(entity: str) -> str:
    return f"progress:{entity}"

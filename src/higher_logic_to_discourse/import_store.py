"""Durable import-id index used by the Discourse target.

Discourse's own importer keeps ``import_id`` as a custom field on each
record. Over the REST API those fields cannot be queried in bulk, so the
target records every created id here instead: one row per ``(kind,
import_id)``, written once, never replaced. Attachment bindings are kept
alongside so a re-run can tell which uploads were already linked, and so
are group memberships.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    create_engine,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from .models import TopicAnchor

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

logger: logging.Logger = logging.getLogger(__name__)

metadata = MetaData()

import_ids = Table(
    "import_ids",
    metadata,
    Column("kind", String(16), nullable=False),
    Column("import_id", String(128), nullable=False),
    Column("target_id", Integer, nullable=False),
    Column("topic_id", Integer),
    Column("post_number", Integer),
    # Free-form companion value: username for users, short URL for uploads
    Column("extra", String(512)),
    PrimaryKeyConstraint("kind", "import_id"),
)

post_uploads = Table(
    "post_uploads",
    metadata,
    Column("post_id", Integer, nullable=False),
    Column("upload_id", Integer, nullable=False),
    PrimaryKeyConstraint("post_id", "upload_id"),
)

group_members = Table(
    "group_members",
    metadata,
    Column("group_id", Integer, nullable=False),
    Column("user_id", Integer, nullable=False),
    PrimaryKeyConstraint("group_id", "user_id"),
)

# SQLite caps bound parameters per statement; stay well below it
_LOOKUP_CHUNK = 500


class ImportStore:
    """Insert-once mapping of import ids to Discourse ids."""

    def __init__(self, engine: Engine) -> None:
        self._engine: Engine = engine
        metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str) -> ImportStore:
        if url in ("sqlite://", "sqlite:///:memory:"):
            engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        else:
            engine = create_engine(url)
        return cls(engine)

    def record(
        self,
        kind: str,
        import_id: str,
        target_id: int,
        *,
        anchor: TopicAnchor | None = None,
        extra: str | None = None,
    ) -> bool:
        """Store a mapping unless one exists. Returns True if the row was written."""
        values: dict[str, Any] = {"kind": kind, "import_id": import_id, "target_id": target_id, "extra": extra}
        if anchor is not None:
            values |= {"topic_id": anchor.topic_id, "post_number": anchor.post_number}
        try:
            with self._engine.begin() as conn:
                _ = conn.execute(import_ids.insert().values(**values))
        except IntegrityError:
            existing = self.lookup(kind, import_id)
            if existing != target_id:
                logger.warning(f"{kind} {import_id} already mapped to {existing}, not replacing with {target_id}")
            return False
        return True

    def lookup(self, kind: str, import_id: str) -> int | None:
        row = self._row(kind, import_id)
        return row["target_id"] if row else None

    def anchor(self, import_id: str) -> TopicAnchor | None:
        row = self._row("post", import_id)
        if row is None or row["topic_id"] is None or row["post_number"] is None:
            return None
        return TopicAnchor(row["topic_id"], row["post_number"])

    def extra(self, kind: str, import_id: str) -> str | None:
        row = self._row(kind, import_id)
        return row["extra"] if row else None

    def extra_for_target(self, kind: str, target_id: int) -> str | None:
        stmt = select(import_ids.c.extra).where(import_ids.c.kind == kind, import_ids.c.target_id == target_id)
        with self._engine.connect() as conn:
            return conn.execute(stmt).scalars().first()

    def count_existing(self, kind: str, id_list: Sequence[str]) -> int:
        unique = list(dict.fromkeys(id_list))
        found = 0
        with self._engine.connect() as conn:
            for start in range(0, len(unique), _LOOKUP_CHUNK):
                chunk = unique[start : start + _LOOKUP_CHUNK]
                stmt = (
                    select(func.count())
                    .select_from(import_ids)
                    .where(import_ids.c.kind == kind, import_ids.c.import_id.in_(chunk))
                )
                found += conn.execute(stmt).scalar_one()
        return found

    def all_exist(self, kind: str, id_list: Sequence[str]) -> bool:
        unique = set(id_list)
        return bool(unique) and self.count_existing(kind, list(unique)) == len(unique)

    def binding_exists(self, post_id: int, upload_id: int) -> bool:
        stmt = select(post_uploads.c.post_id).where(
            post_uploads.c.post_id == post_id, post_uploads.c.upload_id == upload_id
        )
        with self._engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    def record_binding(self, post_id: int, upload_id: int) -> bool:
        try:
            with self._engine.begin() as conn:
                _ = conn.execute(post_uploads.insert().values(post_id=post_id, upload_id=upload_id))
        except IntegrityError:
            return False
        return True

    def membership_exists(self, group_id: int, user_id: int) -> bool:
        stmt = select(group_members.c.group_id).where(
            group_members.c.group_id == group_id, group_members.c.user_id == user_id
        )
        with self._engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    def record_memberships(self, group_id: int, user_ids: Sequence[int]) -> int:
        """Remember users added to a group; returns how many were new."""
        added = 0
        for user_id in dict.fromkeys(user_ids):
            try:
                with self._engine.begin() as conn:
                    _ = conn.execute(group_members.insert().values(group_id=group_id, user_id=user_id))
            except IntegrityError:
                continue
            added += 1
        return added

    def _row(self, kind: str, import_id: str) -> Any:  # noqa: ANN401 - SQLAlchemy RowMapping
        stmt = select(import_ids).where(import_ids.c.kind == kind, import_ids.c.import_id == import_id)
        with self._engine.connect() as conn:
            return conn.execute(stmt).mappings().first()

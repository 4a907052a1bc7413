"""Read access to the legacy Higher Logic database.

All SQL the importer runs lives in ``QUERIES``. Each query is split into its
column list, FROM clause, filters and ordering so the paging clause can be
added per dialect: SQL Server needs ``OFFSET .. FETCH NEXT`` while SQLite
(used in tests) takes ``LIMIT .. OFFSET``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError, SQLAlchemyError

from .exceptions import SchemaMismatchError, SourceQueryError

if TYPE_CHECKING:
    from sqlalchemy.engine import URL, Engine

    from .cursor import PageRequest
    from .models import LegacyRecord

logger: logging.Logger = logging.getLogger(__name__)

# Seconds to wait before retrying a failed page query
RETRY_DELAY_SECONDS: Final[float] = 5.0


@dataclass(frozen=True)
class LegacyQuery:
    """A logical query over the legacy schema.

    ``key_column`` switches the query to watermark paging; otherwise pages are
    requested by offset in ``order_by`` order. ``{prefix}`` in ``source`` is
    replaced by the configured table prefix (e.g. ``dbo.``).
    """

    columns: str
    source: str
    order_by: str
    filters: tuple[str, ...] = ()
    key_column: str | None = None


# Alias of the sortable watermark column added to watermark-paged queries
WATERMARK_FIELD: Final[str] = "SortKey"

QUERIES: Final[dict[str, LegacyQuery]] = {
    "users": LegacyQuery(
        columns="u.ContactKey, u.EmailAddress, u.FirstName, u.LastName, u.CreatedOn, l.LastLoginDate",
        source=(
            "{prefix}Contact u "
            "LEFT JOIN (SELECT ContactKey, MAX(LoginDate) AS LastLoginDate "
            "FROM {prefix}ContactLoginDate GROUP BY ContactKey) l ON u.ContactKey = l.ContactKey"
        ),
        filters=("u.EmailAddress IS NOT NULL", "(u.UserStatus IS NULL OR u.UserStatus <> 'Disabled')"),
        order_by="u.ContactKey",
        key_column="u.ContactKey",
    ),
    "communities": LegacyQuery(
        columns="c.CommunityKey, c.CommunityName, c.Description, c.CreatedByContactKey",
        source="{prefix}Community c",
        order_by="c.CommunityKey",
        key_column="c.CommunityKey",
    ),
    "discussion_posts": LegacyQuery(
        columns=(
            "p.DiscussionPostKey, p.DiscussionKey, d.CommunityKey, p.ContactKey, p.Subject, p.Body, "
            "p.PostType, p.ParentDiscussionPostKey, p.ThreadKey, p.CreatedOn"
        ),
        source="{prefix}DiscussionPost p JOIN {prefix}Discussion d ON d.DiscussionKey = p.DiscussionKey",
        order_by="p.CreatedOn, p.DiscussionPostKey",
    ),
    "library_entries": LegacyQuery(
        columns=(
            "e.DocumentKey, e.LibraryKey, lib.CommunityKey, lib.LibraryName, e.EntryTitle, e.Description, "
            "e.CreatedByContactKey, e.CreatedOn"
        ),
        source="{prefix}LibraryEntry e JOIN {prefix}Library lib ON lib.LibraryKey = e.LibraryKey",
        order_by="e.CreatedOn, e.DocumentKey",
    ),
    "library_comments": LegacyQuery(
        columns=(
            "c.ItemCommentKey, c.ItemKey, c.ParentItemCommentKey, c.ContactKey, c.CommentText, c.CreatedOn, "
            "e.EntryTitle AS ItemTitle, lib.CommunityKey"
        ),
        source=(
            "{prefix}ItemComment c "
            "JOIN {prefix}LibraryEntry e ON e.DocumentKey = c.ItemKey "
            "JOIN {prefix}Library lib ON lib.LibraryKey = e.LibraryKey"
        ),
        order_by="c.CreatedOn, c.ItemCommentKey",
    ),
    "library_files": LegacyQuery(
        columns=(
            "f.DocumentFileKey, f.DocumentKey, lib.LibraryName, f.VersionName, f.FileExtension, "
            "f.OriginalFileName, f.CreatedByContactKey"
        ),
        source=(
            "{prefix}LibraryEntryFile f "
            "JOIN {prefix}LibraryEntry e ON e.DocumentKey = f.DocumentKey "
            "JOIN {prefix}Library lib ON lib.LibraryKey = e.LibraryKey"
        ),
        order_by="f.DocumentFileKey",
        key_column="f.DocumentFileKey",
    ),
    "announcements": LegacyQuery(
        columns=(
            "a.AnnouncementKey, a.CommunityKey, a.AnnouncementTitle, a.AnnouncementText, "
            "a.CreatedByContactKey, a.CreatedOn"
        ),
        source="{prefix}Announcement a",
        order_by="a.CreatedOn, a.AnnouncementKey",
    ),
    "blogs": LegacyQuery(
        columns="b.BlogKey, b.CommunityKey, b.BlogTitle, b.BlogText, b.ContactKey, b.CreatedOn",
        source="{prefix}Blog b",
        order_by="b.CreatedOn, b.BlogKey",
    ),
    "blog_comments": LegacyQuery(
        columns=(
            "c.ItemCommentKey, c.ItemKey, c.ParentItemCommentKey, c.ContactKey, c.CommentText, c.CreatedOn, "
            "b.BlogTitle AS ItemTitle, b.CommunityKey"
        ),
        source="{prefix}ItemComment c JOIN {prefix}Blog b ON b.BlogKey = c.ItemKey",
        order_by="c.CreatedOn, c.ItemCommentKey",
    ),
}


def require(record: LegacyRecord, column: str) -> Any:  # noqa: ANN401 - legacy values are untyped
    """Return a column of a legacy row, treating a missing column as a schema mismatch."""
    try:
        return record[column]
    except KeyError as e:
        msg = f"Legacy row has no column {column!r}; available: {', '.join(record.keys())}"
        raise SchemaMismatchError(msg) from e


class HigherLogicSource:
    """Runs the named legacy queries through a SQLAlchemy engine."""

    def __init__(
        self,
        engine: Engine,
        *,
        prefix: str = "dbo.",
        batch_retries: int = 0,
        queries: dict[str, LegacyQuery] | None = None,
    ) -> None:
        self._engine: Engine = engine
        self.prefix: str = prefix
        self.batch_retries: int = batch_retries
        self._queries: dict[str, LegacyQuery] = queries or QUERIES

    @classmethod
    def from_url(cls, url: str | URL, **kwargs: Any) -> HigherLogicSource:  # noqa: ANN401
        return cls(create_engine(url), **kwargs)

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def validate_access(self) -> None:
        try:
            with self._engine.connect() as conn:
                _ = conn.execute(text("SELECT 1")).scalar()
            logger.info("Legacy database access validated")
        except SQLAlchemyError as e:
            msg = f"Legacy database access failed: {e}"
            raise SourceQueryError(msg) from e

    def key_field(self, query: str) -> str | None:
        return WATERMARK_FIELD if self._query(query).key_column else None

    def count(self, query: str) -> int:
        q = self._query(query)
        sql = f"SELECT COUNT(*) AS cnt FROM {self._source(q)}{self._where(q.filters)}"
        rows = self._execute(query, sql, {})
        return int(rows[0]["cnt"]) if rows else 0

    def fetch(self, query: str, request: PageRequest) -> list[LegacyRecord]:
        q = self._query(query)
        params: dict[str, Any] = {"limit": request.limit, "offset": request.offset}

        if q.key_column is None:
            sql = (
                f"SELECT {q.columns} FROM {self._source(q)}{self._where(q.filters)} "
                f"ORDER BY {q.order_by} {self._page_clause()}"
            )
        else:
            sort_key = self._sortable(q.key_column)
            filters = q.filters
            if request.after is not None:
                filters = (*filters, f"{sort_key} > :after")
                params["after"] = str(request.after)
            sql = (
                f"SELECT {q.columns}, {sort_key} AS {WATERMARK_FIELD} FROM {self._source(q)}{self._where(filters)} "
                f"ORDER BY {sort_key} {self._page_clause()}"
            )

        return self._execute(query, sql, params)

    def group_members(self, contact_keys: Sequence[str]) -> list[LegacyRecord]:
        if not contact_keys:
            return []
        stmt = text(
            f"SELECT m.CommunityKey, m.ContactKey FROM {self.prefix}CommunityMember m "
            "WHERE m.ContactKey IN :keys ORDER BY m.CommunityKey, m.ContactKey"
        ).bindparams(bindparam("keys", expanding=True))
        try:
            with self._engine.connect() as conn:
                return list(conn.execute(stmt, {"keys": list(contact_keys)}).mappings())
        except SQLAlchemyError as e:
            msg = f"Failed to read community memberships: {e}"
            raise SourceQueryError(msg) from e

    def _query(self, name: str) -> LegacyQuery:
        try:
            return self._queries[name]
        except KeyError:
            msg = f"Unknown legacy query: {name}"
            raise ValueError(msg) from None

    def _source(self, q: LegacyQuery) -> str:
        return q.source.format(prefix=self.prefix)

    @staticmethod
    def _where(filters: Sequence[str]) -> str:
        return f" WHERE {' AND '.join(filters)}" if filters else ""

    def _page_clause(self) -> str:
        if self.dialect == "mssql":
            return "OFFSET :offset ROWS FETCH NEXT :limit ROWS ONLY"
        return "LIMIT :limit OFFSET :offset"

    def _sortable(self, column: str) -> str:
        """Render a key column so the database orders it the way Python compares strings."""
        if self.dialect == "mssql":
            # uniqueidentifier ordering is byte-group based; compare the text form in binary collation
            return f"CONVERT(VARCHAR(64), {column}) COLLATE Latin1_General_BIN"
        return f"CAST({column} AS TEXT)"

    def _execute(self, name: str, sql: str, params: dict[str, Any]) -> list[LegacyRecord]:
        attempt = 0
        while True:
            try:
                with self._engine.connect() as conn:
                    return list(conn.execute(text(sql), params).mappings())
            except OperationalError as e:
                attempt += 1
                if attempt > self.batch_retries:
                    msg = f"Query {name!r} failed after {attempt} attempt(s): {e}"
                    raise SourceQueryError(msg) from e
                logger.warning(f"Query {name!r} failed (attempt {attempt}), retrying in {RETRY_DELAY_SECONDS}s: {e}")
                time.sleep(RETRY_DELAY_SECONDS)
            except ProgrammingError as e:
                msg = f"Query {name!r} does not match the legacy schema: {e}"
                raise SchemaMismatchError(msg) from e
            except DBAPIError as e:
                msg = f"Query {name!r} failed: {e}"
                raise SourceQueryError(msg) from e

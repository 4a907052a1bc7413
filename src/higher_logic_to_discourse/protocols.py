"""Protocols defining the contracts for the legacy source and the Discourse target.

The migration architecture separates concerns into three components:

1. LegacySource: Runs named, paged queries against the Higher Logic database
2. TargetPlatform: Creates and looks up records in Discourse
3. Migrator: Orchestrates the stages, resolves identities and threads

This separation allows:
- Testing the thread and identity logic against an in-memory fake target
- Swapping the SQL Server driver for SQLite in tests
- Clear boundaries for Discourse-specific concerns (usernames, upload markup)
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .cursor import PageRequest
    from .models import (
        CandidatePost,
        CreatedPost,
        LegacyRecord,
        NewCategory,
        NewGroup,
        NewUser,
        PostRecord,
        TopicAnchor,
        Upload,
    )


class LegacySource(Protocol):
    """Protocol for reading the legacy Higher Logic database.

    Queries are addressed by name (e.g. ``"users"``, ``"discussion_posts"``)
    so the migrator never builds SQL itself. Every query has a stable
    ORDER BY, which is what makes offset and watermark paging deterministic.
    """

    def validate_access(self) -> None:
        """Check that the database is reachable.

        Raises:
            SourceQueryError: If the connection test fails
        """
        ...

    def count(self, query: str) -> int:
        """Return the total number of rows the named query yields."""
        ...

    def fetch(self, query: str, request: PageRequest) -> list[LegacyRecord]:
        """Return one page of the named query.

        Raises:
            SourceQueryError: If the page cannot be read
        """
        ...

    def key_field(self, query: str) -> str | None:
        """Return the watermark column of the query, or None for offset paging."""
        ...

    def group_members(self, contact_keys: Sequence[str]) -> list[LegacyRecord]:
        """Return (CommunityKey, ContactKey) membership rows for the given contacts."""
        ...


class TargetPlatform(Protocol):
    """Protocol for creating and looking up data in Discourse.

    Creation methods receive the import id of the legacy row and persist it
    as a side effect, so the durable lookup methods see every record created
    through them. The Migrator calls methods in this order:

    1. validate_access()
    2. create_group()
    3. create_user(), then group_member_exists() / add_group_members() for
       the users of each batch
    4. create_category()
    5. create_post() for topics and replies
    6. create_upload(), get_post(), update_post_raw(), create_post_upload()
       for attachments

    Lookups come in two flavours for posts: ``topic_anchor_for_imported_post``
    only knows posts created by this process, ``find_post_by_import_id``
    reads the durable custom-field index and also sees earlier runs.
    """

    def validate_access(self) -> None:
        """Validate API access.

        Raises:
            TargetConnectionError: If Discourse cannot be reached
        """
        ...

    def create_user(self, user: NewUser) -> int:
        """Create a user and return its id.

        Raises:
            TargetError: If Discourse rejects the user
        """
        ...

    def create_group(self, group: NewGroup) -> int:
        """Create a group and return its id."""
        ...

    def add_group_members(self, group_id: int, user_ids: Iterable[int]) -> None:
        """Add users to a group and remember the memberships."""
        ...

    def group_member_exists(self, group_id: int, user_id: int) -> bool:
        """Return True if the user was added to the group by an earlier call."""
        ...

    def create_category(self, category: NewCategory) -> int:
        """Create a category and return its id."""
        ...

    def create_post(self, post: CandidatePost) -> CreatedPost:
        """Create a topic (for NewTopicPost) or a reply (for ReplyPost).

        Post numbers are assigned by Discourse in submission order.

        Raises:
            TargetError: If Discourse rejects the post
        """
        ...

    def user_id_for_import_id(self, import_id: str) -> int | None: ...

    def group_id_for_import_id(self, import_id: str) -> int | None: ...

    def category_id_for_import_id(self, import_id: str) -> int | None: ...

    def post_id_for_import_id(self, import_id: str) -> int | None: ...

    def upload_for_import_id(self, import_id: str) -> Upload | None: ...

    def topic_anchor_for_imported_post(self, import_id: str) -> TopicAnchor | None:
        """Look up a post created earlier in this process."""
        ...

    def find_user_by_import_id(self, legacy_key: str) -> int | None:
        """Search users by the raw legacy key, as older imports stored it."""
        ...

    def find_post_by_import_id(self, import_id: str) -> TopicAnchor | None:
        """Look up a post through the durable import-id index."""
        ...

    def all_records_exist(self, kind: str, import_ids: Sequence[str]) -> bool:
        """Return True if every import id of the given kind has been imported."""
        ...

    def get_post(self, post_id: int) -> PostRecord | None: ...

    def update_post_raw(self, post_id: int, raw: str) -> None: ...

    def create_upload(self, user_id: int, path: Path, filename: str, import_id: str) -> Upload | None:
        """Upload a local file on behalf of a user; None if Discourse refuses it."""
        ...

    def render_upload_reference(self, upload: Upload) -> str:
        """Return the markup that embeds the upload in a post body."""
        ...

    def post_upload_exists(self, post_id: int, upload_id: int) -> bool: ...

    def create_post_upload(self, post_id: int, upload_id: int) -> None: ...

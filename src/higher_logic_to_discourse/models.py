"""Data models exchanged between the legacy source, the importer and Discourse.

Legacy rows stay as read-only mappings (``LegacyRecord``). Everything the
importer hands to the target is one of the small dataclasses below, so the
target implementation never has to know about Higher Logic column names.
"""

from __future__ import annotations

import datetime as dt
import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

# A single legacy row: column name -> value, never mutated.
LegacyRecord = Mapping[str, Any]

# Discourse's built-in "system" account, used for content whose author is unknown.
SYSTEM_USER_ID: Final[int] = -1


class EntityFamily(enum.Enum):
    """Legacy table groups, each with its own identity namespace."""

    USER = "user"
    GROUP = "group"
    CATEGORY = "category"
    DISCUSSION_POST = "discussion_post"
    LIBRARY_ENTRY = "library_entry"
    LIBRARY_ENTRY_FILE = "library_entry_file"
    ITEM_COMMENT = "item_comment"
    ANNOUNCEMENT = "announcement"
    BLOG = "blog"

    @property
    def target_kind(self) -> str:
        """The kind of Discourse record this family is imported as."""
        return _TARGET_KINDS[self]


_TARGET_KINDS: Final[dict[EntityFamily, str]] = {
    EntityFamily.USER: "user",
    EntityFamily.GROUP: "group",
    EntityFamily.CATEGORY: "category",
    EntityFamily.DISCUSSION_POST: "post",
    EntityFamily.LIBRARY_ENTRY: "post",
    EntityFamily.ITEM_COMMENT: "post",
    EntityFamily.ANNOUNCEMENT: "post",
    EntityFamily.BLOG: "post",
    EntityFamily.LIBRARY_ENTRY_FILE: "upload",
}


@dataclass(frozen=True)
class OriginKey:
    """Composite identity of a legacy row: (entity family, legacy primary key)."""

    family: EntityFamily
    key: str

    @classmethod
    def of(cls, family: EntityFamily, value: Any) -> OriginKey:  # noqa: ANN401 - legacy keys are GUIDs or ints
        return cls(family, str(value).strip())

    @property
    def import_id(self) -> str:
        """The value stored in Discourse's ``import_id`` custom field."""
        return f"{self.family.value}:{self.key}"


@dataclass(frozen=True)
class TopicAnchor:
    """Position of an imported post: the topic it lives in and its post number."""

    topic_id: int
    post_number: int

    def __post_init__(self) -> None:
        if self.post_number < 1:
            msg = f"Post numbers start at 1, got {self.post_number}"
            raise ValueError(msg)


@dataclass(frozen=True)
class NewUser:
    import_id: str
    username: str
    email: str
    name: str = ""
    created_at: dt.datetime | None = None
    last_seen_at: dt.datetime | None = None


@dataclass(frozen=True)
class NewGroup:
    import_id: str
    name: str
    full_name: str = ""
    bio: str = ""


@dataclass(frozen=True)
class NewCategory:
    import_id: str
    name: str
    description: str = ""
    user_id: int = SYSTEM_USER_ID


@dataclass(frozen=True)
class PostDraft:
    """Author, body and timestamp of a post before its thread position is known."""

    import_id: str
    user_id: int
    raw: str
    created_at: dt.datetime | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class NewTopicPost:
    """A post that opens a new topic.

    ``category_id`` may be None when the legacy community was never imported;
    Discourse then files the topic as uncategorized.
    """

    import_id: str
    user_id: int
    raw: str
    title: str
    category_id: int | None
    created_at: dt.datetime | None = None
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.title.strip():
            msg = f"New topic {self.import_id} needs a title"
            raise ValueError(msg)


@dataclass(frozen=True)
class ReplyPost:
    """A post appended to an existing topic.

    ``reply_to_post_number`` is omitted when replying to the opening post.
    """

    import_id: str
    user_id: int
    raw: str
    topic_id: int
    reply_to_post_number: int | None = None
    created_at: dt.datetime | None = None
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.reply_to_post_number is not None and self.reply_to_post_number < 2:  # noqa: PLR2004
            msg = f"Reply {self.import_id} must not point at post number {self.reply_to_post_number}"
            raise ValueError(msg)


CandidatePost = NewTopicPost | ReplyPost


@dataclass(frozen=True)
class CreatedPost:
    """What Discourse returns for a freshly created post."""

    post_id: int
    topic_id: int
    post_number: int

    @property
    def anchor(self) -> TopicAnchor:
        return TopicAnchor(self.topic_id, self.post_number)


@dataclass
class PostRecord:
    """An existing Discourse post as needed for attachment binding."""

    post_id: int
    user_id: int
    raw: str


@dataclass(frozen=True)
class Upload:
    """An uploaded file stored in Discourse."""

    upload_id: int
    filename: str
    url: str
    short_url: str = ""


@dataclass(frozen=True)
class AttachmentBinding:
    post_id: int
    upload_id: int


@dataclass(frozen=True)
class FileDescriptor:
    """A library file as described by the legacy database.

    ``original_file_name`` may carry a backslash-delimited Windows path, as
    uploaded through the legacy web UI.
    """

    origin: OriginKey
    owner: OriginKey
    library_name: str
    version_name: str
    extension: str
    original_file_name: str | None = None
    author_key: str | None = None

    @property
    def upload_filename(self) -> str:
        if self.original_file_name:
            return self.original_file_name.replace("\\", "/").rsplit("/", 1)[-1]
        return f"{self.version_name}.{self.extension.lstrip('.')}"


@dataclass
class StageStats:
    """Counters for a single entity kind."""

    created: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class MigrationStats:
    """Statistics collected during a migration run."""

    stages: dict[str, StageStats] = field(default_factory=dict)
    batches_skipped: int = 0
    orphans_promoted: int = 0
    orphans_skipped: int = 0
    missing_categories: int = 0
    attachments_missing: int = 0
    attachments_bound: int = 0
    ordering_violations: int = 0
    errors: list[str] = field(default_factory=list)

    def stage(self, name: str) -> StageStats:
        return self.stages.setdefault(name, StageStats())

    @property
    def success(self) -> bool:
        return not self.errors

"""Thread reconstruction: turning flat legacy rows into Discourse topics and replies.

Higher Logic stores conversations as rows with parent pointers, spread over
several tables (discussion posts, library-entry comments, blog comments).
Discourse needs every post in exactly one topic, with replies referencing
an earlier post number of the same topic.

For each record the resolver decides:

- Originating records (``PostType = 'New'``, or families that have no parent
  pointer at all such as library entries, announcements and blogs) open a
  new topic in the category mapped from their community.
- Replies walk their parent-reference fields in declared order. Each field
  is looked up first among posts created by this process, then in the
  durable import-id index. The first hit gives the topic, and its post
  number becomes ``reply_to_post_number`` unless it is the opening post.
- Replies whose parent is nowhere to be found are orphans. ``OrphanPolicy``
  decides their fate explicitly: PROMOTE (default) turns them into new
  topics, SKIP drops them with a warning.

Post numbers are assigned by Discourse in submission order, so parents must
be created before their replies. ``order_page`` fixes ordering inside a page;
ordering across pages relies on the chronological ORDER BY of the legacy
queries, and any violation is reported through ``note_imported``.
"""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .content import decode_title, excerpt
from .legacy_source import require
from .models import (
    CandidatePost,
    CreatedPost,
    EntityFamily,
    LegacyRecord,
    NewTopicPost,
    OriginKey,
    PostDraft,
    ReplyPost,
)

if TYPE_CHECKING:
    from .registry import IdentityRegistry

logger: logging.Logger = logging.getLogger(__name__)

# Extracts one candidate parent from a legacy row, or None if the field is empty
ParentRef = Callable[[LegacyRecord], OriginKey | None]

# Maximum length of a title derived from a post body
FALLBACK_TITLE_LENGTH = 80


class OrphanPolicy(enum.Enum):
    """What to do with a reply whose parent cannot be found."""

    PROMOTE = "promote"
    SKIP = "skip"


class Outcome(enum.Enum):
    NEW_TOPIC = "new_topic"
    REPLY = "reply"
    ORPHAN_PROMOTED = "orphan_promoted"
    ORPHAN_SKIPPED = "orphan_skipped"


def parent_ref(family: EntityFamily, column: str) -> ParentRef:
    """Build an extractor reading a parent key of the given family from a column."""

    def extract(record: LegacyRecord) -> OriginKey | None:
        value = require(record, column)
        if value is None or str(value).strip() == "":
            return None
        return OriginKey.of(family, value)

    return extract


@dataclass(frozen=True)
class ThreadSpec:
    """How rows of one legacy query map onto topics and replies."""

    family: EntityFamily
    key_field: str
    author_field: str
    body_field: str
    created_field: str
    subject_field: str
    category_field: str
    type_field: str | None = None
    new_topic_type: str = "New"
    parent_refs: tuple[ParentRef, ...] = ()
    tags: tuple[str, ...] = ()
    reply_title_prefix: str = ""

    def origin(self, record: LegacyRecord) -> OriginKey:
        return OriginKey.of(self.family, require(record, self.key_field))

    def starts_topic(self, record: LegacyRecord) -> bool:
        if self.type_field is not None:
            post_type = str(require(record, self.type_field) or "").strip()
            return post_type.lower() == self.new_topic_type.lower()
        return not self.parent_refs

    def parents(self, record: LegacyRecord) -> list[OriginKey]:
        """Candidate parents in priority order, excluding self-references."""
        own = self.origin(record)
        candidates: list[OriginKey] = []
        for extract in self.parent_refs:
            parent = extract(record)
            if parent is not None and parent != own and parent not in candidates:
                candidates.append(parent)
        return candidates


@dataclass(frozen=True)
class Resolution:
    outcome: Outcome
    post: CandidatePost | None
    parent: OriginKey | None = None
    missing_category: bool = False


class ThreadResolver:
    """Decides topic membership and reply position for legacy posts."""

    def __init__(self, registry: IdentityRegistry, *, orphan_policy: OrphanPolicy = OrphanPolicy.PROMOTE) -> None:
        self._registry = registry
        self.orphan_policy: OrphanPolicy = orphan_policy
        # parent origin -> orphans that referenced it before it was imported
        self._awaited_parents: dict[OriginKey, list[OriginKey]] = defaultdict(list)

    def resolve(self, draft: PostDraft, record: LegacyRecord, spec: ThreadSpec) -> Resolution:
        """Turn a draft into a new-topic or reply candidate, or nothing."""
        if spec.starts_topic(record):
            post, missing = self._new_topic(draft, record, spec)
            return Resolution(Outcome.NEW_TOPIC, post, missing_category=missing)

        candidates = spec.parents(record)
        for parent in candidates:
            anchor = self._registry.topic_anchor(parent)
            if anchor is None:
                continue
            reply = ReplyPost(
                import_id=draft.import_id,
                user_id=draft.user_id,
                raw=draft.raw,
                topic_id=anchor.topic_id,
                reply_to_post_number=anchor.post_number if anchor.post_number > 1 else None,
                created_at=draft.created_at,
                tags=draft.tags,
            )
            return Resolution(Outcome.REPLY, reply, parent=parent)

        return self._orphan(draft, record, spec, candidates)

    def _orphan(
        self, draft: PostDraft, record: LegacyRecord, spec: ThreadSpec, candidates: Sequence[OriginKey]
    ) -> Resolution:
        own = spec.origin(record)
        for parent in candidates:
            self._awaited_parents[parent].append(own)

        context = self._context(record, spec)
        tried = ", ".join(p.import_id for p in candidates) or "no parent reference"
        if self.orphan_policy is OrphanPolicy.SKIP:
            logger.warning(f"Skipping orphan reply {own.import_id} ({tried} not found): {context}")
            return Resolution(Outcome.ORPHAN_SKIPPED, None)

        logger.warning(f"Promoting orphan reply {own.import_id} to a new topic ({tried} not found): {context}")
        post, missing = self._new_topic(draft, record, spec)
        return Resolution(Outcome.ORPHAN_PROMOTED, post, missing_category=missing)

    def _new_topic(self, draft: PostDraft, record: LegacyRecord, spec: ThreadSpec) -> tuple[NewTopicPost, bool]:
        category_key = require(record, spec.category_field)
        category_id = None
        if category_key is not None and str(category_key).strip():
            category_id = self._registry.map_legacy_id(OriginKey.of(EntityFamily.CATEGORY, category_key))

        missing = category_id is None
        if missing:
            logger.warning(
                f"No category for community {category_key!r}, topic {draft.import_id} will be uncategorized: "
                f"{self._context(record, spec)}"
            )

        post = NewTopicPost(
            import_id=draft.import_id,
            user_id=draft.user_id,
            raw=draft.raw,
            title=self._title(draft, record, spec),
            category_id=category_id,
            created_at=draft.created_at,
            tags=draft.tags,
        )
        return post, missing

    @staticmethod
    def _title(draft: PostDraft, record: LegacyRecord, spec: ThreadSpec) -> str:
        title = decode_title(require(record, spec.subject_field))
        if title and spec.reply_title_prefix and not spec.starts_topic(record):
            if not title.lower().startswith(spec.reply_title_prefix.strip().lower()):
                title = f"{spec.reply_title_prefix}{title}"
        if not title:
            title = excerpt(draft.raw, FALLBACK_TITLE_LENGTH)
        return title or f"Untitled {spec.family.value.replace('_', ' ')} {spec.origin(record).key}"

    @staticmethod
    def _context(record: LegacyRecord, spec: ThreadSpec) -> str:
        subject = decode_title(record.get(spec.subject_field))
        return f"community={record.get(spec.category_field)!r} subject={subject!r} body={excerpt(record.get(spec.body_field))!r}"

    def order_page(self, records: Sequence[LegacyRecord], spec: ThreadSpec) -> list[LegacyRecord]:
        """Reorder a page so that every reply follows its parent when both are in the page.

        Records keep their original (chronological) order otherwise. Replies
        that had to be moved are reported.
        """
        index = {spec.origin(r): i for i, r in enumerate(records)}
        parent_of: dict[int, int] = {}
        for i, record in enumerate(records):
            if spec.starts_topic(record):
                continue
            for parent in spec.parents(record):
                if parent in index:
                    parent_of[i] = index[parent]
                    break

        emitted = [False] * len(records)
        waiting: dict[int, list[int]] = defaultdict(list)
        ordered: list[LegacyRecord] = []
        deferred = 0

        for i in range(len(records)):
            parent = parent_of.get(i)
            if parent is not None and not emitted[parent]:
                waiting[parent].append(i)
                deferred += int(parent > i)
                continue
            stack = [i]
            while stack:
                j = stack.pop()
                emitted[j] = True
                ordered.append(records[j])
                stack.extend(reversed(waiting.pop(j, [])))

        if len(ordered) < len(records):
            stuck = [records[i] for i in range(len(records)) if not emitted[i]]
            logger.error(
                f"{len(stuck)} {spec.family.value} records form a parent cycle: "
                f"{', '.join(spec.origin(r).import_id for r in stuck)}"
            )
            ordered.extend(stuck)

        if deferred:
            logger.warning(f"Moved {deferred} {spec.family.value} replies after their parents within the batch")
        return ordered

    def note_imported(self, origin: OriginKey) -> int:
        """Report replies that were handled before this record, their parent.

        Returns the number of such ordering violations.
        """
        orphans = self._awaited_parents.pop(origin, [])
        if orphans:
            logger.error(
                f"Ordering violation: {', '.join(o.import_id for o in orphans)} processed before "
                f"their parent {origin.import_id}; they were handled as orphans"
            )
        return len(orphans)

    def verify_position(self, post: CandidatePost, created: CreatedPost) -> bool:
        """Check that a reply landed after its reply target and the topic's previous posts."""
        if not isinstance(post, ReplyPost):
            return True
        previous = self._registry.highest_post_number(created.topic_id)
        reply_to = post.reply_to_post_number
        if (reply_to is not None and created.post_number <= reply_to) or (
            previous is not None and created.post_number <= previous
        ):
            logger.error(
                f"Post {post.import_id} got post number {created.post_number} in topic {created.topic_id}, "
                f"reply_to={reply_to}, previous highest={previous}"
            )
            return False
        return True

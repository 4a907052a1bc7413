"""Pipeline orchestrator for the Higher Logic to Discourse import.

Stages run in dependency order, because later stages resolve identities
created by earlier ones:

groups
    Communities become Discourse groups.
users
    Contacts with an email address that are not disabled. After each batch,
    skipped or not, its users are added to the groups of their communities
    unless an earlier run already did.
categories
    Communities become categories.
posts
    Discussion posts, then library entries (each one a topic), then
    comments on library entries.
attachments
    Library entry files are located on disk, uploaded and appended to the
    topic of their library entry. Needs every library entry imported. A
    batch is skipped only once each of its files is bound to its post.
announcements
    Announcements become topics tagged ``announcement``.
blogs
    Blogs become topics tagged ``blog``, followed by blog comments.

Every stage walks its legacy query in batches. A batch whose records are all
imported already is skipped as a whole, otherwise records are imported one
by one and already-imported ones are skipped individually. Running the
import again after an interruption therefore picks up where it stopped.

Per-record problems (unknown author, unmapped category, orphan reply,
missing file, a record Discourse rejects) are logged, counted and do not
stop the run. Errors reading the legacy database or reaching Discourse do.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections import defaultdict
from collections.abc import Callable, Iterator
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .attachments import AttachmentBinder, AttachmentLocator, FileIndex
from .config import ALL_STAGES
from .content import decode_title, transform_body
from .cursor import BatchCursor
from .discourse import DiscourseTarget
from .exceptions import TargetError
from .idempotency import IdempotencyGuard
from .import_store import ImportStore
from .legacy_source import HigherLogicSource, require
from .models import (
    EntityFamily,
    FileDescriptor,
    LegacyRecord,
    MigrationStats,
    NewCategory,
    NewGroup,
    NewUser,
    OriginKey,
    PostDraft,
    StageStats,
)
from .registry import IdentityRegistry
from .threads import OrphanPolicy, Outcome, ThreadResolver, ThreadSpec, parent_ref

if TYPE_CHECKING:
    from .config import MigrationConfig
    from .protocols import LegacySource, TargetPlatform

logger: logging.Logger = logging.getLogger(__name__)

DISCUSSION_THREADS = ThreadSpec(
    family=EntityFamily.DISCUSSION_POST,
    key_field="DiscussionPostKey",
    author_field="ContactKey",
    body_field="Body",
    created_field="CreatedOn",
    subject_field="Subject",
    category_field="CommunityKey",
    type_field="PostType",
    parent_refs=(
        parent_ref(EntityFamily.DISCUSSION_POST, "ParentDiscussionPostKey"),
        parent_ref(EntityFamily.DISCUSSION_POST, "ThreadKey"),
    ),
)

LIBRARY_ENTRY_TOPICS = ThreadSpec(
    family=EntityFamily.LIBRARY_ENTRY,
    key_field="DocumentKey",
    author_field="CreatedByContactKey",
    body_field="Description",
    created_field="CreatedOn",
    subject_field="EntryTitle",
    category_field="CommunityKey",
)

LIBRARY_COMMENTS = ThreadSpec(
    family=EntityFamily.ITEM_COMMENT,
    key_field="ItemCommentKey",
    author_field="ContactKey",
    body_field="CommentText",
    created_field="CreatedOn",
    subject_field="ItemTitle",
    category_field="CommunityKey",
    parent_refs=(
        parent_ref(EntityFamily.ITEM_COMMENT, "ParentItemCommentKey"),
        parent_ref(EntityFamily.LIBRARY_ENTRY, "ItemKey"),
    ),
    reply_title_prefix="Re: ",
)

ANNOUNCEMENT_TOPICS = ThreadSpec(
    family=EntityFamily.ANNOUNCEMENT,
    key_field="AnnouncementKey",
    author_field="CreatedByContactKey",
    body_field="AnnouncementText",
    created_field="CreatedOn",
    subject_field="AnnouncementTitle",
    category_field="CommunityKey",
    tags=("announcement",),
)

BLOG_TOPICS = ThreadSpec(
    family=EntityFamily.BLOG,
    key_field="BlogKey",
    author_field="ContactKey",
    body_field="BlogText",
    created_field="CreatedOn",
    subject_field="BlogTitle",
    category_field="CommunityKey",
    tags=("blog",),
)

BLOG_COMMENTS = ThreadSpec(
    family=EntityFamily.ITEM_COMMENT,
    key_field="ItemCommentKey",
    author_field="ContactKey",
    body_field="CommentText",
    created_field="CreatedOn",
    subject_field="ItemTitle",
    category_field="CommunityKey",
    parent_refs=(
        parent_ref(EntityFamily.ITEM_COMMENT, "ParentItemCommentKey"),
        parent_ref(EntityFamily.BLOG, "ItemKey"),
    ),
    reply_title_prefix="Re: ",
    tags=("blog",),
)


def _timestamp(value: Any) -> dt.datetime | None:  # noqa: ANN401 - driver-dependent column type
    """Normalize a legacy timestamp; SQL Server returns datetimes, SQLite returns strings."""
    if value is None or isinstance(value, dt.datetime):
        return value
    try:
        return dt.datetime.fromisoformat(str(value))
    except ValueError:
        logger.debug(f"Ignoring unparseable timestamp {value!r}")
        return None


def _text(value: Any) -> str:  # noqa: ANN401
    return "" if value is None else str(value).strip()


class HigherLogicMigrator:
    """Imports a Higher Logic community database into Discourse.

    Usage:
        config = MigrationConfig.from_env()
        migrator = HigherLogicMigrator.from_config(config)
        stats = migrator.run()
    """

    def __init__(
        self,
        source: LegacySource,
        target: TargetPlatform,
        *,
        batch_size: int = 1000,
        orphan_policy: OrphanPolicy = OrphanPolicy.PROMOTE,
        stages: tuple[str, ...] = ALL_STAGES,
        attachments_dir: Path | None = None,
        attachment_workers: int = 1,
    ) -> None:
        self._source: LegacySource = source
        self._target: TargetPlatform = target
        self.batch_size: int = batch_size
        self.stages: tuple[str, ...] = stages
        self.attachments_dir: Path | None = attachments_dir
        self.attachment_workers: int = attachment_workers

        self.registry: IdentityRegistry = IdentityRegistry(target)
        self.guard: IdempotencyGuard = IdempotencyGuard(self.registry)
        self.resolver: ThreadResolver = ThreadResolver(self.registry, orphan_policy=orphan_policy)
        self.binder: AttachmentBinder = AttachmentBinder(self.registry, target)
        self.stats: MigrationStats = MigrationStats()

        self._stage_runners: dict[str, Callable[[], None]] = {
            "groups": self.import_groups,
            "users": self.import_users,
            "categories": self.import_categories,
            "posts": self.import_posts,
            "attachments": self.import_attachments,
            "announcements": self.import_announcements,
            "blogs": self.import_blogs,
        }

    @classmethod
    def from_config(cls, config: MigrationConfig) -> HigherLogicMigrator:
        source = HigherLogicSource.from_url(
            config.source_url(), prefix=config.prefix, batch_retries=config.batch_retries
        )
        target = DiscourseTarget(
            config.discourse_url,
            config.discourse_api_key,
            ImportStore.from_url(config.state_db),
            api_username=config.discourse_api_username,
        )
        return cls(
            source,
            target,
            batch_size=config.batch_size,
            orphan_policy=config.orphan_policy,
            stages=config.stages,
            attachments_dir=config.attachments_dir,
            attachment_workers=config.attachment_workers,
        )

    def run(self) -> MigrationStats:
        """Validate both systems and run the configured stages in order."""
        self.stats = MigrationStats()
        logger.info(f"Starting Higher Logic to Discourse import, stages: {', '.join(self.stages)}")

        self._source.validate_access()
        self._target.validate_access()

        for stage in ALL_STAGES:
            if stage not in self.stages:
                continue
            logger.info(f"Importing {stage}")
            self._stage_runners[stage]()

        self._log_summary()
        return self.stats

    def _log_summary(self) -> None:
        for name, counts in self.stats.stages.items():
            logger.info(f"{name}: {counts.created} created, {counts.skipped} skipped, {counts.failed} failed")
        logger.info(
            f"Batches skipped: {self.stats.batches_skipped}, orphans promoted: {self.stats.orphans_promoted}, "
            f"orphans skipped: {self.stats.orphans_skipped}, uncategorized topics: {self.stats.missing_categories}, "
            f"attachments bound: {self.stats.attachments_bound}, missing files: {self.stats.attachments_missing}"
        )
        if self.stats.errors:
            logger.error(f"Import finished with {len(self.stats.errors)} error(s)")
        else:
            logger.info("Import completed successfully")

    # Batch plumbing

    def _batches(self, query: str) -> Iterator[list[LegacyRecord]]:
        total = self._source.count(query)
        cursor = BatchCursor(
            partial(self._source.fetch, query),
            batch_size=self.batch_size,
            key_field=self._source.key_field(query),
        )
        done = 0
        for page in cursor:
            yield page.records
            done += len(page)
            logger.info(f"{query}: {done}/{total}")

    def _skip_batch(self, family: EntityFamily, key_field: str, records: list[LegacyRecord]) -> bool:
        keys = [require(r, key_field) for r in records]
        if not self.guard.batch_already_imported(family, keys):
            return False
        self.stats.stage(family.value).skipped += len(records)
        self.stats.batches_skipped += 1
        return True

    def _fail(self, stage: StageStats, origin: OriginKey, error: Exception) -> None:
        stage.failed += 1
        msg = f"Failed to import {origin.import_id}: {error}"
        logger.error(msg)
        self.stats.errors.append(msg)

    def _import_entities(
        self,
        query: str,
        family: EntityFamily,
        key_field: str,
        create: Callable[[LegacyRecord, OriginKey], int],
        on_batch: Callable[[list[LegacyRecord]], None] | None = None,
    ) -> None:
        """Create the records of a query; ``on_batch`` then sees every batch, skipped or not."""
        stage = self.stats.stage(family.value)
        for records in self._batches(query):
            if not self._skip_batch(family, key_field, records):
                self._create_entities(records, family, key_field, create, stage)
            if on_batch is not None:
                on_batch(records)

    def _create_entities(
        self,
        records: list[LegacyRecord],
        family: EntityFamily,
        key_field: str,
        create: Callable[[LegacyRecord, OriginKey], int],
        stage: StageStats,
    ) -> None:
        for record in records:
            origin = OriginKey.of(family, require(record, key_field))
            if self.guard.already_imported(origin):
                stage.skipped += 1
                continue
            try:
                target_id = create(record, origin)
            except TargetError as e:
                self._fail(stage, origin, e)
                continue
            self.registry.record_mapping(origin, target_id)
            stage.created += 1

    # Groups, users, categories

    def import_groups(self) -> None:
        self._import_entities("communities", EntityFamily.GROUP, "CommunityKey", self._create_group)

    def _create_group(self, record: LegacyRecord, origin: OriginKey) -> int:
        name = decode_title(require(record, "CommunityName")) or f"community-{origin.key}"
        group = NewGroup(import_id=origin.import_id, name=name, full_name=name, bio=_text(record.get("Description")))
        return self._target.create_group(group)

    def import_users(self) -> None:
        self._import_entities(
            "users", EntityFamily.USER, "ContactKey", self._create_user, on_batch=self._add_memberships
        )

    def _create_user(self, record: LegacyRecord, origin: OriginKey) -> int:
        email = _text(require(record, "EmailAddress"))
        name = " ".join(p for p in (_text(record.get("FirstName")), _text(record.get("LastName"))) if p)
        user = NewUser(
            import_id=origin.import_id,
            username=email,
            email=email.lower(),
            name=name,
            created_at=_timestamp(record.get("CreatedOn")),
            last_seen_at=_timestamp(record.get("LastLoginDate")),
        )
        return self._target.create_user(user)

    def _add_memberships(self, records: list[LegacyRecord]) -> None:
        """Add the imported users of a batch to the groups of their communities.

        Runs for skipped batches too: memberships are tracked on their own, so
        a group update that failed in an earlier run is retried.
        """
        user_ids: dict[str, int] = {}
        for record in records:
            contact_key = _text(require(record, "ContactKey"))
            user_id = self.registry.map_legacy_id(OriginKey.of(EntityFamily.USER, contact_key))
            if user_id is not None:
                user_ids[contact_key] = user_id
        if not user_ids:
            return

        members: dict[int, list[int]] = defaultdict(list)
        for row in self._source.group_members(list(user_ids)):
            contact_key = _text(require(row, "ContactKey"))
            group_id = self.registry.map_legacy_id(OriginKey.of(EntityFamily.GROUP, require(row, "CommunityKey")))
            if group_id is None or contact_key not in user_ids:
                logger.debug(f"No group for membership of {contact_key} in {row['CommunityKey']}")
                continue
            user_id = user_ids[contact_key]
            if not self._target.group_member_exists(group_id, user_id):
                members[group_id].append(user_id)

        for group_id, ids in members.items():
            try:
                self._target.add_group_members(group_id, ids)
            except TargetError as e:
                msg = f"Could not add {len(ids)} members to group {group_id}: {e}"
                logger.error(msg)
                self.stats.errors.append(msg)

    def import_categories(self) -> None:
        self._import_entities("communities", EntityFamily.CATEGORY, "CommunityKey", self._create_category)

    def _create_category(self, record: LegacyRecord, origin: OriginKey) -> int:
        category = NewCategory(
            import_id=origin.import_id,
            name=decode_title(require(record, "CommunityName")) or f"Community {origin.key}",
            description=_text(record.get("Description")),
            user_id=self.registry.resolve_user(record.get("CreatedByContactKey")),
        )
        return self._target.create_category(category)

    # Posts

    def import_posts(self) -> None:
        self._import_threads("discussion_posts", DISCUSSION_THREADS)
        self._import_threads("library_entries", LIBRARY_ENTRY_TOPICS)
        self._import_threads("library_comments", LIBRARY_COMMENTS)

    def import_announcements(self) -> None:
        self._import_threads("announcements", ANNOUNCEMENT_TOPICS)

    def import_blogs(self) -> None:
        self._import_threads("blogs", BLOG_TOPICS)
        self._import_threads("blog_comments", BLOG_COMMENTS)

    def _import_threads(self, query: str, spec: ThreadSpec) -> None:
        stage = self.stats.stage(spec.family.value)
        for records in self._batches(query):
            if self._skip_batch(spec.family, spec.key_field, records):
                continue
            for record in self.resolver.order_page(records, spec):
                self._import_post(record, spec, stage)

    def _import_post(self, record: LegacyRecord, spec: ThreadSpec, stage: StageStats) -> None:
        origin = spec.origin(record)
        violations = self.resolver.note_imported(origin)
        if violations:
            self.stats.ordering_violations += violations
            self.stats.errors.append(f"{violations} record(s) processed before their parent {origin.import_id}")

        if self.guard.already_imported(origin):
            stage.skipped += 1
            return

        resolution = self.resolver.resolve(self._draft(record, spec, origin), record, spec)
        if resolution.missing_category:
            self.stats.missing_categories += 1
        if resolution.outcome is Outcome.ORPHAN_PROMOTED:
            self.stats.orphans_promoted += 1
        if resolution.post is None:
            self.stats.orphans_skipped += 1
            stage.skipped += 1
            return

        try:
            created = self._target.create_post(resolution.post)
        except TargetError as e:
            self._fail(stage, origin, e)
            return

        if not self.resolver.verify_position(resolution.post, created):
            self.stats.ordering_violations += 1
            self.stats.errors.append(f"{origin.import_id} landed out of order in topic {created.topic_id}")

        self.registry.record_mapping(origin, created.post_id, created.anchor)
        stage.created += 1

    def _draft(self, record: LegacyRecord, spec: ThreadSpec, origin: OriginKey) -> PostDraft:
        raw = transform_body(require(record, spec.body_field)) or ""
        if not raw.strip():
            # Discourse rejects empty posts
            raw = decode_title(require(record, spec.subject_field)) or "(no content)"
        return PostDraft(
            import_id=origin.import_id,
            user_id=self.registry.resolve_user(require(record, spec.author_field)),
            raw=raw,
            created_at=_timestamp(require(record, spec.created_field)),
            tags=spec.tags,
        )

    # Attachments

    def import_attachments(self) -> None:
        family = EntityFamily.LIBRARY_ENTRY_FILE
        stage = self.stats.stage(family.value)
        root = self.attachments_dir
        if root is None or not root.is_dir():
            msg = f"Attachment directory {root} does not exist, skipping library files"
            logger.warning(msg)
            self.stats.errors.append(msg)
            return

        locator = AttachmentLocator(root, FileIndex.build(root), workers=self.attachment_workers)
        for records in self._batches("library_files"):
            descriptors = [self._file_descriptor(r) for r in records]
            if self._files_already_bound(descriptors):
                stage.skipped += len(records)
                self.stats.batches_skipped += 1
                continue

            for descriptor, path in locator.locate_all(descriptors):
                if path is None:
                    self.stats.attachments_missing += 1
                    stage.skipped += 1
                    continue
                try:
                    result = self.binder.bind(descriptor, path)
                except TargetError as e:
                    self._fail(stage, descriptor.origin, e)
                    continue

                if not result.bound:
                    stage.skipped += 1
                    continue
                self.stats.attachments_bound += 1
                if result.upload_created or result.body_updated or result.binding_created:
                    stage.created += 1
                else:
                    stage.skipped += 1

    def _files_already_bound(self, descriptors: list[FileDescriptor]) -> bool:
        """True if every file of the batch is uploaded and bound to its post.

        An existing upload alone is not enough: a run that stopped after the
        upload but before the body update or the binding must bind again.
        """
        keys = [d.origin.key for d in descriptors]
        if not self.guard.batch_already_imported(EntityFamily.LIBRARY_ENTRY_FILE, keys):
            return False
        for descriptor in descriptors:
            upload = self._target.upload_for_import_id(descriptor.origin.import_id)
            post_id = self.registry.map_legacy_id(descriptor.owner)
            if upload is None or post_id is None or not self._target.post_upload_exists(post_id, upload.upload_id):
                logger.debug(f"{descriptor.origin.import_id} is uploaded but not bound yet")
                return False
        return True

    @staticmethod
    def _file_descriptor(record: LegacyRecord) -> FileDescriptor:
        return FileDescriptor(
            origin=OriginKey.of(EntityFamily.LIBRARY_ENTRY_FILE, require(record, "DocumentFileKey")),
            owner=OriginKey.of(EntityFamily.LIBRARY_ENTRY, require(record, "DocumentKey")),
            library_name=_text(require(record, "LibraryName")),
            version_name=_text(require(record, "VersionName")),
            extension=_text(require(record, "FileExtension")),
            original_file_name=_text(record.get("OriginalFileName")) or None,
            author_key=_text(record.get("CreatedByContactKey")) or None,
        )

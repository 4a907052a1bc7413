"""
Pytest configuration and fixtures.

This module configures pytest behavior for different test types:
- Integration tests: Fail on any warnings from the code under test
- Unit tests: Allow warnings (orphans, missing files and unknown authors are logged as warnings)

It also provides the shared fakes: an in-memory Discourse (``FakeTarget``)
and a SQLite database laid out like the Higher Logic schema.
"""

from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, override

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from higher_logic_to_discourse.exceptions import TargetError
from higher_logic_to_discourse.legacy_source import HigherLogicSource
from higher_logic_to_discourse.models import (
    CandidatePost,
    CreatedPost,
    NewCategory,
    NewGroup,
    NewTopicPost,
    NewUser,
    PostRecord,
    TopicAnchor,
    Upload,
)

if TYPE_CHECKING:
    from collections.abc import Generator

    from sqlalchemy.engine import Engine

# Store warning records during test execution
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Custom logging handler to capture warnings during integration tests."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    @override
    def emit(self, record: logging.LogRecord) -> None:
        """Capture WARNING and above level logs."""
        _integration_test_warnings.setdefault(self.test_nodeid, []).append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """
    Automatically fail integration tests if any WARNING level logs are emitted from the code under test.

    A clean import of consistent legacy data must not log warnings; any
    warning there points at a record the importer had to degrade.
    """
    is_integration_test = request.node.get_closest_marker("integration") is not None

    if not is_integration_test:
        yield
        return

    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []

    handler = IntegrationTestWarningHandler(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    """
    Hook to check for warnings after test execution and mark test as failed if warnings were detected.
    """
    outcome = yield
    report = outcome.get_result()

    if call.when == "call" and report.outcome == "passed":
        test_nodeid = item.nodeid
        warning_records = _integration_test_warnings.get(test_nodeid, [])

        if warning_records:
            warning_messages = [
                f"{record.levelname}: {record.getMessage()} (in {record.name}:{record.lineno})"
                for record in warning_records
            ]
            report.outcome = "failed"
            report.longrepr = f"Integration test failed: {len(warning_records)} warning(s) detected:\n" + "\n".join(
                f"  - {msg}" for msg in warning_messages
            )

        _integration_test_warnings.pop(test_nodeid, None)


class FakeTarget:
    """In-memory stand-in for Discourse implementing the TargetPlatform protocol.

    ``durable`` holds what a real forum would keep between runs; ``restart()``
    drops the per-process state, as a new import process would see it.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(100)
        self.durable: dict[tuple[str, str], int] = {}
        self.durable_anchors: dict[str, TopicAnchor] = {}
        self.live_anchors: dict[str, TopicAnchor] = {}
        self.legacy_user_keys: dict[str, int] = {}
        self.topic_sizes: dict[int, int] = {}
        self.posts: dict[int, PostRecord] = {}
        self.created: list[CandidatePost] = []
        self.uploads: dict[str, Upload] = {}
        self.bindings: set[tuple[int, int]] = set()
        self.group_members: dict[int, set[int]] = defaultdict(set)
        self.reject: set[str] = set()
        # Names of methods that fail with TargetError, e.g. "update_post_raw"
        self.failing: set[str] = set()
        self.updates: list[tuple[int, str]] = []

    def restart(self) -> None:
        self.live_anchors.clear()

    def _maybe_fail(self, method: str) -> None:
        if method in self.failing:
            msg = f"HTTP 502 in {method}"
            raise TargetError(msg)

    def _create(self, kind: str, import_id: str) -> int:
        if import_id in self.reject:
            msg = f"rejected {import_id}"
            raise TargetError(msg)
        new_id = next(self._ids)
        self.durable[(kind, import_id)] = new_id
        return new_id

    def validate_access(self) -> None:
        return None

    def create_user(self, user: NewUser) -> int:
        return self._create("user", user.import_id)

    def create_group(self, group: NewGroup) -> int:
        return self._create("group", group.import_id)

    def add_group_members(self, group_id: int, user_ids: Iterable[int]) -> None:
        self._maybe_fail("add_group_members")
        self.group_members[group_id].update(user_ids)

    def group_member_exists(self, group_id: int, user_id: int) -> bool:
        return user_id in self.group_members.get(group_id, set())

    def create_category(self, category: NewCategory) -> int:
        return self._create("category", category.import_id)

    def create_post(self, post: CandidatePost) -> CreatedPost:
        post_id = self._create("post", post.import_id)
        if isinstance(post, NewTopicPost):
            topic_id = next(self._ids)
            self.topic_sizes[topic_id] = 1
        else:
            topic_id = post.topic_id
            self.topic_sizes[topic_id] += 1
        created = CreatedPost(post_id, topic_id, self.topic_sizes[topic_id])
        self.posts[post_id] = PostRecord(post_id, post.user_id, post.raw)
        self.live_anchors[post.import_id] = created.anchor
        self.durable_anchors[post.import_id] = created.anchor
        self.created.append(post)
        return created

    def user_id_for_import_id(self, import_id: str) -> int | None:
        return self.durable.get(("user", import_id))

    def group_id_for_import_id(self, import_id: str) -> int | None:
        return self.durable.get(("group", import_id))

    def category_id_for_import_id(self, import_id: str) -> int | None:
        return self.durable.get(("category", import_id))

    def post_id_for_import_id(self, import_id: str) -> int | None:
        return self.durable.get(("post", import_id))

    def upload_for_import_id(self, import_id: str) -> Upload | None:
        return self.uploads.get(import_id)

    def topic_anchor_for_imported_post(self, import_id: str) -> TopicAnchor | None:
        return self.live_anchors.get(import_id)

    def find_user_by_import_id(self, legacy_key: str) -> int | None:
        return self.legacy_user_keys.get(legacy_key)

    def find_post_by_import_id(self, import_id: str) -> TopicAnchor | None:
        return self.durable_anchors.get(import_id)

    def all_records_exist(self, kind: str, import_ids: Sequence[str]) -> bool:
        return bool(import_ids) and all((kind, i) in self.durable for i in import_ids)

    def get_post(self, post_id: int) -> PostRecord | None:
        post = self.posts.get(post_id)
        return PostRecord(post.post_id, post.user_id, post.raw) if post else None

    def update_post_raw(self, post_id: int, raw: str) -> None:
        self._maybe_fail("update_post_raw")
        self.posts[post_id].raw = raw
        self.updates.append((post_id, raw))

    def create_upload(self, user_id: int, path: Path, filename: str, import_id: str) -> Upload | None:
        upload_id = self._create("upload", import_id)
        upload = Upload(upload_id, filename, f"/uploads/{upload_id}/{filename}", f"upload://{upload_id}")
        self.uploads[import_id] = upload
        return upload

    def render_upload_reference(self, upload: Upload) -> str:
        return f"[{upload.filename}|attachment]({upload.short_url})"

    def post_upload_exists(self, post_id: int, upload_id: int) -> bool:
        return (post_id, upload_id) in self.bindings

    def create_post_upload(self, post_id: int, upload_id: int) -> None:
        self._maybe_fail("create_post_upload")
        self.bindings.add((post_id, upload_id))


@pytest.fixture
def fake_target() -> FakeTarget:
    return FakeTarget()


LEGACY_SCHEMA = """
CREATE TABLE Contact (ContactKey TEXT PRIMARY KEY, EmailAddress TEXT, FirstName TEXT, LastName TEXT,
                      UserStatus TEXT, CreatedOn TEXT);
CREATE TABLE ContactLoginDate (ContactKey TEXT, LoginDate TEXT);
CREATE TABLE Community (CommunityKey TEXT PRIMARY KEY, CommunityName TEXT, Description TEXT,
                        CreatedByContactKey TEXT);
CREATE TABLE CommunityMember (CommunityKey TEXT, ContactKey TEXT);
CREATE TABLE Discussion (DiscussionKey TEXT PRIMARY KEY, CommunityKey TEXT);
CREATE TABLE DiscussionPost (DiscussionPostKey TEXT PRIMARY KEY, DiscussionKey TEXT, ContactKey TEXT, Subject TEXT,
                             Body TEXT, PostType TEXT, ParentDiscussionPostKey TEXT, ThreadKey TEXT, CreatedOn TEXT);
CREATE TABLE Library (LibraryKey TEXT PRIMARY KEY, CommunityKey TEXT, LibraryName TEXT);
CREATE TABLE LibraryEntry (DocumentKey TEXT PRIMARY KEY, LibraryKey TEXT, EntryTitle TEXT, Description TEXT,
                           CreatedByContactKey TEXT, CreatedOn TEXT);
CREATE TABLE LibraryEntryFile (DocumentFileKey TEXT PRIMARY KEY, DocumentKey TEXT, VersionName TEXT,
                               FileExtension TEXT, OriginalFileName TEXT, CreatedByContactKey TEXT);
CREATE TABLE ItemComment (ItemCommentKey TEXT PRIMARY KEY, ItemKey TEXT, ParentItemCommentKey TEXT, ContactKey TEXT,
                          CommentText TEXT, CreatedOn TEXT);
CREATE TABLE Announcement (AnnouncementKey TEXT PRIMARY KEY, CommunityKey TEXT, AnnouncementTitle TEXT,
                           AnnouncementText TEXT, CreatedByContactKey TEXT, CreatedOn TEXT);
CREATE TABLE Blog (BlogKey TEXT PRIMARY KEY, CommunityKey TEXT, BlogTitle TEXT, BlogText TEXT, ContactKey TEXT,
                   CreatedOn TEXT);
"""


def make_legacy_engine() -> Engine:
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    with engine.begin() as conn:
        for statement in LEGACY_SCHEMA.split(";"):
            if statement.strip():
                _ = conn.execute(text(statement))
    return engine


def insert_rows(engine: Engine, table: str, rows: Sequence[dict[str, Any]]) -> None:
    if not rows:
        return
    columns = list(rows[0])
    sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(':' + c for c in columns)})"
    with engine.begin() as conn:
        _ = conn.execute(text(sql), list(rows))


@pytest.fixture
def legacy_engine() -> Engine:
    return make_legacy_engine()


@pytest.fixture
def legacy_source(legacy_engine: Engine) -> HigherLogicSource:
    return HigherLogicSource(legacy_engine, prefix="")

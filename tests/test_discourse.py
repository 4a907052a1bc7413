"""Tests for the Discourse REST target."""

import datetime as dt
from unittest.mock import Mock, patch

import pytest
import requests

from higher_logic_to_discourse.discourse import DiscourseTarget, sanitize_name, suggest_username
from higher_logic_to_discourse.exceptions import TargetConnectionError, TargetError
from higher_logic_to_discourse.import_store import ImportStore
from higher_logic_to_discourse.models import (
    NewCategory,
    NewGroup,
    NewTopicPost,
    NewUser,
    ReplyPost,
    TopicAnchor,
    Upload,
)


def _response(status: int = 200, body=None, headers=None) -> Mock:
    response = Mock()
    response.status_code = status
    response.ok = status < 400
    response.content = b"{}" if body is not None else b""
    response.json.return_value = body
    response.headers = headers or {}
    response.text = str(body)
    return response


@pytest.mark.unit
class TestNames:
    def test_suggest_username_from_email(self) -> None:
        assert suggest_username("John.Smith+forum@example.com") == "John.Smith_forum"

    def test_sanitize_collapses_and_trims(self) -> None:
        assert sanitize_name("  Board of Directors!! ") == "Board_of_Directors"

    def test_sanitize_short_name_padded(self) -> None:
        assert sanitize_name("a", fallback="group") == "a_group"

    def test_sanitize_truncates(self) -> None:
        assert len(sanitize_name("x" * 40)) == 20


@pytest.mark.unit
class TestDiscourseTarget:
    def setup_method(self) -> None:
        self.session = Mock(spec=requests.Session)
        self.store = ImportStore.from_url("sqlite://")
        self.target = DiscourseTarget(
            "https://forum.example.com/", "secret", self.store, api_username="admin", session=self.session
        )

    def _sent(self, index: int = -1):
        args, kwargs = self.session.request.call_args_list[index]
        return args[0], args[1], kwargs

    def test_auth_headers(self) -> None:
        self.session.request.return_value = _response(body={"current_user": {"username": "admin"}})

        self.target.validate_access()

        method, url, kwargs = self._sent()
        assert (method, url) == ("GET", "https://forum.example.com/session/current.json")
        assert kwargs["headers"] == {"Api-Key": "secret", "Api-Username": "admin"}

    def test_validate_access_unauthorized(self) -> None:
        self.session.request.return_value = _response(403, {"errors": ["not allowed"]})

        with pytest.raises(TargetConnectionError, match="not allowed"):
            self.target.validate_access()

    def test_connection_error(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(TargetConnectionError):
            self.target.create_group(NewGroup(import_id="group:K1", name="Members"))

    @patch("higher_logic_to_discourse.discourse.time.sleep")
    def test_rate_limit_retried(self, mock_sleep) -> None:
        self.session.request.side_effect = [
            _response(429, {"errors": ["slow down"]}, headers={"Retry-After": "2"}),
            _response(body={"basic_group": {"id": 12}}),
        ]

        assert self.target.create_group(NewGroup(import_id="group:K1", name="Members")) == 12
        mock_sleep.assert_called_once_with(2.0)

    def test_create_group_recorded_once(self) -> None:
        self.session.request.return_value = _response(body={"basic_group": {"id": 12}})
        group = NewGroup(import_id="group:K1", name="Members Only", bio="About")

        assert self.target.create_group(group) == 12
        assert self.target.create_group(group) == 12

        assert self.session.request.call_count == 1
        assert self._sent()[2]["json"]["group"]["name"] == "Members_Only"
        assert self.target.group_id_for_import_id("group:K1") == 12

    def test_create_user(self) -> None:
        self.session.request.return_value = _response(body={"success": True, "user_id": 7})
        user = NewUser(import_id="user:U1", username="Ann@Example.com", email="ann@example.com", name="Ann Lee")

        assert self.target.create_user(user) == 7

        payload = self._sent()[2]["json"]
        assert payload["username"] == "Ann"
        assert payload["email"] == "ann@example.com"
        assert self.target.user_id_for_import_id("user:U1") == 7

    def test_create_user_username_taken(self) -> None:
        self.session.request.side_effect = [
            _response(body={"success": False, "errors": {"username": ["must be unique"]}}),
            _response(body={"success": True, "user_id": 8}),
        ]

        self.target.create_user(NewUser(import_id="user:U2", username="bob@x.org", email="bob@x.org"))

        assert self._sent()[2]["json"]["username"] == "bob1"

    def test_create_user_existing_email(self) -> None:
        self.session.request.side_effect = [
            _response(body={"success": False, "errors": {"email": ["has already been taken"]}}),
            _response(body=[{"id": 31, "username": "carol", "email": "carol@x.org"}]),
        ]

        assert self.target.create_user(NewUser(import_id="user:U3", username="c@x.org", email="carol@x.org")) == 31
        assert self.store.extra("user", "user:U3") == "carol"

    def test_create_user_rejected(self) -> None:
        self.session.request.return_value = _response(body={"success": False, "message": "Password too weak"})

        with pytest.raises(TargetError, match="Password too weak"):
            self.target.create_user(NewUser(import_id="user:U4", username="d@x.org", email="d@x.org"))

    def test_create_category(self) -> None:
        self.store.record("user", "user:U1", 5, extra="ann")
        self.session.request.return_value = _response(body={"category": {"id": 4}})

        assert self.target.create_category(NewCategory(import_id="category:K1", name="General", user_id=5)) == 4
        assert self._sent()[2]["headers"]["Api-Username"] == "ann"

    def test_create_topic_as_author(self) -> None:
        self.store.record("user", "user:U1", 5, extra="ann")
        self.session.request.return_value = _response(body={"id": 90, "topic_id": 42, "post_number": 1})
        post = NewTopicPost(
            import_id="discussion_post:D1",
            user_id=5,
            raw="Hi",
            title="Hello",
            category_id=3,
            created_at=dt.datetime(2020, 1, 2, 3, 4, 5),
            tags=("blog",),
        )

        created = self.target.create_post(post)

        _, url, kwargs = self._sent()
        assert url.endswith("/posts.json")
        assert kwargs["headers"]["Api-Username"] == "ann"
        assert kwargs["json"] == {
            "raw": "Hi",
            "created_at": "2020-01-02T03:04:05",
            "tags": ["blog"],
            "title": "Hello",
            "category": 3,
        }
        assert created.anchor == TopicAnchor(42, 1)
        assert self.target.topic_anchor_for_imported_post("discussion_post:D1") == TopicAnchor(42, 1)
        assert self.target.find_post_by_import_id("discussion_post:D1") == TopicAnchor(42, 1)

    def test_create_reply_by_unknown_author(self) -> None:
        self.session.request.return_value = _response(body={"id": 91, "topic_id": 42, "post_number": 2})

        self.target.create_post(ReplyPost(import_id="discussion_post:D2", user_id=-1, raw="Re", topic_id=42))

        kwargs = self._sent()[2]
        assert kwargs["headers"]["Api-Username"] == "system"
        assert kwargs["json"] == {"raw": "Re", "topic_id": 42}

    def test_rejected_post(self) -> None:
        self.session.request.return_value = _response(422, {"errors": ["Body is too short"]})

        with pytest.raises(TargetError, match="too short"):
            self.target.create_post(ReplyPost(import_id="blog:1", user_id=-1, raw="x", topic_id=1))

    def test_get_post_missing(self) -> None:
        self.session.request.return_value = _response(404, {"errors": ["not found"]})

        assert self.target.get_post(5) is None

    def test_get_and_update_post(self) -> None:
        self.session.request.return_value = _response(body={"id": 5, "user_id": 3, "raw": "text"})
        post = self.target.get_post(5)
        assert (post.post_id, post.user_id, post.raw) == (5, 3, "text")

        self.target.update_post_raw(5, "text more")
        method, url, kwargs = self._sent()
        assert (method, url) == ("PUT", "https://forum.example.com/posts/5.json")
        assert kwargs["json"]["post"]["raw"] == "text more"

    def test_create_upload(self, tmp_path) -> None:
        self.store.record("user", "user:U3", 3, extra="carol")
        path = tmp_path / "a.pdf"
        path.write_bytes(b"%PDF")
        self.session.request.return_value = _response(
            body={"id": 70, "url": "/uploads/a.pdf", "short_url": "upload://abc.pdf", "original_filename": "a.pdf"}
        )

        upload = self.target.create_upload(3, path, "a.pdf", "library_entry_file:F1")

        assert upload == Upload(70, "a.pdf", "/uploads/a.pdf", "upload://abc.pdf")
        kwargs = self._sent()[2]
        assert kwargs["headers"]["Api-Username"] == "carol"
        assert kwargs["data"] == {"type": "composer", "synchronous": "true"}
        assert self.target.upload_for_import_id("library_entry_file:F1") == upload
        assert self.target.create_upload(3, path, "a.pdf", "library_entry_file:F1") == upload
        assert self.session.request.call_count == 1

    def test_refused_upload(self, tmp_path) -> None:
        self.store.record("user", "user:U3", 3, extra="carol")
        path = tmp_path / "a.exe"
        path.write_bytes(b"MZ")
        self.session.request.return_value = _response(422, {"errors": ["extension not allowed"]})

        assert self.target.create_upload(3, path, "a.exe", "library_entry_file:F2") is None

    def test_render_upload_reference(self) -> None:
        assert self.target.render_upload_reference(Upload(1, "pic.PNG", "/u/1", "upload://x.png")) == (
            "![pic.PNG](upload://x.png)"
        )
        assert self.target.render_upload_reference(Upload(2, "doc.pdf", "/u/2")) == "[doc.pdf|attachment](/u/2)"

    def test_bindings_and_bulk_existence(self) -> None:
        self.store.record("post", "blog:1", 1)

        assert self.target.all_records_exist("post", ["blog:1"])
        assert not self.target.all_records_exist("post", ["blog:1", "blog:2"])
        assert not self.target.post_upload_exists(1, 2)
        self.target.create_post_upload(1, 2)
        assert self.target.post_upload_exists(1, 2)

    def test_add_group_members(self) -> None:
        self.store.record("user", "user:U1", 5, extra="ann")
        self.store.record("user", "user:U2", 6, extra="bob")
        self.session.request.return_value = _response(body={"success": "OK"})

        self.target.add_group_members(12, [6, 5, -1])

        method, url, kwargs = self._sent()
        assert (method, url) == ("PUT", "https://forum.example.com/groups/12/members.json")
        assert kwargs["json"] == {"usernames": "ann,bob"}
        assert self.target.group_member_exists(12, 5)
        assert self.target.group_member_exists(12, 6)
        assert not self.target.group_member_exists(12, -1)

    def test_failed_group_update_not_recorded(self) -> None:
        self.store.record("user", "user:U1", 5, extra="ann")
        self.session.request.return_value = _response(502, {"errors": ["bad gateway"]})

        with pytest.raises(TargetError):
            self.target.add_group_members(12, [5])

        assert not self.target.group_member_exists(12, 5)

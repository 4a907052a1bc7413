"""Discourse REST implementation of the TargetPlatform protocol.

Posts are created on behalf of their authors by sending the author's
username in the ``Api-Username`` header, which requires an admin API key
scoped to all users. Every created record is written to the ImportStore
under its import id, which is what the durable lookups read.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import time
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import requests

from .exceptions import TargetConnectionError, TargetError
from .models import (
    SYSTEM_USER_ID,
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
    from .import_store import ImportStore

logger: logging.Logger = logging.getLogger(__name__)

# Discourse defaults for username and group name length
MIN_NAME_LENGTH: Final[int] = 3
MAX_NAME_LENGTH: Final[int] = 20
MAX_CATEGORY_NAME_LENGTH: Final[int] = 50

# Attempts at a free username before giving up on a user
USERNAME_ATTEMPTS: Final[int] = 5

IMAGE_EXTENSIONS: Final[frozenset[str]] = frozenset({"png", "jpg", "jpeg", "gif", "bmp", "webp", "svg", "tif", "tiff"})

DEFAULT_RETRY_AFTER_SECONDS: Final[float] = 5.0


def sanitize_name(value: str, *, fallback: str = "user") -> str:
    """Turn an arbitrary string into a valid Discourse username or group name.

    Allowed characters are letters, digits, ``_``, ``.`` and ``-``; the name
    must start and end with a letter or digit and be 3 to 20 characters long.
    """
    name = re.sub(r"[^A-Za-z0-9_.-]+", "_", value.strip())
    name = re.sub(r"[_.-]{2,}", "_", name)
    name = name[:MAX_NAME_LENGTH].strip("_.-")
    if len(name) < MIN_NAME_LENGTH:
        name = f"{name}_{fallback}".strip("_.-")[:MAX_NAME_LENGTH]
    return name


def suggest_username(email_or_name: str) -> str:
    return sanitize_name(email_or_name.split("@", 1)[0])


def _with_suffix(name: str, attempt: int) -> str:
    suffix = str(attempt)
    return f"{name[: MAX_NAME_LENGTH - len(suffix)]}{suffix}"


def _error_text(data: Any) -> str:  # noqa: ANN401 - arbitrary JSON error body
    if isinstance(data, dict):
        errors = data.get("errors")
        if isinstance(errors, list):
            return "; ".join(str(e) for e in errors)
        if isinstance(errors, dict):
            return "; ".join(f"{field} {' '.join(map(str, msgs))}" for field, msgs in errors.items())
        if "message" in data:
            return str(data["message"])
    return str(data)


class DiscourseTarget:
    """Creates and looks up imported records through the Discourse API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        store: ImportStore,
        *,
        api_username: str = "system",
        session: requests.Session | None = None,
        timeout: float = 30.0,
        rate_limit_retries: int = 5,
    ) -> None:
        self.base_url: str = base_url.rstrip("/")
        self.api_username: str = api_username
        self._api_key: str = api_key
        self._store: ImportStore = store
        self._session: requests.Session = session or requests.Session()
        self.timeout: float = timeout
        self.rate_limit_retries: int = rate_limit_retries
        # Posts created by this process, by import id
        self._live_anchors: dict[str, TopicAnchor] = {}
        self._usernames: dict[int, str] = {SYSTEM_USER_ID: "system"}

    def _request(
        self,
        method: str,
        path: str,
        *,
        username: str | None = None,
        allow_missing: bool = False,
        **kwargs: Any,  # noqa: ANN401 - passed through to requests
    ) -> Any:  # noqa: ANN401 - decoded JSON body
        headers = {"Api-Key": self._api_key, "Api-Username": username or self.api_username}
        url = f"{self.base_url}{path}"
        attempt = 0
        while True:
            try:
                response = self._session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                msg = f"Cannot reach Discourse at {self.base_url}: {e}"
                raise TargetConnectionError(msg) from e

            if response.status_code == 429 and attempt < self.rate_limit_retries:  # noqa: PLR2004
                attempt += 1
                delay = self._retry_after(response)
                logger.warning(f"Rate limited on {method} {path}, waiting {delay}s (attempt {attempt})")
                time.sleep(delay)
                continue

            if response.status_code == 404 and allow_missing:  # noqa: PLR2004
                return None

            try:
                data = response.json() if response.content else {}
            except ValueError:
                data = response.text

            if not response.ok:
                msg = f"{method} {path} failed with HTTP {response.status_code}: {_error_text(data)}"
                raise TargetError(msg)
            return data

    @staticmethod
    def _retry_after(response: requests.Response) -> float:
        try:
            return float(response.headers.get("Retry-After", DEFAULT_RETRY_AFTER_SECONDS))
        except ValueError:
            return DEFAULT_RETRY_AFTER_SECONDS

    def validate_access(self) -> None:
        try:
            data = self._request("GET", "/session/current.json")
        except TargetError as e:
            msg = f"Discourse API access failed: {e}"
            raise TargetConnectionError(msg) from e
        current = (data or {}).get("current_user", {}).get("username", self.api_username)
        logger.info(f"Discourse API access validated for {self.base_url} as {current}")

    # Users and groups

    def create_user(self, user: NewUser) -> int:
        existing = self._store.lookup("user", user.import_id)
        if existing is not None:
            return existing

        base = suggest_username(user.username or user.email)
        for attempt in range(USERNAME_ATTEMPTS):
            username = base if attempt == 0 else _with_suffix(base, attempt)
            payload = {
                "name": user.name or username,
                "email": user.email,
                "username": username,
                "password": secrets.token_urlsafe(24),
                "active": True,
                "approved": True,
            }
            data = self._request("POST", "/users.json", json=payload)
            if data.get("success") and data.get("user_id"):
                user_id = int(data["user_id"])
                break

            errors = data.get("errors") or {}
            if "email" in errors:
                found = self._user_by_email(user.email)
                if found is not None:
                    user_id, username = found
                    logger.info(f"Reusing existing Discourse user {username} for {user.import_id}")
                    break
            if "username" not in errors:
                msg = f"Discourse refused user {user.import_id}: {_error_text(data)}"
                raise TargetError(msg)
        else:
            msg = f"No free username for {user.import_id} after {USERNAME_ATTEMPTS} attempts (base {base})"
            raise TargetError(msg)

        self._usernames[user_id] = username
        _ = self._store.record("user", user.import_id, user_id, extra=username)
        return user_id

    def _user_by_email(self, email: str) -> tuple[int, str] | None:
        data = self._request("GET", "/admin/users/list/all.json", params={"email": email, "show_emails": "true"})
        for entry in data or []:
            if str(entry.get("email", "")).lower() == email.lower():
                return int(entry["id"]), str(entry["username"])
        return None

    def _username_for(self, user_id: int) -> str:
        username = self._usernames.get(user_id)
        if username is None:
            username = self._store.extra_for_target("user", user_id)
        if username is None:
            data = self._request("GET", f"/admin/users/{user_id}.json", allow_missing=True)
            username = data.get("username") if data else None
        if username is None:
            logger.warning(f"No username for user {user_id}, posting as {self.api_username}")
            username = self.api_username
        self._usernames[user_id] = username
        return username

    def create_group(self, group: NewGroup) -> int:
        existing = self._store.lookup("group", group.import_id)
        if existing is not None:
            return existing

        payload = {
            "group": {
                "name": sanitize_name(group.name, fallback="group"),
                "full_name": group.full_name or group.name,
                "bio_raw": group.bio,
            }
        }
        data = self._request("POST", "/admin/groups.json", json=payload)
        group_id = int(data["basic_group"]["id"])
        _ = self._store.record("group", group.import_id, group_id)
        return group_id

    def add_group_members(self, group_id: int, user_ids: Iterable[int]) -> None:
        members = [u for u in dict.fromkeys(user_ids) if u != SYSTEM_USER_ID]
        usernames = sorted({self._username_for(u) for u in members})
        if not usernames:
            return
        _ = self._request("PUT", f"/groups/{group_id}/members.json", json={"usernames": ",".join(usernames)})
        added = self._store.record_memberships(group_id, members)
        logger.debug(f"Added {added} members to group {group_id}")

    def group_member_exists(self, group_id: int, user_id: int) -> bool:
        return self._store.membership_exists(group_id, user_id)

    # Categories and posts

    def create_category(self, category: NewCategory) -> int:
        existing = self._store.lookup("category", category.import_id)
        if existing is not None:
            return existing

        payload = {
            "name": category.name[:MAX_CATEGORY_NAME_LENGTH],
            "color": "0088CC",
            "text_color": "FFFFFF",
            "description": category.description,
        }
        data = self._request("POST", "/categories.json", json=payload, username=self._username_for(category.user_id))
        category_id = int(data["category"]["id"])
        _ = self._store.record("category", category.import_id, category_id)
        return category_id

    def create_post(self, post: CandidatePost) -> CreatedPost:
        payload: dict[str, Any] = {"raw": post.raw}
        if post.created_at is not None:
            payload["created_at"] = post.created_at.isoformat()
        if post.tags:
            payload["tags"] = list(post.tags)

        if isinstance(post, NewTopicPost):
            payload["title"] = post.title
            if post.category_id is not None:
                payload["category"] = post.category_id
        else:
            payload["topic_id"] = post.topic_id
            if post.reply_to_post_number is not None:
                payload["reply_to_post_number"] = post.reply_to_post_number

        data = self._request("POST", "/posts.json", json=payload, username=self._username_for(post.user_id))
        created = CreatedPost(
            post_id=int(data["id"]), topic_id=int(data["topic_id"]), post_number=int(data["post_number"])
        )
        self._live_anchors[post.import_id] = created.anchor
        _ = self._store.record("post", post.import_id, created.post_id, anchor=created.anchor)
        return created

    # Lookups

    def user_id_for_import_id(self, import_id: str) -> int | None:
        return self._store.lookup("user", import_id)

    def group_id_for_import_id(self, import_id: str) -> int | None:
        return self._store.lookup("group", import_id)

    def category_id_for_import_id(self, import_id: str) -> int | None:
        return self._store.lookup("category", import_id)

    def post_id_for_import_id(self, import_id: str) -> int | None:
        return self._store.lookup("post", import_id)

    def upload_for_import_id(self, import_id: str) -> Upload | None:
        upload_id = self._store.lookup("upload", import_id)
        if upload_id is None:
            return None
        details = json.loads(self._store.extra("upload", import_id) or "{}")
        return Upload(
            upload_id=upload_id,
            filename=details.get("filename", ""),
            url=details.get("url", ""),
            short_url=details.get("short_url", ""),
        )

    def topic_anchor_for_imported_post(self, import_id: str) -> TopicAnchor | None:
        return self._live_anchors.get(import_id)

    def find_user_by_import_id(self, legacy_key: str) -> int | None:
        # Earlier imports recorded users under the bare contact key
        return self._store.lookup("user", legacy_key)

    def find_post_by_import_id(self, import_id: str) -> TopicAnchor | None:
        return self._store.anchor(import_id)

    def all_records_exist(self, kind: str, import_ids: Sequence[str]) -> bool:
        return self._store.all_exist(kind, import_ids)

    # Post bodies and uploads

    def get_post(self, post_id: int) -> PostRecord | None:
        data = self._request("GET", f"/posts/{post_id}.json", allow_missing=True)
        if not data:
            return None
        return PostRecord(post_id=int(data["id"]), user_id=int(data["user_id"]), raw=data.get("raw") or "")

    def update_post_raw(self, post_id: int, raw: str) -> None:
        payload = {"post": {"raw": raw, "edit_reason": "Attach imported library file"}}
        _ = self._request("PUT", f"/posts/{post_id}.json", json=payload)

    def create_upload(self, user_id: int, path: Path, filename: str, import_id: str) -> Upload | None:
        existing = self.upload_for_import_id(import_id)
        if existing is not None:
            return existing

        try:
            with path.open("rb") as fh:
                data = self._request(
                    "POST",
                    "/uploads.json",
                    username=self._username_for(user_id),
                    data={"type": "composer", "synchronous": "true"},
                    files={"file": (filename, fh)},
                )
        except OSError as e:
            logger.warning(f"Cannot read {path} for {import_id}: {e}")
            return None
        except TargetError as e:
            logger.warning(f"Discourse refused upload {filename} for {import_id}: {e}")
            return None

        upload = Upload(
            upload_id=int(data["id"]),
            filename=str(data.get("original_filename") or filename),
            url=str(data.get("url", "")),
            short_url=str(data.get("short_url", "")),
        )
        extra = json.dumps({"filename": upload.filename, "url": upload.url, "short_url": upload.short_url})
        _ = self._store.record("upload", import_id, upload.upload_id, extra=extra)
        return upload

    def render_upload_reference(self, upload: Upload) -> str:
        url = upload.short_url or upload.url
        extension = upload.filename.rsplit(".", 1)[-1].lower() if "." in upload.filename else ""
        if extension in IMAGE_EXTENSIONS:
            return f"![{upload.filename}]({url})"
        return f"[{upload.filename}|attachment]({url})"

    def post_upload_exists(self, post_id: int, upload_id: int) -> bool:
        return self._store.binding_exists(post_id, upload_id)

    def create_post_upload(self, post_id: int, upload_id: int) -> None:
        _ = self._store.record_binding(post_id, upload_id)

"""Identity mapping between legacy keys and Discourse ids.

Lookups are two-tier. The durable tier is Discourse's ``import_id`` custom
field, reached through the target's lookup methods; it survives between runs.
The in-run tier is a cache filled as records are created, which covers
records whose custom field is not yet visible to the durable lookup path.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from .models import SYSTEM_USER_ID, EntityFamily, OriginKey, TopicAnchor

if TYPE_CHECKING:
    from .protocols import TargetPlatform

logger: logging.Logger = logging.getLogger(__name__)


class IdentityRegistry:
    """Maps (entity family, legacy key) pairs to Discourse ids."""

    def __init__(self, target: TargetPlatform, *, unknown_user_id: int = SYSTEM_USER_ID) -> None:
        self._target = target
        self.unknown_user_id: int = unknown_user_id
        self._cache: dict[OriginKey, int] = {}
        self._anchors: dict[OriginKey, TopicAnchor] = {}
        self._topic_high_water: dict[int, int] = {}
        self._durable: dict[str, Callable[[str], int | None]] = {
            "user": target.user_id_for_import_id,
            "group": target.group_id_for_import_id,
            "category": target.category_id_for_import_id,
            "post": target.post_id_for_import_id,
            "upload": self._upload_id_for_import_id,
        }

    def _upload_id_for_import_id(self, import_id: str) -> int | None:
        upload = self._target.upload_for_import_id(import_id)
        return upload.upload_id if upload else None

    def map_legacy_id(self, origin: OriginKey) -> int | None:
        """Return the Discourse id for a legacy record, or None if it was never imported."""
        target_id = self._durable[origin.family.target_kind](origin.import_id)
        if target_id is not None:
            return target_id
        return self._cache.get(origin)

    def record_mapping(self, origin: OriginKey, target_id: int, anchor: TopicAnchor | None = None) -> None:
        """Remember a freshly created record for the rest of this run.

        The durable side is written by the creation call itself, which received
        the import id. An existing mapping is never replaced.
        """
        existing = self._cache.setdefault(origin, target_id)
        if existing != target_id:
            logger.warning(
                f"Ignoring second mapping for {origin.import_id}: already {existing}, got {target_id}"
            )
            return
        if anchor is not None:
            self._anchors.setdefault(origin, anchor)
            self._note_post_number(anchor)

    def is_mapped(self, origin: OriginKey) -> bool:
        return self.map_legacy_id(origin) is not None

    def all_mapped(self, family: EntityFamily, keys: Iterable[str]) -> bool:
        """Return True if every key of the family already has a mapping."""
        origins = [OriginKey.of(family, key) for key in keys]
        if not origins:
            return False
        if self._target.all_records_exist(family.target_kind, [o.import_id for o in origins]):
            return True
        return all(o in self._cache for o in origins)

    def resolve_user(self, legacy_key: object) -> int:
        """Resolve a legacy contact key to a user id, falling back to the system user.

        Order: direct mapping, then a search by the raw key (users imported
        before the mapping index existed), then the system account. A missing
        author never blocks the import of their content.
        """
        if legacy_key is None or str(legacy_key).strip() == "":
            return self.unknown_user_id

        origin = OriginKey.of(EntityFamily.USER, legacy_key)
        user_id = self.map_legacy_id(origin)
        if user_id is not None:
            return user_id

        user_id = self._target.find_user_by_import_id(origin.key)
        if user_id is not None:
            self._cache.setdefault(origin, user_id)
            return user_id

        logger.debug(f"Unknown author {origin.key}, attributing to system user")
        return self.unknown_user_id

    def topic_anchor(self, origin: OriginKey) -> TopicAnchor | None:
        """Find where an imported post lives.

        Tries the anchors recorded in this run, then the target's live lookup
        of posts created by this process, then the durable import-id index.
        """
        anchor = self._anchors.get(origin)
        if anchor is not None:
            return anchor

        anchor = self._target.topic_anchor_for_imported_post(origin.import_id)
        if anchor is None:
            anchor = self._target.find_post_by_import_id(origin.import_id)
        if anchor is not None:
            self._anchors[origin] = anchor
            self._note_post_number(anchor)
        return anchor

    def highest_post_number(self, topic_id: int) -> int | None:
        """Highest post number seen so far in a topic, derived from known anchors."""
        return self._topic_high_water.get(topic_id)

    def _note_post_number(self, anchor: TopicAnchor) -> None:
        current = self._topic_high_water.get(anchor.topic_id, 0)
        if anchor.post_number > current:
            self._topic_high_water[anchor.topic_id] = anchor.post_number

"""
Batch-level skip decisions for re-runs after a partial import.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from .models import EntityFamily, OriginKey

if TYPE_CHECKING:
    from .registry import IdentityRegistry

logger: logging.Logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """Decides whether a whole batch can be skipped.

    The check is all-or-nothing per batch: a batch is skipped only when every
    key in it is already mapped. A partially imported batch is processed
    again in full and its already-mapped records are skipped one by one by
    the caller through ``already_imported``.
    """

    def __init__(self, registry: IdentityRegistry) -> None:
        self._registry = registry

    def batch_already_imported(self, family: EntityFamily, keys: Sequence[Any]) -> bool:
        if not keys:
            return False
        done = self._registry.all_mapped(family, [str(k) for k in keys])
        if done:
            logger.debug(f"Skipping batch of {len(keys)} {family.value} records, all already imported")
        return done

    def already_imported(self, origin: OriginKey) -> bool:
        return self._registry.is_mapped(origin)

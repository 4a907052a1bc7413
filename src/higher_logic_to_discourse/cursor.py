"""Deterministic batched traversal of legacy queries."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from .exceptions import CursorOrderError, SchemaMismatchError
from .models import LegacyRecord

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageRequest:
    """Parameters of one page query.

    In watermark mode ``after`` holds the last key of the previous page (None
    for the first page) and ``offset`` stays 0. In offset mode ``after`` is
    always None.
    """

    limit: int
    offset: int = 0
    after: Any = None


@dataclass(frozen=True)
class Page:
    """One page of records plus the position needed to resume after it."""

    records: list[LegacyRecord]
    offset: int
    last_key: Any = None

    def __len__(self) -> int:
        return len(self.records)


class BatchCursor:
    """Lazily pages through a query until a page comes back empty.

    With ``key_field`` set, pages are requested by watermark (``key > after``)
    and the cursor checks that keys strictly increase across and within
    pages. Without it, pages are requested by offset, which costs the source
    O(offset) per page but works for tables without a usable key.

    Progress is not persisted here. Callers that want to resume pass the
    ``last_key`` or ``offset`` of the last page they committed back in as
    ``start_after`` / ``start_offset``.
    """

    def __init__(
        self,
        fetch_page: Callable[[PageRequest], list[LegacyRecord]],
        *,
        batch_size: int = 1000,
        key_field: str | None = None,
        start_after: Any = None,  # noqa: ANN401 - legacy keys are GUIDs or ints
        start_offset: int = 0,
    ) -> None:
        if batch_size < 1:
            msg = f"Batch size must be positive, got {batch_size}"
            raise ValueError(msg)
        if key_field is None and start_after is not None:
            msg = "start_after requires a key_field"
            raise ValueError(msg)

        self._fetch_page = fetch_page
        self.batch_size: int = batch_size
        self.key_field: str | None = key_field
        self._start_after: Any = start_after
        self._start_offset: int = start_offset

    def __iter__(self) -> Iterator[Page]:
        return self.pages()

    def pages(self) -> Iterator[Page]:
        """Yield pages from the configured start position. Each call restarts the scan."""
        if self.key_field is None:
            yield from self._offset_pages()
        else:
            yield from self._watermark_pages(self.key_field)

    def _offset_pages(self) -> Iterator[Page]:
        offset = self._start_offset
        while True:
            records = self._fetch_page(PageRequest(limit=self.batch_size, offset=offset))
            if not records:
                return
            yield Page(records=records, offset=offset)
            offset += len(records)

    def _watermark_pages(self, key_field: str) -> Iterator[Page]:
        after = self._start_after
        offset = 0
        while True:
            records = self._fetch_page(PageRequest(limit=self.batch_size, after=after))
            if not records:
                return

            last_key = after
            for record in records:
                try:
                    key = record[key_field]
                except KeyError as e:
                    msg = f"Watermark column {key_field!r} missing from legacy row"
                    raise SchemaMismatchError(msg) from e
                if last_key is not None and not key > last_key:
                    msg = f"Watermark {key_field} went from {last_key!r} to {key!r}; keys must strictly increase"
                    raise CursorOrderError(msg)
                last_key = key

            yield Page(records=records, offset=offset, last_key=last_key)
            logger.debug(f"Watermark {key_field} advanced to {last_key!r}")
            after = last_key
            offset += len(records)

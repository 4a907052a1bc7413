"""Locating legacy library files on disk and binding them to their Discourse posts."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import FileDescriptor, Upload
    from .protocols import TargetPlatform
    from .registry import IdentityRegistry

logger: logging.Logger = logging.getLogger(__name__)


def _basename(name: str) -> str:
    return name.replace("\\", "/").rsplit("/", 1)[-1]


class FileIndex:
    """Snapshot of every file under the attachment root, keyed by basename.

    Built once per run so that existence checks and the basename search do
    not hit the filesystem for every legacy file row.
    """

    def __init__(self, root: Path, files: Iterable[Path]) -> None:
        self.root: Path = root
        self._paths: set[Path] = set()
        self._by_name: dict[str, list[Path]] = defaultdict(list)
        for path in files:
            self._paths.add(path)
            self._by_name[path.name].append(path)
        for paths in self._by_name.values():
            paths.sort()

    @classmethod
    def build(cls, root: Path) -> FileIndex:
        index = cls(root, (p for p in root.rglob("*") if p.is_file()))
        logger.info(f"Indexed {len(index)} files under {root}")
        return index

    def __len__(self) -> int:
        return len(self._paths)

    def exists(self, path: Path) -> bool:
        return path in self._paths

    def find(self, name: str) -> Path | None:
        """First file anywhere under the root with this basename."""
        paths = self._by_name.get(name)
        return paths[0] if paths else None


class AttachmentLocator:
    """Finds the file for a legacy library file row.

    Candidates, in order:

    1. ``<root>/<library>/<version>.<extension>``
    2. ``<root>/<library>/<original file name>``
    3. ``<root>/<library>/<basename of original file name>``
    4. ``<root>/<basename of original file name>``

    With a ``FileIndex`` a last candidate is added: a file with the basename
    of the original name anywhere under the root.
    """

    def __init__(self, root: Path, index: FileIndex | None = None, *, workers: int = 1) -> None:
        self.root: Path = root
        self._index: FileIndex | None = index
        self.workers: int = max(1, workers)

    def candidate_paths(self, descriptor: FileDescriptor) -> list[Path]:
        library_dir = self.root / descriptor.library_name
        extension = descriptor.extension.lstrip(".")
        candidates = [library_dir / f"{descriptor.version_name}.{extension}"]

        original = descriptor.original_file_name
        if original:
            basename = _basename(original)
            candidates.extend([library_dir / original, library_dir / basename, self.root / basename])

        if self._index is not None and original:
            found = self._index.find(_basename(original))
            if found is not None:
                candidates.append(found)

        unique: list[Path] = []
        for candidate in candidates:
            if candidate not in unique:
                unique.append(candidate)
        return unique

    def locate(self, descriptor: FileDescriptor) -> Path | None:
        """Return the first existing candidate, or None after logging every path tried."""
        candidates = self.candidate_paths(descriptor)
        for candidate in candidates:
            if self._exists(candidate):
                logger.debug(f"Found {descriptor.origin.import_id} at {candidate}")
                return candidate

        tried = ", ".join(str(c) for c in candidates)
        logger.warning(f"Attachment file for {descriptor.origin.import_id} not found, tried: {tried}")
        return None

    def locate_all(self, descriptors: Sequence[FileDescriptor]) -> list[tuple[FileDescriptor, Path | None]]:
        """Locate many files, in parallel when more than one worker is configured.

        Results keep the order of ``descriptors``.
        """
        if self.workers == 1 or len(descriptors) < 2:
            return [(d, self.locate(d)) for d in descriptors]
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            return list(zip(descriptors, executor.map(self.locate, descriptors), strict=True))

    def _exists(self, path: Path) -> bool:
        if self._index is not None:
            return self._index.exists(path)
        return path.is_file()


@dataclass(frozen=True)
class BindResult:
    """What binding one file changed."""

    upload: Upload | None
    post_id: int | None = None
    upload_created: bool = False
    body_updated: bool = False
    binding_created: bool = False

    @property
    def bound(self) -> bool:
        return self.upload is not None and self.post_id is not None


class AttachmentBinder:
    """Uploads a located file and attaches it to its owning post exactly once.

    The body update and the post/upload binding are checked independently,
    so a run interrupted between the two completes the missing half on the
    next run without duplicating the other.
    """

    def __init__(self, registry: IdentityRegistry, target: TargetPlatform) -> None:
        self._registry = registry
        self._target = target
        self._post_locks: defaultdict[int, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, post_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._post_locks[post_id]

    def bind(self, descriptor: FileDescriptor, path: Path) -> BindResult:
        post_id = self._registry.map_legacy_id(descriptor.owner)
        if post_id is None:
            logger.warning(
                f"Skipping {descriptor.origin.import_id}: owning {descriptor.owner.import_id} was not imported"
            )
            return BindResult(upload=None)

        with self._lock_for(post_id):
            post = self._target.get_post(post_id)
            if post is None:
                logger.warning(f"Skipping {descriptor.origin.import_id}: post {post_id} no longer exists")
                return BindResult(upload=None)

            upload_created = False
            upload = self._target.upload_for_import_id(descriptor.origin.import_id)
            if upload is None:
                upload = self._target.create_upload(
                    post.user_id, path, descriptor.upload_filename, descriptor.origin.import_id
                )
                if upload is None:
                    logger.warning(f"Upload of {path} for {descriptor.origin.import_id} was refused")
                    return BindResult(upload=None, post_id=post_id)
                upload_created = True
                self._registry.record_mapping(descriptor.origin, upload.upload_id)

            body_updated = False
            reference = self._target.render_upload_reference(upload)
            if reference not in post.raw:
                post.raw = f"{post.raw}\n\n{reference}"
                self._target.update_post_raw(post_id, post.raw)
                body_updated = True

            binding_created = False
            if not self._target.post_upload_exists(post_id, upload.upload_id):
                self._target.create_post_upload(post_id, upload.upload_id)
                binding_created = True

        logger.debug(
            f"Bound {descriptor.origin.import_id} as upload {upload.upload_id} to post {post_id} "
            f"(body updated: {body_updated}, binding created: {binding_created})"
        )
        return BindResult(
            upload=upload,
            post_id=post_id,
            upload_created=upload_created,
            body_updated=body_updated,
            binding_created=binding_created,
        )

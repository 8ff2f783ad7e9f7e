"""In-memory index of cached videos, reconciled against the cache directory."""

import glob
import logging
import os
import re
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional, Union

from errors import CacheDirectoryError
from tools import remove_file

logger = logging.getLogger(__name__)

FINAL_SUFFIX = "_final.mp4"
FINAL_FILENAME_PATTERN = re.compile(r"^([0-9a-f]{32})_final\.mp4$")
INTERMEDIATE_FILENAME_PATTERN = re.compile(r"^([0-9a-f]{32})_raw(\..+)?$")

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class Pending:
    """The job is queued or running."""


@dataclass(frozen=True)
class Completed:
    """The job finished and ``path`` holds the playable artifact."""

    path: str

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("A completed job requires an artifact path.")


@dataclass(frozen=True)
class Failed:
    """The job stopped with ``reason``."""

    reason: str


JobState = Union[Pending, Completed, Failed]


@dataclass(frozen=True)
class CacheEntry:
    """One cached (or in-flight) video."""

    key: str
    title: str
    source: str
    state: JobState = field(default_factory=Pending)

    @property
    def status(self) -> str:
        if isinstance(self.state, Pending):
            return STATUS_PENDING
        if isinstance(self.state, Completed):
            return STATUS_COMPLETED
        if isinstance(self.state, Failed):
            return STATUS_FAILED
        raise TypeError(f"Unknown job state {self.state!r}")

    @property
    def artifact_path(self) -> Optional[str]:
        return self.state.path if isinstance(self.state, Completed) else None

    @property
    def error(self) -> Optional[str]:
        return self.state.reason if isinstance(self.state, Failed) else None

    @property
    def filename(self) -> str:
        return f"{self.key}{FINAL_SUFFIX}"

    def with_state(self, state: JobState) -> "CacheEntry":
        return replace(self, state=state)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "key": self.key,
            "title": self.title,
            "source": self.source,
            "status": self.status,
            "file": self.filename if self.artifact_path else None,
            "error": self.error,
        }


def derived_title(key: str) -> str:
    """Return the placeholder title used when only the file is known."""

    return f"Cached video {key[:8]}"


class CacheStore:
    """Process-wide table of :class:`CacheEntry` objects keyed by content key.

    The directory is the durable record of completed videos; this table is a
    volatile index over it and is rebuilt from the directory by :meth:`load`.
    All access goes through ``lock`` so request handlers and job workers can
    share one store.
    """

    def __init__(self, cache_dir: str) -> None:
        self.cache_dir = os.path.abspath(cache_dir)
        self.lock = threading.RLock()
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[CacheEntry]:
        with self.lock:
            return iter(list(self._entries.values()))

    def final_path(self, key: str) -> str:
        return os.path.join(self.cache_dir, f"{key}{FINAL_SUFFIX}")

    def raw_part_path(self, key: str) -> str:
        return os.path.join(self.cache_dir, f"{key}_raw.part")

    def raw_path(self, key: str) -> str:
        return os.path.join(self.cache_dir, f"{key}_raw.mp4")

    def intermediates(self, key: str) -> List[str]:
        """Return every temporary file currently on disk for ``key``."""

        pattern = os.path.join(glob.escape(self.cache_dir), f"{key}_raw*")
        return sorted(path for path in glob.glob(pattern) if os.path.isfile(path))

    def discard_intermediates(self, key: str) -> int:
        """Delete the temporary files of ``key`` and return how many went."""

        return sum(1 for path in self.intermediates(key) if remove_file(path))

    def get(self, key: str) -> Optional[CacheEntry]:
        with self.lock:
            return self._entries.get(key)

    def set(self, entry: CacheEntry) -> CacheEntry:
        with self.lock:
            self._entries[entry.key] = entry
        return entry

    def delete(self, key: str) -> Optional[CacheEntry]:
        with self.lock:
            return self._entries.pop(key, None)

    def clear(self) -> None:
        with self.lock:
            self._entries.clear()

    def reconcile(self, key: str, title_hint: Optional[str] = None) -> Optional[CacheEntry]:
        """Return the entry for ``key`` after checking it against the disk.

        A completed entry whose file vanished is purged and ``None`` is
        returned. A final file without an entry (for example after a restart)
        is adopted as a completed entry.
        """

        final_path = self.final_path(key)
        with self.lock:
            entry = self._entries.get(key)
            if entry is not None:
                if isinstance(entry.state, Completed) and not os.path.isfile(entry.state.path):
                    logger.warning("Cached file for %s is missing; dropping stale entry.", key)
                    del self._entries[key]
                    return None
                return entry
            if os.path.isfile(final_path):
                entry = CacheEntry(
                    key=key,
                    title=(title_hint or "").strip() or derived_title(key),
                    source="",
                    state=Completed(final_path),
                )
                self._entries[key] = entry
                logger.info("Adopted cached file %s without an index entry.", os.path.basename(final_path))
                return entry
        return None

    def _scan(self) -> List[os.DirEntry]:
        try:
            with os.scandir(self.cache_dir) as iterator:
                return [item for item in iterator if item.is_file()]
        except OSError as exc:
            raise CacheDirectoryError(f"Cannot read cache directory {self.cache_dir}: {exc}") from exc

    def list_completed(self) -> List[CacheEntry]:
        """Return completed entries for every final file on disk, newest first."""

        files = []
        for item in self._scan():
            match = FINAL_FILENAME_PATTERN.match(item.name)
            if not match:
                continue
            try:
                modified = item.stat().st_mtime
            except OSError:
                continue
            files.append((modified, match.group(1)))
        files.sort(reverse=True)

        entries: List[CacheEntry] = []
        for _, key in files:
            entry = self.reconcile(key)
            # A pending job may be writing this file right now.
            if entry is not None and isinstance(entry.state, Completed):
                entries.append(entry)
        return entries

    def load(self) -> int:
        """Create the directory and index the files a previous run left behind."""

        os.makedirs(self.cache_dir, exist_ok=True)
        adopted = 0
        for item in self._scan():
            if INTERMEDIATE_FILENAME_PATTERN.match(item.name):
                if remove_file(item.path):
                    logger.info("Removed orphaned intermediate %s.", item.name)
                continue
            match = FINAL_FILENAME_PATTERN.match(item.name)
            if match and self.get(match.group(1)) is None:
                self.reconcile(match.group(1))
                adopted += 1
        logger.info("Cache directory %s holds %d cached video(s).", self.cache_dir, adopted)
        return adopted

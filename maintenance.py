"""Deleting cached videos, one at a time or all at once."""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from cache_store import FINAL_FILENAME_PATTERN, INTERMEDIATE_FILENAME_PATTERN, CacheStore, Pending
from errors import CacheDirectoryError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClearReport:
    """Outcome of :func:`clear_all`."""

    removed: int
    failed: int
    skipped: int = 0


def _inside(directory: str, path: str) -> bool:
    directory = os.path.realpath(directory)
    return os.path.commonpath([directory, os.path.realpath(path)]) == directory


def resolve_artifact(store: CacheStore, filename: Optional[str]) -> str:
    """Return the cache path for a final artifact name or raise ValidationError.

    Only names of the form ``<key>_final.mp4`` are accepted, so traversal
    attempts never reach the filesystem.
    """

    name = (filename or "").strip()
    if not name:
        raise ValidationError("No file name was provided.")
    if not FINAL_FILENAME_PATTERN.match(name):
        raise ValidationError(f"Invalid file name '{name}'.")
    path = os.path.join(store.cache_dir, name)
    if not _inside(store.cache_dir, path):
        raise ValidationError(f"Invalid file name '{name}'.")
    return path


def delete_one(store: CacheStore, filename: Optional[str]) -> bool:
    """Remove one cached video and its index entry.

    Returns True when a file was deleted; a missing file or entry is not an
    error. A video whose job is still running cannot be deleted.
    """

    path = resolve_artifact(store, filename)
    key = FINAL_FILENAME_PATTERN.match(os.path.basename(path)).group(1)
    removed = False
    with store.lock:
        entry = store.get(key)
        if entry is not None and isinstance(entry.state, Pending):
            raise ValidationError("This video is still being processed and cannot be deleted yet.")
        try:
            os.remove(path)
            removed = True
        except FileNotFoundError:
            removed = False
        except OSError as exc:
            raise CacheDirectoryError(f"Could not delete {os.path.basename(path)}: {exc}") from exc
        store.delete(key)
    if removed:
        logger.info("Deleted cached file %s.", os.path.basename(path))
    else:
        logger.info("Cached file %s was already gone.", os.path.basename(path))
    return removed


def _cache_key(name: str) -> Optional[str]:
    match = FINAL_FILENAME_PATTERN.match(name) or INTERMEDIATE_FILENAME_PATTERN.match(name)
    return match.group(1) if match else None


def clear_all(store: CacheStore) -> ClearReport:
    """Delete every artifact and intermediate in the cache and empty the index.

    Entries of running jobs and their files are left in place and counted as
    skipped.
    """

    removed = 0
    failed = 0
    with store.lock:
        running = {entry.key for entry in store if isinstance(entry.state, Pending)}
        try:
            with os.scandir(store.cache_dir) as iterator:
                names = [item.name for item in iterator if item.is_file()]
        except OSError as exc:
            raise CacheDirectoryError(f"Cannot read cache directory {store.cache_dir}: {exc}") from exc

        for name in names:
            key = _cache_key(name)
            if key is None or key in running:
                continue
            try:
                os.remove(os.path.join(store.cache_dir, name))
            except FileNotFoundError:
                continue
            except OSError as exc:
                failed += 1
                logger.error("Could not delete %s: %s", name, exc)
                continue
            removed += 1
            logger.debug("Deleted %s.", name)

        for entry in store:
            if entry.key not in running:
                store.delete(entry.key)
    logger.info(
        "Cache cleared: %d file(s) removed, %d failure(s), %d running job(s) kept.",
        removed,
        failed,
        len(running),
    )
    return ClearReport(removed=removed, failed=failed, skipped=len(running))

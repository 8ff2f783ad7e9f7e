"""Single-flight download and transcode jobs keyed by content."""

import functools
import logging
import os
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from bilibili import BilibiliClient
from cache_store import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    CacheEntry,
    CacheStore,
    Completed,
    Failed,
    JobState,
    Pending,
    derived_title,
)
from errors import ResolutionError, StreamerError, ToolError, UpstreamError, ValidationError
from identifiers import KIND_PGC, SourceRef, content_key
from tools import Toolbox, remove_file, resolve_fetched_file

logger = logging.getLogger(__name__)

OUTCOME_CACHED = "cached"
OUTCOME_IN_PROGRESS = "in_progress"
OUTCOME_STARTED = "started"

STATE_UNKNOWN = "unknown"


@dataclass(frozen=True)
class JobRequest:
    """What a client asked for: a source, a display title and, for episodes, a cid."""

    source: SourceRef
    title: str = ""
    cid: Optional[str] = None

    @property
    def key(self) -> str:
        return content_key(self.source)


@dataclass(frozen=True)
class JobHandle:
    """Result of :meth:`JobOrchestrator.submit`."""

    key: str
    outcome: str
    entry: CacheEntry


@dataclass(frozen=True)
class StatusReport:
    """Snapshot of a job for polling clients."""

    key: str
    state: str
    title: str = ""
    source: str = ""
    artifact: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "state": self.state,
            "title": self.title,
            "source": self.source,
            "file": self.artifact,
            "error": self.error,
        }


def _spawn_thread(target: Callable[[], None]) -> None:
    worker = threading.Thread(target=target, daemon=True, name="bbbili-job")
    worker.start()


class JobOrchestrator:
    """Drive content from "requested" to "playable" or "failed".

    At most one job runs per content key. Each job runs on its own worker
    thread as a fixed pipeline: fetch with yt-dlp (or resolve episode stream
    URLs), transcode with ffmpeg, publish. ``spawn`` decides how the pipeline
    is started and defaults to a daemon thread.
    """

    def __init__(
        self,
        store: CacheStore,
        toolbox: Toolbox,
        client: Optional[BilibiliClient] = None,
        *,
        max_concurrent_jobs: int = 0,
        spawn: Optional[Callable[[Callable[[], None]], None]] = None,
    ) -> None:
        self.store = store
        self.toolbox = toolbox
        self.client = client
        self._spawn = spawn or _spawn_thread
        self._slots = (
            threading.BoundedSemaphore(max_concurrent_jobs) if max_concurrent_jobs > 0 else None
        )

    def submit(self, request: JobRequest) -> JobHandle:
        """Start a job for ``request`` unless one is cached or already running."""

        if request.source.kind == KIND_PGC and not request.cid:
            raise ValidationError("Episode downloads require a cid.")
        key = request.key
        title = request.title.strip() or request.source.video_url()

        with self.store.lock:
            entry = self.store.reconcile(key, title)
            if entry is not None:
                state = entry.state
                if isinstance(state, Completed):
                    logger.info("Cache hit for %s (%s).", key, entry.title)
                    return JobHandle(key, OUTCOME_CACHED, entry)
                if isinstance(state, Pending):
                    logger.info("Job for %s is already running.", key)
                    return JobHandle(key, OUTCOME_IN_PROGRESS, entry)
                if isinstance(state, Failed):
                    logger.info("Retrying %s after earlier failure: %s", key, state.reason)
                    self.store.delete(key)
            entry = self.store.set(CacheEntry(key, title, request.source.video_url(), Pending()))

        logger.info("Started job %s for %s.", key, request.source.video_url())
        try:
            self._spawn(functools.partial(self._run, key, request))
        except RuntimeError as exc:
            logger.error("Could not start a worker for %s: %s", key, exc)
            entry = self._publish(key, Failed(f"Could not start a worker: {exc}"))
        return JobHandle(key, OUTCOME_STARTED, entry)

    def _run(self, key: str, request: JobRequest) -> None:
        if self._slots is not None:
            self._slots.acquire()
        try:
            state = self._execute(key, request)
        finally:
            if self._slots is not None:
                self._slots.release()
        self._publish(key, state)

    def _execute(self, key: str, request: JobRequest) -> JobState:
        try:
            if request.source.kind == KIND_PGC:
                final_path = self._stream_pipeline(key, request)
            else:
                final_path = self._download_pipeline(key, request.source.video_url())
            return Completed(final_path)
        except (ToolError, ResolutionError, UpstreamError) as exc:
            logger.warning("Job %s failed: %s", key, exc.message)
            return Failed(exc.message)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.exception("Unexpected error while processing %s", key)
            remove_file(self.store.final_path(key))
            return Failed(f"Unexpected error: {exc}")
        finally:
            removed = self.store.discard_intermediates(key)
            if removed:
                logger.debug("Removed %d intermediate file(s) for %s.", removed, key)

    def _publish(self, key: str, state: JobState) -> CacheEntry:
        with self.store.lock:
            entry = self.store.get(key)
            if entry is None:
                # The cache was cleared while the job was running.
                entry = CacheEntry(key, derived_title(key), "")
            entry = self.store.set(entry.with_state(state))
        if isinstance(state, Completed):
            logger.info("Job %s completed: %s", key, os.path.basename(state.path))
        return entry

    def _download_pipeline(self, key: str, url: str) -> str:
        part_path = self.store.raw_part_path(key)
        logger.info("Fetching %s", url)
        self.toolbox.run(self.toolbox.fetch_command(url, part_path), "yt-dlp")

        fetched = resolve_fetched_file(self.store.cache_dir, key)
        raw_path = self.store.raw_path(key)
        if fetched != raw_path:
            try:
                os.replace(fetched, raw_path)
            except OSError as exc:
                raise ResolutionError(f"Failed to rename the downloaded file: {exc}") from exc
        return self._transcode(key, [raw_path])

    def _stream_pipeline(self, key: str, request: JobRequest) -> str:
        if self.client is None:
            raise ResolutionError("Episode streams cannot be resolved without a Bilibili client.")
        inputs = self.client.episode_streams(request.source.value, str(request.cid))
        logger.info("Resolved %d stream(s) for episode %s.", len(inputs), request.source.value)
        return self._transcode(key, list(inputs))

    def _transcode(self, key: str, inputs: List[str]) -> str:
        final_path = self.store.final_path(key)
        logger.info("Transcoding %s", os.path.basename(final_path))
        try:
            self.toolbox.run(self.toolbox.transcode_command(inputs, final_path), "ffmpeg")
        except ToolError:
            remove_file(final_path)
            raise
        if not os.path.isfile(final_path):
            raise ResolutionError("ffmpeg reported success but produced no file")
        return final_path


def query_status(store: CacheStore, key: str, title_hint: Optional[str] = None) -> StatusReport:
    """Return the current state of ``key`` after reconciling it with the disk."""

    entry = store.reconcile(key, title_hint)
    if entry is None:
        return StatusReport(key, STATE_UNKNOWN, (title_hint or "").strip())
    state = entry.state
    if isinstance(state, Completed):
        return StatusReport(key, STATUS_COMPLETED, entry.title, entry.source, artifact=entry.filename)
    if isinstance(state, Failed):
        return StatusReport(key, STATUS_FAILED, entry.title, entry.source, error=state.reason)
    if isinstance(state, Pending):
        return StatusReport(key, STATUS_PENDING, entry.title, entry.source)
    raise StreamerError(f"Unknown job state {state!r}")

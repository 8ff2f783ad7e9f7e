import os

import pytest

from cache_store import CacheEntry, Completed, Pending
from errors import ValidationError
from identifiers import parse_identifier
from jobs import OUTCOME_IN_PROGRESS, JobOrchestrator, JobRequest
from maintenance import clear_all, delete_one, resolve_artifact

KEY = "e" * 32
OTHER = "0123456789abcdef" * 2


def _touch(path):
    with open(path, "wb") as handle:
        handle.write(b"x")


@pytest.mark.parametrize(
    "name",
    [None, "", "../etc/passwd", "..%2Fsecret", f"../{KEY}_final.mp4", f"{KEY}_raw.mp4", "clip.mp4", f"{KEY.upper()}_final.mp4"],
)
def test_resolve_artifact_rejects_unexpected_names(store, name):
    with pytest.raises(ValidationError):
        resolve_artifact(store, name)


def test_resolve_artifact_accepts_final_names(store):
    assert resolve_artifact(store, f"{KEY}_final.mp4") == store.final_path(KEY)


def test_delete_one_removes_file_and_entry(store):
    _touch(store.final_path(KEY))
    store.set(CacheEntry(KEY, "Title", "", Completed(store.final_path(KEY))))

    assert delete_one(store, f"{KEY}_final.mp4") is True
    assert not os.path.exists(store.final_path(KEY))
    assert store.get(KEY) is None


def test_delete_one_tolerates_missing_file(store):
    store.set(CacheEntry(KEY, "Title", "", Completed(store.final_path(KEY))))
    assert delete_one(store, f"{KEY}_final.mp4") is False
    assert store.get(KEY) is None


def test_delete_one_never_touches_files_outside_the_cache(tmp_path, store):
    outside = tmp_path / "outside.txt"
    _touch(str(outside))
    with pytest.raises(ValidationError):
        delete_one(store, "../outside.txt")
    assert outside.exists()


def test_clear_all_removes_artifacts_and_intermediates(store):
    _touch(store.final_path(KEY))
    _touch(store.final_path(OTHER))
    _touch(store.raw_part_path(OTHER))
    _touch(os.path.join(store.cache_dir, "readme.txt"))
    store.set(CacheEntry(KEY, "Title", "", Completed(store.final_path(KEY))))

    report = clear_all(store)
    assert report.removed == 3
    assert report.failed == 0
    assert len(store) == 0
    assert os.listdir(store.cache_dir) == ["readme.txt"]


def test_clear_all_on_empty_cache(store):
    report = clear_all(store)
    assert (report.removed, report.failed) == (0, 0)


def _running_job(store, toolbox, spawner, stub_client):
    orchestrator = JobOrchestrator(store, toolbox, stub_client, spawn=spawner)
    request = JobRequest(parse_identifier("BV1xx411c7mD"), "Running video")
    handle = orchestrator.submit(request)
    return orchestrator, request, handle.key


def test_delete_one_refuses_a_running_job(store, toolbox, spawner, stub_client):
    orchestrator, request, key = _running_job(store, toolbox, spawner, stub_client)
    _touch(store.final_path(key))

    with pytest.raises(ValidationError):
        delete_one(store, f"{key}_final.mp4")

    assert store.get(key).state == Pending()
    assert os.path.exists(store.final_path(key))
    assert orchestrator.submit(request).outcome == OUTCOME_IN_PROGRESS
    assert len(spawner.pending) == 1


def test_clear_all_keeps_running_jobs_and_their_files(store, toolbox, spawner, stub_client):
    orchestrator, request, key = _running_job(store, toolbox, spawner, stub_client)
    _touch(store.raw_part_path(key))
    _touch(store.final_path(key))
    _touch(store.final_path(KEY))
    store.set(CacheEntry(KEY, "Done", "", Completed(store.final_path(KEY))))

    report = clear_all(store)

    assert (report.removed, report.failed, report.skipped) == (1, 0, 1)
    assert store.get(KEY) is None
    assert store.get(key).state == Pending()
    assert os.path.exists(store.raw_part_path(key))
    assert os.path.exists(store.final_path(key))
    assert orchestrator.submit(request).outcome == OUTCOME_IN_PROGRESS
    assert len(spawner.pending) == 1

    spawner.run_all()
    assert isinstance(store.get(key).state, Completed)

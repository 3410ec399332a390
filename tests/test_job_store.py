"""Tests for rendition.job_store."""

import json

import pytest

from rendition.job_store import FileJobStore, InMemoryJobStore
from rendition.schemas import JobState, Representation, TransformJob


def succeeded(key="sha256:aa"):
    return TransformJob(
        key=key,
        state=JobState.SUCCEEDED,
        attempts=1,
        kind_id="core:markdown",
        operation="markdown.render",
        result=Representation.inline(
            "text/html", "<p/>", content_hash="sha256:bb", tool_version="t/1", transform_key=key
        ),
    )


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryJobStore()
    return FileJobStore(tmp_path / "jobs")


class TestJobStore:
    """Behaviour shared by every backend."""

    def test_put_get(self, store):
        job = succeeded()
        store.put(job)
        assert store.get(job.key) == job

    def test_get_missing(self, store):
        assert store.get("sha256:missing") is None

    def test_put_replaces(self, store):
        store.put(TransformJob(key="sha256:aa", state=JobState.QUEUED))
        store.put(succeeded())
        assert store.get("sha256:aa").state == JobState.SUCCEEDED
        assert store.keys() == ["sha256:aa"]

    def test_get_succeeded(self, store):
        store.put(TransformJob(key="sha256:q", state=JobState.RUNNING, attempts=1))
        store.put(succeeded("sha256:s"))
        assert store.get_succeeded("sha256:q") is None
        assert store.get_succeeded("sha256:s").result.transform_key == "sha256:s"

    def test_iteration(self, store):
        store.put(succeeded("sha256:a"))
        store.put(succeeded("sha256:b"))
        assert sorted(job.key for job in store) == ["sha256:a", "sha256:b"]


class TestFileJobStore:

    def test_record_layout(self, tmp_path):
        store = FileJobStore(tmp_path / "jobs")
        store.put(succeeded("sha256:abc"))
        path = tmp_path / "jobs" / "sha256-abc.json"
        assert path.exists()
        assert json.loads(path.read_text())["state"] == "succeeded"
        assert not list((tmp_path / "jobs").glob("*.tmp*"))

    def test_shared_between_instances(self, tmp_path):
        job = succeeded()
        FileJobStore(tmp_path / "jobs").put(job)
        assert FileJobStore(tmp_path / "jobs").get("sha256:aa") == job

    def test_unreadable_record_skipped_in_keys(self, tmp_path):
        store = FileJobStore(tmp_path / "jobs")
        store.put(succeeded())
        (tmp_path / "jobs" / "junk.json").write_text("{not json")
        assert store.keys() == ["sha256:aa"]


def test_in_memory_clear():
    store = InMemoryJobStore()
    store.put(succeeded())
    store.clear()
    assert store.keys() == []

"""
JobStore - Persist transform job records.

The JobStore keeps one TransformJob record per TransformKey. The scheduler
writes every state transition and consults the store for keys that already
succeeded, so a result computed by an earlier scheduler (or process) is
returned without invoking a runner.

Storage backends:
- In-memory (for testing)
- File-based (one JSON record per key)
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator, Optional

from rendition.schemas import JobState, TransformJob

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """
    Abstract base class for transform job storage.

    Implementations must be safe to call from scheduler worker threads.
    """

    @abstractmethod
    def put(self, job: TransformJob) -> None:
        """
        Store or replace the record for job.key.

        Args:
            job: The TransformJob to store
        """
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[TransformJob]:
        """
        Retrieve a job record by TransformKey.

        Returns:
            The TransformJob if found, None otherwise
        """
        pass

    @abstractmethod
    def keys(self) -> list[str]:
        """List stored TransformKeys."""
        pass

    def get_succeeded(self, key: str) -> Optional[TransformJob]:
        """Return the record for key only if it succeeded."""
        job = self.get(key)
        if job is not None and job.state == JobState.SUCCEEDED:
            return job
        return None

    def __iter__(self) -> Iterator[TransformJob]:
        for key in self.keys():
            job = self.get(key)
            if job is not None:
                yield job


class InMemoryJobStore(JobStore):
    """
    In-memory implementation of JobStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._jobs: dict[str, TransformJob] = {}
        self._lock = threading.Lock()

    def put(self, job: TransformJob) -> None:
        with self._lock:
            self._jobs[job.key] = job

    def get(self, key: str) -> Optional[TransformJob]:
        with self._lock:
            return self._jobs.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._jobs)

    def clear(self) -> None:
        """Clear all stored records (for testing)."""
        with self._lock:
            self._jobs.clear()


class FileJobStore(JobStore):
    """
    File-based implementation of JobStore.

    Stores one JSON record per key:
        store_dir/
            sha256-{hex}.json

    Records are written to a temporary file and renamed into place, so a
    reader never sees a partial record.
    """

    def __init__(self, store_dir: Path | str):
        self._store_dir = Path(store_dir)
        self._store_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    def _path(self, key: str) -> Path:
        safe = key.replace(":", "-").replace("/", "_")
        return self._store_dir / f"{safe}.json"

    def put(self, job: TransformJob) -> None:
        path = self._path(job.key)
        tmp_path = path.with_suffix(f".json.tmp{threading.get_ident()}")
        with self._lock:
            with open(tmp_path, "w") as f:
                json.dump(job.to_dict(), f, indent=2)
            os.replace(tmp_path, path)

    def get(self, key: str) -> Optional[TransformJob]:
        path = self._path(key)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return TransformJob.from_dict(data)

    def keys(self) -> list[str]:
        keys = []
        for path in sorted(self._store_dir.glob("*.json")):
            try:
                with open(path) as f:
                    keys.append(json.load(f)["key"])
            except (OSError, json.JSONDecodeError, KeyError) as e:
                logger.warning(f"Skipping unreadable job record {path}: {e}")
        return keys

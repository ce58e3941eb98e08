"""
Artifact Publisher
==================

Deploy-staging step of the executor. Artifacts are content addressed: two
jobs that produce the same bundle share one published artifact.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import tempfile
import threading
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Optional, Any

from shadow_build.errors import UnknownArtifact
from shadow_build.models.artifact import Artifact

logger = logging.getLogger(__name__)


class ArtifactPublisher:
    """
    Publishes bundles and resolves artifact references.

    With a root directory, bundles are written to <root>/<hash[:2]>/<hash>.bundle
    and binary_location points at that file; otherwise the location is a
    mem:// URI and the payload stays in process. Only the most recent
    max_linked_jobs job ids are kept per artifact.
    """

    def __init__(self, root: Optional[Path] = None, max_linked_jobs: int = 100):
        self._lock = threading.RLock()
        self.root = Path(root) if root is not None else None
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)

        self._artifacts: Dict[str, Artifact] = {}
        self._max_linked_jobs = max_linked_jobs
        self._jobs: Dict[str, Deque[str]] = {}

        self._published = 0
        self._deduplicated = 0

    def _location(self, content_hash: str) -> str:
        if self.root is None:
            return f"mem://artifacts/{content_hash}"
        return str(self.root / content_hash[:2] / f"{content_hash}.bundle")

    def _write_bundle(self, artifact: Artifact, location: str) -> None:
        path = Path(location)
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(artifact.payload)
            os.replace(tmp, path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def publish(self, artifact: Artifact) -> str:
        """Publish an artifact and return its reference."""
        ref = artifact.ref
        with self._lock:
            existing = self._artifacts.get(ref)
            if existing is not None:
                self._jobs[ref].append(artifact.job_id)
                self._deduplicated += 1
                logger.debug(f"Artifact {ref[:12]} already published; linked {artifact.job_id}")
                return ref

            location = self._location(ref)
            if self.root is not None:
                self._write_bundle(artifact, location)
            published = dataclasses.replace(artifact, binary_location=location)
            self._artifacts[ref] = published
            self._jobs[ref] = deque([artifact.job_id], maxlen=self._max_linked_jobs)
            self._published += 1

        logger.info(f"Published artifact {ref[:12]} ({artifact.size} bytes) for {artifact.job_id}")
        return ref

    def get(self, ref: str) -> Optional[Artifact]:
        with self._lock:
            return self._artifacts.get(ref)

    def get_artifact(self, ref: str) -> Artifact:
        """Resolve a reference or raise UnknownArtifact."""
        artifact = self.get(ref)
        if artifact is None:
            raise UnknownArtifact(ref)
        return artifact

    def jobs_for(self, ref: str) -> List[str]:
        """Job ids whose builds produced this artifact."""
        with self._lock:
            return list(self._jobs.get(ref, ()))

    def restore(self, artifacts: List[Dict[str, Any]]) -> int:
        """Re-register artifact metadata persisted by a previous process."""
        restored = 0
        with self._lock:
            for record in artifacts:
                artifact = Artifact.from_dict(record)
                if artifact.ref in self._artifacts:
                    continue
                self._artifacts[artifact.ref] = artifact
                self._jobs[artifact.ref] = deque([artifact.job_id], maxlen=self._max_linked_jobs)
                restored += 1
        return restored

    def list_artifacts(self) -> List[Artifact]:
        with self._lock:
            return list(self._artifacts.values())

    def get_stats(self) -> Dict[str, Any]:
        """Get publisher statistics."""
        with self._lock:
            return {
                "artifacts": len(self._artifacts),
                "published": self._published,
                "deduplicated": self._deduplicated,
                "root": str(self.root) if self.root else None,
            }

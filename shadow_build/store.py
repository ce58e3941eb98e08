"""
Job Store
=========

Durable job records and runner metadata, so a restarted engine can recover
in-flight work and rebuild its warm pool.

Layout under state_dir:
    jobs/<job_id>.json      one record per job, rewritten on every transition
    runners.json            pool snapshot
    artifacts.json          published artifact metadata
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Any

from shadow_build.models.job import Job

logger = logging.getLogger(__name__)


def _atomic_write(path: Path, text: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class JobStore:
    """File-backed persistence for jobs, runners and artifacts."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.jobs_dir = self.state_dir / "jobs"
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._writes = 0

    # ─────────────────────────────────────────────────────────────────
    # Jobs
    # ─────────────────────────────────────────────────────────────────

    def save(self, job: Job) -> None:
        path = self.jobs_dir / f"{job.job_id}.json"
        with self._lock:
            _atomic_write(path, job.to_json())
            self._writes += 1

    def load(self, job_id: str) -> Optional[Job]:
        path = self.jobs_dir / f"{job_id}.json"
        if not path.exists():
            return None
        return Job.from_json(path.read_text())

    def load_all(self) -> List[Job]:
        """All readable job records, oldest submission first."""
        jobs: List[Job] = []
        for path in self.jobs_dir.glob("*.json"):
            try:
                jobs.append(Job.from_json(path.read_text()))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable job record {path.name}: {e}")
        jobs.sort(key=lambda j: j.submitted_at)
        return jobs

    def load_inflight(self) -> List[Job]:
        """Jobs that had not reached a terminal state."""
        return [job for job in self.load_all() if not job.is_complete()]

    def delete(self, job_id: str) -> bool:
        try:
            (self.jobs_dir / f"{job_id}.json").unlink()
            return True
        except FileNotFoundError:
            return False

    # ─────────────────────────────────────────────────────────────────
    # Runner and artifact metadata
    # ─────────────────────────────────────────────────────────────────

    def _save_json(self, name: str, data: Any) -> None:
        with self._lock:
            _atomic_write(self.state_dir / name, json.dumps(data, indent=2))

    def _load_json(self, name: str, default: Any) -> Any:
        path = self.state_dir / name
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read {name}: {e}")
            return default

    def save_runners(self, snapshot: Dict[str, Any]) -> None:
        self._save_json("runners.json", snapshot)

    def load_runners(self) -> Dict[str, Any]:
        return self._load_json("runners.json", {})

    def save_artifacts(self, artifacts: List[Dict[str, Any]]) -> None:
        self._save_json("artifacts.json", artifacts)

    def load_artifacts(self) -> List[Dict[str, Any]]:
        return self._load_json("artifacts.json", [])

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state_dir": str(self.state_dir),
            "job_records": sum(1 for _ in self.jobs_dir.glob("*.json")),
            "writes": self._writes,
        }

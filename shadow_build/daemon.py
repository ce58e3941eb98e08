"""
Build Daemon
============

Long-running host for the build engine. Owns the config and state
directories, persists cache blobs, artifacts, job records and runner
metadata there, and accepts submissions dropped into its inbox.

State directory layout:
    cache/                   compiled unit blobs (FileBlobStore)
    artifacts/               published bundles
    jobs/                    job records (JobStore)
    inbox/                   pending submissions (*.json)
    submissions/             one reply per submission: job id or error
    runners.json, artifacts.json, status.json, daemon.pid
"""

from __future__ import annotations

import os
import json
import signal
import threading
import time
import logging
from pathlib import Path
from typing import Dict, List, Optional, Any

from pydantic import ValidationError

from shadow_build.cache import ContentAddressableCache, FileBlobStore
from shadow_build.config import EngineConfig
from shadow_build.engine import BuildEngine
from shadow_build.errors import CapacityExceeded
from shadow_build.pool import RunnerProvisioner
from shadow_build.publisher import ArtifactPublisher
from shadow_build.schemas import SubmitChangeSetRequest
from shadow_build.store import JobStore
from shadow_build.toolchain import SimulatedToolchain, Toolchain

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".shadow_build"
CONFIG_NAMES = ("engine.toml", "engine.yaml", "engine.yml")


def load_config(config_dir: Path) -> EngineConfig:
    """Load the first engine config file found in config_dir, else defaults."""
    for name in CONFIG_NAMES:
        path = Path(config_dir) / name
        if path.exists():
            return EngineConfig.from_file(path)
    logger.info("Using default engine config (no config file found)")
    return EngineConfig()


class BuildDaemon:
    """
    Shadow build daemon.

    Coordinates the engine with on-disk state and provides the interface
    used by the CLI.
    """

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        state_dir: Optional[Path] = None,
        toolchain: Optional[Toolchain] = None,
        provisioner: Optional[RunnerProvisioner] = None,
        poll_interval_sec: float = 0.5,
    ):
        # Directories
        self.config_dir = Path(config_dir or DEFAULT_HOME / "config")
        self.state_dir = Path(state_dir or DEFAULT_HOME / "state")
        self.inbox_dir = self.state_dir / "inbox"
        self.replies_dir = self.state_dir / "submissions"

        for path in (self.config_dir, self.state_dir, self.inbox_dir, self.replies_dir):
            path.mkdir(parents=True, exist_ok=True)

        self.config = load_config(self.config_dir)
        self.poll_interval_sec = poll_interval_sec

        self.engine = BuildEngine(
            config=self.config,
            toolchain=toolchain or SimulatedToolchain(),
            cache=ContentAddressableCache(
                store=FileBlobStore(self.state_dir / "cache"),
                policy=self.config.cache,
            ),
            publisher=ArtifactPublisher(self.state_dir / "artifacts"),
            store=JobStore(self.state_dir),
            provisioner=provisioner,
        )

        # State
        self._running = False
        self._start_time: Optional[float] = None
        self._shutdown_event = threading.Event()

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "daemon.pid"

    @property
    def status_file(self) -> Path:
        return self.state_dir / "status.json"

    def start(self, handle_signals: bool = True) -> None:
        """Start the daemon."""
        if self._running:
            logger.warning("Daemon already running")
            return

        logger.info("Starting shadow build daemon...")

        if handle_signals:
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)

        recovered = self.engine.recover()
        self.engine.start()

        self._running = True
        self._start_time = time.time()
        self.pid_file.write_text(str(os.getpid()))
        self.write_status()

        logger.info(f"Shadow build daemon started ({recovered} jobs recovered)")

    def stop(self) -> None:
        """Stop the daemon."""
        if not self._running:
            return

        logger.info("Stopping shadow build daemon...")
        self.engine.stop()
        self._running = False
        self.write_status()

        if self.pid_file.exists():
            self.pid_file.unlink()

        logger.info("Shadow build daemon stopped")

    def run(self) -> None:
        """Run the daemon until signaled to stop."""
        self.start()
        try:
            while not self._shutdown_event.wait(timeout=self.poll_interval_sec):
                try:
                    self.poll_inbox()
                    self.write_status()
                except Exception as e:
                    logger.exception(f"Daemon loop error: {e}")
        finally:
            self.stop()

    def shutdown(self) -> None:
        self._shutdown_event.set()

    def _signal_handler(self, signum: int, frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self._shutdown_event.set()

    # ─────────────────────────────────────────────────────────────────
    # Inbox
    # ─────────────────────────────────────────────────────────────────

    def poll_inbox(self) -> List[str]:
        """Submit every pending inbox file; write a reply per submission."""
        accepted: List[str] = []
        for path in sorted(self.inbox_dir.glob("*.json"), key=lambda p: p.stat().st_mtime):
            submission_id = path.stem
            reply: Dict[str, Any] = {"submission_id": submission_id}
            try:
                request = SubmitChangeSetRequest(**json.loads(path.read_text()))
                job_id = self.engine.submit(request)
                reply["job_id"] = job_id
                accepted.append(job_id)
            except (ValueError, ValidationError, CapacityExceeded) as e:
                reply["error"] = str(e)
                logger.warning(f"Rejected submission {submission_id}: {e}")
            (self.replies_dir / f"{submission_id}.json").write_text(json.dumps(reply, indent=2))
            path.unlink()
        return accepted

    def write_status(self) -> None:
        self.status_file.write_text(json.dumps(self.get_status(), indent=2, default=str))

    def get_status(self) -> Dict[str, Any]:
        """Get daemon status."""
        uptime = time.time() - self._start_time if self._start_time else 0
        return {
            "running": self._running,
            "pid": os.getpid() if self._running else None,
            "uptime_sec": uptime,
            "config": str(self.config.source_path) if self.config.source_path else None,
            **self.engine.get_stats(),
        }


def main():
    """Daemon entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Shadow build daemon")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=DEFAULT_HOME / "config",
        help="Configuration directory",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=DEFAULT_HOME / "state",
        help="State directory",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    daemon = BuildDaemon(
        config_dir=args.config_dir,
        state_dir=args.state_dir,
    )
    daemon.run()


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
shadow-build CLI
================

Command-line interface for the shadow build engine.

Usage:
    shadow-build start [--foreground]        # Start daemon
    shadow-build stop                        # Stop daemon
    shadow-build status                      # Show status

    shadow-build classify --kind ui_only --unit Header.swift=view
    shadow-build submit <changeset.yaml>     # Queue a ChangeSet with the daemon
    shadow-build job <job-id>                # Show a job record

    shadow-build simulate <changesets.yaml>  # Run a batch in-process

    shadow-build cache stats                 # Cache statistics
    shadow-build cache evict --max-bytes N   # LRU eviction (daemon stopped)

    shadow-build config show                 # Effective configuration
"""

import argparse
import json
import logging
import os
import sys
import signal
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from tqdm import tqdm

from shadow_build.cache import ContentAddressableCache, EvictionPolicy, FileBlobStore
from shadow_build.classifier import classify_with_reason
from shadow_build.config import EngineConfig
from shadow_build.daemon import DEFAULT_HOME, BuildDaemon, load_config
from shadow_build.engine import BuildEngine
from shadow_build.models.changeset import CapabilityClass, ChangeSet, SourceUnit, UnitRole
from shadow_build.models.job import Tier
from shadow_build.pool import LocalProvisioner
from shadow_build.schemas import JobStatus, SubmitChangeSetRequest
from shadow_build.store import JobStore
from shadow_build.toolchain import SimulatedToolchain


def get_state_dir(args: argparse.Namespace) -> Path:
    """Get the state directory."""
    return Path(args.state_dir)


def get_config_dir(args: argparse.Namespace) -> Path:
    """Get the config directory."""
    return Path(args.config_dir)


def get_daemon_pid(args: argparse.Namespace) -> Optional[int]:
    """Get daemon PID if a pid file exists."""
    pid_file = get_state_dir(args) / "daemon.pid"
    if not pid_file.exists():
        return None
    try:
        return int(pid_file.read_text().strip())
    except ValueError:
        return None


def is_daemon_running(args: argparse.Namespace) -> bool:
    """Check if daemon is running."""
    pid = get_daemon_pid(args)
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False


def load_document(path: Path) -> Any:
    """Read a YAML or JSON file."""
    text = Path(path).read_text()
    if Path(path).suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


# ─────────────────────────────────────────────────────────────────────
# Daemon lifecycle
# ─────────────────────────────────────────────────────────────────────

def cmd_start(args: argparse.Namespace) -> int:
    """Start the build daemon."""
    if is_daemon_running(args):
        print("Daemon is already running")
        return 1

    if args.foreground:
        daemon = BuildDaemon(
            config_dir=get_config_dir(args),
            state_dir=get_state_dir(args),
        )
        try:
            daemon.run()
        except KeyboardInterrupt:
            daemon.stop()
        return 0

    import subprocess
    proc = subprocess.Popen(
        [
            sys.executable, "-m", "shadow_build.cli",
            "--config-dir", str(get_config_dir(args)),
            "--state-dir", str(get_state_dir(args)),
            "--log-level", args.log_level,
            "start", "--foreground",
        ],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    for _ in range(30):
        time.sleep(0.1)
        if is_daemon_running(args):
            print(f"Daemon started (PID: {proc.pid})")
            return 0
    print("Failed to start daemon")
    return 1


def cmd_stop(args: argparse.Namespace) -> int:
    """Stop the build daemon."""
    pid = get_daemon_pid(args)
    if pid is None:
        print("Daemon is not running")
        return 1

    try:
        os.kill(pid, signal.SIGTERM)
        for _ in range(100):
            time.sleep(0.1)
            if not is_daemon_running(args):
                break
        print("Daemon stopped")
        return 0
    except ProcessLookupError:
        print("Daemon is not running")
        return 1


def cmd_status(args: argparse.Namespace) -> int:
    """Show daemon status."""
    running = is_daemon_running(args)
    status_path = get_state_dir(args) / "status.json"

    if running:
        print(f"Status: RUNNING (PID: {get_daemon_pid(args)})")
    else:
        print("Status: STOPPED")

    if not status_path.exists():
        return 0
    status = json.loads(status_path.read_text())

    if args.json:
        print(json.dumps(status, indent=2))
        return 0

    engine = status.get("engine", {})
    print(f"\nJobs: {engine.get('submitted', 0)} submitted, "
          f"{engine.get('succeeded', 0)} succeeded, {engine.get('failed', 0)} failed")
    for state, count in sorted(engine.get("jobs", {}).items()):
        print(f"  {state:<10} {count}")

    queue = status.get("queue", {})
    depth = queue.get("depth", {})
    print(f"\nQueue: hot={depth.get('hot', 0)} warm={depth.get('warm', 0)} "
          f"cold={depth.get('cold', 0)} running={queue.get('running', 0)}")

    pool = status.get("pool", {})
    print("\nRunners:")
    for cap, counts in sorted(pool.get("classes", {}).items()):
        print(f"  class {cap}: idle={counts.get('idle', 0)} leased={counts.get('leased', 0)} "
              f"warming={counts.get('warming', 0)} floor={counts.get('floor')} "
              f"ceiling={counts.get('ceiling')}")

    cache = status.get("cache", {})
    print(f"\nCache: {cache.get('entries', 0)} entries, "
          f"hit rate {cache.get('hit_rate', 0.0) * 100:.1f}%")

    tiers = status.get("monitor", {}).get("tiers", {})
    if tiers:
        print("\nLatency (s):")
        for tier, stats in tiers.items():
            print(f"  {tier:<5} n={stats['count']:<5} p50={stats['p50']:.2f} "
                  f"p95={stats['p95']:.2f} violations={stats.get('violations', 0)}")
    return 0


# ─────────────────────────────────────────────────────────────────────
# Jobs
# ─────────────────────────────────────────────────────────────────────

def cmd_classify(args: argparse.Namespace) -> int:
    """Classify a change without building it."""
    units: List[SourceUnit] = []
    for entry in args.unit or []:
        name, _, role = entry.partition("=")
        units.append(SourceUnit(name=name, content_hash=name, role=UnitRole.parse(role or "unknown")))

    changeset = ChangeSet.create(
        project_id=args.project,
        unit_hashes=args.hashes,
        declared_kind=args.kind,
        units=units,
    )
    tier, reason = classify_with_reason(changeset)
    print(f"{tier.value.upper()}: {reason}")
    return 0


def cmd_submit(args: argparse.Namespace) -> int:
    """Queue a ChangeSet with the running daemon."""
    if not is_daemon_running(args):
        print("Daemon is not running")
        return 1

    request = SubmitChangeSetRequest(**load_document(Path(args.changeset_file)))
    submission_id = f"sub-{uuid.uuid4().hex[:12]}"
    state_dir = get_state_dir(args)
    inbox = state_dir / "inbox"
    inbox.mkdir(parents=True, exist_ok=True)

    tmp = inbox / f"{submission_id}.tmp"
    tmp.write_text(json.dumps(request.model_dump(mode="json")))
    tmp.rename(inbox / f"{submission_id}.json")

    reply_path = state_dir / "submissions" / f"{submission_id}.json"
    deadline = time.time() + args.timeout
    while time.time() < deadline:
        if reply_path.exists():
            reply = json.loads(reply_path.read_text())
            if "error" in reply:
                print(f"Rejected: {reply['error']}")
                return 1
            print(reply["job_id"])
            return 0
        time.sleep(0.1)

    print(f"No reply for {submission_id} yet; check later with its job id")
    return 1


def cmd_job(args: argparse.Namespace) -> int:
    """Show a job record."""
    job = JobStore(get_state_dir(args)).load(args.job_id)
    if job is None:
        print(f"Job not found: {args.job_id}")
        return 1

    status = JobStatus.from_job(job)
    if args.json:
        print(status.model_dump_json(indent=2))
        return 0

    print(f"=== {status.job_id} ===")
    print(f"Project: {status.project_id}")
    print(f"State:   {status.state}")
    print(f"Tier:    {status.tier}{' (SLA violated)' if status.sla_violated else ''}")
    if status.artifact_ref:
        print(f"Artifact: {status.artifact_ref}")
    if status.error:
        print(f"Error:   {status.error.kind}: {status.error.message}")
        if status.error.unit:
            print(f"  unit:  {status.error.unit} ({status.error.stage})")
    return 0


# ─────────────────────────────────────────────────────────────────────
# Simulation
# ─────────────────────────────────────────────────────────────────────

def cmd_simulate(args: argparse.Namespace) -> int:
    """Run a batch of ChangeSets through an in-process engine."""
    document = load_document(Path(args.batch_file)) or {}
    entries: List[Dict[str, Any]] = document.get("changesets", [])
    if not entries:
        print("No changesets in batch")
        return 1

    if args.config:
        config = EngineConfig.from_file(Path(args.config))
    else:
        config = load_config(get_config_dir(args))

    sim = document.get("toolchain", {})
    toolchain = SimulatedToolchain(
        compile_delay_sec=float(sim.get("compile_delay_sec", 0.0)),
        failing_units=sim.get("failing_units", {}),
    )
    engine = BuildEngine(
        config=config,
        toolchain=toolchain,
        provisioner=LocalProvisioner(),
        async_provisioning=False,
    )

    job_ids: List[str] = []
    for entry in tqdm(entries, desc="Submitting", unit="changeset"):
        entry = dict(entry)
        repeat = int(entry.pop("repeat", 1))
        request = SubmitChangeSetRequest(**entry)
        for _ in range(repeat):
            job_ids.append(engine.submit(request))

    with tqdm(total=len(job_ids), desc="Building", unit="job") as progress:
        while True:
            done = 0
            for cap in CapabilityClass:
                if engine.dispatch_once(cap) is not None:
                    done += 1
            if not done:
                break
            progress.update(done)

    stats = engine.get_stats()
    engine.stop()

    if args.json:
        report = {
            "jobs": [engine.get_status(j).model_dump(mode="json") for j in job_ids],
            "stats": stats,
        }
        print(json.dumps(report, indent=2, default=str))
        return 0

    print(f"\n{'job':<28} {'tier':<5} {'state':<10} {'latency':>8}")
    for job_id in job_ids:
        job = engine.get_job(job_id)
        latency = job.latency_sec()
        latency_str = f"{latency:.2f}s" if latency is not None else "-"
        print(f"{job_id:<28} {job.tier.value:<5} {job.state.value:<10} {latency_str:>8}")

    ex = stats["executor"]
    cache = stats["cache"]
    print(f"\nUnits compiled: {ex['units_compiled']}, from cache: {ex['units_from_cache']}")
    print(f"Cache hit rate: {cache['hit_rate'] * 100:.1f}%")
    for tier in Tier:
        t = stats["monitor"]["tiers"][tier.value]
        if t["count"]:
            print(f"{tier.value:<5} p50={t['p50']:.2f}s p95={t['p95']:.2f}s violations={t['violations']}")
    return 0


# ─────────────────────────────────────────────────────────────────────
# Cache and config
# ─────────────────────────────────────────────────────────────────────

def _open_cache(args: argparse.Namespace) -> ContentAddressableCache:
    config = load_config(get_config_dir(args))
    return ContentAddressableCache(
        store=FileBlobStore(get_state_dir(args) / "cache"),
        policy=config.cache,
    )


def cmd_cache_stats(args: argparse.Namespace) -> int:
    """Show cache statistics."""
    cache = _open_cache(args)
    stats = cache.get_stats()
    cache.close()
    print(f"Entries:     {stats['entries']}")
    print(f"Total size:  {stats['total_bytes']} bytes (limit {stats['max_bytes']})")
    return 0


def cmd_cache_evict(args: argparse.Namespace) -> int:
    """Evict least recently used cache entries."""
    if is_daemon_running(args):
        print("Stop the daemon before evicting from the command line")
        return 1
    cache = _open_cache(args)
    evicted = cache.evict(EvictionPolicy(max_bytes=args.max_bytes))
    stats = cache.get_stats()
    cache.close()
    print(f"Evicted {len(evicted)} entries; {stats['total_bytes']} bytes remain")
    return 0


def cmd_config_show(args: argparse.Namespace) -> int:
    """Show the effective configuration."""
    config = load_config(get_config_dir(args))
    source = config.source_path or "defaults"
    print(f"=== Config: {source} ===\n")
    print(yaml.safe_dump(config.to_dict(), sort_keys=False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Shadow build engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config-dir", default=str(DEFAULT_HOME / "config"),
                        help="Configuration directory")
    parser.add_argument("--state-dir", default=str(DEFAULT_HOME / "state"),
                        help="State directory")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        default="WARNING", help="Log level")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # start
    p = subparsers.add_parser("start", help="Start the build daemon")
    p.add_argument("--foreground", "-f", action="store_true",
                   help="Run in foreground")
    p.set_defaults(func=cmd_start)

    # stop
    p = subparsers.add_parser("stop", help="Stop the build daemon")
    p.set_defaults(func=cmd_stop)

    # status
    p = subparsers.add_parser("status", help="Show daemon status")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.set_defaults(func=cmd_status)

    # classify
    p = subparsers.add_parser("classify", help="Classify a change")
    p.add_argument("hashes", nargs="*", help="Unit content hashes")
    p.add_argument("--kind", default="unknown", help="Declared change kind")
    p.add_argument("--unit", action="append", metavar="NAME=ROLE",
                   help="Unit with an explicit role (repeatable)")
    p.add_argument("--project", default="cli", help="Project id")
    p.set_defaults(func=cmd_classify)

    # submit
    p = subparsers.add_parser("submit", help="Submit a ChangeSet to the daemon")
    p.add_argument("changeset_file", help="ChangeSet YAML or JSON file")
    p.add_argument("--timeout", type=float, default=5.0,
                   help="Seconds to wait for the daemon to accept")
    p.set_defaults(func=cmd_submit)

    # job
    p = subparsers.add_parser("job", help="Show a job")
    p.add_argument("job_id", help="Job ID")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.set_defaults(func=cmd_job)

    # simulate
    p = subparsers.add_parser("simulate", help="Run a ChangeSet batch in-process")
    p.add_argument("batch_file", help="Batch YAML file")
    p.add_argument("--config", help="Engine config file")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.set_defaults(func=cmd_simulate)

    # cache
    p = subparsers.add_parser("cache", help="Cache management")
    cache_sub = p.add_subparsers(dest="cache_command")

    cp = cache_sub.add_parser("stats", help="Show cache statistics")
    cp.set_defaults(func=cmd_cache_stats)

    cp = cache_sub.add_parser("evict", help="Evict least recently used entries")
    cp.add_argument("--max-bytes", type=int, required=True,
                    help="Evict until the cache holds at most this many bytes")
    cp.set_defaults(func=cmd_cache_evict)

    # config
    p = subparsers.add_parser("config", help="Configuration")
    config_sub = p.add_subparsers(dest="config_command")

    cp = config_sub.add_parser("show", help="Show effective configuration")
    cp.set_defaults(func=cmd_config_show)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    if hasattr(args, "func"):
        return args.func(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())

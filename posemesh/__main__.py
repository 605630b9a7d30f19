#!/usr/bin/env python3
"""
Pose Telemetry Buffering

Command-line entry point.

Usage:
    # Simulated capture session against the in-memory store
    python -m posemesh demo --seconds 5 --failure-rate 0.2

    # Export a subtree from Redis as JSON or CSV
    POSEMESH_REDIS_HOST=redis.example.com \\
        python -m posemesh export _PoseData/org/level-1 --format csv -o frames.csv

    # Poses plus event log of one game over a date range
    python -m posemesh export-group level-1 --org org --start 2023-11-01 --end 2023-11-14

    # Delete a date range (lists only, until --yes)
    python -m posemesh remove level-1 --org org --end 2023-10-31 --yes
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

from posemesh.core import constants as C
from posemesh.core.config import PoseMeshConfig
from posemesh.core.types import DayRange, SessionKey, SessionMetadata
from posemesh.observability.logging import LogLevel, setup_logging
from posemesh.pipeline.sink import TelemetrySink
from posemesh.reader.export import iter_frame_rows, write_csv, write_json
from posemesh.reader.group import export_group, remove_day_range
from posemesh.reader.recursive import RecursiveReader
from posemesh.session.identity import DeviceIdentity, UserIdentity
from posemesh.storage.memory_store import InMemoryTreeStore
from posemesh.storage.paths import GroupPaths
from posemesh.storage.protocols import TreeStoreProtocol
from posemesh.storage.redis_store import RedisTreeStore

KEYPOINTS = 17


def _load_config() -> PoseMeshConfig:
    config_result = PoseMeshConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}")
        sys.exit(1)
    config = config_result.unwrap()
    validation = config.validate()
    if validation.is_err():
        print(f"Validation error: {validation.error}")
        sys.exit(1)
    return config


async def demo(args: argparse.Namespace) -> None:
    """Run a simulated sampling session and print what reached the store."""
    print("\n" + "=" * 60)
    print("Pose Telemetry Buffering - Local Demo")
    print("=" * 60 + "\n")

    base = _load_config()
    config = dataclasses.replace(
        base,
        flush=dataclasses.replace(
            base.flush,
            frame_rate=args.frame_rate,
            flush_interval_ms=args.flush_interval_ms,
        ),
    )
    store = InMemoryTreeStore(
        read_ceiling_bytes=args.read_ceiling,
        latency_s=0.01,
        failure_rate=args.failure_rate,
        seed=args.seed,
    )
    device = DeviceIdentity.load_or_create(args.identity_file)
    user = UserIdentity(user_id="demo-user", email="demo.player@example.com")
    key = SessionKey(
        user_id=user.user_id,
        device_id=device.device_id,
        login_epoch=int(time.time()),
        recording_id="recording-1",
    )
    metadata = SessionMetadata(
        user_id=user.user_id,
        user_name=user.user_name,
        device_id=device.device_id,
        device_nickname=device.nickname,
        frame_rate=config.flush.frame_rate,
        login_time=time.strftime("%a, %d %b %Y %H:%M:%S GMT", time.gmtime()),
    )
    print(f"✓ Device {device.slug}, user {user.user_name}")

    warnings: list[str] = []
    rng = np.random.default_rng(args.seed)

    def next_pose() -> np.ndarray:
        return rng.random((KEYPOINTS, 3)).round(4)

    async with TelemetrySink(
        store,
        config,
        on_loss_warning=lambda w: warnings.append(w.message),
    ) as sink:
        await sink.initialize_session(key, metadata, group_id="demo-game")
        sink.start_auto_flush(key)
        sink.start_sampling(key, next_pose)
        print("✓ Session initialized, sampling started")

        phase_seconds = args.seconds / len(args.phases)
        for phase in args.phases:
            await sink.mark_phase(key, phase)
            print(f"  phase -> {phase}")
            await asyncio.sleep(phase_seconds)
        await sink.mark_phase(key, None)

        state = sink.registry.get(key)
        session_path = state.paths.metadata_path
        await sink.end_session(key)

        print("\n--- Session Stats ---\n")
        for name, value in state.stats().to_dict().items():
            print(f"   {name}: {value}")
        metrics = sink.metrics
        print(f"   frames flushed (total): {metrics.frames_flushed.total():.0f}")
        print(f"   frames dropped (total): {metrics.frames_dropped.total():.0f}")
        for message in warnings:
            print(f"   ! {message}")

        if args.metrics:
            print("\n--- Prometheus ---\n")
            print(metrics.collector.export_prometheus())

    print("\n--- Read Back ---\n")
    reader = RecursiveReader(store, config.reader)
    result = await reader.fetch(session_path)
    if result.is_err():
        print(f"   Error: {result.error}")
        sys.exit(1)
    fetched = result.unwrap()
    rows = list(iter_frame_rows(fetched.value, session_path))
    print(f"   split={fetched.split} size={fetched.size_bytes}B skipped={len(fetched.skipped)}")
    print(f"   frames stored: {len(rows)}")

    print("\n✓ Demo complete")
    print("=" * 60 + "\n")


async def _open_redis(config: PoseMeshConfig) -> RedisTreeStore:
    store = RedisTreeStore(config.redis)
    connected = await store.connect()
    if connected.is_err():
        print(f"Error: {connected.error}", file=sys.stderr)
        sys.exit(1)
    return store


def _day_range(args: argparse.Namespace) -> DayRange:
    return DayRange(start=args.start, end=args.end)


async def export(args: argparse.Namespace) -> None:
    """Read a subtree from Redis and write it as JSON or CSV."""
    config = _load_config()
    store = await _open_redis(config)
    try:
        reader = RecursiveReader(store, config.reader)
        if args.start is None and args.end is None:
            result = await reader.fetch(args.path, max_depth=args.depth)
        else:
            result = await reader.fetch_range(args.path, _day_range(args), max_depth=args.depth)
    finally:
        await store.close()

    if result.is_err():
        print(f"Error: {result.error}", file=sys.stderr)
        sys.exit(1)
    fetched = result.unwrap()
    for skipped in fetched.skipped:
        print(f"Skipped: {skipped}", file=sys.stderr)

    out = open(args.output, "w", newline="", encoding="utf-8") if args.output else sys.stdout
    try:
        if args.format == "json":
            write_json(fetched.value, out)
        else:
            count = write_csv(iter_frame_rows(fetched.value, args.path, decode=args.decode), out)
            print(f"Wrote {count} frames", file=sys.stderr)
    finally:
        if out is not sys.stdout:
            out.close()


async def run_export_group(
    store: TreeStoreProtocol,
    args: argparse.Namespace,
    config: PoseMeshConfig,
) -> list[Path]:
    """Export a group's poses and event log over a day range into a directory."""
    paths = GroupPaths.build(args.org, args.group, config.paths)
    reader = RecursiveReader(store, config.reader)
    result = await export_group(reader, paths, args.group, _day_range(args), args.depth)
    if result.is_err():
        print(f"Error: {result.error}", file=sys.stderr)
        sys.exit(1)
    exported = result.unwrap()
    if not exported.poses.value:
        print(f"No data for {args.group} in {exported.days.label}", file=sys.stderr)
        return []
    for skipped in exported.skipped:
        print(f"Skipped: {skipped}", file=sys.stderr)
    written = exported.write(args.output_dir, args.format, decode=args.decode)
    for path in written:
        print(f"Wrote {path}")
    return written


async def export_group_command(args: argparse.Namespace) -> None:
    config = _load_config()
    store = await _open_redis(config)
    try:
        await run_export_group(store, args, config)
    finally:
        await store.close()


async def run_remove(
    store: TreeStoreProtocol,
    args: argparse.Namespace,
    config: PoseMeshConfig,
) -> list[str]:
    """Delete a group's day buckets; without --yes only lists them."""
    paths = GroupPaths.build(args.org, args.group, config.paths)
    result = await remove_day_range(
        store,
        paths,
        _day_range(args),
        include_events=args.include_events,
        dry_run=not args.yes,
        limit=config.reader.child_list_limit,
    )
    if result.is_err():
        print(f"Error: {result.error}", file=sys.stderr)
        sys.exit(1)
    targets = result.unwrap()
    if not targets:
        print("No data to remove.")
        return targets
    verb = "Removed" if args.yes else "Would remove"
    for target in targets:
        print(f"{verb} {target}")
    if not args.yes:
        print("Re-run with --yes to delete.")
    return targets


async def remove_command(args: argparse.Namespace) -> None:
    config = _load_config()
    store = await _open_redis(config)
    try:
        await run_remove(store, args, config)
    finally:
        await store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="posemesh", description="Pose telemetry buffering")
    parser.add_argument("--log-level", default="WARNING", choices=[level.name for level in LogLevel])
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    sub = parser.add_subparsers(dest="command", required=True)

    demo_parser = sub.add_parser("demo", help="Simulated capture session (in-memory store)")
    demo_parser.add_argument("--seconds", type=float, default=6.0)
    demo_parser.add_argument("--frame-rate", type=int, default=C.DEFAULT_FRAME_RATE)
    demo_parser.add_argument("--flush-interval-ms", type=int, default=1500)
    demo_parser.add_argument("--failure-rate", type=float, default=0.0)
    demo_parser.add_argument("--read-ceiling", type=int, default=16 * 1024,
                             help="Store read ceiling in bytes (small values force split reads)")
    demo_parser.add_argument("--phases", nargs="+", default=["warmup", "pose-1", "pose-2"])
    demo_parser.add_argument("--seed", type=int, default=7)
    demo_parser.add_argument("--identity-file", type=Path,
                             default=Path.home() / ".posemesh" / "device.json")
    demo_parser.add_argument("--metrics", action="store_true", help="Print Prometheus metrics")

    export_parser = sub.add_parser("export", help="Export a Redis subtree as JSON or CSV")
    export_parser.add_argument("path", help="Store path, e.g. _PoseData/org/game")
    export_parser.add_argument("--depth", type=int, default=None, help="Split depth (max 8)")
    export_parser.add_argument("--format", choices=["json", "csv"], default="json")
    export_parser.add_argument("--decode", action="store_true", help="Unpack lz4 poses in CSV")
    export_parser.add_argument("--start", default=None,
                               help="First day bucket (YYYY-MM-DD) directly under PATH")
    export_parser.add_argument("--end", default=None, help="Last day bucket (inclusive)")
    export_parser.add_argument("-o", "--output", type=Path, default=None)

    group_parser = sub.add_parser(
        "export-group", help="Export a group's poses and event log over a date range",
    )
    group_parser.add_argument("group", help="Group (game) id")
    group_parser.add_argument("--org", required=True, help="Organisation id")
    group_parser.add_argument("--start", default=None, help="First day (YYYY-MM-DD)")
    group_parser.add_argument("--end", default=None, help="Last day (inclusive)")
    group_parser.add_argument("--depth", type=int, default=None, help="Split depth (max 8)")
    group_parser.add_argument("--format", choices=["json", "csv"], default="json")
    group_parser.add_argument("--decode", action="store_true", help="Unpack lz4 poses in CSV")
    group_parser.add_argument("--output-dir", type=Path, default=Path("."))

    remove_parser = sub.add_parser("remove", help="Delete a group's data over a date range")
    remove_parser.add_argument("group", help="Group (game) id")
    remove_parser.add_argument("--org", required=True, help="Organisation id")
    remove_parser.add_argument("--start", default=None, help="First day (YYYY-MM-DD)")
    remove_parser.add_argument("--end", default=None, help="Last day (inclusive)")
    remove_parser.add_argument("--include-events", action="store_true",
                               help="Also delete the event log buckets")
    remove_parser.add_argument("--yes", action="store_true",
                               help="Delete; without it the buckets are only listed")
    return parser


async def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(LogLevel[args.log_level], json_output=args.json_logs)
    handlers = {
        "demo": demo,
        "export": export,
        "export-group": export_group_command,
        "remove": remove_command,
    }
    try:
        await handlers[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted")


def run() -> None:
    """Synchronous entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

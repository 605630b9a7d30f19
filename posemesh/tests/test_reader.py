"""
Integration Tests: Recursive Split Reader and Frame Export

Tests:
    - Whole reads under the ceiling
    - Splitting by child key when the ceiling is hit
    - Depth limits, skipped children and non-size errors
    - CSV / JSON export of fetched trees
    - Day-range exports of a group and day-range removal
"""

from __future__ import annotations

import csv
import io
import json

import pytest

from posemesh.core.config import PathConfig, ReaderConfig
from posemesh.core.errors import ErrorCode
from posemesh.core.types import DayRange, FrameRecord, Timestamp, make_batch_key
from posemesh.pipeline.codec import encode_payload
from posemesh.reader import (
    RecursiveReader,
    device_label,
    export_filename,
    export_group,
    iter_event_rows,
    iter_frame_rows,
    remove_day_range,
    write_csv,
    write_json,
)
from posemesh.reader.export import CSV_COLUMNS, EVENT_CSV_COLUMNS, MULTI_DEVICE_LABEL
from posemesh.reader.group import EVENT_LOG, POSE_DATA
from posemesh.storage import GroupPaths, InMemoryTreeStore, OperationType
from posemesh.storage.paths import phase_marker_key
from posemesh.storage.protocols import join_path


async def populate(store: InMemoryTreeStore, children: int = 4, size: int = 100) -> None:
    for i in range(children):
        await store.write(f"root/c{i}", {"data": "x" * size})


class TestRecursiveReader:
    """Tests for RecursiveReader."""

    @pytest.mark.asyncio
    async def test_under_ceiling_reads_whole(self):
        store = InMemoryTreeStore()
        await populate(store)
        result = (await RecursiveReader(store).fetch("root")).unwrap()
        assert not result.split
        assert result.complete
        assert result.child_count == 4
        assert store.operation_count(OperationType.LIST) == 0

    @pytest.mark.asyncio
    async def test_split_when_too_large(self):
        store = InMemoryTreeStore(read_ceiling_bytes=200)
        await populate(store)
        assert (await store.read("root")).error.is_too_large

        result = (await RecursiveReader(store).fetch("root", max_depth=1)).unwrap()
        assert result.split
        assert result.complete
        assert sorted(result.value) == ["c0", "c1", "c2", "c3"]
        assert result.value["c2"] == {"data": "x" * 100}
        assert result.value == store.snapshot()["root"]

    @pytest.mark.asyncio
    async def test_depth_zero_returns_ceiling_error(self):
        store = InMemoryTreeStore(read_ceiling_bytes=200)
        await populate(store)
        result = await RecursiveReader(store).fetch("root", max_depth=0)
        assert result.error.code is ErrorCode.STORE_READ_TOO_LARGE

    @pytest.mark.asyncio
    async def test_nested_split(self):
        store = InMemoryTreeStore(read_ceiling_bytes=300)
        for group in ("g1", "g2"):
            for i in range(3):
                await store.write(f"root/{group}/c{i}", "y" * 120)
        reader = RecursiveReader(store)
        shallow = await reader.fetch("root", max_depth=1)
        assert shallow.is_err()
        assert shallow.error.is_too_large

        result = (await reader.fetch("root", max_depth=2)).unwrap()
        assert result.complete
        assert result.value == store.snapshot()["root"]

    @pytest.mark.asyncio
    async def test_oversized_child_at_depth_limit_fails(self):
        store = InMemoryTreeStore(read_ceiling_bytes=200)
        await populate(store, children=2)
        await store.write("root/big", {"a": "z" * 150, "b": "z" * 150})
        result = await RecursiveReader(store).fetch("root", max_depth=1)
        assert result.is_err()
        assert result.error.is_too_large

        deeper = (await RecursiveReader(store).fetch("root", max_depth=2)).unwrap()
        assert deeper.complete
        assert deeper.value["big"] == {"a": "z" * 150, "b": "z" * 150}

    @pytest.mark.asyncio
    async def test_failed_child_skipped(self):
        store = InMemoryTreeStore(read_ceiling_bytes=200)
        await populate(store)
        store.inject_failure(OperationType.READ, path="root/c1")
        result = (await RecursiveReader(store).fetch("root", max_depth=1)).unwrap()
        assert result.skipped == ("root/c1",)
        assert "c1" not in result.value

    @pytest.mark.asyncio
    async def test_other_errors_not_split(self):
        store = InMemoryTreeStore()
        await populate(store)
        store.inject_failure(OperationType.READ, path="root")
        result = await RecursiveReader(store).fetch("root", max_depth=4)
        assert result.error.code is ErrorCode.STORE_OPERATION_FAILED
        assert store.operation_count(OperationType.LIST) == 0

    @pytest.mark.asyncio
    async def test_oversized_leaf_cannot_split(self):
        store = InMemoryTreeStore(read_ceiling_bytes=50)
        await store.write("root/blob", "q" * 100)
        result = await RecursiveReader(store).fetch("root/blob", max_depth=3)
        assert result.error.is_too_large

    @pytest.mark.asyncio
    async def test_missing_path(self):
        result = (await RecursiveReader(InMemoryTreeStore()).fetch("nothing")).unwrap()
        assert result.value is None
        assert result.size_bytes == 0

    @pytest.mark.asyncio
    async def test_depth_clamped(self):
        store = InMemoryTreeStore(read_ceiling_bytes=10)
        path = "/".join(f"n{i}" for i in range(12))
        await store.write(path, "long value")
        result = await RecursiveReader(store).fetch("n0", max_depth=50)
        assert result.error.code is ErrorCode.STORE_READ_TOO_LARGE
        assert store.operation_count(OperationType.LIST) == 8

    @pytest.mark.asyncio
    async def test_child_list_limit(self):
        store = InMemoryTreeStore(read_ceiling_bytes=200)
        await populate(store)
        reader = RecursiveReader(store, ReaderConfig(child_list_limit=2))
        result = (await reader.fetch("root", max_depth=1)).unwrap()
        assert sorted(result.value) == ["c0", "c1"]


def frame_record(millis: int, pose: str) -> dict:
    return FrameRecord(
        payload=pose,
        captured_at=Timestamp.from_millis(millis),
        phase="unused",
        since_session_start_ms=millis - 1_700_000_000_000,
    ).to_dict()


SESSION = "_PoseData/org/game/2023-11-14/ada/ipad-0f3c9a7e/1700000000/rec-1"


@pytest.fixture
def day_tree() -> dict:
    return {
        "ada": {
            "ipad-0f3c9a7e": {
                "1700000000": {
                    "rec-1": {
                        "userName": "ada",
                        "frames": {
                            "warmup": {
                                make_batch_key(1_700_000_000_000, 1): frame_record(1_700_000_000_083, "[2]"),
                                make_batch_key(1_700_000_000_000, 0): frame_record(1_700_000_000_000, "[1]"),
                            },
                            "pose-1": {
                                make_batch_key(1_700_000_001_000, 0): frame_record(1_700_000_001_000, "[3]"),
                                "not-a-batch": {"pose": "ignored"},
                            },
                        },
                    },
                },
            },
        },
    }


class TestExport:
    """Tests for frame export."""

    def test_iter_rows_sorted(self, day_tree):
        rows = list(iter_frame_rows(day_tree, "_PoseData/org/game/2023-11-14"))
        assert [(r.phase, r.frame_index, r.pose) for r in rows] == [
            ("pose-1", 0, "[3]"),
            ("warmup", 0, "[1]"),
            ("warmup", 1, "[2]"),
        ]
        assert rows[0].session_path == SESSION
        assert rows[2].since_session_start_ms == 83
        assert rows[2].batch_millis == 1_700_000_000_000

    def test_decode_compressed(self):
        pose = [[0.0] * 3] * 100
        stored = encode_payload(pose, compress=True, threshold_bytes=16)
        tree = {"frames": {"p": {make_batch_key(1, 0): {"pose": stored}}}}
        (row,) = iter_frame_rows(tree, decode=True)
        assert json.loads(row.pose) == pose

    def test_write_csv(self, day_tree):
        buffer = io.StringIO()
        count = write_csv(iter_frame_rows(day_tree), buffer)
        lines = buffer.getvalue().strip().splitlines()
        assert count == 3
        assert lines[0] == ",".join(CSV_COLUMNS)
        assert len(lines) == 4

    def test_write_json(self, day_tree):
        buffer = io.StringIO()
        write_json(day_tree, buffer)
        assert json.loads(buffer.getvalue()) == day_tree

    def test_device_label(self, day_tree):
        days = {"2023-11-14": day_tree}
        assert device_label(days) == "ipad-0f3c9a7e"
        day_tree["bob"] = {"phone-12345678": {}}
        assert device_label(days) == MULTI_DEVICE_LABEL

    def test_iter_event_rows(self):
        tree = {"2023-11-14": {"ada": {"warmup Begin GMT": "Tue", "pose-1 Begin GMT": "Wed"}}}
        rows = list(iter_event_rows(tree, "_GameData/g"))
        assert [(r.session_path, r.event, r.value) for r in rows] == [
            ("_GameData/g/2023-11-14/ada", "pose-1 Begin GMT", "Wed"),
            ("_GameData/g/2023-11-14/ada", "warmup Begin GMT", "Tue"),
        ]

    def test_export_filename(self):
        assert export_filename("level 1", "ipad-0f3c9a7e", "pose_data", "csv") == (
            "level_1__ipad-0f3c9a7e__pose_data.csv"
        )

    @pytest.mark.asyncio
    async def test_end_to_end_split_export(self, make_sink, session_key, metadata, store):
        sink = make_sink(size_ceiling=5, min_batch_size=1)
        await sink.initialize_session(session_key, metadata)
        state = sink.registry.get(session_key)
        for phase in ("warmup", "pose-1"):
            await sink.mark_phase(session_key, phase)
            for i in range(12):
                sink.append(session_key, {"phase": phase, "i": i})
        await sink.end_session(session_key)

        small = InMemoryTreeStore(read_ceiling_bytes=2_000)
        for top, subtree in store.snapshot().items():
            await small.write(top, subtree)
        session_path = state.paths.metadata_path
        result = (await RecursiveReader(small).fetch(session_path, max_depth=3)).unwrap()
        assert result.split
        assert result.complete
        assert result.value["userName"] == "ada"
        rows = list(iter_frame_rows(result.value, session_path))
        assert {r.session_path for r in rows} == {session_path}
        assert len(rows) == 24
        assert [json.loads(r.pose)["i"] for r in rows if r.phase == "warmup"] == list(range(12))


GROUP_DAYS = (
    ("2023-11-13", "ipad-0f3c9a7e"),
    ("2023-11-14", "ipad-0f3c9a7e"),
    ("2023-11-15", "phone-12345678"),
)
MARKER_TIME = "Tue, 14 Nov 2023 22:13:20 GMT"


async def seed_group(store: InMemoryTreeStore, config: PathConfig = PathConfig()) -> GroupPaths:
    paths = GroupPaths.build("org", "level 1", config)
    for day, device in GROUP_DAYS:
        session = f"{day}/ada/{device}/1700000000/rec-1"
        await store.write(join_path(paths.pose_path, session), {
            "userName": "ada",
            "frames": {
                "warmup": {
                    make_batch_key(1_700_000_000_000, 0): frame_record(1_700_000_000_000, "[1]"),
                },
            },
        })
        if paths.event_path is not None:
            await store.write(
                join_path(paths.event_path, session),
                {phase_marker_key("warmup"): MARKER_TIME},
            )
    return paths


class TestDayRangeReads:
    """Tests for RecursiveReader.fetch_range."""

    @pytest.mark.asyncio
    async def test_selects_days_in_range(self, store):
        paths = await seed_group(store)
        reader = RecursiveReader(store)
        result = (await reader.fetch_range(paths.pose_path, DayRange("2023-11-14", "2023-11-15"))).unwrap()
        assert sorted(result.value) == ["2023-11-14", "2023-11-15"]
        assert result.complete
        assert result.value["2023-11-14"] == store.snapshot()["_PoseData"]["org"]["level_1"]["2023-11-14"]

    @pytest.mark.asyncio
    async def test_no_matching_days(self, store):
        paths = await seed_group(store)
        result = (await RecursiveReader(store).fetch_range(paths.pose_path, DayRange("2024-01-01"))).unwrap()
        assert result.value == {}
        assert result.child_count == 0

    @pytest.mark.asyncio
    async def test_oversized_day_without_depth_fails(self):
        store = InMemoryTreeStore(read_ceiling_bytes=50)
        paths = await seed_group(store)
        result = await RecursiveReader(store).fetch_range(paths.pose_path, DayRange(), max_depth=0)
        assert result.error.is_too_large

    @pytest.mark.asyncio
    async def test_list_failure_propagates(self, store):
        paths = await seed_group(store)
        store.inject_failure(OperationType.LIST, count=1)
        result = await RecursiveReader(store).fetch_range(paths.pose_path, DayRange())
        assert result.error.code is ErrorCode.STORE_OPERATION_FAILED


class TestGroupExport:
    """Tests for export_group and GroupExport."""

    @pytest.mark.asyncio
    async def test_pairs_poses_with_event_log(self, store):
        paths = await seed_group(store)
        exported = (await export_group(
            RecursiveReader(store), paths, "level 1", DayRange(end="2023-11-14"),
        )).unwrap()
        assert sorted(exported.poses.value) == ["2023-11-13", "2023-11-14"]
        assert sorted(exported.events.value) == ["2023-11-13", "2023-11-14"]
        assert exported.device_label == "ipad-0f3c9a7e"
        assert exported.filename(POSE_DATA, "json") == (
            "level_1__ipad-0f3c9a7e__pose_data_first_to_2023_11_14.json"
        )

    @pytest.mark.asyncio
    async def test_write_csv_files(self, store, tmp_path):
        paths = await seed_group(store)
        exported = (await export_group(RecursiveReader(store), paths, "level 1")).unwrap()
        assert exported.device_label == MULTI_DEVICE_LABEL

        pose_file, event_file = exported.write(tmp_path / "out", "csv")
        assert pose_file.name == "level_1__MULTI_DEVICE__pose_data_first_to_last.csv"
        assert event_file.name == exported.filename(EVENT_LOG, "csv")

        with pose_file.open(newline="", encoding="utf-8") as fp:
            pose_rows = list(csv.reader(fp))
        assert pose_rows[0] == list(CSV_COLUMNS)
        assert [row[0] for row in pose_rows[1:]] == [
            f"{paths.pose_path}/{day}/ada/{device}/1700000000/rec-1" for day, device in GROUP_DAYS
        ]

        with event_file.open(newline="", encoding="utf-8") as fp:
            event_rows = list(csv.reader(fp))
        assert event_rows[0] == list(EVENT_CSV_COLUMNS)
        assert len(event_rows) == 4
        assert event_rows[1][1:] == ["warmup Begin GMT", MARKER_TIME]

    @pytest.mark.asyncio
    async def test_without_event_root(self, store, tmp_path):
        paths = await seed_group(store, PathConfig(event_root=None))
        exported = (await export_group(RecursiveReader(store), paths, "level 1")).unwrap()
        assert exported.events is None
        (pose_file,) = exported.write(tmp_path, "json")
        assert sorted(json.loads(pose_file.read_text(encoding="utf-8"))) == [d for d, _ in GROUP_DAYS]


class TestRemoveDayRange:
    """Tests for remove_day_range."""

    @pytest.mark.asyncio
    async def test_dry_run_lists_only(self, store):
        paths = await seed_group(store)
        targets = (await remove_day_range(
            store, paths, DayRange(end="2023-11-14"), dry_run=True,
        )).unwrap()
        assert targets == [f"{paths.pose_path}/2023-11-13", f"{paths.pose_path}/2023-11-14"]
        assert store.operation_count(OperationType.REMOVE) == 0

    @pytest.mark.asyncio
    async def test_removes_pose_days(self, store):
        paths = await seed_group(store)
        await remove_day_range(store, paths, DayRange(end="2023-11-14"))
        tree = store.snapshot()
        assert list(tree["_PoseData"]["org"]["level_1"]) == ["2023-11-15"]
        assert len(tree["_GameData"]["level_1"]) == 3

    @pytest.mark.asyncio
    async def test_include_events(self, store):
        paths = await seed_group(store)
        removed = (await remove_day_range(
            store, paths, DayRange("2023-11-15"), include_events=True,
        )).unwrap()
        assert removed == [f"{paths.pose_path}/2023-11-15", f"{paths.event_path}/2023-11-15"]
        assert "2023-11-15" not in store.snapshot()["_GameData"]["level_1"]

    @pytest.mark.asyncio
    async def test_stops_on_failure(self, store):
        paths = await seed_group(store)
        store.inject_failure(OperationType.REMOVE, count=1)
        result = await remove_day_range(store, paths, DayRange())
        assert result.is_err()
        assert store.operation_count(OperationType.REMOVE) == 1
        assert len(store.snapshot()["_PoseData"]["org"]["level_1"]) == 3

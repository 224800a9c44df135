"""Tests for expiry of cached bucket snapshots."""

import asyncio
import os
import time

import pytest

from skill_sandbox.cleanup import BucketCleanupService
from skill_sandbox.config import StorageConfig


def _make_snapshot(bucket, kind, name, age_s=0.0):
    path = bucket / kind / name
    path.mkdir(parents=True)
    (path / "out.txt").write_text("x")
    if age_s:
        stamp = time.time() - age_s
        os.utime(path, (stamp, stamp))
    return path


class TestCleanupOnce:
    def test_removes_only_expired_directories(self, tmp_path):
        storage = StorageConfig(bucket_dir=str(tmp_path), retention_ms=60_000)
        old_exec = _make_snapshot(tmp_path, "executions", "old", age_s=120)
        old_invoke = _make_snapshot(tmp_path, "invokes", "old", age_s=120)
        fresh = _make_snapshot(tmp_path, "executions", "fresh")

        removed = BucketCleanupService(storage).cleanup_once()

        assert removed == 2
        assert not old_exec.exists()
        assert not old_invoke.exists()
        assert fresh.exists()

    def test_now_can_be_injected(self, tmp_path):
        storage = StorageConfig(bucket_dir=str(tmp_path), retention_ms=1_000)
        snapshot = _make_snapshot(tmp_path, "invokes", "a")
        service = BucketCleanupService(storage)

        assert service.cleanup_once(now=time.time()) == 0
        assert service.cleanup_once(now=time.time() + 5) == 1
        assert not snapshot.exists()

    def test_loose_files_and_unknown_dirs_ignored(self, tmp_path):
        storage = StorageConfig(bucket_dir=str(tmp_path), retention_ms=0)
        (tmp_path / "executions").mkdir()
        (tmp_path / "executions" / "stray.txt").write_text("x")
        (tmp_path / "other").mkdir()

        assert BucketCleanupService(storage).cleanup_once(now=time.time() + 10) == 0
        assert (tmp_path / "executions" / "stray.txt").exists()
        assert (tmp_path / "other").exists()

    def test_missing_bucket_is_created(self, tmp_path):
        storage = StorageConfig(bucket_dir=str(tmp_path / "bucket"))
        assert BucketCleanupService(storage).cleanup_once() == 0
        assert (tmp_path / "bucket").is_dir()


class TestCleanupLoop:
    @pytest.mark.asyncio
    async def test_loop_prunes_on_interval(self, tmp_path):
        storage = StorageConfig(bucket_dir=str(tmp_path), retention_ms=1_000, cleanup_interval_ms=50)
        snapshot = _make_snapshot(tmp_path, "executions", "old", age_s=60)
        service = BucketCleanupService(storage)

        service.start()
        assert service.running
        for _ in range(40):
            if not snapshot.exists():
                break
            await asyncio.sleep(0.05)
        await service.stop()

        assert not snapshot.exists()
        assert not service.running

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task_and_stop_is_safe(self, tmp_path):
        service = BucketCleanupService(StorageConfig(bucket_dir=str(tmp_path)))
        service.start()
        task = service._task
        service.start()
        assert service._task is task
        await service.stop()
        await service.stop()
        assert task.cancelled()

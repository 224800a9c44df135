"""Periodic pruning of expired execution/invoke snapshots from the local bucket."""

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Optional

from .config import StorageConfig
from .file_utils import BUCKET_KINDS

logger = logging.getLogger(__name__)


class BucketCleanupService:
    def __init__(self, storage: StorageConfig):
        self.storage = storage
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        logger.info(
            "Starting bucket cleanup. Interval: %dms, Retention: %dms",
            self.storage.cleanup_interval_ms,
            self.storage.retention_ms,
        )
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.storage.cleanup_interval_ms / 1000.0)
            try:
                self.cleanup_once()
            except Exception as e:
                logger.error("Error during bucket cleanup: %s", e)

    def cleanup_once(self, now: Optional[float] = None) -> int:
        """Delete snapshot directories older than the retention window. Returns how many were removed."""
        now = time.time() if now is None else now
        bucket_dir = Path(self.storage.bucket_dir)
        bucket_dir.mkdir(parents=True, exist_ok=True)

        removed = 0
        for kind in BUCKET_KINDS:
            sub_dir = bucket_dir / kind
            if not sub_dir.is_dir():
                continue
            for entry in sub_dir.iterdir():
                if not entry.is_dir():
                    continue
                try:
                    age_ms = (now - entry.stat().st_mtime) * 1000
                    if age_ms > self.storage.retention_ms:
                        logger.info("Deleting expired directory: %s", entry)
                        shutil.rmtree(entry)
                        removed += 1
                except OSError as e:
                    logger.error("Error cleaning %s: %s", entry, e)
        return removed

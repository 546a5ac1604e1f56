"""
Checkpoint stores for tg-kafka-bridge.
Persist per-source checkpoints so that a restart resumes where
acknowledged progress ended.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..domain.dto import Checkpoint
from ..domain.ports import CheckpointError, CheckpointStore


logger = logging.getLogger(__name__)


class FileCheckpointStore(CheckpointStore):
    """
    JSON file holding one checkpoint per source.

    Writes go to a temp file in the same directory, are fsynced and then
    renamed over the old file, so a crash leaves either the old or the new
    checkpoint on disk, never a torn one.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def load(self, source_id: str) -> Optional[Checkpoint]:
        """Load the checkpoint of a source, None if the file or entry is missing."""
        data = await asyncio.to_thread(self._read_all)
        raw = data.get(source_id)
        if raw is None:
            return None
        try:
            return Checkpoint.model_validate(raw)
        except ValidationError as e:
            raise CheckpointError(f"Invalid checkpoint for {source_id} in {self.path}: {e}") from e

    async def save(self, checkpoint: Checkpoint) -> None:
        """Atomically replace the source's checkpoint."""
        async with self._lock:
            try:
                await asyncio.to_thread(self._write_entry, checkpoint)
            except OSError as e:
                raise CheckpointError(f"Failed to write checkpoint to {self.path}: {e}") from e

        logger.debug(
            "Checkpoint written",
            extra={
                "component": "file_checkpoint_store",
                "path": str(self.path),
                "source_id": checkpoint.source_id,
                "sequence": checkpoint.sequence,
                "token": checkpoint.token
            }
        )

    def _read_all(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise CheckpointError(f"Failed to read checkpoint file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise CheckpointError(f"Checkpoint file {self.path} is not a JSON object")
        return data

    def _write_entry(self, checkpoint: Checkpoint) -> None:
        data = self._read_all()
        data[checkpoint.source_id] = checkpoint.model_dump(mode='json')

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        self._fsync_directory()

    def _fsync_directory(self) -> None:
        # Makes the rename itself durable; not available on every platform
        if not hasattr(os, "O_DIRECTORY"):
            return
        dir_fd = os.open(str(self.path.parent), os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)


class RedisCheckpointStore(CheckpointStore):
    """
    One Redis key per source holding the checkpoint as JSON.
    SET replaces the value atomically.
    """

    def __init__(
        self,
        url: str,
        key_prefix: str = "tg-kafka-bridge:checkpoint",
        client: Optional[redis.Redis] = None
    ):
        self.url = url
        self.key_prefix = key_prefix.rstrip(":")
        self.client: Optional[redis.Redis] = client

    def _key(self, source_id: str) -> str:
        return f"{self.key_prefix}:{source_id}"

    def _get_client(self) -> redis.Redis:
        if self.client is None:
            self.client = redis.Redis.from_url(self.url)
        return self.client

    async def load(self, source_id: str) -> Optional[Checkpoint]:
        try:
            raw = await self._get_client().get(self._key(source_id))
        except RedisError as e:
            raise CheckpointError(f"Failed to load checkpoint for {source_id}: {e}") from e
        if raw is None:
            return None
        try:
            return Checkpoint.model_validate_json(raw)
        except ValidationError as e:
            raise CheckpointError(f"Invalid checkpoint for {source_id}: {e}") from e

    async def save(self, checkpoint: Checkpoint) -> None:
        try:
            await self._get_client().set(
                self._key(checkpoint.source_id),
                checkpoint.model_dump_json()
            )
        except RedisError as e:
            raise CheckpointError(f"Failed to save checkpoint for {checkpoint.source_id}: {e}") from e

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

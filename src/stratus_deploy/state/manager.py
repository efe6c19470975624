"""State stores that persist one record per resource node."""

import fcntl
import json
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from botocore.exceptions import ClientError
from pydantic import ValidationError as PydanticValidationError

from stratus_deploy.state.models import StateRecord
from stratus_deploy.utils.errors import StateError
from stratus_deploy.utils.logging import get_logger

logger = get_logger(__name__)

RECORD_SUFFIX = ".json"


class StateLockError(StateError):
    """Raised when another run holds the state lock."""


class StateStore(ABC):
    """Persists the last-applied record of each node.

    ``save`` must be atomic per node: a reader sees either the previous
    record or the new one, never a partial write.
    """

    @abstractmethod
    def load(self) -> Dict[str, StateRecord]:
        """Load all records keyed by node ID; empty on first run."""

    @abstractmethod
    def save(self, node_id: str, record: StateRecord) -> None:
        """Persist the record of one node."""

    @abstractmethod
    def delete(self, node_id: str) -> None:
        """Remove the record of one node; missing records are ignored."""

    def lock(self, timeout: int = 30) -> None:
        """Acquire exclusive access for a run. No-op unless overridden."""

    def unlock(self) -> None:
        """Release exclusive access."""

    def __enter__(self):
        self.lock()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unlock()


def _parse_record(node_id: str, raw: str, source: str) -> StateRecord:
    try:
        record = StateRecord.from_dict(json.loads(raw))
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise StateError(f"Corrupt state record {source}: {e}", cause=e)
    if record.node_id != node_id:
        raise StateError(
            f"State record {source} belongs to '{record.node_id}', expected '{node_id}'"
        )
    return record


class FileStateStore(StateStore):
    """One JSON document per node under a directory.

    Writes go to a temporary file in the same directory which is fsynced
    and then renamed over the record, so each save is atomic.
    """

    def __init__(self, directory: str):
        """
        Initialize FileStateStore.

        Args:
            directory: Directory holding the state records
        """
        self.directory = Path(directory)
        self._lock_file: Optional[int] = None
        self._write_lock = threading.Lock()

    def _path(self, node_id: str) -> Path:
        return self.directory / f"{node_id}{RECORD_SUFFIX}"

    def load(self) -> Dict[str, StateRecord]:
        """
        Load all records from the directory.

        Returns:
            Records keyed by node ID ({} if the directory does not exist)

        Raises:
            StateError: If a record is unreadable or corrupted
        """
        if not self.directory.exists():
            return {}

        records = {}
        for path in sorted(self.directory.glob(f"*{RECORD_SUFFIX}")):
            node_id = path.name[:-len(RECORD_SUFFIX)]
            try:
                raw = path.read_text(encoding="utf-8")
            except OSError as e:
                raise StateError(f"Failed to read state record {path}: {e}", cause=e)
            records[node_id] = _parse_record(node_id, raw, str(path))

        logger.debug(f"Loaded {len(records)} state records from {self.directory}")
        return records

    def save(self, node_id: str, record: StateRecord) -> None:
        """
        Atomically write the record of one node.

        Raises:
            StateError: If the record cannot be written
        """
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True)

        with self._write_lock:
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                fd, temp_name = tempfile.mkstemp(
                    dir=str(self.directory), prefix=f".{node_id}.", suffix=".tmp"
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(payload)
                        f.flush()
                        os.fsync(f.fileno())

                    # Atomic rename
                    os.replace(temp_name, self._path(node_id))
                except BaseException:
                    if os.path.exists(temp_name):
                        os.unlink(temp_name)
                    raise
            except OSError as e:
                raise StateError(f"Failed to save state for '{node_id}': {e}", cause=e)

        logger.debug(f"Saved state for {node_id}")

    def delete(self, node_id: str) -> None:
        """Remove the record of one node."""
        with self._write_lock:
            try:
                self._path(node_id).unlink()
            except FileNotFoundError:
                return
            except OSError as e:
                raise StateError(f"Failed to delete state for '{node_id}': {e}", cause=e)

        logger.debug(f"Deleted state for {node_id}")

    def lock(self, timeout: int = 30) -> None:
        """
        Acquire exclusive lock on the state directory.

        Args:
            timeout: Lock timeout in seconds

        Raises:
            StateLockError: If lock cannot be acquired
        """
        lock_path = self.directory / ".lock"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._lock_file = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        except OSError as e:
            raise StateLockError(f"Failed to open lock file {lock_path}: {e}", cause=e)

        start_time = time.time()
        while True:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.time() - start_time > timeout:
                    os.close(self._lock_file)
                    self._lock_file = None
                    raise StateLockError(
                        f"Failed to acquire lock on {self.directory} after {timeout}s; "
                        "another run may be in progress"
                    )
                time.sleep(0.1)

    def unlock(self) -> None:
        """Release lock on the state directory."""
        if self._lock_file is not None:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_UN)
                os.close(self._lock_file)
            finally:
                self._lock_file = None


class S3StateStore(StateStore):
    """One JSON object per node under an S3 prefix.

    A single PutObject replaces an object atomically, which gives the same
    per-node guarantee as the file store.
    """

    def __init__(self, bucket: str, prefix: str, client):
        """
        Initialize S3StateStore.

        Args:
            bucket: Bucket name
            prefix: Key prefix for this stack's records
            client: boto3 S3 client
        """
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.client = client

    def _key(self, node_id: str) -> str:
        return f"{self.prefix}/{node_id}{RECORD_SUFFIX}" if self.prefix else f"{node_id}{RECORD_SUFFIX}"

    def load(self) -> Dict[str, StateRecord]:
        records = {}
        list_prefix = f"{self.prefix}/" if self.prefix else ""
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=list_prefix):
                for item in page.get("Contents", []):
                    key = item["Key"]
                    name = key[len(list_prefix):]
                    if "/" in name or not name.endswith(RECORD_SUFFIX):
                        continue
                    node_id = name[:-len(RECORD_SUFFIX)]
                    body = self.client.get_object(Bucket=self.bucket, Key=key)["Body"].read()
                    records[node_id] = _parse_record(
                        node_id, body.decode("utf-8"), f"s3://{self.bucket}/{key}"
                    )
        except ClientError as e:
            raise StateError(f"Failed to load state from s3://{self.bucket}/{list_prefix}: {e}", cause=e)

        logger.debug(f"Loaded {len(records)} state records from s3://{self.bucket}/{list_prefix}")
        return records

    def save(self, node_id: str, record: StateRecord) -> None:
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True)
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=self._key(node_id),
                Body=payload.encode("utf-8"),
                ContentType="application/json",
            )
        except ClientError as e:
            raise StateError(f"Failed to save state for '{node_id}': {e}", cause=e)

    def delete(self, node_id: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(node_id))
        except ClientError as e:
            raise StateError(f"Failed to delete state for '{node_id}': {e}", cause=e)

"""State management for resource records."""

from .models import ReplacedResource, StateRecord
from .manager import FileStateStore, S3StateStore, StateLockError, StateStore

__all__ = [
    "StateRecord",
    "ReplacedResource",
    "StateStore",
    "FileStateStore",
    "S3StateStore",
    "StateLockError",
]

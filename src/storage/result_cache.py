"""
Repository Result Cache Module.

Keeps the last-known result of every repository keyed by "owner/name". Entries
never expire; they are overwritten whenever a fresh result is obtained and are
served when live retrieval fails. Optionally the mapping is persisted to a
JSON file so it survives restarts.
"""

import json
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError

from config import logger
from miners.models import RepositoryRef, RepositoryResult, repository_result_adapter


@dataclass
class CacheEntry:
    """
    Data class representing a cached repository result.

    Attributes:
        result (RepositoryResult): Last-known result
        stored_at (datetime): When the result was written
    """

    result: RepositoryResult
    stored_at: datetime


class ResultCache:
    """
    Process-wide store of repository results.
    Safe for concurrent use from the event loop and worker threads.
    """

    def __init__(self, cache_file: Optional[str] = None):
        """Initialize the cache.

        Args:
            cache_file (Optional[str]): JSON file used to persist entries.
                In-memory only when None.
        """
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.cache_file = Path(cache_file) if cache_file else None
        if self.cache_file is not None:
            self._load()

    @staticmethod
    def key(ref: RepositoryRef) -> str:
        return ref.key

    def get(self, ref: RepositoryRef) -> Optional[RepositoryResult]:
        with self._lock:
            entry = self._entries.get(self.key(ref))
        return entry.result if entry else None

    def get_many(self, refs: Sequence[RepositoryRef]) -> Optional[List[RepositoryResult]]:
        """
        Return cached results for all repositories, in order.

        Args:
            refs (Sequence[RepositoryRef]): Repositories to look up

        Returns:
            Optional[List[RepositoryResult]]: Cached results, or None if any
                repository has no entry
        """
        with self._lock:
            entries = [self._entries.get(self.key(ref)) for ref in refs]
        if any(entry is None for entry in entries):
            return None
        return [entry.result for entry in entries]

    def stored_at(self, ref: RepositoryRef) -> Optional[datetime]:
        with self._lock:
            entry = self._entries.get(self.key(ref))
        return entry.stored_at if entry else None

    def set(self, ref: RepositoryRef, result: RepositoryResult) -> None:
        """
        Store a result, replacing any previous entry for the repository.

        Args:
            ref (RepositoryRef): Repository the result belongs to
            result (RepositoryResult): Result to store
        """
        with self._lock:
            self._entries[self.key(ref)] = CacheEntry(
                result=result, stored_at=datetime.now(timezone.utc)
            )
            if self.cache_file is not None:
                self._save()

    def __contains__(self, ref: RepositoryRef) -> bool:
        with self._lock:
            return self.key(ref) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _load(self) -> None:
        if not self.cache_file.exists():
            return

        try:
            with open(self.cache_file, "r") as f:
                raw = json.load(f)
            for key, item in raw.items():
                self._entries[key] = CacheEntry(
                    result=repository_result_adapter.validate_python(item["result"]),
                    stored_at=datetime.fromisoformat(item["stored_at"]),
                )
        except (json.JSONDecodeError, KeyError, AttributeError, ValidationError) as e:
            # Handle corrupted file by starting fresh
            logger.error(
                {
                    "message": "Corrupted result cache file",
                    "file": str(self.cache_file),
                    "error": str(e),
                }
            )
            self._entries = {}
            return

        logger.info(
            {
                "message": "Loaded cached repository results",
                "file": str(self.cache_file),
                "entries": len(self._entries),
            }
        )

    def _save(self) -> None:
        data = {
            key: {
                "stored_at": entry.stored_at.isoformat(),
                "result": repository_result_adapter.dump_python(
                    entry.result, mode="json", by_alias=True
                ),
            }
            for key, entry in self._entries.items()
        }

        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.cache_file.with_suffix(self.cache_file.suffix + ".tmp")
            with open(tmp_file, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_file, self.cache_file)
        except OSError as e:
            # Persistence is optional, the in-memory entry stays authoritative
            logger.error(
                {
                    "message": "Failed to persist result cache",
                    "file": str(self.cache_file),
                    "error": str(e),
                }
            )

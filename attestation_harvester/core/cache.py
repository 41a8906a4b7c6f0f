"""
Resumable JSON cache of harvested attestations.

The whole map lives in memory and is written as one snapshot per flush
(temp file in the same directory, then `os.replace`), so the file on disk is
always a complete prefix of finished work. Entries are additive-only.
"""

import json
import os
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from loguru import logger

from attestation_harvester.core.errors import (
    CacheConflictError,
    CacheCorruptionError,
    CacheLayoutError,
    HarvesterError,
)
from attestation_harvester.core.models import CacheEntry
from attestation_harvester.core.utils import atomic_write_json


def _check_entry(key: str, value: object, expected_slots: Optional[int]) -> CacheEntry:
    if not isinstance(value, list) or not all(isinstance(slot, list) for slot in value):
        raise CacheCorruptionError(f"entry {key!r} is not a list of slots")
    if expected_slots is not None and len(value) != expected_slots:
        raise CacheLayoutError(f"entry {key!r} has {len(value)} slots, expected {expected_slots} (one per oracle)")
    return value


class ResumableCache:
    def __init__(self, path: Union[str, os.PathLike]):
        self.path = Path(path)
        self._entries: Dict[int, CacheEntry] = {}
        self._loaded = False
        self.flush_count = 0

    def load(self, expected_slots: Optional[int] = None) -> Dict[int, CacheEntry]:
        """Read the backing file; a missing file is an empty cache.

        With `expected_slots`, every entry must have exactly that many oracle
        slots, otherwise `CacheLayoutError` is raised.
        """
        self._loaded = False
        self._entries = {}
        if self.path.exists():
            try:
                text = self.path.read_text()
            except (OSError, UnicodeDecodeError) as exc:
                raise CacheCorruptionError(f"cannot read cache {self.path}: {exc}") from exc
            try:
                raw = json.loads(text)
            except ValueError as exc:
                raise CacheCorruptionError(f"cache {self.path} is not valid JSON: {exc}") from exc
            if not isinstance(raw, dict):
                raise CacheCorruptionError(f"cache {self.path} must hold a JSON object")
            entries: Dict[int, CacheEntry] = {}
            for key, value in raw.items():
                if not (key.isascii() and key.isdigit()):
                    raise CacheCorruptionError(f"cache key {key!r} is not a decimal timestamp")
                entries[int(key)] = _check_entry(key, value, expected_slots)
            self._entries = entries
        self._loaded = True
        logger.info(f"Loaded {len(self._entries)} cached timestamps from {self.path}")
        return dict(self._entries)

    def get(self, timestamp: int) -> Optional[CacheEntry]:
        return self._entries.get(timestamp)

    def put(self, timestamp: int, entry: CacheEntry) -> None:
        if not self._loaded:
            raise HarvesterError("cache must be loaded before entries are added")
        if timestamp in self._entries:
            raise CacheConflictError(f"timestamp {timestamp} is already cached")
        self._entries[timestamp] = [list(slot) for slot in entry]

    def flush(self) -> None:
        if not self._loaded:
            raise HarvesterError(f"refusing to flush {self.path}: cache was not loaded cleanly")
        payload = {str(ts): self._entries[ts] for ts in sorted(self._entries)}
        atomic_write_json(self.path, payload)
        self.flush_count += 1
        logger.debug(f"Flushed {len(payload)} entries to {self.path}")

    def timestamps(self) -> List[int]:
        return sorted(self._entries)

    def __contains__(self, timestamp: object) -> bool:
        return timestamp in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[int]:
        return iter(self.timestamps())

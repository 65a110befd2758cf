"""
Position Snapshot Cache.

Durable local copy of position state, independent of the live store:

    {domain: {position_id: {position, partial_history, closed, updated_at}}}

The whole document is rewritten on every mutation. Writes are synchronous
and atomic (temp file, then rename), so a crash mid-write leaves the
previous document intact. A failed write is logged and never blocks the
caller.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from position_guard.position.models import (
    CachedPositionEntry,
    Domain,
    PartialCloseRecord,
    Position,
    PositionStatus,
)


logger = logging.getLogger(__name__)

DEFAULT_CACHE_FILE = ".position_guard/cache/positions.json"


class PositionSnapshotCache:
    """
    JSON-file cache of positions and their partial-close history.

    Example:
        cache = PositionSnapshotCache("data/positions.json")
        cache.update(Domain.PERPS, open_positions)
        cache.record_partial_close(Domain.PERPS, "pos-1", 0.25, 50.0, -5.0)
    """

    def __init__(self, cache_file: str = DEFAULT_CACHE_FILE):
        self.cache_file = Path(cache_file)
        self._entries: Dict[str, Dict[str, CachedPositionEntry]] = {}
        self.logger = logging.getLogger(f"{__name__}.PositionSnapshotCache")
        self.load()

    # ========================================================================
    # Persistence
    # ========================================================================

    def load(self) -> None:
        """Load the cache file. A missing or unreadable file yields an empty cache."""
        self._entries = {}
        if not self.cache_file.exists():
            return

        try:
            with open(self.cache_file, "r") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.error(f"[Cache] Failed to read {self.cache_file}: {e}")
            return

        for domain, entries in raw.items():
            bucket = self._entries.setdefault(domain, {})
            for position_id, data in entries.items():
                try:
                    bucket[position_id] = CachedPositionEntry.from_dict(data)
                except (KeyError, TypeError, ValueError) as e:
                    self.logger.warning(f"[Cache] Skipping corrupt entry {domain}/{position_id}: {e}")

        self.logger.info(f"[Cache] Loaded {sum(len(b) for b in self._entries.values())} cached positions")

    def _save(self) -> bool:
        document = {
            domain: {pid: entry.to_dict() for pid, entry in entries.items()}
            for domain, entries in self._entries.items()
        }

        tmp_path = None
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=".positions-",
                suffix=".tmp",
                dir=str(self.cache_file.parent)
            )
            with os.fdopen(fd, "w") as f:
                json.dump(document, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.cache_file)
            return True
        except OSError as e:
            self.logger.error(f"[Cache] Failed to write {self.cache_file}: {e}")
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            return False

    # ========================================================================
    # Mutations
    # ========================================================================

    def update(self, domain: Domain, positions: List[Position]) -> None:
        """
        Full refresh of one domain from the store.

        Cached open entries absent from the refresh are marked closed.
        Partial-close history is kept across refreshes.
        """
        domain = Domain(domain).value
        bucket = self._entries.setdefault(domain, {})
        now = datetime.utcnow()
        seen = set()

        for position in positions:
            seen.add(position.id)
            entry = bucket.get(position.id)
            if entry is None:
                bucket[position.id] = CachedPositionEntry(position=position, updated_at=now)
            else:
                entry.position = position
                entry.closed = not position.is_open
                entry.updated_at = now

        for position_id, entry in bucket.items():
            if position_id not in seen and not entry.closed:
                entry.closed = True
                entry.position.status = PositionStatus.CLOSED
                entry.updated_at = now

        self._save()

    def track(self, position: Position) -> CachedPositionEntry:
        """Add a single position if it is not cached yet. Existing entries are left as they are."""
        bucket = self._entries.setdefault(Domain(position.domain).value, {})
        entry = bucket.get(position.id)
        if entry is None:
            entry = CachedPositionEntry(position=position, updated_at=datetime.utcnow())
            bucket[position.id] = entry
            self._save()
        return entry

    def record_partial_close(
        self,
        domain: Domain,
        position_id: str,
        proportion: float,
        realized_value_usd: float,
        realized_pnl_usd: float
    ) -> Optional[CachedPositionEntry]:
        """
        Append a partial close to a position's history and reduce its cached value.

        Returns:
            The updated entry, or None if the position is not cached
        """
        entry = self.get_entry(domain, position_id)
        if entry is None:
            self.logger.warning(f"[Cache] Partial close for uncached position {position_id}")
            return None

        now = datetime.utcnow()
        entry.partial_history.append(PartialCloseRecord(
            timestamp=now,
            proportion=proportion,
            realized_value_usd=realized_value_usd,
            realized_pnl_usd=realized_pnl_usd,
        ))
        entry.position.current_value_usd = max(0.0, entry.position.current_value_usd - realized_value_usd)
        if entry.position.size is not None:
            entry.position.size = max(0.0, entry.position.size * (1 - proportion))
        entry.updated_at = now

        self._save()
        return entry

    def mark_closed(
        self,
        domain: Domain,
        position_id: str,
        final_value_usd: Optional[float] = None,
        realized_pnl: Optional[float] = None
    ) -> Optional[CachedPositionEntry]:
        """Mark a cached position closed."""
        entry = self.get_entry(domain, position_id)
        if entry is None:
            return None

        now = datetime.utcnow()
        entry.closed = True
        entry.position.status = PositionStatus.CLOSED
        entry.position.closed_at = now
        if final_value_usd is not None:
            entry.position.current_value_usd = final_value_usd
        if realized_pnl is not None:
            entry.position.realized_pnl = realized_pnl
        entry.updated_at = now

        self._save()
        return entry

    # ========================================================================
    # Reads
    # ========================================================================

    def get(self, domain: Domain, include_closed: bool = False) -> List[Position]:
        """Get cached positions for a domain (open only by default)."""
        bucket = self._entries.get(Domain(domain).value, {})
        return [
            entry.position for entry in bucket.values()
            if include_closed or not entry.closed
        ]

    def get_entry(self, domain: Domain, position_id: str) -> Optional[CachedPositionEntry]:
        return self._entries.get(Domain(domain).value, {}).get(position_id)

    def find(self, domain: Domain, predicate: Callable[[Position], bool]) -> Optional[Position]:
        """First open cached position in a domain matching the predicate."""
        for position in self.get(domain):
            if predicate(position):
                return position
        return None

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._entries.values())

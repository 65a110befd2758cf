"""
Idempotency record storage.

Records live in a single DuckDB table keyed by idempotency key. Timestamps
are stored as epoch seconds so comparisons never depend on the session
time zone.
"""

import duckdb
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict

logger = logging.getLogger(__name__)


IDEMPOTENCY_TABLE = """
CREATE TABLE IF NOT EXISTS trade_idempotency (
    idempotency_key VARCHAR PRIMARY KEY,
    domain VARCHAR NOT NULL,
    action VARCHAR NOT NULL,
    target VARCHAR NOT NULL,
    amount_usd DOUBLE NOT NULL,
    result VARCHAR,
    created_at DOUBLE NOT NULL,
    expires_at DOUBLE NOT NULL
);
"""


@dataclass
class IdempotencyRecord:
    """One reserved or completed action."""
    key: str
    domain: str
    action: str
    target: str
    amount_usd: float
    result: Optional[str]  # JSON-serialized result
    created_at: float      # epoch seconds
    expires_at: float      # epoch seconds


class IdempotencyStore(ABC):
    """Storage backend for idempotency records."""

    @abstractmethod
    def get(self, key: str) -> Optional[IdempotencyRecord]:
        pass

    @abstractmethod
    def upsert(self, record: IdempotencyRecord) -> None:
        """Insert a record, or refresh result, age and expiry of an existing one."""
        pass

    @abstractmethod
    def update_result(self, key: str, result: str) -> bool:
        """Replace the stored result. Returns False if the key is absent."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def delete_expired(self, now: float) -> int:
        """Delete all records whose expiry has passed. Returns the count."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def count_by_domain(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def count_expired(self, now: float) -> int:
        pass


class DuckDBIdempotencyStore(IdempotencyStore):
    """
    DuckDB-backed idempotency records.

    Example:
        store = DuckDBIdempotencyStore(".position_guard/idempotency.duckdb")
        store = DuckDBIdempotencyStore(":memory:")  # tests
    """

    _COLUMNS = "idempotency_key, domain, action, target, amount_usd, result, created_at, expires_at"

    def __init__(self, database_path: str = ":memory:"):
        """
        Initialize the store and create the table.

        Args:
            database_path: DuckDB file path, or ':memory:'
        """
        self.database_path = database_path
        if database_path != ":memory:":
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = duckdb.connect(database_path)
        self._conn.execute(IDEMPOTENCY_TABLE)
        self._lock = threading.Lock()
        logger.info(f"Idempotency store opened at {database_path}")

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {self._COLUMNS} FROM trade_idempotency WHERE idempotency_key = ?",
                [key]
            ).fetchone()

        if row is None:
            return None
        return IdempotencyRecord(*row)

    def upsert(self, record: IdempotencyRecord) -> None:
        with self._lock:
            exists = self._conn.execute(
                "SELECT 1 FROM trade_idempotency WHERE idempotency_key = ?",
                [record.key]
            ).fetchone()

            if exists:
                self._conn.execute(
                    "UPDATE trade_idempotency SET result = ?, created_at = ?, expires_at = ? "
                    "WHERE idempotency_key = ?",
                    [record.result, record.created_at, record.expires_at, record.key]
                )
            else:
                self._conn.execute(
                    f"INSERT INTO trade_idempotency ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        record.key,
                        record.domain,
                        record.action,
                        record.target,
                        record.amount_usd,
                        record.result,
                        record.created_at,
                        record.expires_at,
                    ]
                )

    def update_result(self, key: str, result: str) -> bool:
        with self._lock:
            exists = self._conn.execute(
                "SELECT 1 FROM trade_idempotency WHERE idempotency_key = ?",
                [key]
            ).fetchone()
            if not exists:
                return False

            self._conn.execute(
                "UPDATE trade_idempotency SET result = ? WHERE idempotency_key = ?",
                [result, key]
            )
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM trade_idempotency WHERE idempotency_key = ?",
                [key]
            )

    def delete_expired(self, now: float) -> int:
        with self._lock:
            expired = self._conn.execute(
                "SELECT COUNT(*) FROM trade_idempotency WHERE expires_at < ?",
                [now]
            ).fetchone()[0]

            if expired:
                self._conn.execute(
                    "DELETE FROM trade_idempotency WHERE expires_at < ?",
                    [now]
                )
            return int(expired)

    def count(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM trade_idempotency").fetchone()[0])

    def count_by_domain(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT domain, COUNT(*) FROM trade_idempotency GROUP BY domain"
            ).fetchall()
        return {domain: int(count) for domain, count in rows}

    def count_expired(self, now: float) -> int:
        with self._lock:
            return int(self._conn.execute(
                "SELECT COUNT(*) FROM trade_idempotency WHERE expires_at < ?",
                [now]
            ).fetchone()[0])

    def close(self) -> None:
        """Close the DuckDB connection."""
        with self._lock:
            self._conn.close()
        logger.info("Idempotency store closed")

"""
Storage Backend Module

Loan persistence port with optimistic versioning, plus in-memory (testing)
and SQLite (persistence) implementations. Loans are stored as JSON documents
with all monetary values as Decimal strings.

Every save carries the version the loan was loaded at. A save whose version
no longer matches the stored one raises ConcurrencyConflict and writes
nothing; the caller reloads and re-runs the whole transition.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
from dataclasses import replace
from pathlib import Path
import sqlite3
import json
import threading

from .errors import ConcurrencyConflict
from .loans import Loan, LoanStatus, loan_from_dict, loan_to_dict


class LoanStorage(ABC):
    """Abstract interface for loan storage backends"""

    @abstractmethod
    def load(self, loan_id: str) -> Optional[Loan]:
        """Load a loan, or None if it does not exist"""
        pass

    @abstractmethod
    def save(self, loan: Loan) -> Loan:
        """
        Save a loan if its version still matches the stored one

        Returns:
            The saved loan, carrying the incremented version

        Raises:
            ConcurrencyConflict: The stored version moved on, or a new loan
                reuses an existing id
        """
        pass

    @abstractmethod
    def exists(self, loan_id: str) -> bool:
        pass

    @abstractmethod
    def all(self) -> List[Loan]:
        """All loans in creation order"""
        pass

    def find(self, status: Optional[LoanStatus] = None, **filters: Any) -> List[Loan]:
        """
        Find loans by status and exact attribute matches

        Example: find(status=LoanStatus.CLOSED, gold_return_status=GoldReturnStatus.PENDING)
        """
        results = []
        for loan in self.all():
            if status is not None and loan.status != status:
                continue
            if all(getattr(loan, key) == value for key, value in filters.items()):
                results.append(loan)
        return results

    def count(self) -> int:
        return len(self.all())

    def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


def _conflict(loan: Loan, stored_version: Optional[int]) -> ConcurrencyConflict:
    if stored_version is None:
        return ConcurrencyConflict(
            f"Loan {loan.loan_id} does not exist at version {loan.version}"
        )
    return ConcurrencyConflict(
        f"Loan {loan.loan_id} was modified concurrently "
        f"(expected version {loan.version}, found {stored_version})"
    )


class InMemoryLoanStorage(LoanStorage):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def load(self, loan_id: str) -> Optional[Loan]:
        with self._lock:
            record = self._data.get(loan_id)
            if record is None:
                return None
            # Deep copy to prevent external mutation
            return loan_from_dict(json.loads(json.dumps(record)))

    def save(self, loan: Loan) -> Loan:
        with self._lock:
            record = self._data.get(loan.loan_id)
            if record is None:
                if loan.version != 0:
                    raise _conflict(loan, None)
            elif loan.version == 0:
                raise ConcurrencyConflict(f"Loan id {loan.loan_id} already exists")
            elif record['version'] != loan.version:
                raise _conflict(loan, record['version'])

            saved = replace(loan, version=loan.version + 1)
            self._data[loan.loan_id] = json.loads(json.dumps(loan_to_dict(saved)))
            return saved

    def exists(self, loan_id: str) -> bool:
        with self._lock:
            return loan_id in self._data

    def all(self) -> List[Loan]:
        with self._lock:
            return [loan_from_dict(json.loads(json.dumps(record))) for record in self._data.values()]


class SQLiteLoanStorage(LoanStorage):
    """SQLite storage implementation for persistence"""

    TABLE = "loans"

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

        self._ensure_table()

    def _ensure_table(self) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.TABLE} (
                    id TEXT PRIMARY KEY,
                    version INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{self.TABLE}_status
                ON {self.TABLE}(status)
            """)
            self._connection.commit()

    def load(self, loan_id: str) -> Optional[Loan]:
        with self._lock:
            cursor = self._connection.execute(f"""
                SELECT data FROM {self.TABLE} WHERE id = ?
            """, (loan_id,))
            row = cursor.fetchone()
            if row:
                return loan_from_dict(json.loads(row['data']))
            return None

    def save(self, loan: Loan) -> Loan:
        with self._lock:
            saved = replace(loan, version=loan.version + 1)
            data_json = json.dumps(loan_to_dict(saved))
            now = datetime.now(timezone.utc).isoformat()

            try:
                if loan.version == 0:
                    cursor = self._connection.execute(f"""
                        INSERT INTO {self.TABLE} (id, version, status, data, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (loan.loan_id, saved.version, saved.status.value, data_json, now, now))
                else:
                    # Conditional update: only succeeds against the version we loaded
                    cursor = self._connection.execute(f"""
                        UPDATE {self.TABLE}
                        SET version = ?, status = ?, data = ?, updated_at = ?
                        WHERE id = ? AND version = ?
                    """, (saved.version, saved.status.value, data_json, now,
                          loan.loan_id, loan.version))
            except sqlite3.IntegrityError:
                self._connection.rollback()
                raise ConcurrencyConflict(f"Loan id {loan.loan_id} already exists")

            if cursor.rowcount != 1:
                self._connection.rollback()
                raise _conflict(loan, self._stored_version(loan.loan_id))

            self._connection.commit()
            return saved

    def _stored_version(self, loan_id: str) -> Optional[int]:
        cursor = self._connection.execute(f"""
            SELECT version FROM {self.TABLE} WHERE id = ?
        """, (loan_id,))
        row = cursor.fetchone()
        return row['version'] if row else None

    def exists(self, loan_id: str) -> bool:
        with self._lock:
            return self._stored_version(loan_id) is not None

    def all(self) -> List[Loan]:
        with self._lock:
            cursor = self._connection.execute(f"""
                SELECT data FROM {self.TABLE} ORDER BY created_at, id
            """)
            return [loan_from_dict(json.loads(row['data'])) for row in cursor.fetchall()]

    def find(self, status: Optional[LoanStatus] = None, **filters: Any) -> List[Loan]:
        """Status is filtered in SQL; remaining filters in Python"""
        if status is None:
            return super().find(**filters)
        with self._lock:
            cursor = self._connection.execute(f"""
                SELECT data FROM {self.TABLE} WHERE status = ? ORDER BY created_at, id
            """, (status.value,))
            loans = [loan_from_dict(json.loads(row['data'])) for row in cursor.fetchall()]
        return [
            loan for loan in loans
            if all(getattr(loan, key) == value for key, value in filters.items())
        ]

    def count(self) -> int:
        with self._lock:
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {self.TABLE}
            """)
            return cursor.fetchone()['count']

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> LoanStorage:
    """
    Build a storage backend from a database URL

    ``memory://`` selects in-memory storage; ``sqlite:///path`` selects SQLite
    (``sqlite:///:memory:`` for an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryLoanStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteLoanStorage(database_url[len("sqlite:///"):])
    raise ValueError(f"Unsupported database URL: {database_url}")

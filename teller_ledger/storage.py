"""
Storage Backend Module

Provides the account row store interface and implementations for in-memory
(testing) and SQLite (persistence). Rows carry PII columns exactly as
persisted, which for the ledger means encrypted tokens.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterator, Optional, Union
import sqlite3
import threading
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from contextlib import contextmanager

logger = logging.getLogger(__name__)


TABLE_NAME = "bank_accounts"

COLUMNS = (
    "account_id", "name", "address_line_1", "address_line_2", "address_line_3",
    "town", "balance", "account_kind", "overdraft_limit", "interest_rate",
)


@dataclass(frozen=True)
class AccountRow:
    """One persisted account row"""
    account_id: str
    name: str
    address_line_1: Optional[str]
    address_line_2: Optional[str]
    address_line_3: Optional[str]
    town: str
    balance: float
    account_kind: int
    overdraft_limit: Optional[float] = None
    interest_rate: Optional[float] = None

    def to_params(self) -> tuple:
        """Column values in schema order for a parameterised statement"""
        return tuple(getattr(self, column) for column in COLUMNS)


class RowStore(ABC):
    """Abstract interface for account row stores"""

    @abstractmethod
    def exists(self) -> bool:
        """Check if the backing store has been created"""
        pass

    @abstractmethod
    def initialise(self) -> None:
        """Create the account table if it does not exist"""
        pass

    @abstractmethod
    def iter_rows(self) -> Iterator[AccountRow]:
        """Stream every account row"""
        pass

    @abstractmethod
    def insert(self, row: AccountRow) -> None:
        """Insert a new account row"""
        pass

    @abstractmethod
    def update_balance(self, account_id: str, balance: float) -> bool:
        """Set the balance of an account row"""
        pass

    @abstractmethod
    def delete(self, account_id: str) -> bool:
        """Delete an account row"""
        pass

    @abstractmethod
    def count(self) -> int:
        """Count account rows"""
        pass


class InMemoryRowStore(RowStore):
    """In-memory row store for testing"""

    def __init__(self, created: bool = True):
        self._rows: Dict[str, AccountRow] = {}
        self._created = created
        self._lock = threading.RLock()
        # Failure injection for tests: the next write raises this error
        self.fail_next_write: Optional[Exception] = None

    def _check_write(self) -> None:
        if self.fail_next_write is not None:
            error, self.fail_next_write = self.fail_next_write, None
            raise error

    def exists(self) -> bool:
        return self._created

    def initialise(self) -> None:
        with self._lock:
            self._created = True

    def iter_rows(self) -> Iterator[AccountRow]:
        with self._lock:
            rows = list(self._rows.values())
        yield from rows

    def insert(self, row: AccountRow) -> None:
        with self._lock:
            self._check_write()
            if row.account_id in self._rows:
                raise sqlite3.IntegrityError(f"Duplicate account_id {row.account_id}")
            self._rows[row.account_id] = row

    def update_balance(self, account_id: str, balance: float) -> bool:
        with self._lock:
            self._check_write()
            row = self._rows.get(account_id)
            if row is None:
                return False
            self._rows[account_id] = replace(row, balance=balance)
            return True

    def delete(self, account_id: str) -> bool:
        with self._lock:
            self._check_write()
            return self._rows.pop(account_id, None) is not None

    def count(self) -> int:
        with self._lock:
            return len(self._rows)

    def get(self, account_id: str) -> Optional[AccountRow]:
        """Get a raw row for inspection"""
        with self._lock:
            return self._rows.get(account_id)

    def put_raw(self, row: AccountRow) -> None:
        """Store a row verbatim, bypassing insert checks"""
        with self._lock:
            self._rows[row.account_id] = row


class SQLiteRowStore(RowStore):
    """SQLite row store; a connection is opened and closed per operation"""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)

    @contextmanager
    def _connection(self):
        """Scoped connection that commits on success and rolls back on error"""
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        try:
            yield connection
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            connection.close()

    def exists(self) -> bool:
        """Check that the database file holds the account table"""
        # Connecting would create an empty file
        if not self.db_path.exists():
            return False
        with self._connection() as connection:
            cursor = connection.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                (TABLE_NAME,),
            )
            return cursor.fetchone() is not None

    def initialise(self) -> None:
        """Create the account table if it does not exist"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as connection:
            connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                    account_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    address_line_1 TEXT,
                    address_line_2 TEXT,
                    address_line_3 TEXT,
                    town TEXT NOT NULL,
                    balance REAL NOT NULL,
                    account_kind INTEGER NOT NULL,
                    overdraft_limit REAL,
                    interest_rate REAL
                ) WITHOUT ROWID
            """)
        logger.info(f"Initialised account table in {self.db_path}")

    def iter_rows(self) -> Iterator[AccountRow]:
        """Stream every account row"""
        with self._connection() as connection:
            cursor = connection.execute(
                f"SELECT {', '.join(COLUMNS)} FROM {TABLE_NAME}"
            )
            for record in cursor:
                yield AccountRow(**{column: record[column] for column in COLUMNS})

    def insert(self, row: AccountRow) -> None:
        """Insert a new account row"""
        placeholders = ", ".join("?" for _ in COLUMNS)
        with self._connection() as connection:
            connection.execute(
                f"INSERT INTO {TABLE_NAME} ({', '.join(COLUMNS)}) VALUES ({placeholders})",
                row.to_params(),
            )

    def update_balance(self, account_id: str, balance: float) -> bool:
        """Set the balance of an account row"""
        with self._connection() as connection:
            cursor = connection.execute(
                f"UPDATE {TABLE_NAME} SET balance = ? WHERE account_id = ?",
                (balance, account_id),
            )
            return cursor.rowcount > 0

    def delete(self, account_id: str) -> bool:
        """Delete an account row"""
        with self._connection() as connection:
            cursor = connection.execute(
                f"DELETE FROM {TABLE_NAME} WHERE account_id = ?",
                (account_id,),
            )
            return cursor.rowcount > 0

    def count(self) -> int:
        """Count account rows"""
        with self._connection() as connection:
            cursor = connection.execute(f"SELECT COUNT(*) AS count FROM {TABLE_NAME}")
            return cursor.fetchone()['count']

    def raw_row(self, account_id: str) -> Optional[Dict[str, object]]:
        """Fetch a row's stored column values for inspection"""
        with self._connection() as connection:
            cursor = connection.execute(
                f"SELECT {', '.join(COLUMNS)} FROM {TABLE_NAME} WHERE account_id = ?",
                (account_id,),
            )
            record = cursor.fetchone()
            return dict(record) if record else None

    def write_raw_column(self, account_id: str, column: str, value: object) -> None:
        """Overwrite one stored column value (maintenance and tests)"""
        if column not in COLUMNS:
            raise ValueError(f"Unknown column {column}")
        with self._connection() as connection:
            connection.execute(
                f"UPDATE {TABLE_NAME} SET {column} = ? WHERE account_id = ?",
                (value, account_id),
            )

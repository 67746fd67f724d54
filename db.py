# db.py — psycopg3 connection settings, pooled Database handle, UnitOfWork

import os
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from psycopg import conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

# =============================================================================
# DB configuration
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL")
DB_HOST = os.getenv("DB_HOST") or "127.0.0.1"  # a /cloudsql/<instance> socket dir works too
DB_PORT = int(os.getenv("DB_PORT") or 5432)
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DB_POOL_MIN = int(os.getenv("DB_POOL_MIN") or 1)
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

_DEFAULTS = {"connect_timeout": 10, "options": "-c search_path=public"}


def parse_database_url(url: str) -> dict:
    """libpq keyword arguments for a postgres URL (``+psycopg`` style schemes accepted)."""
    scheme, sep, rest = (url or "").partition("://")
    if not sep or scheme.split("+", 1)[0] not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported DATABASE_URL scheme '{scheme}'")
    kwargs = dict(_DEFAULTS, **conninfo.conninfo_to_dict("postgresql://" + rest))
    if not kwargs.get("dbname"):
        raise ValueError("DATABASE_URL missing dbname")
    if "port" in kwargs:
        kwargs["port"] = int(kwargs["port"])
    return kwargs


def connection_kwargs() -> dict:
    if DATABASE_URL:
        kwargs, origin = parse_database_url(DATABASE_URL), "DATABASE_URL"
    else:
        if not all([DB_NAME, DB_USER, DB_PASS]):
            raise RuntimeError("Set DATABASE_URL, or DB_NAME, DB_USER and DB_PASS.")
        kwargs = dict(_DEFAULTS, host=DB_HOST, port=DB_PORT, dbname=DB_NAME, user=DB_USER, password=DB_PASS)
        origin = "DB_* settings"
    print(f"[DB] {origin}: {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}/{kwargs['dbname']}")
    return kwargs


# =============================================================================
# Unit of work
# =============================================================================
class UnitOfWorkAborted(RuntimeError):
    """A statement flagged ``require_row`` produced no row; the batch was rolled back."""

    def __init__(self, index: int, sql: str):
        super().__init__(f"statement #{index} returned no row")
        self.index = index
        self.sql = sql


class UnitOfWork:
    """
    An ordered batch of writes that become visible together or not at all.

    Statements are only collected by ``add``; nothing touches the database
    until ``commit``, which runs the whole batch on one connection inside a
    single transaction. Any exception rolls every statement back and is
    re-raised to the caller.
    """

    def __init__(self, connection_factory: Callable):
        self._connection_factory = connection_factory
        self._statements: List[Tuple[str, Sequence[Any], bool]] = []
        self.committed = False

    def add(self, sql: str, params: Optional[Sequence[Any]] = None, require_row: bool = False) -> "UnitOfWork":
        if self.committed:
            raise RuntimeError("unit of work already committed")
        self._statements.append((sql, tuple(params or ()), require_row))
        return self

    def __len__(self) -> int:
        return len(self._statements)

    def commit(self) -> List[List[Dict[str, Any]]]:
        """Run the batch atomically. Returns the rows each statement produced."""
        if self.committed:
            raise RuntimeError("unit of work already committed")
        results: List[List[Dict[str, Any]]] = []
        with self._connection_factory() as conn:
            with conn.transaction():
                with conn.cursor(row_factory=dict_row) as cur:
                    for index, (sql, params, require_row) in enumerate(self._statements):
                        if params:
                            cur.execute(sql, params)
                        else:
                            cur.execute(sql)  # DDL bodies may contain a literal '%'
                        rows = cur.fetchall() if cur.description else []
                        if require_row and not rows:
                            raise UnitOfWorkAborted(index, sql)
                        results.append(rows)
        self.committed = True
        return results


# =============================================================================
# Database handle (owned by the hosting process, injected everywhere else)
# =============================================================================
class Database:
    def __init__(self, conn_str: Optional[str] = None, min_size: int = DB_POOL_MIN, max_size: int = DB_POOL_MAX):
        self._conn_str = conn_str
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[ConnectionPool] = None

    def open(self):
        if self._pool is not None:
            return
        if not self._conn_str:
            self._conn_str = conninfo.make_conninfo(**connection_kwargs())
        self._pool = ConnectionPool(
            self._conn_str, min_size=self._min_size, max_size=self._max_size, open=True
        )

    def close(self):
        if self._pool is not None:
            self._pool.close()
            self._pool = None

    @contextmanager
    def connection(self):
        if self._pool is None:
            self.open()
        # pool commits on clean exit, rolls back on exception
        with self._pool.connection() as conn:
            yield conn

    def fetch_all(self, q: str, params=None) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(q, params or ())
                return cur.fetchall()

    def fetch_one(self, q: str, params=None) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(q, params)
        return rows[0] if rows else None

    def execute(self, q: str, params=None):
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(q, params or ())
            conn.commit()

    def execute_returning(self, q: str, params=None) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(q, params or ())
                rows = cur.fetchall()
            conn.commit()
            return rows

    def unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self.connection)

from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator

from msgguard.core.errors import StoreUnavailable


def connect(path: str, *, timeout: float = 10.0) -> sqlite3.Connection:
    """
    One connection per operation; WAL so readers never block the writer.
    """
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    conn = sqlite3.connect(path, timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def day_start(ts: float) -> float:
    """
    UTC midnight for an epoch timestamp.
    """
    return float(int(float(ts)) - int(float(ts)) % 86400)


class SqliteStore:
    """
    Base for the bundled stores: serialized writes per store instance, one
    short-lived connection per operation, sqlite failures surfaced as
    StoreUnavailable. Constraint violations propagate unchanged.
    """

    def __init__(self, *, db_path: str, timeout: float = 10.0):
        self.db_path = str(db_path)
        self.timeout = float(timeout)
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        raise NotImplementedError

    def _conn(self) -> sqlite3.Connection:
        try:
            return connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StoreUnavailable(store=type(self).__name__, detail=str(e)) from e

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._conn()
            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                raise
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreUnavailable(store=type(self).__name__, detail=str(e)) from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._conn()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreUnavailable(store=type(self).__name__, detail=str(e)) from e
        finally:
            conn.close()

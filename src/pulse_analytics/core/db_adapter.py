"""
Database Adapter - SQLite connection helpers

Every store opens a short-lived connection per operation (``get_connection``)
and closes it when done. Connections are opened in WAL mode with a busy
timeout so that concurrent readers and the per-entity writers in a batch run
can share one database file.

Long aggregations run under ``query_deadline`` which aborts the statement via
SQLite's progress handler and surfaces ``UpstreamUnavailable``.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from .exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)

# Progress handler granularity (SQLite VM instructions between checks)
_PROGRESS_STEPS = 1000


def get_connection(db_path: str, busy_timeout: float = 30.0) -> sqlite3.Connection:
    """
    Open a SQLite connection configured for concurrent use.

    Args:
        db_path: Path to the database file
        busy_timeout: Seconds to wait on a locked database before failing

    Returns:
        Connection with ``sqlite3.Row`` row factory
    """
    conn = sqlite3.connect(db_path, timeout=busy_timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def query_deadline(conn: sqlite3.Connection, seconds: Optional[float], what: str = "query") -> Iterator[sqlite3.Connection]:
    """
    Abort any statement on ``conn`` that runs past ``seconds``.

    Raises:
        UpstreamUnavailable: if the deadline interrupted a statement
    """
    if not seconds:
        yield conn
        return

    deadline = time.monotonic() + seconds
    fired = []

    def _check() -> int:
        if time.monotonic() > deadline:
            fired.append(True)
            return 1
        return 0

    conn.set_progress_handler(_check, _PROGRESS_STEPS)
    try:
        yield conn
    except Exception as e:
        # pandas re-wraps sqlite errors, so rely on the handler flag
        if fired:
            logger.warning(f"{what} exceeded {seconds:.1f}s deadline")
            raise UpstreamUnavailable(
                f"{what} timed out after {seconds:.1f}s",
                details={"timeout": seconds},
            ) from e
        raise
    finally:
        conn.set_progress_handler(None, 0)


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Run a block inside ``BEGIN IMMEDIATE`` so the write lock is taken up front.

    Commits on success, rolls back on any exception.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()

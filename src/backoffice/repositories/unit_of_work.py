from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Protocol


class UnitOfWork(Protocol):
    repo: object
    cur: sqlite3.Cursor

    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...


class SqliteUnitOfWork:
    """One write transaction on the shared store.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so two units of
    work that read-then-write (stock checks, numbering) run one after the other.
    Commits on a clean exit, rolls back on any exception.
    """

    def __init__(self, repo, timeout: float | None = None):
        self.repo = repo
        self.timeout = timeout
        self.conn: Optional[sqlite3.Connection] = None
        self.cur: Optional[sqlite3.Cursor] = None

    def __enter__(self) -> "SqliteUnitOfWork":
        self.conn = self.repo._conn(timeout=self.timeout, autocommit=True)
        self.cur = self.conn.cursor()
        self.cur.execute("BEGIN IMMEDIATE")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self.conn.execute("COMMIT")
            else:
                self.conn.execute("ROLLBACK")
        finally:
            self.conn.close()
            self.conn = None
            self.cur = None


@contextmanager
def joined(uow: UnitOfWork | None, factory: Callable[[], UnitOfWork]) -> Iterator[UnitOfWork]:
    """Run inside the caller's unit of work when given one, else open a new one."""
    if uow is not None:
        yield uow
        return
    with factory() as own:
        yield own

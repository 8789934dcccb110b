"""
credentials/repository.py -- Generic SQLAlchemy Core repository.

Pattern: Repository + Data Mapper, implemented once and configured per table.
A Repository is composed from:
  table         -- the SQLAlchemy Table it reads and writes
  mapper        -- row -> domain object (the Data Mapper half)
  id_field      -- primary key column name, used to re-fetch inserted rows
  created_field -- column stamped with the clock on insert (or None)

Callers never subclass it; CredentialStore holds one as a collaborator.

Transactions: every method takes an optional `conn`. With a Connection, the
statement runs inside the caller's transaction and nothing is committed here.
With None, the method opens and commits its own single-statement transaction
via engine.begin().

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar, Union

from sqlalchemy import Table, and_, true
from sqlalchemy.engine import Connection, Engine, Row
from sqlalchemy.sql.elements import ColumnElement

T = TypeVar("T")

# Either a column -> value mapping (equality on every key) or a raw clause.
Predicate = Union[Mapping[str, Any], ColumnElement]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Repository(Generic[T]):
    """Table-agnostic insert / fetch / query / hard_delete.

    Usage:
        repo = Repository(engine, _credentials, _row_to_credential)
        cred = repo.insert({"user_id": "u1", ...})
        same = repo.fetch({"id": cred.id})
        with repo.transaction() as conn:
            repo.hard_delete({"user_id": "u1"}, conn)
            repo.insert({...}, conn)
    """

    def __init__(
        self,
        engine: Engine,
        table: Table,
        mapper: Callable[[Row], T],
        id_field: str = "id",
        created_field: str | None = "created_at",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.table = table
        self.mapper = mapper
        self.id_field = id_field
        self.created_field = created_field
        self.clock = clock

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a Connection inside BEGIN ... COMMIT (ROLLBACK on exception)."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _scope(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as own:
                yield own

    def _where(self, predicate: Predicate) -> ColumnElement:
        if isinstance(predicate, Mapping):
            clauses = [self.table.c[name] == value for name, value in predicate.items()]
            return and_(true(), *clauses)
        return predicate

    def insert(self, values: Mapping[str, Any], conn: Connection | None = None) -> T:
        """Insert one row and return it re-fetched, with its assigned id."""
        row_values = dict(values)
        if self.created_field and row_values.get(self.created_field) is None:
            row_values[self.created_field] = self.clock()
        with self._scope(conn) as c:
            result = c.execute(self.table.insert().values(**row_values))
            new_id = result.inserted_primary_key[0]
            row = c.execute(self.table.select().where(self.table.c[self.id_field] == new_id)).fetchone()
        return self.mapper(row)

    def fetch(self, predicate: Predicate, conn: Connection | None = None) -> T | None:
        """Return the first matching row (lowest id) or None."""
        stmt = self.table.select().where(self._where(predicate)).order_by(self.table.c[self.id_field]).limit(1)
        with self._scope(conn) as c:
            row = c.execute(stmt).fetchone()
        return self.mapper(row) if row is not None else None

    def query(self, predicate: Predicate, conn: Connection | None = None) -> list[T]:
        """Return every matching row, ordered by id."""
        stmt = self.table.select().where(self._where(predicate)).order_by(self.table.c[self.id_field])
        with self._scope(conn) as c:
            rows = c.execute(stmt).fetchall()
        return [self.mapper(r) for r in rows]

    def hard_delete(self, predicate: Predicate, conn: Connection | None = None) -> int:
        """Permanently delete matching rows. Returns the number removed."""
        with self._scope(conn) as c:
            result = c.execute(self.table.delete().where(self._where(predicate)))
        return result.rowcount

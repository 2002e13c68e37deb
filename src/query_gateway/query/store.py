"""Thin SQLAlchemy data-access client used by the query executor."""

from __future__ import annotations

import threading
from typing import Any

from sqlalchemy import MetaData, Table, create_engine, inspect
from sqlalchemy.engine import Engine, Row
from sqlalchemy.sql import Select


class SqlStore:
    """Introspects and reads a relational store.

    Only ``Select`` statements are accepted by :meth:`fetch`; the class exposes
    no way to issue DML or raw SQL.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._metadata = MetaData()
        self._lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str, **engine_kwargs: Any) -> "SqlStore":
        return cls(create_engine(url, pool_pre_ping=True, **engine_kwargs))

    def relation_names(self) -> list[str]:
        """Return table and view names of the default schema."""

        inspector = inspect(self.engine)
        names = set(inspector.get_table_names()) | set(inspector.get_view_names())
        return sorted(names)

    def reflect(self, name: str) -> Table:
        with self._lock:
            return Table(name, self._metadata, autoload_with=self.engine)

    def fetch(self, statement: Select) -> list[Row]:
        with self.engine.connect() as conn:
            return list(conn.execute(statement))

"""PostgreSQL relational store (psycopg 3)."""

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from ..errors import TransientStoreError
from .base import RelationalStore
from .retry import retried

logger = logging.getLogger(__name__)


@contextmanager
def translate_errors(operation: str):
    """Map connection-level failures onto TransientStoreError."""
    try:
        yield
    except psycopg.OperationalError as e:
        raise TransientStoreError(f"PostgreSQL {operation} failed: {e}") from e


def _table(name: str) -> sql.Composable:
    if "." in name:
        schema, table = name.split(".", 1)
        return sql.Identifier(schema, table)
    return sql.Identifier(name)


class PostgresRelationalStore(RelationalStore):
    """
    Target relational store backed by PostgreSQL.

    Each call opens a short-lived connection; every statement batch runs in
    its own transaction. Identifiers are always quoted (the target schema
    uses camelCase column names).
    """

    def __init__(self, dsn: str, connect_timeout: int = 10, **kwargs):
        super().__init__(**kwargs)
        self._dsn = dsn
        self.connect_timeout = connect_timeout

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn, connect_timeout=self.connect_timeout, row_factory=dict_row)

    @retried
    def ping(self) -> bool:
        with translate_errors("ping"):
            with self._connect() as conn:
                conn.execute("select 1")
        return True

    @retried
    def execute(self, statement, params=None) -> int:
        with translate_errors("execute"):
            with self._connect() as conn:
                cur = conn.execute(statement, params)
                return cur.rowcount

    @retried
    def query(self, statement, params=None) -> List[Dict[str, Any]]:
        with translate_errors("query"):
            with self._connect() as conn:
                return conn.execute(statement, params).fetchall()

    def _where(self, where: Optional[Dict[str, Any]]):
        if not where:
            return sql.SQL(""), []
        clauses = [sql.SQL("{} = %s").format(sql.Identifier(col)) for col in where]
        return sql.SQL(" where ") + sql.SQL(" and ").join(clauses), list(where.values())

    def list_rows(self, table, where=None) -> List[Dict[str, Any]]:
        clause, params = self._where(where)
        stmt = sql.SQL("select * from {}").format(_table(table)) + clause
        return self.query(stmt, params)

    def count(self, table) -> int:
        rows = self.query(sql.SQL("select count(*) as n from {}").format(_table(table)))
        return rows[0]["n"]

    def _insert(self, conn: psycopg.Connection, table: str, row: Dict[str, Any]) -> str:
        row = dict(row)
        row.setdefault("id", str(uuid.uuid4()))
        stmt = sql.SQL("insert into {} ({}) values ({}) returning id::text as id").format(
            _table(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in row),
            sql.SQL(", ").join(sql.Placeholder() for _ in row),
        )
        return conn.execute(stmt, list(row.values())).fetchone()["id"]

    def _update(self, conn, table, row_id, fields, id_column="id") -> int:
        assignments = [sql.SQL("{} = %s").format(sql.Identifier(col)) for col in fields]
        stmt = sql.SQL("update {} set {} where {} = %s").format(
            _table(table),
            sql.SQL(", ").join(assignments),
            sql.Identifier(id_column),
        )
        return conn.execute(stmt, list(fields.values()) + [row_id]).rowcount

    @retried
    def insert_row(self, table, row) -> str:
        with translate_errors(f"insert into {table}"):
            with self._connect() as conn:
                return self._insert(conn, table, row)

    @retried
    def update_row(self, table, row_id, fields, id_column="id") -> bool:
        if not fields:
            return False
        with translate_errors(f"update {table}"):
            with self._connect() as conn:
                return self._update(conn, table, row_id, fields, id_column) > 0

    @retried
    def upsert_by_natural_key(self, table, key_column, row) -> str:
        with translate_errors(f"upsert into {table}"):
            with self._connect() as conn:
                with conn.transaction():
                    existing = conn.execute(
                        sql.SQL("select id::text as id from {} where {} = %s for update").format(
                            _table(table), sql.Identifier(key_column)
                        ),
                        (row[key_column],),
                    ).fetchone()
                    if existing:
                        fields = {k: v for k, v in row.items() if k != "id"}
                        self._update(conn, table, existing["id"], fields)
                        return existing["id"]
                    return self._insert(conn, table, row)

    @retried
    def supersede_and_insert(
        self,
        table,
        subject_column,
        subject_id,
        new_row,
        reason,
        at,
        active_column="isActive",
        deactivated_at_column="deactivatedAt",
        reason_column="deactivationReason",
    ) -> int:
        deactivate = sql.SQL("update {} set {} = false, {} = %s, {} = %s where {} = %s and {} = true").format(
            _table(table),
            sql.Identifier(active_column),
            sql.Identifier(deactivated_at_column),
            sql.Identifier(reason_column),
            sql.Identifier(subject_column),
            sql.Identifier(active_column),
        )
        with translate_errors(f"supersede in {table}"):
            with self._connect() as conn:
                with conn.transaction():
                    deactivated = conn.execute(deactivate, (at, reason, subject_id)).rowcount
                    self._insert(conn, table, dict(new_row, **{active_column: True}))
        logger.debug(f"{table}: superseded {deactivated} active row(s) for {subject_id}")
        return deactivated

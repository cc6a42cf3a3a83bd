import logging
import re
from typing import Any, Callable, Dict, Iterator, List, Optional

import pymysql

from feindexer.config import Settings
from feindexer.errors import DataSourceError

logger = logging.getLogger(__name__)

Params = Optional[Any]

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"invalid table name: {name!r}")
    return name


class Database:
    """Read-mostly MySQL access for one job invocation.

    Lookups and aggregates share one buffered connection. Every ``stream`` call
    opens its own server-side cursor connection, since pymysql cannot run a
    second statement on a connection while an unbuffered result is open.
    """

    def __init__(self, settings: Settings, connect: Callable[..., Any] = pymysql.connect) -> None:
        self.settings = settings
        self._connect = connect
        self._conn = None

    def connect(self, cursorclass):
        try:
            return self._connect(
                host=self.settings.mysql_host,
                port=self.settings.mysql_port,
                user=self.settings.mysql_user,
                password=self.settings.mysql_password,
                database=self.settings.mysql_database,
                charset="utf8mb4",
                cursorclass=cursorclass,
                connect_timeout=self.settings.mysql_connect_timeout_sec,
                read_timeout=self.settings.mysql_read_timeout_sec,
                autocommit=False,
            )
        except pymysql.MySQLError as exc:
            raise DataSourceError(f"MySQL connection failed: {exc}", stage="CONNECT") from exc

    def _lookup_conn(self):
        if self._conn is None:
            self._conn = self.connect(pymysql.cursors.DictCursor)
        return self._conn

    def fetch_all(self, sql: str, params: Params = None) -> List[Dict[str, Any]]:
        try:
            with self._lookup_conn().cursor() as cursor:
                cursor.execute(sql, params)
                return list(cursor.fetchall())
        except pymysql.MySQLError as exc:
            raise DataSourceError(f"Query failed: {exc}", stage="QUERY", detail=sql) from exc

    def fetch_one(self, sql: str, params: Params = None) -> Optional[Dict[str, Any]]:
        try:
            with self._lookup_conn().cursor() as cursor:
                cursor.execute(sql, params)
                return cursor.fetchone()
        except pymysql.MySQLError as exc:
            raise DataSourceError(f"Query failed: {exc}", stage="QUERY", detail=sql) from exc

    def stream(self, sql: str, params: Params = None) -> Iterator[Dict[str, Any]]:
        conn = self.connect(pymysql.cursors.SSDictCursor)
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                for row in cursor:
                    yield row
        except pymysql.MySQLError as exc:
            raise DataSourceError(f"Streaming query failed: {exc}", stage="STREAM", detail=sql) from exc
        finally:
            conn.close()

    def execute(self, sql: str, params: Params = None) -> int:
        conn = self._lookup_conn()
        try:
            with conn.cursor() as cursor:
                affected = cursor.execute(sql, params)
            conn.commit()
            return affected
        except pymysql.MySQLError as exc:
            conn.rollback()
            raise DataSourceError(f"Statement failed: {exc}", stage="EXECUTE", detail=sql) from exc

    def materialize_closure(self, table: str, edge_sql: str) -> int:
        """Store the transitive closure of ``edge_sql`` in ``table``.

        ``edge_sql`` must select ``child_key`` and ``parent_key``. The table gets
        one row per (descendant_key, ancestor_key) pair at any depth.
        """
        table = _check_identifier(table)
        self.drop_table(table)
        self.execute(
            f"CREATE TABLE {table} AS "
            "WITH RECURSIVE closure (descendant_key, ancestor_key) AS ("
            f"SELECT e.child_key, e.parent_key FROM ({edge_sql}) e "
            "UNION "
            "SELECT c.descendant_key, e.parent_key FROM closure c "
            f"JOIN ({edge_sql}) e ON e.child_key = c.ancestor_key"
            ") SELECT descendant_key, ancestor_key FROM closure"
        )
        self.execute(f"CREATE INDEX idx_{table}_descendant ON {table} (descendant_key)")
        row = self.fetch_one(f"SELECT COUNT(*) AS cnt FROM {table}")
        count = int(row["cnt"]) if row and row.get("cnt") is not None else 0
        logger.info("[prepare] materialized %s (%s pairs)", table, count)
        return count

    def drop_table(self, table: str) -> None:
        self.execute(f"DROP TABLE IF EXISTS {_check_identifier(table)}")

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

import json
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest

from feindexer.config import Settings
from feindexer.errors import DataSourceError, DocumentStoreError


def keyed(rows: Iterable[Dict[str, Any]], column: str) -> Callable[[Optional[Dict[str, Any]]], List[Dict[str, Any]]]:
    """Serve ``rows`` as a chunked query filtered on ``column``."""
    rows = list(rows)

    def handler(params):
        if not params:
            return rows
        return [row for row in rows if row[column] is not None and params["start"] < row[column] <= params["stop"]]

    return handler


def bounds(rows: Iterable[Dict[str, Any]], column: str) -> Callable[[Any], List[Dict[str, Any]]]:
    rows = list(rows)

    def handler(params):
        keys = [row[column] for row in rows if row[column] is not None]
        return [{"min_key": min(keys) if keys else None, "max_key": max(keys) if keys else None}]

    return handler


class FakeDataSource:
    def __init__(self, queries: Optional[Dict[str, Any]] = None) -> None:
        self.queries: Dict[str, Any] = dict(queries or {})
        self.calls: List[Any] = []
        self.materialized: List[str] = []
        self.dropped: List[str] = []
        self.fail_stream_on: Optional[Callable[[Any], bool]] = None

    def _rows(self, sql, params):
        self.calls.append((sql, params))
        handler = self.queries[sql]
        rows = handler(params) if callable(handler) else handler
        return [dict(row) for row in rows]

    def fetch_all(self, sql, params=None):
        return self._rows(sql, params)

    def fetch_one(self, sql, params=None):
        rows = self._rows(sql, params)
        return rows[0] if rows else None

    def stream(self, sql, params=None):
        if self.fail_stream_on is not None and self.fail_stream_on(params):
            raise DataSourceError("Lost connection to MySQL server during query", stage="STREAM")
        for row in self._rows(sql, params):
            yield row

    def materialize_closure(self, table, edge_sql):
        self.materialized.append(table)
        return 0

    def drop_table(self, table):
        self.dropped.append(table)


class FakeDocumentStore:
    """In-memory document store speaking the ``OpenSearchClient`` surface."""

    def __init__(self) -> None:
        self.indices: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.mappings: Dict[str, Any] = {}
        self.bulk_calls = 0
        self.refreshes = 0
        self.merges = 0
        self.fail_delete = False
        # bulk call numbers (1-based) that fail as a whole, retryable
        self.fail_calls: set = set()
        # doc id -> statuses returned on successive attempts, then success
        self.item_statuses: Dict[str, List[int]] = {}
        # health checks that time out before one succeeds
        self.throttle_failures = 0

    def maybe_throttle(self) -> None:
        if self.throttle_failures > 0:
            self.throttle_failures -= 1
            raise DocumentStoreError("OpenSearch request timed out", retryable=True)

    def index_exists(self, name):
        return name in self.indices

    def create_index(self, name, mapping=None):
        self.indices[name] = {}
        self.mappings[name] = mapping

    def delete_all(self, name):
        if self.fail_delete:
            raise DocumentStoreError("delete all failed (503)", retryable=True, status_code=503)
        deleted = len(self.indices[name])
        self.indices[name] = {}
        return deleted

    def bulk(self, name, payload: bytes):
        self.bulk_calls += 1
        if self.bulk_calls in self.fail_calls:
            raise DocumentStoreError("OpenSearch request timed out", retryable=True)
        lines = payload.decode("utf-8").strip().split("\n")
        items = []
        for action_line, doc_line in zip(lines[::2], lines[1::2]):
            doc_id = json.loads(action_line)["index"]["_id"]
            statuses = self.item_statuses.get(doc_id)
            if statuses:
                status = statuses.pop(0)
                items.append({"id": doc_id, "status": status, "error": f"rejected with {status}"})
                continue
            self.indices.setdefault(name, {})[doc_id] = json.loads(doc_line)
            items.append({"id": doc_id, "status": 201})
        return items

    def refresh(self, name):
        self.refreshes += 1

    def force_merge(self, name):
        self.merges += 1

    def count(self, name):
        return len(self.indices.get(name, {}))

    def close(self):
        pass


def make_settings(**overrides) -> Settings:
    base = replace(
        Settings.from_env(),
        index_prefix="",
        mapping_dir=None,
        failure_log=None,
        chunk_size=0,
        bulk_size=1000,
        workers=0,
        retry_max=2,
        retry_backoff_sec=0.0,
        max_failures=1000,
        optimize=True,
    )
    return replace(base, **overrides)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return FakeDocumentStore()

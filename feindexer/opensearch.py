import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from feindexer.config import Settings
from feindexer.errors import DocumentStoreError

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = {429, 502, 503, 504}


class OpenSearchClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.base_url = settings.os_url.rstrip("/")
        self.timeout_sec = settings.timeout_sec
        self.health_check_interval_sec = settings.health_check_interval_sec
        self.health_sleep_yellow_sec = settings.health_sleep_yellow_sec
        self.health_sleep_red_sec = settings.health_sleep_red_sec
        self._last_health_check = 0.0
        self._last_health_status = "green"
        if transport is None:
            transport = httpx.HTTPTransport(retries=settings.connect_retries)
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(settings.timeout_sec),
            limits=httpx.Limits(
                max_connections=settings.max_connections,
                max_keepalive_connections=settings.max_connections,
            ),
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def request(
        self,
        method: str,
        path: str,
        body: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, str]:
        try:
            response = self._http.request(method, path, json=body, params=params)
        except httpx.TimeoutException as exc:
            raise DocumentStoreError(f"OpenSearch request timed out: {exc}", retryable=True, stage=path) from exc
        except httpx.TransportError as exc:
            raise DocumentStoreError(f"OpenSearch request failed: {exc}", retryable=True, stage=path) from exc
        return response.status_code, response.text

    def request_raw(self, method: str, path: str, payload: bytes, headers: Dict[str, str]) -> Tuple[int, str]:
        try:
            response = self._http.request(method, path, content=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise DocumentStoreError(f"OpenSearch request timed out: {exc}", retryable=True, stage=path) from exc
        except httpx.TransportError as exc:
            raise DocumentStoreError(f"OpenSearch request failed: {exc}", retryable=True, stage=path) from exc
        return response.status_code, response.text

    def _check(self, status: int, body: str, what: str) -> None:
        if status >= 300:
            raise DocumentStoreError(
                f"{what} failed ({status}): {body}",
                retryable=status in TRANSIENT_STATUSES,
                stage=what,
                status_code=status,
            )

    def cluster_health(self) -> str:
        now = time.time()
        if now - self._last_health_check < self.health_check_interval_sec:
            return self._last_health_status
        status, body = self.request("GET", "/_cluster/health")
        if status >= 300:
            self._last_health_status = "red"
        else:
            data = json.loads(body)
            self._last_health_status = data.get("status", "red")
        self._last_health_check = now
        return self._last_health_status

    def maybe_throttle(self) -> None:
        status = self.cluster_health()
        if status == "red":
            time.sleep(self.health_sleep_red_sec)
        elif status == "yellow":
            time.sleep(self.health_sleep_yellow_sec)

    def index_exists(self, index_name: str) -> bool:
        status, _ = self.request("HEAD", f"/{index_name}")
        return 200 <= status < 300

    def create_index(self, index_name: str, mapping: Optional[Dict[str, Any]] = None) -> None:
        status, body = self.request("PUT", f"/{index_name}", mapping or {})
        self._check(status, body, f"create index {index_name}")

    def delete_all(self, index_name: str) -> int:
        status, body = self.request(
            "POST",
            f"/{index_name}/_delete_by_query",
            {"query": {"match_all": {}}},
            params={"conflicts": "proceed", "refresh": "true", "wait_for_completion": "true"},
        )
        self._check(status, body, f"delete all from {index_name}")
        data = json.loads(body)
        if data.get("failures"):
            raise DocumentStoreError(
                f"delete all from {index_name} reported failures",
                stage="delete_all",
                detail=data["failures"][:10],
            )
        deleted = int(data.get("deleted", 0))
        total = int(data.get("total", deleted))
        conflicts = int(data.get("version_conflicts", 0))
        if conflicts or deleted < total:
            raise DocumentStoreError(
                f"delete all from {index_name} left documents behind "
                f"(deleted {deleted} of {total}, {conflicts} version conflicts)",
                stage="delete_all",
                detail={"deleted": deleted, "total": total, "version_conflicts": conflicts},
            )
        return deleted

    def bulk(self, index_name: str, payload: bytes) -> List[Dict[str, Any]]:
        """Send an NDJSON bulk payload and return one result per action.

        Each result has ``status`` and, for rejected actions, ``error`` (the
        reason string). Whole-request failures raise ``DocumentStoreError``.
        """
        status, body = self.request_raw(
            "POST",
            f"/{index_name}/_bulk",
            payload,
            {"Content-Type": "application/x-ndjson"},
        )
        self._check(status, body, f"bulk {index_name}")
        result = json.loads(body)
        items: List[Dict[str, Any]] = []
        for item in result.get("items", []):
            action = item.get("index") or item.get("create") or item.get("update") or {}
            entry: Dict[str, Any] = {"id": action.get("_id"), "status": action.get("status")}
            error_info = action.get("error")
            if error_info:
                entry["error"] = error_info.get("reason") if isinstance(error_info, dict) else str(error_info)
            items.append(entry)
        return items

    def refresh(self, index_name: str) -> None:
        status, body = self.request("POST", f"/{index_name}/_refresh")
        self._check(status, body, f"refresh {index_name}")

    def force_merge(self, index_name: str) -> None:
        status, body = self.request(
            "POST",
            f"/{index_name}/_forcemerge",
            params={"only_expunge_deletes": "true"},
        )
        self._check(status, body, f"forcemerge {index_name}")

    def count(self, index_name: str) -> int:
        status, body = self.request("GET", f"/{index_name}/_count")
        self._check(status, body, f"count {index_name}")
        return json.loads(body).get("count", 0)

import json
import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from feindexer.document import Document
from feindexer.errors import DocumentStoreError
from feindexer.models import RunResult
from feindexer.opensearch import TRANSIENT_STATUSES

logger = logging.getLogger(__name__)

# (doc_id, action_line, doc_line)
Pending = List[Tuple[str, str, str]]


class BatchWriter:
    """Buffers documents and sends them to the store as bulk requests.

    With ``workers > 0`` sends run on a bounded thread pool so that the next
    batch can be assembled while the previous one is in flight.
    """

    def __init__(
        self,
        store,
        index: str,
        id_field: str,
        batch_size: int,
        retry_max: int,
        retry_backoff_sec: float,
        workers: int = 0,
        result: Optional[RunResult] = None,
        failure_log: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.store = store
        self.index = index
        self.id_field = id_field
        self.batch_size = batch_size
        self.retry_max = retry_max
        self.retry_backoff_sec = retry_backoff_sec
        self.workers = workers
        self.result = result or RunResult(indexer=index, index=index)
        self.failure_log = failure_log
        self._sleep = sleep
        self._buffer: List[Document] = []
        self._lock = threading.Lock()
        self._in_flight: Deque[Future] = deque()
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"bulk-{index}") if workers > 0 else None
        self.batches_sent = 0

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def add(self, doc: Document) -> None:
        self._buffer.append(doc)
        if len(self._buffer) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        if not self._buffer:
            return
        batch = self._buffer
        self._buffer = []
        if self._pool is None:
            self._send(batch)
            return
        self._in_flight.append(self._pool.submit(self._send, batch))
        while len(self._in_flight) > self.workers:
            self._in_flight.popleft().result()

    def drain(self) -> None:
        while self._in_flight:
            self._in_flight.popleft().result()

    def close(self) -> None:
        try:
            self.drain()
        finally:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None

    def commit_and_optimize(self, optimize: bool = True) -> None:
        self.flush()
        self.drain()
        self.store.refresh(self.index)
        if optimize:
            logger.info("[commit] %s: force merge", self.index)
            self.store.force_merge(self.index)

    def _serialize(self, batch: List[Document]) -> Pending:
        pending: Pending = []
        for doc in batch:
            doc_id = str(doc.get(self.id_field))
            action_line = json.dumps({"index": {"_id": doc_id}})
            doc_line = json.dumps(doc.to_dict(), ensure_ascii=False, default=str)
            pending.append((doc_id, action_line, doc_line))
        return pending

    def _send(self, batch: List[Document]) -> None:
        pending = self._serialize(batch)
        indexed = 0
        attempt = 0

        while pending:
            payload = "\n".join(line for _, action_line, doc_line in pending for line in (action_line, doc_line)) + "\n"
            try:
                self.store.maybe_throttle()
                items = self.store.bulk(self.index, payload.encode("utf-8"))
            except DocumentStoreError as exc:
                if not exc.retryable or attempt >= self.retry_max:
                    logger.error("[bulk] %s: batch of %s failed: %s", self.index, len(pending), exc)
                    self._record_failures(pending, str(exc), exc.status_code)
                    break
                sleep_for = self.retry_backoff_sec * (2 ** attempt)
                logger.warning(
                    "[bulk] %s: %s, retrying in %.1fs (attempt %s/%s)",
                    self.index,
                    exc,
                    sleep_for,
                    attempt + 1,
                    self.retry_max,
                )
                self._count_retries(len(pending))
                self._sleep(sleep_for)
                attempt += 1
                continue
            except Exception as exc:
                logger.exception("[bulk] %s: batch of %s failed unexpectedly", self.index, len(pending))
                self._record_failures(pending, str(exc), None)
                break

            retry_pending: Pending = []
            for idx, entry in enumerate(pending):
                item = items[idx] if idx < len(items) else {"status": None, "error": "missing bulk item"}
                if not item.get("error"):
                    indexed += 1
                    continue
                status_code = item.get("status")
                if status_code in TRANSIENT_STATUSES and attempt < self.retry_max:
                    retry_pending.append(entry)
                else:
                    self._record_failures([entry], item.get("error"), status_code)

            if not retry_pending:
                break
            self._count_retries(len(retry_pending))
            pending = retry_pending
            sleep_for = self.retry_backoff_sec * (2 ** attempt)
            attempt += 1
            logger.warning("[bulk] %s: retrying %s rejected items in %.1fs", self.index, len(pending), sleep_for)
            self._sleep(sleep_for)

        with self._lock:
            self.result.documents_written += indexed
            self.batches_sent += 1
        logger.debug("[bulk] %s: batch done, indexed=%s", self.index, indexed)

    def _count_retries(self, count: int) -> None:
        with self._lock:
            self.result.retries += count

    def _record_failures(self, entries: Pending, reason: Optional[str], status_code: Optional[int]) -> None:
        with self._lock:
            self.result.write_failures += len(entries)
            for doc_id, _, _ in entries:
                self.result.record_failed_id(doc_id)
            if self.failure_log is not None:
                with open(self.failure_log, "a", encoding="utf-8") as handle:
                    for doc_id, _, doc_line in entries:
                        record: Dict[str, Any] = {
                            "index": self.index,
                            "id": doc_id,
                            "status": status_code,
                            "reason": reason,
                            "doc": json.loads(doc_line),
                        }
                        handle.write(json.dumps(record, ensure_ascii=False) + "\n")

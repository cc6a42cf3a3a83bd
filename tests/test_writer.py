import json

import pytest

from feindexer.document import Document
from feindexer.errors import DocumentStoreError
from feindexer.models import RunResult
from feindexer.writer import BatchWriter


def _docs(count):
    return [Document({"key": str(i), "symbol": f"Gene{i}"}) for i in range(1, count + 1)]


def _writer(store, **kwargs):
    params = {"batch_size": 2, "retry_max": 1, "retry_backoff_sec": 0.5, "sleep": lambda seconds: None}
    params.update(kwargs)
    return BatchWriter(store, "marker", "key", result=RunResult(indexer="marker", index="marker"), **params)


@pytest.mark.parametrize("batch_size", [1, 2, 3, 7, 10, 11, 100])
def test_every_added_document_reaches_the_store(store, batch_size):
    writer = _writer(store, batch_size=batch_size)

    for doc in _docs(10):
        writer.add(doc)
    writer.flush()
    writer.close()

    assert set(store.indices["marker"]) == {str(i) for i in range(1, 11)}
    assert writer.result.documents_written == 10
    assert writer.pending == 0


def test_add_flushes_when_batch_is_full(store):
    writer = _writer(store, batch_size=3)

    for doc in _docs(7):
        writer.add(doc)

    assert store.bulk_calls == 2
    assert writer.pending == 1


def test_failed_second_batch_is_retried_and_recovers(store):
    store.fail_calls = {2}
    sleeps = []
    writer = _writer(store, batch_size=2, retry_max=1, sleep=sleeps.append)

    for doc in _docs(6):
        writer.add(doc)
    writer.flush()

    assert len(store.indices["marker"]) == 6
    assert store.bulk_calls == 4
    assert writer.result.write_failures == 0
    assert writer.result.retries == 2
    assert sleeps == [0.5]


def test_exhausted_retries_are_recorded_not_dropped(store, tmp_path):
    store.fail_calls = {1, 2}
    failure_log = tmp_path / "failures.ndjson"
    writer = _writer(store, retry_max=1, failure_log=failure_log)

    for doc in _docs(2):
        writer.add(doc)

    assert writer.result.write_failures == 2
    assert writer.result.failed_ids == ["1", "2"]
    records = [json.loads(line) for line in failure_log.read_text(encoding="utf-8").splitlines()]
    assert [record["id"] for record in records] == ["1", "2"]
    assert records[0]["doc"] == {"key": "1", "symbol": "Gene1"}
    assert records[0]["index"] == "marker"


def test_non_retryable_request_failure_is_not_retried(store):
    class RejectingStore(type(store)):
        def bulk(self, name, payload):
            self.bulk_calls += 1
            raise DocumentStoreError("bulk marker failed (400): mapper_parsing_exception", status_code=400)

    rejecting = RejectingStore()
    writer = _writer(rejecting, retry_max=3)

    for doc in _docs(2):
        writer.add(doc)

    assert rejecting.bulk_calls == 1
    assert writer.result.write_failures == 2


def test_transient_item_rejections_retry_only_those_items(store):
    store.item_statuses = {"2": [429]}
    sent = []
    original_bulk = store.bulk

    def recording_bulk(name, payload):
        sent.append(payload.decode("utf-8").count("\n") // 2)
        return original_bulk(name, payload)

    store.bulk = recording_bulk
    writer = _writer(store, batch_size=3, retry_max=2)

    for doc in _docs(3):
        writer.add(doc)

    assert sent == [3, 1]
    assert set(store.indices["marker"]) == {"1", "2", "3"}
    assert writer.result.retries == 1
    assert writer.result.write_failures == 0


def test_permanent_item_rejection_counts_as_failure(store):
    store.item_statuses = {"3": [400]}
    writer = _writer(store, batch_size=3, retry_max=2)

    for doc in _docs(3):
        writer.add(doc)

    assert writer.result.write_failures == 1
    assert writer.result.failed_ids == ["3"]
    assert writer.result.documents_written == 2


def test_worker_pool_sends_every_batch(store):
    writer = _writer(store, batch_size=5, workers=3)

    for doc in _docs(103):
        writer.add(doc)
    writer.flush()
    writer.drain()

    assert len(store.indices["marker"]) == 103
    assert writer.result.documents_written == 103
    assert writer.batches_sent == 21
    writer.close()


def test_health_check_timeout_is_retried(store):
    store.throttle_failures = 1
    writer = _writer(store, retry_max=2)

    for doc in _docs(2):
        writer.add(doc)

    assert set(store.indices["marker"]) == {"1", "2"}
    assert writer.result.retries == 2
    assert writer.result.write_failures == 0


def test_health_check_timeouts_past_retries_are_recorded(store):
    store.throttle_failures = 5
    writer = _writer(store, retry_max=1)

    for doc in _docs(2):
        writer.add(doc)

    assert store.bulk_calls == 0
    assert writer.result.write_failures == 2
    assert writer.result.failed_ids == ["1", "2"]


def test_pooled_failed_send_keeps_the_next_batch(store):
    store.fail_calls = {1, 2}
    writer = _writer(store, batch_size=2, retry_max=1, workers=1)

    for doc in _docs(4):
        writer.add(doc)
    writer.flush()
    writer.close()

    assert set(store.indices["marker"]) == {"3", "4"}
    assert writer.result.documents_written == 2
    assert writer.result.write_failures == 2
    assert writer.result.failed_ids == ["1", "2"]
    assert writer.result.documents_written + writer.result.write_failures == 4


def test_unexpected_send_error_is_recorded_in_pooled_mode(store):
    class BrokenStore(type(store)):
        def bulk(self, name, payload):
            if self.bulk_calls == 0:
                self.bulk_calls += 1
                raise RuntimeError("connection pool is closed")
            return super().bulk(name, payload)

    broken = BrokenStore()
    writer = _writer(broken, batch_size=2, retry_max=3, workers=1)

    for doc in _docs(4):
        writer.add(doc)
    writer.close()

    assert broken.bulk_calls == 2
    assert set(broken.indices["marker"]) == {"3", "4"}
    assert writer.result.failed_ids == ["1", "2"]
    assert writer.batches_sent == 2


def test_commit_and_optimize(store):
    writer = _writer(store, batch_size=10)
    writer.add(_docs(1)[0])

    writer.commit_and_optimize(optimize=False)
    assert store.refreshes == 1
    assert store.merges == 0
    assert "1" in store.indices["marker"]

    writer.commit_and_optimize(optimize=True)
    assert store.merges == 1


def test_batch_size_must_be_positive(store):
    with pytest.raises(ValueError):
        _writer(store, batch_size=0)

import copy
import json

import httpx
import pytest

from conftest import FakeDataSource, FakeDocumentStore, bounds, keyed, make_settings
from feindexer.assembler import Collapse, DerivedField, LookupField, ScalarField
from feindexer.errors import ConfigurationError
from feindexer.lookup import LookupSpec
from feindexer.models import RunState
from feindexer.opensearch import OpenSearchClient
from feindexer.runner import IndexerRunner
from feindexer.spec import ClosureStep, IndexerSpec

PRIMARY = "SELECT marker_key, symbol FROM marker WHERE marker_key > %(start)s AND marker_key <= %(stop)s"
BOUNDS = "SELECT MIN(marker_key) AS min_key, MAX(marker_key) AS max_key FROM marker"
IDS = "SELECT marker_key, acc_id FROM marker_id WHERE marker_key > %(start)s AND marker_key <= %(stop)s"
TYPES = "SELECT marker_key, marker_type FROM marker_type"
JOURNALS = "SELECT DISTINCT journal FROM reference WHERE journal IS NOT NULL"

MARKERS = [{"marker_key": key, "symbol": f"Gene{key}"} for key in range(1, 11)]
MARKER_IDS = [{"marker_key": key, "acc_id": f"MGI:{key}"} for key in range(1, 11)] + [
    {"marker_key": 3, "acc_id": "MGI:3b"}
]
MARKER_TYPES = [{"marker_key": key, "marker_type": "gene" if key % 2 else "QTL"} for key in range(1, 11)]

FULL_STATES = [
    RunState.IDLE,
    RunState.CLEARING_INDEX,
    RunState.BUILDING_LOOKUPS,
    RunState.STREAMING,
    RunState.FINAL_FLUSH,
    RunState.COMMITTING,
    RunState.DONE,
]


def _source(markers=MARKERS):
    return FakeDataSource(
        {
            PRIMARY: keyed(markers, "marker_key"),
            BOUNDS: bounds(markers, "marker_key"),
            IDS: keyed(MARKER_IDS, "marker_key"),
            TYPES: MARKER_TYPES,
            JOURNALS: [{"journal": "Genetics"}, {"journal": "Mol Cell Biol"}],
        }
    )


def _spec(**kwargs):
    params = dict(
        name="marker",
        index="marker",
        id_field="markerKey",
        id_column="marker_key",
        query=PRIMARY,
        bounds_sql=BOUNDS,
        chunk_size=4,
        lookups=[
            LookupSpec(name="types", sql=TYPES, key_column="marker_key", value_column="marker_type"),
            LookupSpec(name="ids", sql=IDS, key_column="marker_key", value_column="acc_id", chunked=True),
        ],
        rules=[
            ScalarField("symbol", required=True),
            LookupField("ids", "accId", "marker_key"),
            LookupField("types", "markerType", "marker_key", collapse=Collapse.FIRST),
        ],
    )
    params.update(kwargs)
    return IndexerSpec(**params)


def _run(spec=None, source=None, store=None, **settings):
    source = source or _source()
    store = store or FakeDocumentStore()
    result = IndexerRunner(make_settings(**settings), source, store).run(spec or _spec())
    return result, source, store


def test_successful_run_walks_every_state():
    result, _, store = _run()

    assert result.states == FULL_STATES
    assert result.state == RunState.DONE
    assert result.failed is False
    assert result.rows_processed == 10
    assert result.documents_written == 10
    assert result.chunks_completed == 3
    assert result.store_count == 10
    assert result.finished_at is not None
    assert store.indices["marker"]["3"] == {
        "markerKey": "3",
        "symbol": "Gene3",
        "accId": ["MGI:3", "MGI:3b"],
        "markerType": "gene",
    }
    assert store.refreshes >= 2
    assert store.merges == 1


def test_second_run_replaces_stale_documents_and_is_idempotent():
    store = FakeDocumentStore()
    store.indices["marker"] = {"99": {"markerKey": "99", "symbol": "Stale"}}

    _run(store=store)
    first = copy.deepcopy(store.indices["marker"])
    _run(store=store)

    assert "99" not in first
    assert store.indices["marker"] == first


def test_clear_failure_fails_before_any_write():
    store = FakeDocumentStore()
    store.indices["marker"] = {}
    store.fail_delete = True

    result, source, store = _run(store=store)

    assert result.state == RunState.FAILED
    assert result.states == [RunState.IDLE, RunState.CLEARING_INDEX, RunState.FAILED]
    assert store.bulk_calls == 0
    assert source.calls == []
    assert result.errors[0]["type"] == "ClearIndexError"


def test_clear_with_version_conflicts_fails_before_any_write():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        if request.method == "HEAD":
            return httpx.Response(200)
        return httpx.Response(200, json={"total": 10, "deleted": 9, "version_conflicts": 1, "failures": []})

    client = OpenSearchClient(make_settings(os_url="http://search.test:9200"), transport=httpx.MockTransport(handler))

    result, source, _ = _run(store=client)

    assert result.state == RunState.FAILED
    assert result.states == [RunState.IDLE, RunState.CLEARING_INDEX, RunState.FAILED]
    assert paths == ["/marker", "/marker/_delete_by_query"]
    assert source.calls == []
    assert result.errors[0]["type"] == "ClearIndexError"


def test_data_source_error_is_fatal():
    source = _source()
    source.fail_stream_on = lambda params: params is not None and params["start"] == 4

    result, _, _ = _run(source=source)

    assert result.state == RunState.FAILED
    assert RunState.COMMITTING not in result.states
    assert result.errors[-1]["type"] == "DataSourceError"
    assert result.failed is True


def test_chunk_error_is_recorded_and_later_chunks_continue():
    def explode_on_six(row, lookups):
        if row["marker_key"] == 6:
            raise ValueError("bad row")
        return row["symbol"].lower()

    spec = _spec(rules=[ScalarField("symbol"), DerivedField("symbolLower", explode_on_six)])

    result, _, store = _run(spec=spec)

    assert result.state == RunState.DONE
    assert result.chunks_failed == 1
    assert result.chunks_completed == 2
    assert result.failed is True
    assert result.errors[0]["chunk"] == {"start": 4, "stop": 8}
    assert set(store.indices["marker"]) == {"1", "2", "3", "4", "5", "9", "10"}


def test_missing_required_field_skips_only_that_document():
    markers = [dict(row) for row in MARKERS]
    markers[1]["symbol"] = None

    result, _, store = _run(source=_source(markers))

    assert result.state == RunState.DONE
    assert result.documents_skipped == 1
    assert result.documents_written == 9
    assert "2" not in store.indices["marker"]
    assert result.failed is False


@pytest.mark.parametrize("chunk_size", [1, 3, 7, 1000])
def test_documents_do_not_depend_on_chunk_size(chunk_size):
    _, _, baseline = _run(chunk_size=0)
    _, _, store = _run(chunk_size=chunk_size)

    assert store.indices["marker"] == baseline.indices["marker"]


def test_too_many_write_failures_fail_the_run():
    store = FakeDocumentStore()
    store.item_statuses = {str(key): [400] for key in range(1, 11)}

    result, _, _ = _run(store=store, bulk_size=2, max_failures=0)

    assert result.state == RunState.FAILED
    assert RunState.STREAMING in result.states
    assert RunState.FINAL_FLUSH not in result.states
    assert result.write_failures >= 1


def test_write_failures_below_threshold_finish_as_partial_failure():
    store = FakeDocumentStore()
    store.item_statuses = {"4": [400]}

    result, _, _ = _run(store=store, max_failures=5)

    assert result.state == RunState.DONE
    assert result.write_failures == 1
    assert result.failed_ids == ["4"]
    assert result.failed is True


def test_pooled_writes_complete_the_run():
    result, _, store = _run(bulk_size=3, workers=2)

    assert result.states == FULL_STATES
    assert result.documents_written == 10
    assert result.store_count == 10
    assert result.failed is False


def test_pooled_send_failure_is_charged_to_writes_not_chunks():
    store = FakeDocumentStore()
    store.fail_calls = {1, 2}
    store.throttle_failures = 1

    result, _, store = _run(store=store, bulk_size=3, workers=1, retry_max=1)

    assert result.state == RunState.DONE
    assert result.chunks_failed == 0
    assert result.chunks_completed == 3
    assert result.write_failures == 3
    assert result.failed_ids == ["1", "2", "3"]
    assert result.documents_written == 7
    assert result.documents_written + result.write_failures == 10


def test_working_tables_are_dropped_on_success_and_failure():
    spec = _spec(prepare=[ClosureStep("fe_marker_closure", "SELECT child_key, parent_key FROM marker_edge")])
    result, source, _ = _run(spec=spec)

    assert result.state == RunState.DONE
    assert source.materialized == ["fe_marker_closure"]
    assert source.dropped == ["fe_marker_closure"]

    failing = _source()
    failing.fail_stream_on = lambda params: True
    result, source, _ = _run(spec=spec, source=failing)

    assert result.state == RunState.FAILED
    assert source.dropped == ["fe_marker_closure"]


def test_missing_index_is_created_with_mapping(tmp_path):
    mapping = {"mappings": {"properties": {"symbol": {"type": "keyword"}}}}
    (tmp_path / "marker.json").write_text(json.dumps(mapping), encoding="utf-8")

    result, _, store = _run(spec=_spec(mapping="marker.json"), mapping_dir=tmp_path, index_prefix="fe_")

    assert result.index == "fe_marker"
    assert store.mappings["fe_marker"] == mapping
    assert len(store.indices["fe_marker"]) == 10


def test_stream_mode_processes_one_pseudo_chunk():
    spec = IndexerSpec(
        name="journalsAC",
        index="journalsAC",
        id_field="journal",
        stream=True,
        query=JOURNALS,
        rules=[ScalarField("journal", "journalSort")],
        optimize=False,
    )

    result, _, store = _run(spec=spec)

    assert result.state == RunState.DONE
    assert result.chunks_completed == 1
    assert store.indices["journalsAC"]["Mol Cell Biol"] == {"journal": "Mol Cell Biol", "journalSort": "Mol Cell Biol"}
    assert store.merges == 0


def test_spec_validation():
    with pytest.raises(ConfigurationError, match="bounds_sql"):
        _spec(bounds_sql=None)
    with pytest.raises(ConfigurationError, match="chunked lookups"):
        _spec(stream=True, bounds_sql=None)
    with pytest.raises(ConfigurationError, match="unknown lookups missing"):
        _spec(rules=[LookupField("missing", "x", "marker_key")])
    with pytest.raises(ConfigurationError, match="cannot expand with chunked"):
        _spec(
            lookups=[
                LookupSpec(name="ids", sql=IDS, key_column="marker_key", value_column="acc_id", chunked=True),
                LookupSpec(name="types", sql=TYPES, key_column="marker_key", value_column="marker_type", expand_with="ids"),
            ],
            rules=[],
        )

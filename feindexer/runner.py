import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from feindexer.assembler import DocumentAssembler
from feindexer.config import Settings
from feindexer.cursor import Chunk, RecordCursor
from feindexer.errors import (
    ClearIndexError,
    ConfigurationError,
    DataSourceError,
    IndexerException,
    MissingFieldError,
    to_error_payload,
)
from feindexer.lookup import LookupCache, build_lookups
from feindexer.models import RunResult, RunState
from feindexer.spec import IndexerSpec
from feindexer.writer import BatchWriter

logger = logging.getLogger(__name__)

MAX_ERRORS = 100


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IndexerRunner:
    """Runs one indexer from index clear to commit.

    The data source and document store are injected; the runner owns neither.
    ``run`` never raises for a failed run, the outcome is in the result.
    """

    def __init__(self, settings: Settings, source, store) -> None:
        self.settings = settings
        self.source = source
        self.store = store

    def run(self, spec: IndexerSpec) -> RunResult:
        index = self.settings.index_name(spec.index)
        result = RunResult(indexer=spec.name, index=index, started_at=utc_now())
        started = time.monotonic()
        working_tables: List[str] = []
        writer: Optional[BatchWriter] = None
        logger.info("[run] %s -> %s", spec.name, index)

        try:
            self._transition(result, RunState.CLEARING_INDEX)
            self._clear(spec, index)

            self._transition(result, RunState.BUILDING_LOOKUPS)
            for step in spec.prepare:
                working_tables.append(step.table)
                self.source.materialize_closure(step.table, step.edge_sql)
            caches = build_lookups(self.source, spec.run_lookups)

            writer = BatchWriter(
                self.store,
                index,
                spec.id_field,
                batch_size=self.settings.bulk_size,
                retry_max=self.settings.retry_max,
                retry_backoff_sec=self.settings.retry_backoff_sec,
                workers=self.settings.workers,
                result=result,
                failure_log=self.settings.failure_log,
            )
            self._transition(result, RunState.STREAMING)
            self._stream(spec, spec.assembler(), caches, writer, result)

            self._transition(result, RunState.FINAL_FLUSH)
            writer.flush()
            writer.drain()
            self._check_failures(result)

            self._transition(result, RunState.COMMITTING)
            writer.commit_and_optimize(spec.optimize and self.settings.optimize)
            result.store_count = self.store.count(index)
            self._transition(result, RunState.DONE)
        except Exception as exc:
            self._fail(result, exc)
        finally:
            if writer is not None:
                try:
                    writer.close()
                except Exception as exc:
                    self._fail(result, exc)
            self._drop_working_tables(working_tables, result)
            result.finished_at = utc_now()
            result.elapsed_sec = round(time.monotonic() - started, 3)

        logger.info(
            "[run] %s %s: rows=%s written=%s skipped=%s chunks=%s/%s write_failures=%s retries=%s store_count=%s (%.1fs)",
            spec.name,
            result.state.value,
            result.rows_processed,
            result.documents_written,
            result.documents_skipped,
            result.chunks_completed,
            result.chunks_completed + result.chunks_failed,
            result.write_failures,
            result.retries,
            result.store_count,
            result.elapsed_sec,
        )
        return result

    def _transition(self, result: RunResult, state: RunState) -> None:
        logger.info("[run] %s: %s -> %s", result.indexer, result.state.value, state.value)
        result.state = state
        result.states.append(state)

    def _fail(self, result: RunResult, exc: Exception) -> None:
        if isinstance(exc, IndexerException):
            logger.error("[run] %s failed in %s: %s", result.indexer, result.state.value, exc)
        else:
            logger.exception("[run] %s failed in %s", result.indexer, result.state.value)
        self._record_error(result, exc)
        if result.state != RunState.FAILED:
            self._transition(result, RunState.FAILED)

    def _record_error(self, result: RunResult, exc: Exception, chunk: Optional[Chunk] = None) -> None:
        if len(result.errors) >= MAX_ERRORS:
            return
        payload = to_error_payload(exc)
        payload["state"] = result.state.value
        if chunk is not None:
            payload["chunk"] = chunk.params
        result.errors.append(payload)

    def _load_mapping(self, spec: IndexerSpec) -> Optional[Dict[str, Any]]:
        if not spec.mapping or self.settings.mapping_dir is None:
            return None
        path = self.settings.mapping_dir / spec.mapping
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"cannot read mapping {path}: {exc}", stage="CLEARING_INDEX") from exc

    def _clear(self, spec: IndexerSpec, index: str) -> None:
        try:
            if not self.store.index_exists(index):
                logger.info("[clear] creating index %s", index)
                self.store.create_index(index, self._load_mapping(spec))
            deleted = self.store.delete_all(index)
            self.store.refresh(index)
        except IndexerException as exc:
            raise ClearIndexError(
                f"could not clear {index}: {exc}",
                retryable=exc.retryable,
                stage="CLEARING_INDEX",
                detail=to_error_payload(exc),
            ) from exc
        logger.info("[clear] %s: deleted %s documents", index, deleted)

    def _chunk_size(self, spec: IndexerSpec) -> int:
        return self.settings.chunk_size if self.settings.chunk_size > 0 else spec.chunk_size

    def _stream(
        self,
        spec: IndexerSpec,
        assembler: DocumentAssembler,
        caches: Mapping[str, LookupCache],
        writer: BatchWriter,
        result: RunResult,
    ) -> None:
        cursor = RecordCursor(self.source)
        if spec.stream:
            self._run_chunk(spec, cursor, assembler, caches, writer, result, None)
            return
        for chunk in cursor.iter_chunks(self._chunk_size(spec), spec.bounds_sql):
            self._run_chunk(spec, cursor, assembler, caches, writer, result, chunk)

    def _run_chunk(
        self,
        spec: IndexerSpec,
        cursor: RecordCursor,
        assembler: DocumentAssembler,
        caches: Mapping[str, LookupCache],
        writer: BatchWriter,
        result: RunResult,
        chunk: Optional[Chunk],
    ) -> None:
        started = time.monotonic()
        rows = 0
        try:
            lookups = caches
            if spec.chunk_lookups:
                lookups = build_lookups(self.source, spec.chunk_lookups, chunk.params, available=caches)
            records = cursor.fetch_chunk(spec.query, chunk) if chunk is not None else cursor.open_stream(spec.query)
            for row in records:
                rows += 1
                result.rows_processed += 1
                try:
                    doc = assembler.assemble(row, lookups)
                except MissingFieldError as exc:
                    result.documents_skipped += 1
                    logger.warning("[assemble] %s: skipped document: %s", spec.name, exc)
                    continue
                writer.add(doc)
        except DataSourceError:
            raise
        except Exception as exc:
            result.chunks_failed += 1
            self._record_error(result, exc, chunk)
            logger.warning("[chunk] %s %s failed after %s rows: %s", spec.name, _describe(chunk), rows, exc)
        else:
            result.chunks_completed += 1
            logger.info(
                "[chunk] %s %s: %s rows (%.2fs)",
                spec.name,
                _describe(chunk),
                rows,
                time.monotonic() - started,
            )
        self._check_failures(result)

    def _check_failures(self, result: RunResult) -> None:
        if result.write_failures > self.settings.max_failures:
            raise IndexerException(
                f"write failures exceeded max_failures ({result.write_failures} > {self.settings.max_failures})",
                stage=result.state.value,
            )

    def _drop_working_tables(self, tables: List[str], result: RunResult) -> None:
        for table in reversed(tables):
            try:
                self.source.drop_table(table)
            except DataSourceError as exc:
                logger.warning("[cleanup] could not drop %s: %s", table, exc)
                self._record_error(result, exc)


def _describe(chunk: Optional[Chunk]) -> str:
    if chunk is None:
        return "stream"
    return f"({chunk.start}, {chunk.stop}]"

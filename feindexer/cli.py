import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from feindexer.catalog import INDEXERS
from feindexer.config import Settings
from feindexer.db import Database
from feindexer.models import RunResult
from feindexer.opensearch import OpenSearchClient
from feindexer.runner import IndexerRunner
from feindexer.spec import IndexerSpec

logger = logging.getLogger("feindexer")

ALL = "all"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feindexer", description="Rebuild front-end search indexes from the database")
    parser.add_argument("names", nargs="*", metavar="NAME", help=f"indexers to run, or '{ALL}' (default)")
    parser.add_argument("--workers", type=int, help="bulk send threads per indexer (0 sends inline)")
    parser.add_argument("--chunk-size", type=int, help="primary key range per chunk, overrides each indexer's default")
    parser.add_argument("--bulk-size", type=int, help="documents per bulk request")
    parser.add_argument("--no-optimize", action="store_true", help="skip the force merge after commit")
    parser.add_argument("--report", type=Path, help="write run results as JSON to this path")
    parser.add_argument("--list", action="store_true", help="list known indexers and exit")
    return parser


def select_indexers(names: Sequence[str], registry: Dict[str, IndexerSpec]) -> List[IndexerSpec]:
    if not names or ALL in names:
        return list(registry.values())
    unknown = [name for name in names if name not in registry]
    if unknown:
        raise KeyError(", ".join(unknown))
    selected: List[IndexerSpec] = []
    for name in names:
        if registry[name] not in selected:
            selected.append(registry[name])
    return selected


def run_indexers(runner: IndexerRunner, specs: Sequence[IndexerSpec]) -> List[RunResult]:
    results: List[RunResult] = []
    for spec in specs:
        results.append(runner.run(spec))
    return results


def write_report(path: Path, results: Sequence[RunResult]) -> None:
    payload = {"results": [result.model_dump(mode="json") for result in results]}
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)


def main(argv: Optional[Sequence[str]] = None, registry: Optional[Dict[str, IndexerSpec]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    registry = INDEXERS if registry is None else registry

    if args.list:
        for name in registry:
            print(name)
        return 0

    try:
        specs = select_indexers(args.names, registry)
    except KeyError as exc:
        parser.error(f"unknown indexer(s): {exc.args[0]}")

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    settings = Settings.from_env().override(
        {
            "workers": args.workers,
            "chunk_size": args.chunk_size,
            "bulk_size": args.bulk_size,
            "optimize": False if args.no_optimize else None,
        }
    )

    source = Database(settings)
    store = OpenSearchClient(settings)
    try:
        results = run_indexers(IndexerRunner(settings, source, store), specs)
    finally:
        store.close()
        source.close()

    if args.report:
        write_report(args.report, results)

    failed = [result.indexer for result in results if result.failed]
    if failed:
        logger.error("[run] failed indexers: %s", ", ".join(failed))
        print("Failed indexers: " + ", ".join(failed), file=sys.stderr)
        return 1
    logger.info("[run] %s indexers completed", len(results))
    return 0

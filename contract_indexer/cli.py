"""
Command-line entry point.

Usage:
    contract-indexer --duckdb-path data/contracts.duckdb download-solc
    contract-indexer --duckdb-path data/contracts.duckdb pre-process \\
        --plain-contracts-root data/organized_contracts
    contract-indexer --duckdb-path data/contracts.duckdb index-functions --workers 8
    contract-indexer --duckdb-path data/contracts.duckdb export-source <id> --output out/
    contract-indexer --duckdb-path data/contracts.duckdb stats
"""

import argparse
import itertools
import logging
import sys
from typing import List, Optional

from . import __version__
from .compiler import CompilationOrchestrator
from .compiler_resolver import SolcResolver
from .config import IndexerConfig
from .errors import AmbiguousVersion, MalformedRecord, StorageError
from .export import UnknownContract, export_contract
from .indexing import IndexingStage
from .preprocessing import PreprocessingStage
from .readers import iter_etherscan_records, iter_plain_contract_records
from .storage import Storage

logger = logging.getLogger(__name__)

NOISY_LOGGERS = (
    "solcx",
    "urllib3",
    "filelock",
)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure root logger with console (+ optional file) handlers."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contract-indexer",
        description=(
            "Ingest verified smart-contract sources into DuckDB, compile each "
            "with its exact solc release and index its external functions."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--duckdb-path", type=str, default=None,
                        help="DuckDB database file (default: $DUCKDB_PATH).")
    parser.add_argument("--solc-dir", type=str, default=None,
                        help="solc binary cache folder (default: py-solc-x's, or $SOLCX_BINARY_PATH).")
    parser.add_argument("--config", type=str, default=None,
                        help="YAML settings file (default: ./indexer.yaml if present).")
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file", type=str, default=None,
                        help="Also write logs to this file.")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("download-solc", help="Fetch and cache solc binaries.")
    p.add_argument("--versions", nargs="+", default=None,
                   help="Only these versions (default: every installable release).")

    p = sub.add_parser("pre-process", help="Load a contract corpus into the contract table.")
    p.add_argument("--etherscan-contracts-root", type=str, default=None,
                   help="Folder of Etherscan getsourcecode JSON files.")
    p.add_argument("--plain-contracts-root", type=str, default=None,
                   help="Bulk dataset folder (one sub-folder per contract with metadata.json).")
    p.add_argument("--chunk-size", type=int, default=None,
                   help="Contracts per insert transaction (default: 500).")
    p.add_argument("--ignore-errors", action="store_true",
                   help="Log and skip malformed records instead of aborting.")

    p = sub.add_parser("index-functions", help="Compile pending contracts and index their functions.")
    p.add_argument("--chunk-size", type=int, default=None,
                   help="Contracts per commit (default: 100).")
    p.add_argument("--workers", type=int, default=None,
                   help="Parallel compilations (default: CPU count).")
    p.add_argument("--timeout", type=float, default=None,
                   help="Per-contract solc time budget in seconds (default: 120).")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--reindex", action="store_true",
                      help="Re-index every contract, replacing existing function rows.")
    mode.add_argument("--retry-failed", action="store_true",
                      help="Retry contracts that previously failed.")
    p.add_argument("--limit", type=int, default=None,
                   help="Process at most this many contracts.")
    p.add_argument("--ignore-errors", action="store_true",
                   help="Exit 0 even when some contracts failed.")

    p = sub.add_parser("export-source", help="Write a stored contract's sources to disk.")
    p.add_argument("contract_id")
    p.add_argument("--output", type=str, default=".",
                   help="Parent folder for the exported contract (default: cwd).")

    sub.add_parser("stats", help="Print contract and function counts.")
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_download_solc(args, config: IndexerConfig) -> int:
    resolver = SolcResolver(config.solc_dir)
    try:
        summary = resolver.download_all(args.versions)
    except AmbiguousVersion as e:
        logger.error(str(e))
        return EXIT_USAGE
    for version, reason in sorted(summary.failed.items()):
        logger.error(f"  {version}: {reason}")
    return EXIT_OK if summary.success else EXIT_FAILURE


def cmd_pre_process(args, config: IndexerConfig, storage: Storage) -> int:
    if not args.etherscan_contracts_root and not args.plain_contracts_root:
        logger.error("pre-process needs --etherscan-contracts-root and/or --plain-contracts-root")
        return EXIT_USAGE

    sources = []
    if args.etherscan_contracts_root:
        sources.append(iter_etherscan_records(args.etherscan_contracts_root))
    if args.plain_contracts_root:
        sources.append(iter_plain_contract_records(args.plain_contracts_root))

    stage = PreprocessingStage(
        storage,
        chunk_size=config.preprocess_chunk_size,
        ignore_errors=args.ignore_errors,
    )
    try:
        summary = stage.run(itertools.chain(*sources))
    except MalformedRecord:
        return EXIT_FAILURE

    logger.info(f"Database now has {storage.count_contracts()} contracts")
    return EXIT_OK if summary.failed == 0 or args.ignore_errors else EXIT_FAILURE


def cmd_index_functions(args, config: IndexerConfig, storage: Storage) -> int:
    orchestrator = CompilationOrchestrator(
        SolcResolver(config.solc_dir),
        timeout=config.compile_timeout,
        crash_retries=config.crash_retries,
        timeout_retries=config.timeout_retries,
    )
    stage = IndexingStage(
        storage,
        orchestrator,
        chunk_size=config.index_chunk_size,
        workers=config.workers,
    )
    summary = stage.run(reindex=args.reindex, retry_failed=args.retry_failed, limit=args.limit)
    if summary.success or args.ignore_errors:
        return EXIT_OK
    return EXIT_FAILURE


def cmd_export_source(args, config: IndexerConfig, storage: Storage) -> int:
    try:
        path = export_contract(storage, args.contract_id, args.output)
    except UnknownContract as e:
        logger.error(str(e))
        return EXIT_FAILURE
    print(path)
    return EXIT_OK


def cmd_stats(args, config: IndexerConfig, storage: Storage) -> int:
    counts = storage.status_counts()
    print(f"contracts: {sum(counts.values())}")
    for status, count in counts.items():
        print(f"  {status}: {count}")
    for kind, count in storage.failure_counts().items():
        print(f"    {kind}: {count}")
    print(f"functions: {storage.count_functions()}")
    return EXIT_OK


_STORAGE_COMMANDS = {
    "pre-process": cmd_pre_process,
    "index-functions": cmd_index_functions,
    "export-source": cmd_export_source,
    "stats": cmd_stats,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file)

    try:
        config = IndexerConfig.load(args.config).override(
            duckdb_path=args.duckdb_path,
            solc_dir=args.solc_dir,
            workers=getattr(args, "workers", None),
            compile_timeout=getattr(args, "timeout", None),
        )
        chunk_size = getattr(args, "chunk_size", None)
        if args.command == "pre-process":
            config = config.override(preprocess_chunk_size=chunk_size)
        elif args.command == "index-functions":
            config = config.override(index_chunk_size=chunk_size)
    except (OSError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_USAGE

    if not config.duckdb_path:
        logger.error("No database given: pass --duckdb-path or set DUCKDB_PATH")
        return EXIT_USAGE

    try:
        # Only needs the solc cache, so the database is never opened
        if args.command == "download-solc":
            return cmd_download_solc(args, config)

        with Storage(config.duckdb_path) as storage:
            return _STORAGE_COMMANDS[args.command](args, config, storage)
    except StorageError as e:
        logger.error(f"Database error, run aborted: {e}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())

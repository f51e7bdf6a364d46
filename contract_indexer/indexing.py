"""
Indexing Stage

Drives compilation and function extraction over every pending contract.

Pending contracts are fetched in chunks ordered by id. Each chunk is fanned
out to a bounded thread pool (the work is a blocking ``solc`` subprocess),
the typed outcomes are gathered on the main thread, and the whole chunk is
committed in one transaction. An interrupted chunk is never committed, so a
later run simply picks it up again.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tqdm import tqdm

from .compiler import CompilationOrchestrator
from .errors import ExtractionError
from .extractor import FunctionExtractor
from .models import Contract, ContractStatus, IndexOutcome
from .storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class IndexSummary:
    indexed: int = 0
    failed: int = 0
    functions: int = 0
    reset: int = 0
    failures: Dict[str, int] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return self.indexed + self.failed

    @property
    def success(self) -> bool:
        return self.failed == 0


class IndexingStage:
    def __init__(
        self,
        storage: Storage,
        orchestrator: CompilationOrchestrator,
        extractor: Optional[FunctionExtractor] = None,
        chunk_size: int = 100,
        workers: int = 4,
    ):
        if chunk_size < 1 or workers < 1:
            raise ValueError("chunk_size and workers must be positive")
        self.storage = storage
        self.orchestrator = orchestrator
        self.extractor = extractor or FunctionExtractor()
        self.chunk_size = chunk_size
        self.workers = workers

    def run(
        self,
        reindex: bool = False,
        retry_failed: bool = False,
        limit: Optional[int] = None,
    ) -> IndexSummary:
        """Index pending contracts.

        Args:
            reindex: Move indexed and failed contracts back to pending first.
            retry_failed: Move only failed contracts back to pending first.
            limit: Stop after this many contracts.
        """
        if reindex and retry_failed:
            raise ValueError("reindex and retry_failed are mutually exclusive")

        summary = IndexSummary()
        if reindex:
            summary.reset = self.storage.reset_status([ContractStatus.INDEXED, ContractStatus.FAILED])
        elif retry_failed:
            summary.reset = self.storage.reset_status([ContractStatus.FAILED])
        if summary.reset:
            logger.info(f"Reset {summary.reset} contracts to pending")

        total = self.storage.count_contracts(ContractStatus.PENDING)
        if limit is not None:
            total = min(total, limit)
        logger.info(f"Indexing {total} pending contracts with {self.workers} workers")

        executor = ThreadPoolExecutor(max_workers=self.workers)
        interrupted = False
        after_id = ""
        try:
            with tqdm(total=total, desc="Indexing", unit="contract") as progress:
                while total - summary.processed > 0:
                    size = min(self.chunk_size, total - summary.processed)
                    chunk = self.storage.fetch_pending(after_id=after_id, limit=size)
                    if not chunk:
                        break
                    outcomes = self._process_chunk(executor, chunk, progress)
                    self.storage.commit_chunk(outcomes)
                    self._tally(outcomes, summary)
                    after_id = chunk[-1].id
        except KeyboardInterrupt:
            interrupted = True
            logger.warning("Interrupted; the current chunk was not committed")
            raise
        finally:
            executor.shutdown(wait=not interrupted, cancel_futures=interrupted)

        logger.info(
            f"Indexing done: {summary.indexed} indexed, {summary.failed} failed, "
            f"{summary.functions} functions"
        )
        for kind, count in sorted(summary.failures.items()):
            logger.info(f"  {kind}: {count}")
        return summary

    def _process_chunk(
        self,
        executor: ThreadPoolExecutor,
        chunk: List[Contract],
        progress: tqdm,
    ) -> List[IndexOutcome]:
        futures = {executor.submit(self.index_contract, c): c for c in chunk}
        outcomes = []
        try:
            for future in as_completed(futures):
                outcomes.append(future.result())
                progress.update(1)
        except KeyboardInterrupt:
            for future in futures:
                future.cancel()
            raise
        # Completion order is arbitrary
        outcomes.sort(key=lambda o: o.contract_id)
        return outcomes

    def index_contract(self, contract: Contract) -> IndexOutcome:
        """Compile and extract one contract. Runs on a worker thread."""
        try:
            result = self.orchestrator.compile(contract)
            if not result.success:
                return self._failed(contract, result.error.kind, result.error.message)
            functions = self.extractor.extract(contract.id, result, contract.name)
        except ExtractionError as e:
            return self._failed(contract, e.kind, e.message)
        except Exception as e:
            logger.exception(f"Unexpected error indexing {contract.id}")
            return self._failed(contract, "unexpected_error", f"{type(e).__name__}: {e}")

        return IndexOutcome(
            contract_id=contract.id,
            status=ContractStatus.INDEXED,
            functions=functions,
        )

    @staticmethod
    def _failed(contract: Contract, kind: str, message: str) -> IndexOutcome:
        logger.warning(f"Failed {contract.id} ({contract.name}) [{kind}]: {message}")
        return IndexOutcome(
            contract_id=contract.id,
            status=ContractStatus.FAILED,
            error_kind=kind,
            error_message=message,
        )

    @staticmethod
    def _tally(outcomes: List[IndexOutcome], summary: IndexSummary) -> None:
        for outcome in outcomes:
            if outcome.status == ContractStatus.INDEXED:
                summary.indexed += 1
                summary.functions += len(outcome.functions)
            else:
                summary.failed += 1
                kind = outcome.error_kind or "unknown"
                summary.failures[kind] = summary.failures.get(kind, 0) + 1

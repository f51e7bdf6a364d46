"""
Preprocessing Stage

Normalizes raw corpus records and bulk-loads them into the ``contract``
table in chunks. Re-running over the same corpus inserts nothing new.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List

from tqdm import tqdm

from .errors import MalformedRecord
from .models import Contract
from .normalizer import RawRecord, normalize
from .storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class PreprocessSummary:
    seen: int = 0
    inserted: int = 0
    duplicates: int = 0
    failed: int = 0


class PreprocessingStage:
    """Normalize records and insert them chunk by chunk.

    Strict by default: the first malformed record raises and aborts the run
    (chunks already committed stay). With ``ignore_errors`` it is logged and
    counted instead.
    """

    def __init__(self, storage: Storage, chunk_size: int = 500, ignore_errors: bool = False):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.storage = storage
        self.chunk_size = chunk_size
        self.ignore_errors = ignore_errors

    def run(self, records: Iterable[RawRecord]) -> PreprocessSummary:
        summary = PreprocessSummary()
        batch: List[Contract] = []

        for record in tqdm(records, desc="Pre-processing", unit="contract"):
            summary.seen += 1
            try:
                if record.payload is None:
                    raise MalformedRecord(f"{record.origin}: unreadable record")
                batch.append(normalize(record))
            except MalformedRecord as e:
                summary.failed += 1
                if not self.ignore_errors:
                    logger.error(f"Aborting on malformed record: {e}")
                    raise
                logger.warning(f"Skipping malformed record: {e}")
                continue

            if len(batch) >= self.chunk_size:
                self._flush_batch(batch, summary)
                batch = []

        if batch:
            self._flush_batch(batch, summary)

        logger.info(
            f"Pre-processing done: {summary.seen} seen, {summary.inserted} inserted, "
            f"{summary.duplicates} duplicates, {summary.failed} failed"
        )
        return summary

    def _flush_batch(self, batch: List[Contract], summary: PreprocessSummary) -> None:
        inserted = self.storage.store_contracts(batch)
        summary.inserted += inserted
        summary.duplicates += len(batch) - inserted
        logger.debug(f"Committed chunk: {inserted} of {len(batch)} new")

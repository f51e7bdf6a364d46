"""
Corpus readers: walk a dataset root and lazily yield :class:`RawRecord`s.

Read failures (unreadable files, invalid JSON) are yielded as records whose
payload is ``None`` so the preprocessing stage applies its normal
strict/``--ignore-errors`` policy to them.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, Iterator

from .normalizer import RawRecord, RecordKind

logger = logging.getLogger(__name__)

_BULK_SOURCE_SUFFIXES = (".sol", ".vy", ".json")


def iter_plain_contract_records(root: str) -> Iterator[RawRecord]:
    """Yield one record per folder containing a ``metadata.json``.

    Example layout: https://huggingface.co/datasets/Zellic/smart-contract-fiesta
    (``organized_contracts/<prefix>/<hash>/``).
    """
    for dirpath, dirnames, filenames in os.walk(root, followlinks=True):
        dirnames.sort()
        if "metadata.json" not in filenames:
            continue

        folder = Path(dirpath)
        try:
            with open(folder / "metadata.json", "r", encoding="utf-8") as f:
                metadata = json.load(f)
            files: Dict[str, str] = {}
            for name in sorted(filenames):
                if name == "metadata.json" or not name.endswith(_BULK_SOURCE_SUFFIXES):
                    continue
                files[name] = (folder / name).read_text(encoding="utf-8", errors="replace")
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Could not read {folder}: {e}")
            yield RawRecord(RecordKind.BULK_DATASET, str(folder), None)
            continue

        yield RawRecord(
            RecordKind.BULK_DATASET,
            str(folder),
            {"metadata": metadata, "files": files},
        )


def iter_etherscan_records(root: str) -> Iterator[RawRecord]:
    """Yield one record per ``*.json`` file below ``root``."""
    for path in sorted(Path(root).rglob("*.json")):
        if not path.is_file():
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Could not read {path}: {e}")
            payload = None
        yield RawRecord(RecordKind.ETHERSCAN_JSON, str(path), payload)

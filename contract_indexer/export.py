"""
Write a stored contract's sources back to disk.

The output folder mirrors one entry of the bulk dataset layout: the source
files at their (sanitized) relative paths, a ``metadata.json``, and a
``contract.json`` standard-JSON input so the folder can be re-ingested with
``pre-process --plain-contracts-root`` and compiles exactly as stored.
"""

import json
import logging
import re
from pathlib import Path, PurePosixPath
from typing import Dict, List, Tuple

from .errors import IndexerError
from .models import Contract
from .storage import Storage

logger = logging.getLogger(__name__)

_RESERVED = {"metadata.json", "contract.json"}


class UnknownContract(IndexerError):
    kind = "unknown_contract"


def sanitize_path(path: str) -> str:
    """Make a source unit name safe to write below an output directory.

    Backslashes become slashes, drive letters and leading slashes are
    dropped, and ``.``/``..``/empty components are removed.
    """
    path = path.replace("\\", "/")
    path = re.sub(r"^[A-Za-z]:", "", path)
    parts = [p for p in PurePosixPath(path).parts if p not in ("/", ".", "..", "")]
    return "/".join(parts) or "source.sol"


def plan_output_paths(sources: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Map each source to a unique, sanitized relative output path.

    A path without an extension gets ``.sol`` unless that would collide
    with another source; remaining collisions get a numeric suffix.
    """
    sanitized = [sanitize_path(path) for path, _ in sources]
    taken = set(sanitized) | _RESERVED
    planned = []
    used = set(_RESERVED)

    for target, (_, content) in zip(sanitized, sources):
        if not PurePosixPath(target).suffix and f"{target}.sol" not in taken:
            target = f"{target}.sol"
        if target in used:
            stem, suffix = str(PurePosixPath(target).with_suffix("")), PurePosixPath(target).suffix
            n = 1
            while f"{stem}_{n}{suffix}" in used:
                n += 1
            target = f"{stem}_{n}{suffix}"
        used.add(target)
        planned.append((target, content))
    return planned


def build_metadata(contract: Contract) -> Dict:
    """Metadata in the bulk dataset's ``metadata.json`` shape."""
    return {
        "ContractName": contract.name,
        "CompilerVersion": contract.compiler_version,
        "OptimizationUsed": int(contract.settings.optimizer_enabled),
        "Runs": contract.settings.optimizer_runs,
        "EVMVersion": contract.settings.evm_version or "Default",
        "ContractAddress": contract.address or "",
        "ConstructorArguments": contract.constructor_args or "",
        "SourceFormat": contract.source_format.value,
        "ContractId": contract.id,
    }


def export_contract(storage: Storage, contract_id: str, output_dir: str = ".") -> Path:
    """Export one contract into ``output_dir/<contract_id>/``.

    Raises:
        UnknownContract: no contract with ``contract_id`` is stored.
    """
    contract = storage.get_contract(contract_id)
    if contract is None:
        raise UnknownContract(f"No contract with id {contract_id}", contract_id=contract_id)

    target_dir = Path(output_dir) / contract.id
    target_dir.mkdir(parents=True, exist_ok=True)

    for relative, content in plan_output_paths(contract.sources):
        path = target_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    # Original unit names are kept here so imports resolve on recompilation
    standard_input = {
        "language": "Solidity",
        "sources": {path: {"content": content} for path, content in contract.sources},
        "settings": contract.settings.to_standard_json(),
    }
    with open(target_dir / "contract.json", "w", encoding="utf-8") as f:
        json.dump(standard_input, f, indent=2)
    with open(target_dir / "metadata.json", "w", encoding="utf-8") as f:
        json.dump(build_metadata(contract), f, indent=2)

    logger.info(f"Exported {contract.id} ({len(contract.sources)} files) to {target_dir}")
    return target_dir

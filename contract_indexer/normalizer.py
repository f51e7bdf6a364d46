"""
Contract Normalizer

Turns raw corpus records into the canonical :class:`Contract` shape. Two
input variants exist and are resolved here, once:

* ``RecordKind.BULK_DATASET`` -- a folder from a bulk dataset export
  (e.g. smart-contract-fiesta ``organized_contracts``) holding a
  ``metadata.json`` next to ``main.sol``, ``contract.json`` (standard-JSON
  input) or several ``.sol`` files.
* ``RecordKind.ETHERSCAN_JSON`` -- an Etherscan ``getsourcecode`` result,
  whose ``SourceCode`` is plain Solidity, a JSON object of sources, or the
  double-brace ``{{...}}`` standard-JSON form.

No downstream component branches on the input format.

Primary contract tie-break: the declared ``ContractName`` wins (a
``path:Name`` form is reduced to ``Name``). Without one, the last
``contract`` declared in source order is chosen (files in their given order,
declarations top to bottom); if the sources declare no ``contract``, the
last ``library`` or ``interface`` is used instead.
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import MalformedRecord
from .models import CompilerSettings, Contract, SourceFormat

logger = logging.getLogger(__name__)

_DECLARATION = re.compile(
    r"\b(?:(abstract)\s+)?(contract|library|interface)\s+([A-Za-z_$][\w$]*)"
)
_NON_CODE = re.compile(
    r"//[^\n]*"
    r"|/\*.*?\*/"
    r'|"(?:\\.|[^"\\\n])*"'
    r"|'(?:\\.|[^'\\\n])*'",
    re.DOTALL,
)
_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


class RecordKind(Enum):
    BULK_DATASET = "bulk_dataset"
    ETHERSCAN_JSON = "etherscan_json"


@dataclass
class RawRecord:
    """One unparsed corpus entry.

    For ``BULK_DATASET`` the payload is ``{"metadata": {...}, "files":
    {name: content}}``; for ``ETHERSCAN_JSON`` it is the decoded JSON file.
    ``origin`` names the folder or file the record came from.
    """

    kind: RecordKind
    origin: str
    payload: Any


def normalize(record: RawRecord) -> Contract:
    """Normalize one raw record, raising :class:`MalformedRecord` on failure."""
    try:
        if record.kind == RecordKind.BULK_DATASET:
            return parse_bulk_dataset_entry(record.payload, origin=record.origin)
        if record.kind == RecordKind.ETHERSCAN_JSON:
            return parse_etherscan_json(record.payload, origin=record.origin)
    except MalformedRecord:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MalformedRecord(f"{record.origin}: {type(e).__name__}: {e}") from e
    raise MalformedRecord(f"{record.origin}: unknown record kind {record.kind!r}")


# ---------------------------------------------------------------------------
# Bulk dataset export
# ---------------------------------------------------------------------------

def parse_bulk_dataset_entry(payload: Dict[str, Any], origin: str = "") -> Contract:
    """Parse a bulk dataset folder (``metadata.json`` + source files)."""
    metadata = payload.get("metadata")
    files: Dict[str, str] = payload.get("files") or {}
    if not isinstance(metadata, dict):
        raise MalformedRecord(f"{origin}: missing metadata.json")

    compiler_version = _required_version(metadata.get("CompilerVersion"), origin)
    settings = CompilerSettings(
        optimizer_enabled=_parse_bool(metadata.get("OptimizationUsed", False)),
        optimizer_runs=_parse_runs(metadata.get("Runs")),
        evm_version=_parse_evm_version(metadata.get("EVMVersion")),
    )

    # Same precedence as the dataset itself: contract.json, main.sol,
    # main.vy, then every remaining .sol file.
    if "contract.json" in files:
        sources, settings = _parse_standard_json(
            json.loads(files["contract.json"]), settings, origin
        )
        source_format = SourceFormat.STANDARD_JSON
    elif "main.sol" in files:
        sources = [("main.sol", files["main.sol"])]
        source_format = SourceFormat.SINGLE_SOL
    elif "main.vy" in files:
        raise MalformedRecord(f"{origin}: Vyper sources are not supported")
    else:
        sources = [(name, files[name]) for name in sorted(files) if name.endswith(".sol")]
        source_format = SourceFormat.MULTI_SOL

    if not sources:
        raise MalformedRecord(f"{origin}: no Solidity sources found")

    address = metadata.get("ContractAddress") or metadata.get("address")
    return Contract(
        name=select_primary_contract(sources, metadata.get("ContractName")),
        compiler_version=compiler_version,
        sources=sources,
        settings=settings,
        source_format=source_format,
        address=str(address).lower() if address else None,
        constructor_args=metadata.get("ConstructorArguments") or None,
    )


# ---------------------------------------------------------------------------
# Etherscan getsourcecode JSON
# ---------------------------------------------------------------------------

def parse_etherscan_json(payload: Any, origin: str = "") -> Contract:
    """Parse an Etherscan ``getsourcecode`` result (or the full API response)."""
    result = _unwrap_etherscan(payload, origin)

    compiler_version = str(result.get("CompilerVersion") or "").strip()
    if compiler_version.lower().startswith("vyper"):
        raise MalformedRecord(f"{origin}: Vyper sources are not supported")
    compiler_version = _required_version(compiler_version, origin)

    raw_source = str(result.get("SourceCode") or "")
    if not raw_source.strip():
        raise MalformedRecord(f"{origin}: empty SourceCode (contract not verified?)")

    declared_name = str(result.get("ContractName") or "").strip()
    settings = CompilerSettings(
        optimizer_enabled=_parse_bool(result.get("OptimizationUsed", "0")),
        optimizer_runs=_parse_runs(result.get("Runs")),
        evm_version=_parse_evm_version(result.get("EVMVersion")),
    )

    sources, settings, source_format = _parse_etherscan_source(
        raw_source, declared_name, settings, origin
    )

    libraries = _parse_libraries(result.get("Library"))
    if libraries and not settings.libraries:
        if source_format == SourceFormat.SINGLE_SOL:
            settings.libraries = {sources[0][0]: libraries}
        else:
            settings.libraries = {path: libraries for path, _ in sources}

    address = result.get("ContractAddress") or result.get("address") or _address_from_origin(origin)
    return Contract(
        name=select_primary_contract(sources, declared_name),
        compiler_version=compiler_version,
        sources=sources,
        settings=settings,
        source_format=source_format,
        address=str(address).lower() if address else None,
        constructor_args=str(result.get("ConstructorArguments") or "") or None,
    )


def _unwrap_etherscan(payload: Any, origin: str) -> Dict[str, Any]:
    if isinstance(payload, dict) and "result" in payload:
        payload = payload["result"]
    if isinstance(payload, list):
        if not payload:
            raise MalformedRecord(f"{origin}: empty Etherscan result list")
        payload = payload[0]
    if not isinstance(payload, dict):
        raise MalformedRecord(f"{origin}: Etherscan result is not an object")
    return payload


def _parse_etherscan_source(
    raw_source: str,
    declared_name: str,
    settings: CompilerSettings,
    origin: str,
) -> Tuple[List[Tuple[str, str]], CompilerSettings, SourceFormat]:
    stripped = raw_source.strip()
    if stripped.startswith("{{") and stripped.endswith("}}"):
        parsed = _loads(stripped[1:-1], origin)
        sources, settings = _parse_standard_json(parsed, settings, origin)
        return sources, settings, SourceFormat.STANDARD_JSON

    if stripped.startswith("{"):
        parsed = _loads(stripped, origin)
        if isinstance(parsed, dict) and "sources" in parsed:
            sources, settings = _parse_standard_json(parsed, settings, origin)
            return sources, settings, SourceFormat.STANDARD_JSON
        if isinstance(parsed, dict):
            # Bare {"path": {"content": ...}} mapping
            sources = _source_entries(parsed, origin)
            return sources, settings, SourceFormat.MULTI_SOL
        raise MalformedRecord(f"{origin}: unexpected JSON SourceCode shape")

    filename = f"{declared_name.split(':')[-1] or 'contract'}.sol"
    return [(filename, raw_source)], settings, SourceFormat.SINGLE_SOL


def _loads(text: str, origin: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedRecord(f"{origin}: invalid JSON SourceCode: {e}") from e


# ---------------------------------------------------------------------------
# Standard-JSON input
# ---------------------------------------------------------------------------

def _parse_standard_json(
    document: Dict[str, Any],
    fallback: CompilerSettings,
    origin: str,
) -> Tuple[List[Tuple[str, str]], CompilerSettings]:
    """Extract sources and settings from a solc standard-JSON input document."""
    if not isinstance(document, dict):
        raise MalformedRecord(f"{origin}: standard-JSON input is not an object")

    # Some dataset exports misspell the key
    language = document.get("language") or document.get("langauge") or "Solidity"
    if str(language).lower() != "solidity":
        raise MalformedRecord(f"{origin}: unsupported language {language!r}")

    sources = _source_entries(document.get("sources") or {}, origin)

    raw_settings = document.get("settings") or {}
    optimizer = raw_settings.get("optimizer") or {}
    settings = CompilerSettings(
        optimizer_enabled=_parse_bool(optimizer.get("enabled", fallback.optimizer_enabled)),
        optimizer_runs=_parse_runs(optimizer.get("runs", fallback.optimizer_runs)),
        evm_version=_parse_evm_version(raw_settings.get("evmVersion")) or fallback.evm_version,
        remappings=[str(r) for r in raw_settings.get("remappings") or []],
        libraries={
            str(unit): {str(k): str(v) for k, v in libs.items()}
            for unit, libs in (raw_settings.get("libraries") or {}).items()
        },
        via_ir=_parse_bool(raw_settings.get("viaIR", False)),
    )
    return sources, settings


def _source_entries(entries: Dict[str, Any], origin: str) -> List[Tuple[str, str]]:
    sources = []
    for path, entry in entries.items():
        if isinstance(entry, dict) and "content" in entry:
            sources.append((str(path), str(entry["content"])))
        elif isinstance(entry, str):
            sources.append((str(path), entry))
    if not sources:
        raise MalformedRecord(f"{origin}: no inline source content")
    return sources


# ---------------------------------------------------------------------------
# Primary contract selection
# ---------------------------------------------------------------------------

def _strip_non_code(text: str) -> str:
    """Blank out comments and string literals in one left-to-right pass.

    Whichever token starts first wins, so ``"http://x"`` stays a string and
    a quote inside a comment does not open one.
    """
    return _NON_CODE.sub(" ", text)


def declared_contracts(sources: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Return ``(kind, name)`` for every declaration, in source order."""
    declarations = []
    for _, content in sources:
        for match in _DECLARATION.finditer(_strip_non_code(content)):
            declarations.append((match.group(2), match.group(3)))
    return declarations


def select_primary_contract(
    sources: List[Tuple[str, str]],
    declared_name: Optional[str] = None,
) -> str:
    """Pick the primary contract name (see the module docstring for the rule)."""
    if declared_name and declared_name.strip():
        return declared_name.strip().split(":")[-1]

    declarations = declared_contracts(sources)
    contracts = [name for kind, name in declarations if kind == "contract"]
    if contracts:
        return contracts[-1]
    if declarations:
        return declarations[-1][1]
    raise MalformedRecord("No contract, library or interface declared in sources")


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _required_version(value: Any, origin: str) -> str:
    version = str(value or "").strip()
    if not version:
        raise MalformedRecord(f"{origin}: missing compiler version")
    return version


def _parse_bool(value: Any) -> bool:
    """Coerce optimization flags (bool, '1'/'0', 'true'/'false') to bool."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _parse_runs(value: Any) -> int:
    if value is None or str(value).strip() == "":
        return 200
    return int(str(value).strip())


def _parse_evm_version(value: Any) -> Optional[str]:
    if not value:
        return None
    version = str(value).strip()
    if not version or version.lower() == "default":
        return None
    return version.lower()


def _parse_libraries(value: Any) -> Dict[str, str]:
    """Parse Etherscan's ``Name:0xaddr;Other:0xaddr`` library string."""
    libraries: Dict[str, str] = {}
    if not value:
        return libraries
    for item in str(value).split(";"):
        if ":" not in item:
            continue
        name, address = item.split(":", 1)
        address = address.strip()
        if not address.startswith("0x"):
            address = "0x" + address
        libraries[name.strip()] = address
    return libraries


def _address_from_origin(origin: str) -> Optional[str]:
    stem = re.split(r"[\\/]", origin)[-1].split(".")[0] if origin else ""
    return stem if _ADDRESS.match(stem) else None

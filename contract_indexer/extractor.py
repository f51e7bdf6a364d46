"""
Function Extractor

Turns a successful :class:`CompilationResult` into one
:class:`FunctionRecord` per externally callable function of the primary
contract.

The ABI is the source of truth for which functions exist (solc has already
flattened inheritance into it). The AST is only consulted for details the
ABI lacks: visibility, the declaring contract, and the declaration text.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from web3 import Web3

from .compiler import CompilationResult, CompiledContract
from .errors import MissingContract, SelectorMismatch
from .models import FunctionRecord, Mutability, Visibility

logger = logging.getLogger(__name__)


def canonical_type(param: dict) -> str:
    """Canonical ABI type of one parameter, expanding tuples recursively."""
    abi_type = param["type"]
    if abi_type.startswith("tuple"):
        inner = ",".join(canonical_type(c) for c in param.get("components", []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


def canonical_signature(entry: dict) -> str:
    """``name(type1,type2,...)`` for an ABI function entry."""
    types = ",".join(canonical_type(p) for p in entry.get("inputs", []))
    return f"{entry['name']}({types})"


def compute_selector(signature: str) -> str:
    """First 4 bytes of keccak-256 of the signature, as ``0x``-prefixed hex."""
    return "0x" + bytes(Web3.keccak(text=signature)[:4]).hex()


def abi_mutability(entry: dict) -> Mutability:
    """Mutability from ``stateMutability``, or the pre-0.5 ABI flags."""
    state = entry.get("stateMutability")
    if state:
        return Mutability(state)
    if entry.get("payable"):
        return Mutability.PAYABLE
    if entry.get("constant"):
        return Mutability.VIEW
    return Mutability.NONPAYABLE


@dataclass
class _Declaration:
    """A public/external member found in the AST."""

    name: str
    visibility: Visibility
    contract_name: str
    source_file: str
    src: Optional[str]
    arity: Optional[int]  # None for state-variable getters


class _AstIndex:
    """Lookup of public/external members along a contract's linearization."""

    def __init__(self, asts: Dict[str, dict]):
        self.contracts: Dict[int, Tuple[dict, str]] = {}
        for source_file, ast in asts.items():
            if ast.get("nodeType") != "SourceUnit":
                continue  # legacy AST: fall back to ABI-only details
            for node in ast.get("nodes", []):
                if node.get("nodeType") == "ContractDefinition" and "id" in node:
                    self.contracts[node["id"]] = (node, source_file)

        self.by_selector: Dict[str, _Declaration] = {}
        self.by_signature: Dict[Tuple[str, int], _Declaration] = {}
        self.getters: Dict[str, _Declaration] = {}
        self.primary_kind: Optional[str] = None

    def load(self, contract_name: str, source_file: str) -> None:
        primary = self._find(contract_name, source_file)
        if primary is None:
            return
        self.primary_kind = primary.get("contractKind")

        # Most derived first, so overrides shadow their bases
        for base_id in primary.get("linearizedBaseContracts", [primary["id"]]):
            if base_id not in self.contracts:
                continue
            node, base_file = self.contracts[base_id]
            for member in node.get("nodes", []):
                decl = self._declaration(member, node["name"], base_file)
                if decl is None:
                    continue
                selector = member.get("functionSelector")
                if selector:
                    self.by_selector.setdefault("0x" + selector.lower(), decl)
                if decl.arity is None:
                    self.getters.setdefault(decl.name, decl)
                else:
                    self.by_signature.setdefault((decl.name, decl.arity), decl)

    def _find(self, contract_name: str, source_file: str) -> Optional[dict]:
        fallback = None
        for node, node_file in self.contracts.values():
            if node.get("name") != contract_name:
                continue
            if node_file == source_file:
                return node
            fallback = node
        return fallback

    @staticmethod
    def _declaration(member: dict, contract_name: str, source_file: str) -> Optional[_Declaration]:
        node_type = member.get("nodeType")
        visibility = member.get("visibility")
        if visibility not in ("public", "external"):
            return None

        if node_type == "FunctionDefinition":
            kind = member.get("kind", "function")
            if kind != "function" or member.get("isConstructor") or not member.get("name"):
                return None
            arity = len((member.get("parameters") or {}).get("parameters", []))
        elif node_type == "VariableDeclaration" and member.get("stateVariable"):
            arity = None
        else:
            return None

        return _Declaration(
            name=member["name"],
            visibility=Visibility(visibility),
            contract_name=contract_name,
            source_file=source_file,
            src=member.get("src"),
            arity=arity,
        )

    def lookup(self, selector: str, name: str, arity: int) -> Optional[_Declaration]:
        return (
            self.by_selector.get(selector)
            or self.by_signature.get((name, arity))
            or self.getters.get(name)
        )


def _slice_source(sources: Dict[str, str], source_file: str, src: Optional[str]) -> str:
    """Cut the declaration text out of a source using an AST ``src`` range."""
    if not src or source_file not in sources:
        return ""
    try:
        start, length = (int(part) for part in src.split(":")[:2])
    except ValueError:
        return ""
    if start < 0 or length <= 0:
        return ""
    # AST offsets are byte offsets into the UTF-8 encoded source
    data = sources[source_file].encode("utf-8")
    return data[start:start + length].decode("utf-8", errors="replace")


class FunctionExtractor:
    """Build FunctionRecords for the primary contract of a compilation."""

    def find_primary(self, result: CompilationResult, contract_name: str) -> CompiledContract:
        """Locate the primary contract; the last source unit in order wins ties."""
        order = {path: i for i, path in enumerate(result.sources)}
        candidates = [c for c in result.contracts if c.name == contract_name]
        if not candidates:
            raise MissingContract(
                f"Contract {contract_name!r} not found in compiler output",
                contract_id=result.contract_id,
            )
        return max(candidates, key=lambda c: order.get(c.source_file, -1))

    def extract(
        self,
        contract_id: str,
        result: CompilationResult,
        contract_name: str,
    ) -> List[FunctionRecord]:
        """Return the contract's functions sorted by selector.

        Raises:
            MissingContract: ``contract_name`` is not in the output.
            SelectorMismatch: a computed selector disagrees with solc's.
        """
        primary = self.find_primary(result, contract_name)

        ast_index = _AstIndex(result.asts)
        ast_index.load(primary.name, primary.source_file)
        default_visibility = (
            Visibility.EXTERNAL if ast_index.primary_kind == "interface" else Visibility.PUBLIC
        )

        reported = {sig: sel.lower() for sig, sel in primary.method_identifiers.items()}
        records: Dict[str, FunctionRecord] = {}

        for entry in primary.abi:
            if entry.get("type", "function") != "function" or not entry.get("name"):
                continue

            signature = canonical_signature(entry)
            selector = compute_selector(signature)
            if signature in reported and "0x" + reported[signature] != selector:
                raise SelectorMismatch(
                    f"{signature}: computed {selector}, solc reported 0x{reported[signature]}",
                    contract_id=contract_id,
                )
            if selector in records:
                logger.debug(f"Duplicate selector {selector} in {contract_id} ABI")
                continue

            decl = ast_index.lookup(selector, entry["name"], len(entry.get("inputs", [])))
            records[selector] = FunctionRecord(
                contract_id=contract_id,
                selector=selector,
                signature=signature,
                function_name=entry["name"],
                mutability=abi_mutability(entry),
                visibility=decl.visibility if decl else default_visibility,
                contract_name=primary.name,
                declaring_contract=decl.contract_name if decl else primary.name,
                filename=decl.source_file if decl else primary.source_file,
                source_code=_slice_source(result.sources, decl.source_file, decl.src) if decl else "",
            )

        return [records[s] for s in sorted(records)]

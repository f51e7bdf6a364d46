"""
Canonical data model shared by every pipeline stage.
"""

import hashlib
import json
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ContractStatus(Enum):
    """Indexing lifecycle of a stored contract."""
    PENDING = "pending"
    INDEXED = "indexed"
    FAILED = "failed"


class SourceFormat(Enum):
    """How the contract's sources were laid out in the corpus."""
    SINGLE_SOL = "single_sol"
    MULTI_SOL = "multi_sol"
    STANDARD_JSON = "standard_json"


class Mutability(Enum):
    PURE = "pure"
    VIEW = "view"
    NONPAYABLE = "nonpayable"
    PAYABLE = "payable"


class Visibility(Enum):
    EXTERNAL = "external"
    PUBLIC = "public"


@dataclass
class CompilerSettings:
    """Compilation settings that influence solc output."""

    optimizer_enabled: bool = False
    optimizer_runs: int = 200
    evm_version: Optional[str] = None
    remappings: List[str] = field(default_factory=list)
    # source unit -> library name -> address
    libraries: Dict[str, Dict[str, str]] = field(default_factory=dict)
    via_ir: bool = False

    def to_standard_json(self) -> Dict[str, Any]:
        """Render as the ``settings`` object of a solc standard-JSON input."""
        settings: Dict[str, Any] = {
            "optimizer": {
                "enabled": self.optimizer_enabled,
                "runs": self.optimizer_runs,
            },
        }
        if self.evm_version:
            settings["evmVersion"] = self.evm_version
        if self.remappings:
            settings["remappings"] = list(self.remappings)
        if self.libraries:
            settings["libraries"] = self.libraries
        if self.via_ir:
            settings["viaIR"] = True
        return settings

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> "CompilerSettings":
        return cls(**json.loads(text))


def simple_hash(content: str) -> str:
    """md5 of ``content`` after removing all whitespace."""
    return hashlib.md5(re.sub(r"\s+", "", content).encode()).hexdigest()


@dataclass
class Contract:
    """A normalized, compilable contract.

    ``sources`` is an ordered list of ``(path, content)`` pairs. Order is
    preserved for storage and export; the content id is order-independent.
    """

    name: str
    compiler_version: str
    sources: List[Tuple[str, str]]
    settings: CompilerSettings = field(default_factory=CompilerSettings)
    source_format: SourceFormat = SourceFormat.SINGLE_SOL
    address: Optional[str] = None
    constructor_args: Optional[str] = None
    id: str = ""

    def __post_init__(self):
        self.sources = [(path, content) for path, content in self.sources]
        if not self.id:
            self.id = self.content_hash()

    def content_hash(self) -> str:
        """Hash each source, sort and join the hashes, then mix in metadata."""
        joined = "".join(sorted(simple_hash(content) for _, content in self.sources))
        key = "|".join([
            joined,
            self.name,
            self.compiler_version,
            self.settings.to_json(),
        ])
        return hashlib.md5(key.encode()).hexdigest()

    @property
    def source_map(self) -> Dict[str, str]:
        return dict(self.sources)


@dataclass
class FunctionRecord:
    """One externally callable function of an indexed contract."""

    contract_id: str
    selector: str  # "0x" + 8 lowercase hex chars
    signature: str  # canonical, e.g. "transfer(address,uint256)"
    function_name: str
    mutability: Mutability
    visibility: Visibility
    contract_name: str
    declaring_contract: Optional[str] = None
    filename: Optional[str] = None
    source_code: str = ""

    def to_row(self) -> tuple:
        return (
            self.contract_id,
            self.selector,
            self.signature,
            self.function_name,
            self.mutability.value,
            self.visibility.value,
            self.contract_name,
            self.declaring_contract,
            self.filename,
            self.source_code,
        )


@dataclass
class IndexOutcome:
    """Result of indexing one contract, handed from a worker to the writer."""

    contract_id: str
    status: ContractStatus
    functions: List[FunctionRecord] = field(default_factory=list)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

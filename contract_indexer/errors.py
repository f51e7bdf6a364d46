"""
Error taxonomy for the ingestion and indexing pipeline.

Every error carries a stable ``kind`` string; the indexing stage stores it in
``contract.error_kind`` so failed contracts can be grouped after a run.
"""

from typing import List, Optional


class IndexerError(Exception):
    """Base class for all pipeline errors."""

    kind = "indexer_error"

    def __init__(self, message: str, contract_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.contract_id = contract_id

    def __str__(self) -> str:
        if self.contract_id:
            return f"[{self.kind}] {self.contract_id}: {self.message}"
        return f"[{self.kind}] {self.message}"


class MalformedRecord(IndexerError):
    """A raw record could not be normalized into a Contract."""

    kind = "malformed_record"


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

class CompileError(IndexerError):
    """Base class for failures surfaced by the compilation orchestrator."""

    kind = "compile_error"


class MissingBinary(CompileError):
    """The requested solc version is not present in the local cache."""

    kind = "missing_binary"


class AmbiguousVersion(CompileError):
    """The declared compiler version is not a single pinned release."""

    kind = "ambiguous_version"


class CompileTimeout(CompileError):
    """solc exceeded its wall-clock budget and was killed."""

    kind = "compile_timeout"


class CompileDiagnostics(CompileError):
    """solc ran to completion but reported errors."""

    kind = "compile_diagnostics"

    def __init__(
        self,
        message: str,
        diagnostics: Optional[List[str]] = None,
        contract_id: Optional[str] = None,
    ):
        super().__init__(message, contract_id=contract_id)
        self.diagnostics = diagnostics or []


class ProcessCrash(CompileError):
    """solc terminated abnormally or produced unreadable output."""

    kind = "process_crash"

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        contract_id: Optional[str] = None,
    ):
        super().__init__(message, contract_id=contract_id)
        self.returncode = returncode


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractionError(IndexerError):
    """Base class for failures while turning compiler output into rows."""

    kind = "extraction_error"


class SelectorMismatch(ExtractionError):
    """The computed selector disagrees with the one reported by solc."""

    kind = "selector_mismatch"


class MissingContract(ExtractionError):
    """The primary contract is absent from the compiler output."""

    kind = "missing_contract"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageError(IndexerError):
    """A database operation failed; the current transaction was rolled back."""

    kind = "storage_error"

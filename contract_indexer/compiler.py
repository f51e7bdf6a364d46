"""
Compilation Orchestrator

Compiles one normalized contract with the exact solc release it declares.
The compiler is reached through two capabilities so tests and alternative
toolchains can swap either side:

* a resolver, ``resolve(version) -> Path`` (see :mod:`.compiler_resolver`);
* an invoker, ``invoke(binary, input_json, timeout) -> dict``.

Each invocation is stateless; the resulting :class:`CompilationResult` is
owned by the worker that produced it.
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import (
    CompileDiagnostics,
    CompileError,
    CompileTimeout,
    ProcessCrash,
)
from .models import Contract

logger = logging.getLogger(__name__)

# Per-contract ABI + selectors, per-source AST
OUTPUT_SELECTION = {
    "*": {
        "*": ["abi", "evm.methodIdentifiers"],
        "": ["ast"],
    }
}

_MAX_ERROR_MESSAGE = 2000


@dataclass
class CompiledContract:
    """A single compiled contract from a compilation unit."""

    name: str
    source_file: str
    abi: list
    method_identifiers: Dict[str, str] = field(default_factory=dict)


@dataclass
class CompilationResult:
    """Result of compiling one contract: a success payload or a typed failure."""

    contract_id: str
    compiler_version: str
    contracts: List[CompiledContract] = field(default_factory=list)
    asts: Dict[str, dict] = field(default_factory=dict)
    sources: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[CompileError] = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.error is None


class SubprocessSolcInvoker:
    """Run ``solc --standard-json`` as an isolated subprocess."""

    def invoke(self, binary: Path, input_json: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        try:
            proc = subprocess.run(
                [str(binary), "--standard-json"],
                input=json.dumps(input_json),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            # subprocess.run has already killed the child
            raise CompileTimeout(f"solc exceeded the {timeout:g}s time budget") from e
        except OSError as e:
            raise ProcessCrash(f"Could not execute {binary}: {e}") from e

        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise ProcessCrash(
                f"solc exited with code {proc.returncode}: {stderr[:500]}",
                returncode=proc.returncode,
            )
        return _decode_output(proc.stdout)


def _decode_output(stdout: str) -> Dict[str, Any]:
    """Decode solc's JSON output; old releases may print a banner first."""
    try:
        return json.loads(stdout)
    except json.JSONDecodeError:
        start = stdout.find("{")
        if start > 0:
            try:
                return json.loads(stdout[start:])
            except json.JSONDecodeError:
                pass
    raise ProcessCrash(f"solc produced unreadable output: {stdout[:200]!r}")


class CompilationOrchestrator:
    """Resolve, invoke and parse solc for one contract at a time.

    ``ProcessCrash`` is retried ``crash_retries`` times (default once);
    ``CompileTimeout`` is retried ``timeout_retries`` times (default never).
    Resolver failures and diagnostics are deterministic and never retried.
    """

    def __init__(
        self,
        resolver,
        invoker=None,
        timeout: float = 120.0,
        crash_retries: int = 1,
        timeout_retries: int = 0,
    ):
        self.resolver = resolver
        self.invoker = invoker or SubprocessSolcInvoker()
        self.timeout = timeout
        self.crash_retries = crash_retries
        self.timeout_retries = timeout_retries

    def build_input(self, contract: Contract) -> Dict[str, Any]:
        """Build the solc standard-JSON input document for ``contract``."""
        settings = contract.settings.to_standard_json()
        settings["outputSelection"] = OUTPUT_SELECTION
        return {
            "language": "Solidity",
            "sources": {
                path: {"content": content} for path, content in contract.sources
            },
            "settings": settings,
        }

    def compile(self, contract: Contract) -> CompilationResult:
        """Compile ``contract``; failures are returned, not raised."""
        result = CompilationResult(
            contract_id=contract.id,
            compiler_version=contract.compiler_version,
            sources=contract.source_map,
        )

        try:
            binary = self.resolver.resolve(contract.compiler_version)
            output = self._invoke_with_retries(binary, self.build_input(contract), result)
            self._parse_output(output, result)
        except CompileError as e:
            e.contract_id = e.contract_id or contract.id
            result.error = e

        return result

    def _invoke_with_retries(
        self,
        binary: Path,
        input_json: Dict[str, Any],
        result: CompilationResult,
    ) -> Dict[str, Any]:
        crashes = timeouts = 0
        while True:
            result.attempts += 1
            try:
                return self.invoker.invoke(binary, input_json, self.timeout)
            except ProcessCrash as e:
                crashes += 1
                if crashes > self.crash_retries:
                    raise
                logger.warning(f"solc crashed on {result.contract_id}, retrying: {e.message}")
            except CompileTimeout as e:
                timeouts += 1
                if timeouts > self.timeout_retries:
                    raise
                logger.warning(f"solc timed out on {result.contract_id}, retrying: {e.message}")

    def _parse_output(self, output: Dict[str, Any], result: CompilationResult) -> None:
        errors: List[str] = []
        for err in output.get("errors", []):
            message = err.get("formattedMessage") or err.get("message") or str(err)
            if err.get("severity") == "error":
                errors.append(message.strip())
            else:
                result.warnings.append(message.strip())

        if errors:
            details = "\n".join(errors)
            logger.warning(f"solc diagnostics for {result.contract_id}:\n{details}")
            summary = "; ".join(e.splitlines()[0] for e in errors)
            raise CompileDiagnostics(
                f"{len(errors)} compiler error(s): {summary}"[:_MAX_ERROR_MESSAGE],
                diagnostics=errors,
            )

        for source_file, file_contracts in output.get("contracts", {}).items():
            for contract_name, contract_data in file_contracts.items():
                evm = contract_data.get("evm") or {}
                result.contracts.append(CompiledContract(
                    name=contract_name,
                    source_file=source_file,
                    abi=contract_data.get("abi") or [],
                    method_identifiers=evm.get("methodIdentifiers") or {},
                ))

        for source_file, source_data in output.get("sources", {}).items():
            ast = source_data.get("ast") or source_data.get("legacyAST")
            if ast:
                result.asts[source_file] = ast

        if not result.contracts:
            raise CompileDiagnostics("solc produced no contracts")

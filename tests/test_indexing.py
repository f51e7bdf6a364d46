"""
Unit tests for contract_indexer/indexing.py

Covers: partial-failure tolerance, determinism, upsert on re-index,
resumability, atomic chunk commits, interruption.
"""

from unittest.mock import patch

import duckdb
import pytest

from contract_indexer.compiler import CompilationOrchestrator
from contract_indexer.errors import CompileDiagnostics, StorageError
from contract_indexer.indexing import IndexingStage
from contract_indexer.models import ContractStatus

from solc_fakes import (
    FakeInvoker,
    FakeResolver,
    build_solc_output,
    counter_multi_file,
    simple_contract,
)


@pytest.fixture
def invoker():
    return FakeInvoker()


@pytest.fixture
def make_stage(storage, invoker):
    def _make(chunk_size=100, workers=4, **orchestrator_kwargs):
        orchestrator = CompilationOrchestrator(FakeResolver(), invoker=invoker, **orchestrator_kwargs)
        return IndexingStage(storage, orchestrator, chunk_size=chunk_size, workers=workers)
    return _make


def load(storage, invoker, pairs):
    """Store contracts and register their canned outputs."""
    for contract, output in pairs:
        invoker.register(contract, output)
    storage.store_contracts([contract for contract, _ in pairs])
    return [contract for contract, _ in pairs]


def function_rows(storage):
    return storage.conn.execute(
        "SELECT contract_id, selector, signature, mutability, visibility FROM function "
        "ORDER BY contract_id, selector"
    ).fetchall()


# ====================================================================== #
#  Partial failures
# ====================================================================== #

class TestErrorTolerance:
    def test_one_failure_does_not_stop_the_batch(self, storage, invoker, make_stage):
        pairs = [simple_contract(i) for i in range(10)]
        contracts = load(storage, invoker, pairs)
        broken = contracts[4]
        invoker.register(broken, build_solc_output([], errors=[
            {"severity": "error", "formattedMessage": "ParserError: Expected ';' but got '}'"},
        ]))

        summary = make_stage(chunk_size=3).run()

        assert summary.indexed == 9
        assert summary.failed == 1
        assert summary.failures == {"compile_diagnostics": 1}
        assert summary.functions == 18
        assert storage.get_status(broken.id) == ContractStatus.FAILED
        assert storage.count_functions(broken.id) == 0
        for contract in contracts:
            if contract is not broken:
                assert storage.get_status(contract.id) == ContractStatus.INDEXED
                assert storage.count_functions(contract.id) == 2

    def test_failure_kind_and_message_are_stored(self, storage, invoker, make_stage):
        contract, _ = simple_contract(1, version="0.4.11")
        storage.store_contracts([contract])

        summary = make_stage().run()

        assert summary.failures == {"missing_binary": 1}
        row = storage.conn.execute(
            "SELECT error_kind, error_message FROM contract WHERE id = ?", [contract.id]
        ).fetchone()
        assert row[0] == "missing_binary"
        assert "0.4.11" in row[1]
        assert not summary.success

    def test_extraction_errors_mark_contract_failed(self, storage, invoker, make_stage):
        contract, output = counter_multi_file()
        output["contracts"]["Counter.sol"].pop("Counter")
        load(storage, invoker, [(contract, output)])

        summary = make_stage().run()

        assert summary.failures == {"missing_contract": 1}
        assert storage.get_status(contract.id) == ContractStatus.FAILED

    def test_diagnostics_are_not_retried(self, storage, invoker, make_stage):
        contract, output = simple_contract(1)
        load(storage, invoker, [(contract, output)])
        with patch.object(invoker, "invoke", side_effect=CompileDiagnostics("boom")) as invoke:
            make_stage().run()
        assert invoke.call_count == 1
        assert storage.get_status(contract.id) == ContractStatus.FAILED


# ====================================================================== #
#  Determinism and re-indexing
# ====================================================================== #

class TestReindex:
    def test_deterministic_across_runs_and_worker_counts(self, storage, invoker, make_stage):
        load(storage, invoker, [simple_contract(i) for i in range(6)] + [counter_multi_file()])

        make_stage(chunk_size=2, workers=1).run()
        first = function_rows(storage)
        make_stage(chunk_size=5, workers=4).run(reindex=True)
        second = function_rows(storage)

        assert first == second
        assert len(first) == 6 * 2 + 5

    def test_reindex_replaces_rows(self, storage, invoker, make_stage):
        contract, output = counter_multi_file()
        load(storage, invoker, [(contract, output)])
        make_stage().run()
        assert storage.count_functions(contract.id) == 5

        # Same sources, but solc now reports only the interface members
        slim = build_solc_output([
            {"path": "ICounter.sol", "source": contract.sources[0][1], "contracts": [
                {"name": "Counter", "kind": "contract", "functions": [
                    {"name": "increment", "inputs": [], "visibility": "external"},
                ]},
            ]},
        ])
        invoker.register(contract, slim)
        summary = make_stage().run(reindex=True)

        assert summary.reset == 1
        assert [f.signature for f in storage.get_functions(contract.id)] == ["increment()"]

    def test_nothing_pending_means_nothing_compiled(self, storage, invoker, make_stage):
        load(storage, invoker, [simple_contract(1)])
        make_stage().run()
        calls = len(invoker.calls)

        summary = make_stage().run()

        assert summary.processed == 0
        assert len(invoker.calls) == calls

    def test_retry_failed_only(self, storage, invoker, make_stage):
        good, good_out = simple_contract(1)
        bad, bad_out = simple_contract(2)
        load(storage, invoker, [(good, good_out), (bad, bad_out)])
        invoker.register(bad, CompileDiagnostics("transient"))
        make_stage().run()

        invoker.register(bad, bad_out)
        calls = len(invoker.calls)
        summary = make_stage().run(retry_failed=True)

        assert summary.reset == 1
        assert summary.indexed == 1
        assert len(invoker.calls) == calls + 1
        assert storage.get_status(bad.id) == ContractStatus.INDEXED

    def test_limit(self, storage, invoker, make_stage):
        load(storage, invoker, [simple_contract(i) for i in range(5)])

        summary = make_stage(chunk_size=2).run(limit=3)

        assert summary.processed == 3
        assert storage.count_contracts(ContractStatus.PENDING) == 2

    def test_modes_are_exclusive(self, make_stage):
        with pytest.raises(ValueError):
            make_stage().run(reindex=True, retry_failed=True)


# ====================================================================== #
#  Atomicity and interruption
# ====================================================================== #

class TestAtomicity:
    def test_storage_failure_aborts_without_partial_chunk(self, storage, invoker, make_stage):
        contracts = load(storage, invoker, [simple_contract(i) for i in range(4)])

        with patch.object(storage, "_set_statuses", side_effect=duckdb.Error("disk full")):
            with pytest.raises(StorageError):
                make_stage(chunk_size=4).run()

        assert storage.count_functions() == 0
        assert all(storage.get_status(c.id) == ContractStatus.PENDING for c in contracts)

    def test_interrupt_abandons_chunk(self, storage, invoker, make_stage):
        contracts = load(storage, invoker, [simple_contract(i) for i in range(3)])

        with patch.object(invoker, "invoke", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                make_stage(workers=1).run()

        assert storage.count_functions() == 0
        assert all(storage.get_status(c.id) == ContractStatus.PENDING for c in contracts)

    def test_interrupted_run_resumes(self, storage, invoker, make_stage):
        load(storage, invoker, [simple_contract(i) for i in range(3)])
        with patch.object(invoker, "invoke", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                make_stage(workers=1).run()

        summary = make_stage().run()

        assert summary.indexed == 3

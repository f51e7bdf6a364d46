"""
Unit tests for contract_indexer/storage.py

Covers: schema migration, idempotent contract inserts, keyset pagination,
status resets, atomic chunk commits.
"""

from unittest.mock import patch

import duckdb
import pytest

from contract_indexer.errors import StorageError
from contract_indexer.models import (
    CompilerSettings,
    Contract,
    ContractStatus,
    FunctionRecord,
    IndexOutcome,
    Mutability,
    SourceFormat,
    Visibility,
)
from contract_indexer.storage import Storage

from solc_fakes import COUNTER_SOL, ICOUNTER_SOL, simple_contract


def record(contract_id, selector, signature="f()", name="f"):
    return FunctionRecord(
        contract_id=contract_id,
        selector=selector,
        signature=signature,
        function_name=name,
        mutability=Mutability.NONPAYABLE,
        visibility=Visibility.EXTERNAL,
        contract_name="Box",
    )


def indexed(contract_id, *records):
    return IndexOutcome(contract_id, ContractStatus.INDEXED, functions=list(records))


# ====================================================================== #
#  Schema
# ====================================================================== #

class TestSchema:
    def test_creates_parent_directories(self, tmp_path):
        path = tmp_path / "a" / "b" / "db.duckdb"
        with Storage(str(path)):
            pass
        assert path.exists()

    def test_reopen_is_a_no_op(self, tmp_path):
        path = str(tmp_path / "db.duckdb")
        with Storage(path) as first:
            first.store_contracts([simple_contract(1)[0]])
        with Storage(path) as second:
            assert second.count_contracts() == 1

    def test_adds_columns_missing_from_older_files(self, tmp_path):
        path = str(tmp_path / "old.duckdb")
        conn = duckdb.connect(path)
        conn.execute(
            "CREATE TABLE function (contract_id VARCHAR NOT NULL, selector VARCHAR NOT NULL, "
            "signature VARCHAR NOT NULL, function_name VARCHAR, mutability VARCHAR, "
            "visibility VARCHAR, contract_name VARCHAR)"
        )
        conn.close()

        with Storage(path) as db:
            columns = {
                r[0] for r in db.conn.execute(
                    "SELECT column_name FROM information_schema.columns WHERE table_name = 'function'"
                ).fetchall()
            }
        assert {"declaring_contract", "filename", "source_code"} <= columns


# ====================================================================== #
#  Contracts
# ====================================================================== #

class TestStoreContracts:
    def test_round_trip(self, storage):
        contract = Contract(
            name="Counter",
            compiler_version="v0.8.20+commit.a1b79de6",
            sources=[("ICounter.sol", ICOUNTER_SOL), ("Counter.sol", COUNTER_SOL)],
            settings=CompilerSettings(
                optimizer_enabled=True,
                remappings=["a/=b/"],
                libraries={"Counter.sol": {"Lib": "0x" + "11" * 20}},
            ),
            source_format=SourceFormat.MULTI_SOL,
            address="0x" + "ab" * 20,
            constructor_args="00ff",
        )
        assert storage.store_contracts([contract]) == 1

        loaded = storage.get_contract(contract.id)
        assert loaded == contract
        assert storage.get_status(contract.id) == ContractStatus.PENDING

    def test_idempotent(self, storage):
        contracts = [simple_contract(i)[0] for i in range(3)]
        assert storage.store_contracts(contracts) == 3
        assert storage.store_contracts(contracts) == 0
        assert storage.count_contracts() == 3

    def test_duplicates_within_one_chunk(self, storage):
        contract = simple_contract(1)[0]
        assert storage.store_contracts([contract, contract]) == 1

    def test_existing_status_is_not_touched(self, storage):
        contract = simple_contract(1)[0]
        storage.store_contracts([contract])
        storage.commit_chunk([indexed(contract.id)])
        storage.store_contracts([contract])
        assert storage.get_status(contract.id) == ContractStatus.INDEXED

    def test_unknown_contract(self, storage):
        assert storage.get_contract("nope") is None
        assert storage.get_status("nope") is None


class TestPendingAndStatus:
    def test_keyset_pagination(self, storage):
        contracts = [simple_contract(i)[0] for i in range(5)]
        storage.store_contracts(contracts)
        ids = sorted(c.id for c in contracts)

        first = storage.fetch_pending(limit=2)
        rest = storage.fetch_pending(after_id=first[-1].id, limit=10)

        assert [c.id for c in first] == ids[:2]
        assert [c.id for c in rest] == ids[2:]

    def test_reset_status(self, storage):
        a, b, c = (simple_contract(i)[0] for i in range(3))
        storage.store_contracts([a, b, c])
        storage.commit_chunk([
            indexed(a.id),
            IndexOutcome(b.id, ContractStatus.FAILED, error_kind="compile_timeout", error_message="slow"),
        ])

        assert storage.reset_status([ContractStatus.FAILED]) == 1
        assert storage.get_status(b.id) == ContractStatus.PENDING
        assert storage.get_status(a.id) == ContractStatus.INDEXED
        assert storage.failure_counts() == {}

    def test_counts(self, storage):
        a, b = (simple_contract(i)[0] for i in range(2))
        storage.store_contracts([a, b])
        storage.commit_chunk([
            IndexOutcome(a.id, ContractStatus.FAILED, error_kind="missing_binary", error_message="x"),
        ])
        assert storage.status_counts() == {"pending": 1, "indexed": 0, "failed": 1}
        assert storage.failure_counts() == {"missing_binary": 1}
        assert storage.count_contracts(ContractStatus.PENDING) == 1


# ====================================================================== #
#  Function rows
# ====================================================================== #

class TestCommitChunk:
    def test_replaces_rows_on_reindex(self, storage):
        contract = simple_contract(1)[0]
        storage.store_contracts([contract])
        storage.commit_chunk([indexed(contract.id, record(contract.id, "0x00000001"),
                                      record(contract.id, "0x00000002"))])
        storage.commit_chunk([indexed(contract.id, record(contract.id, "0x00000003"))])

        assert [f.selector for f in storage.get_functions(contract.id)] == ["0x00000003"]

    def test_failed_outcome_clears_rows(self, storage):
        contract = simple_contract(1)[0]
        storage.store_contracts([contract])
        storage.commit_chunk([indexed(contract.id, record(contract.id, "0x00000001"))])
        storage.commit_chunk([
            IndexOutcome(contract.id, ContractStatus.FAILED, error_kind="process_crash", error_message="boom"),
        ])
        assert storage.count_functions(contract.id) == 0
        assert storage.get_status(contract.id) == ContractStatus.FAILED

    def test_duplicate_selectors_collapse(self, storage):
        contract = simple_contract(1)[0]
        storage.store_contracts([contract])
        storage.commit_chunk([indexed(contract.id, record(contract.id, "0x00000001"),
                                      record(contract.id, "0x00000001"))])
        assert storage.count_functions() == 1

    def test_rows_are_ordered_by_selector(self, storage):
        contract = simple_contract(1)[0]
        storage.store_contracts([contract])
        storage.commit_chunk([indexed(contract.id, record(contract.id, "0xffffffff"),
                                      record(contract.id, "0x0000000a"))])
        assert [f.selector for f in storage.get_functions(contract.id)] == ["0x0000000a", "0xffffffff"]

    def test_crash_mid_commit_leaves_nothing_behind(self, storage):
        a, b = (simple_contract(i)[0] for i in range(2))
        storage.store_contracts([a, b])
        storage.commit_chunk([indexed(a.id, record(a.id, "0x00000001"))])

        with patch.object(storage, "_set_statuses", side_effect=duckdb.Error("disk full")):
            with pytest.raises(StorageError):
                storage.commit_chunk([
                    indexed(a.id, record(a.id, "0x00000009")),
                    indexed(b.id, record(b.id, "0x00000002")),
                ])

        assert [f.selector for f in storage.get_functions(a.id)] == ["0x00000001"]
        assert storage.count_functions(b.id) == 0
        assert storage.get_status(b.id) == ContractStatus.PENDING

        # The connection is still usable afterwards
        storage.commit_chunk([indexed(b.id, record(b.id, "0x00000002"))])
        assert storage.get_status(b.id) == ContractStatus.INDEXED

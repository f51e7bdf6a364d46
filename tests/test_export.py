"""
Unit tests for contract_indexer/export.py
"""

import json

import pytest

from contract_indexer.export import (
    UnknownContract,
    export_contract,
    plan_output_paths,
    sanitize_path,
)
from contract_indexer.models import CompilerSettings, Contract, SourceFormat
from contract_indexer.normalizer import normalize
from contract_indexer.readers import iter_plain_contract_records

from solc_fakes import COUNTER_SOL, ICOUNTER_SOL


class TestSanitizePath:
    @pytest.mark.parametrize("raw, expected", [
        ("contracts/Token.sol", "contracts/Token.sol"),
        ("/abs/path/Token.sol", "abs/path/Token.sol"),
        ("../../etc/passwd", "etc/passwd"),
        ("a/./b/../c.sol", "a/b/c.sol"),
        ("C:\\Users\\dev\\Token.sol", "Users/dev/Token.sol"),
        ("@openzeppelin/contracts/token/ERC20.sol", "@openzeppelin/contracts/token/ERC20.sol"),
        ("..", "source.sol"),
    ])
    def test_cases(self, raw, expected):
        assert sanitize_path(raw) == expected


class TestPlanOutputPaths:
    def test_missing_extension_gets_sol(self):
        assert plan_output_paths([("Token", "x")]) == [("Token.sol", "x")]

    def test_extension_not_added_when_it_collides(self):
        planned = plan_output_paths([("Token", "a"), ("Token.sol", "b")])
        assert planned == [("Token", "a"), ("Token.sol", "b")]

    def test_collisions_after_sanitizing_get_suffixes(self):
        planned = plan_output_paths([("../A.sol", "1"), ("A.sol", "2"), ("metadata.json", "3")])
        assert [path for path, _ in planned] == ["A.sol", "A_1.sol", "metadata_1.json"]


class TestExportContract:
    @pytest.fixture
    def contract(self, storage):
        contract = Contract(
            name="Counter",
            compiler_version="v0.8.20+commit.a1b79de6",
            sources=[("src/ICounter.sol", ICOUNTER_SOL), ("src/Counter.sol", COUNTER_SOL)],
            settings=CompilerSettings(optimizer_enabled=True, optimizer_runs=777, evm_version="paris"),
            source_format=SourceFormat.STANDARD_JSON,
            address="0x" + "cd" * 20,
        )
        storage.store_contracts([contract])
        return contract

    def test_writes_sources_and_metadata(self, storage, contract, tmp_path):
        target = export_contract(storage, contract.id, str(tmp_path / "out"))

        assert target == tmp_path / "out" / contract.id
        assert (target / "src" / "Counter.sol").read_text() == COUNTER_SOL
        assert (target / "src" / "ICounter.sol").read_text() == ICOUNTER_SOL
        metadata = json.loads((target / "metadata.json").read_text())
        assert metadata["ContractName"] == "Counter"
        assert metadata["CompilerVersion"] == "v0.8.20+commit.a1b79de6"
        assert metadata["Runs"] == 777
        assert metadata["OptimizationUsed"] == 1

    def test_export_can_be_reingested(self, storage, contract, tmp_path):
        export_contract(storage, contract.id, str(tmp_path / "out"))

        records = list(iter_plain_contract_records(str(tmp_path / "out")))

        assert len(records) == 1
        assert normalize(records[0]).id == contract.id

    def test_unknown_contract(self, storage, tmp_path):
        with pytest.raises(UnknownContract):
            export_contract(storage, "0" * 32, str(tmp_path / "out"))
        assert not (tmp_path / "out").exists()

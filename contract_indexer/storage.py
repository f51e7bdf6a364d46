"""
Storage Gateway

Thin transactional wrapper around a DuckDB database file holding two tables:

* ``contract`` -- one row per normalized contract, keyed by its content id.
* ``function`` -- one row per externally callable function of an indexed
  contract, unique on ``(contract_id, selector)``.

A single :class:`Storage` instance is built per run and handed to each stage.
Only the thread that owns it writes; compilation workers never see it.
"""

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

import duckdb

from .errors import StorageError
from .models import (
    CompilerSettings,
    Contract,
    ContractStatus,
    FunctionRecord,
    IndexOutcome,
    Mutability,
    SourceFormat,
    Visibility,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS contract (
        id               VARCHAR PRIMARY KEY,
        address          VARCHAR,
        name             VARCHAR,
        compiler_version VARCHAR,
        source_format    VARCHAR,
        sources          VARCHAR,
        settings         VARCHAR,
        constructor_args VARCHAR,
        status           VARCHAR NOT NULL DEFAULT 'pending'
                         CHECK (status IN ('pending', 'indexed', 'failed')),
        error_kind       VARCHAR,
        error_message    VARCHAR,
        created_at       TIMESTAMP DEFAULT current_timestamp,
        indexed_at       TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS function (
        contract_id        VARCHAR NOT NULL,
        selector           VARCHAR NOT NULL,
        signature          VARCHAR NOT NULL,
        function_name      VARCHAR,
        mutability         VARCHAR,
        visibility         VARCHAR,
        contract_name      VARCHAR,
        declaring_contract VARCHAR,
        filename           VARCHAR,
        source_code        VARCHAR
    )
    """,
]

# Columns that databases created by earlier releases may lack. Only missing
# columns are added: DuckDB refuses ALTER TABLE on tables with indexes, and
# older files predate the indexes.
_MIGRATIONS = {
    "contract": [
        ("constructor_args", "VARCHAR"),
        ("error_kind", "VARCHAR"),
        ("error_message", "VARCHAR"),
        ("indexed_at", "TIMESTAMP"),
    ],
    "function": [
        ("declaring_contract", "VARCHAR"),
        ("filename", "VARCHAR"),
        ("source_code", "VARCHAR"),
    ],
}

# No index on contract.status: DuckDB rewrites updates of indexed columns as
# delete + insert, which trips the primary key within one transaction.
_INDEXES = [
    ("idx_function_contract_selector", "function(contract_id, selector)"),
    ("idx_function_selector", "function(selector)"),
]

_CONTRACT_COLUMNS = (
    "id, address, name, compiler_version, source_format, sources, settings, constructor_args"
)
_FUNCTION_COLUMNS = (
    "contract_id, selector, signature, function_name, mutability, visibility, "
    "contract_name, declaring_contract, filename, source_code"
)


def row_to_contract(row: Sequence) -> Contract:
    """Build a Contract from a ``_CONTRACT_COLUMNS`` row."""
    cid, address, name, version, source_format, sources, settings, ctor_args = row
    return Contract(
        id=cid,
        address=address,
        name=name,
        compiler_version=version,
        source_format=SourceFormat(source_format),
        sources=[(path, content) for path, content in json.loads(sources)],
        settings=CompilerSettings.from_json(settings),
        constructor_args=ctor_args,
    )


def row_to_function(row: Sequence) -> FunctionRecord:
    (contract_id, selector, signature, function_name, mutability, visibility,
     contract_name, declaring_contract, filename, source_code) = row
    return FunctionRecord(
        contract_id=contract_id,
        selector=selector,
        signature=signature,
        function_name=function_name,
        mutability=Mutability(mutability),
        visibility=Visibility(visibility),
        contract_name=contract_name,
        declaring_contract=declaring_contract,
        filename=filename,
        source_code=source_code or "",
    )


class Storage:
    """Owner of the DuckDB connection for one run."""

    def __init__(self, db_file: str):
        path = Path(db_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = duckdb.connect(str(path))
        except duckdb.Error as e:
            raise StorageError(f"Cannot open database {path}: {e}") from e
        self.db_file = str(path)
        self.migrate()

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "Storage":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    #  Schema
    # ------------------------------------------------------------------ #

    def migrate(self) -> None:
        """Create tables and indexes, adding columns missing from older files."""
        with self._transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
            for table, columns in _MIGRATIONS.items():
                existing = {
                    r[0] for r in conn.execute(
                        "SELECT column_name FROM information_schema.columns WHERE table_name = ?",
                        [table],
                    ).fetchall()
                }
                for name, col_type in columns:
                    if name not in existing:
                        logger.info(f"Migrating {table}: adding column {name}")
                        conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {col_type}")
            for name, definition in _INDEXES:
                conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {definition}")

    @contextmanager
    def _transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run the body in one transaction; any DuckDB error rolls it back."""
        self.conn.begin()
        try:
            yield self.conn
            self.conn.commit()
        except duckdb.Error as e:
            self._rollback()
            raise StorageError(str(e)) from e
        except BaseException:
            self._rollback()
            raise

    def _rollback(self) -> None:
        try:
            self.conn.rollback()
        except duckdb.Error as e:
            # Nothing to roll back when the failure was the COMMIT itself
            logger.debug(f"Rollback failed: {e}")

    # ------------------------------------------------------------------ #
    #  Contracts
    # ------------------------------------------------------------------ #

    def store_contracts(self, contracts: Iterable[Contract]) -> int:
        """Insert a chunk of contracts, skipping ids already present.

        Returns the number of rows actually inserted.
        """
        unique: Dict[str, Contract] = {}
        for c in contracts:
            unique.setdefault(c.id, c)
        if not unique:
            return 0

        values = [
            (
                c.id,
                c.address,
                c.name,
                c.compiler_version,
                c.source_format.value,
                json.dumps([[path, content] for path, content in c.sources]),
                c.settings.to_json(),
                c.constructor_args,
            )
            for c in unique.values()
        ]
        with self._transaction() as conn:
            before = conn.execute("SELECT COUNT(*) FROM contract").fetchone()[0]
            conn.executemany(
                f"INSERT INTO contract ({_CONTRACT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?) ON CONFLICT DO NOTHING",
                values,
            )
            after = conn.execute("SELECT COUNT(*) FROM contract").fetchone()[0]
        return after - before

    def get_contract(self, contract_id: str) -> Optional[Contract]:
        row = self._query_one(
            f"SELECT {_CONTRACT_COLUMNS} FROM contract WHERE id = ?", (contract_id,)
        )
        return row_to_contract(row) if row else None

    def get_status(self, contract_id: str) -> Optional[ContractStatus]:
        row = self._query_one("SELECT status FROM contract WHERE id = ?", (contract_id,))
        return ContractStatus(row[0]) if row else None

    def fetch_pending(self, after_id: str = "", limit: int = 100) -> List[Contract]:
        """Return up to ``limit`` pending contracts with ``id > after_id``."""
        rows = self._query_all(
            f"SELECT {_CONTRACT_COLUMNS} FROM contract "
            "WHERE status = 'pending' AND id > ? ORDER BY id LIMIT ?",
            (after_id, limit),
        )
        return [row_to_contract(r) for r in rows]

    def reset_status(self, statuses: Iterable[ContractStatus]) -> int:
        """Move contracts in ``statuses`` back to pending; returns rows changed."""
        values = [s.value for s in statuses if s != ContractStatus.PENDING]
        if not values:
            return 0
        placeholders = ", ".join("?" for _ in values)
        with self._transaction() as conn:
            count = conn.execute(
                f"SELECT COUNT(*) FROM contract WHERE status IN ({placeholders})", values
            ).fetchone()[0]
            conn.execute(
                "UPDATE contract SET status = 'pending', error_kind = NULL, "
                f"error_message = NULL WHERE status IN ({placeholders})",
                values,
            )
        return count

    def count_contracts(self, status: Optional[ContractStatus] = None) -> int:
        if status is None:
            return self._query_one("SELECT COUNT(*) FROM contract")[0]
        return self._query_one(
            "SELECT COUNT(*) FROM contract WHERE status = ?", (status.value,)
        )[0]

    def status_counts(self) -> Dict[str, int]:
        rows = self._query_all("SELECT status, COUNT(*) FROM contract GROUP BY status")
        counts = {s.value: 0 for s in ContractStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def failure_counts(self) -> Dict[str, int]:
        rows = self._query_all(
            "SELECT error_kind, COUNT(*) FROM contract WHERE status = 'failed' "
            "GROUP BY error_kind ORDER BY COUNT(*) DESC"
        )
        return {kind or "unknown": count for kind, count in rows}

    # ------------------------------------------------------------------ #
    #  Functions
    # ------------------------------------------------------------------ #

    def commit_chunk(self, outcomes: Sequence[IndexOutcome]) -> None:
        """Atomically replace function rows and statuses for a chunk.

        Either every contract in ``outcomes`` gets its rows and new status,
        or nothing changes.
        """
        if not outcomes:
            return
        with self._transaction():
            self._replace_functions(outcomes)
            self._set_statuses(outcomes)

    def _replace_functions(self, outcomes: Sequence[IndexOutcome]) -> None:
        self.conn.executemany(
            "DELETE FROM function WHERE contract_id = ?",
            [(o.contract_id,) for o in outcomes],
        )
        rows = []
        for outcome in outcomes:
            if outcome.status != ContractStatus.INDEXED:
                continue
            seen = set()
            for record in outcome.functions:
                if record.selector in seen:
                    continue
                seen.add(record.selector)
                rows.append(record.to_row())
        if rows:
            self.conn.executemany(
                f"INSERT INTO function ({_FUNCTION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )

    def _set_statuses(self, outcomes: Sequence[IndexOutcome]) -> None:
        self.conn.executemany(
            "UPDATE contract SET status = ?, error_kind = ?, error_message = ?, "
            "indexed_at = current_timestamp WHERE id = ?",
            [
                (o.status.value, o.error_kind, o.error_message, o.contract_id)
                for o in outcomes
            ],
        )

    def get_functions(self, contract_id: str) -> List[FunctionRecord]:
        rows = self._query_all(
            f"SELECT {_FUNCTION_COLUMNS} FROM function WHERE contract_id = ? ORDER BY selector",
            (contract_id,),
        )
        return [row_to_function(r) for r in rows]

    def count_functions(self, contract_id: Optional[str] = None) -> int:
        if contract_id is None:
            return self._query_one("SELECT COUNT(*) FROM function")[0]
        return self._query_one(
            "SELECT COUNT(*) FROM function WHERE contract_id = ?", (contract_id,)
        )[0]

    # ------------------------------------------------------------------ #
    #  Query helpers
    # ------------------------------------------------------------------ #

    def _query_one(self, sql: str, params: Sequence = ()) -> Optional[tuple]:
        try:
            return self.conn.execute(sql, list(params)).fetchone()
        except duckdb.Error as e:
            raise StorageError(str(e)) from e

    def _query_all(self, sql: str, params: Sequence = ()) -> List[tuple]:
        try:
            return self.conn.execute(sql, list(params)).fetchall()
        except duckdb.Error as e:
            raise StorageError(str(e)) from e

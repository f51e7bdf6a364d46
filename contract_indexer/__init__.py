"""
Smart Contract Function Indexer

Ingests corpora of verified Solidity sources (bulk dataset folders and
Etherscan JSON bundles) into DuckDB, compiles every contract with the exact
solc version it declares, and indexes the externally callable functions of
each contract (signature, 4-byte selector, mutability, visibility).
"""

__version__ = "1.0.0"
__author__ = "Smart Contract Indexing Team"

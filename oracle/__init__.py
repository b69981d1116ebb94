"""
Oracle Bridge to the external token ledger

Provides the single-signer bridge that mints, burns and refunds tokens and
certifies quest completions on-chain, and the reconciliation job that closes
the gap between off-chain balances and on-chain holdings.
"""

from .bridge import (
    CertificationResult,
    LedgerRecordResult,
    MintResult,
    OracleBridge,
    build_bridge,
    proof_hash_for,
)
from .client import InMemoryLedgerClient, Web3LedgerClient
from .reconciliation import ReconciliationJob, ReconciliationReport, run_periodically
from .signer import OracleSigner

__all__ = [
    "CertificationResult",
    "LedgerRecordResult",
    "MintResult",
    "OracleBridge",
    "build_bridge",
    "proof_hash_for",
    "InMemoryLedgerClient",
    "Web3LedgerClient",
    "ReconciliationJob",
    "ReconciliationReport",
    "run_periodically",
    "OracleSigner",
]

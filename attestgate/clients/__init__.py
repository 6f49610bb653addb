"""
AttestGate — External Service Clients

Connection management for the ledger RPC endpoint (web3), the
data-availability layer (httpx) and the file-backed proof store.
"""

from attestgate.clients.data_availability import DataAvailabilityClient, DataAvailabilityProof
from attestgate.clients.ledger import LedgerClient
from attestgate.clients.proof_store import ProofStore, normalize_proof_document
from attestgate.clients.retry import RetryPolicy

__all__ = [
    "LedgerClient",
    "DataAvailabilityClient",
    "DataAvailabilityProof",
    "ProofStore",
    "normalize_proof_document",
    "RetryPolicy",
]

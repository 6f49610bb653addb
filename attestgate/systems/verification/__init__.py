"""
AttestGate — Verification

Turns an attestation transaction plus its proof artifact into one
AttestationVerdict.

Public interface:
  VerificationOrchestrator  — runs every policy, persists the report
  VerificationReportStore   — JSON audit reports keyed by tx hash
  Policy                    — ABC for verification policies
  ProofCallStrategy         — one verification-contract call signature
"""

from attestgate.systems.verification.orchestrator import VerificationOrchestrator
from attestgate.systems.verification.policies import Policy, PolicyContext
from attestgate.systems.verification.report import RewardOutcomeStore, VerificationReportStore
from attestgate.systems.verification.strategies import ProofCallStrategy, resolve_strategies

__all__ = [
    "VerificationOrchestrator",
    "VerificationReportStore",
    "RewardOutcomeStore",
    "Policy",
    "PolicyContext",
    "ProofCallStrategy",
    "resolve_strategies",
]

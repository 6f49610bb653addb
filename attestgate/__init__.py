"""AttestGate: attestation verification and replay-protected reward execution."""

__version__ = "0.1.0"

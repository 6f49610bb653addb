"""AttestGate — Telemetry (structured logging)."""

from attestgate.telemetry.logging import setup_logging

__all__ = ["setup_logging"]

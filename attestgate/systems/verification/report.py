"""
AttestGate — Audit Report Stores

JSON artifacts written after every run, success or not, keyed by the
attestation transaction hash. A re-run overwrites the previous file for the
same hash.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from attestgate.primitives.common import normalize_bytes32
from attestgate.primitives.reward import RewardOutcome
from attestgate.primitives.verdict import AttestationVerdict

logger = structlog.get_logger()


class _JsonReportStore:
    prefix: str = ""

    def __init__(self, report_dir: str | Path) -> None:
        self._dir = Path(report_dir)
        self._logger = logger.bind(system="verification.report")

    def path_for(self, tx_hash: str) -> Path:
        return self._dir / f"{self.prefix}_{normalize_bytes32(tx_hash, field='tx_hash')}.json"

    def _write(self, tx_hash: str, body: dict[str, Any]) -> Path:
        path = self.path_for(tx_hash)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(body, indent=2, sort_keys=False), encoding="utf-8")
        tmp.replace(path)
        self._logger.info("report_saved", kind=self.prefix, tx_hash=tx_hash, path=str(path))
        return path

    def _read(self, tx_hash: str) -> dict[str, Any] | None:
        path = self.path_for(tx_hash)
        if not path.exists():
            return None
        return json.loads(path.read_text("utf-8"))


class VerificationReportStore(_JsonReportStore):
    prefix = "verification"

    def save(self, verdict: AttestationVerdict) -> Path:
        return self._write(verdict.tx_hash, verdict.to_report())

    def load(self, tx_hash: str) -> AttestationVerdict | None:
        report = self._read(tx_hash)
        return AttestationVerdict.from_report(report) if report is not None else None


class RewardOutcomeStore(_JsonReportStore):
    prefix = "reward"

    def save(self, outcome: RewardOutcome) -> Path:
        return self._write(outcome.verdict.tx_hash, outcome.to_report())

    def load_raw(self, tx_hash: str) -> dict[str, Any] | None:
        return self._read(tx_hash)

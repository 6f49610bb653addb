"""Tests for the JSON audit report stores."""

from __future__ import annotations

import json

import pytest

from attestgate.errors import ConfigurationError
from attestgate.systems.verification.report import RewardOutcomeStore, VerificationReportStore
from tests.fakes import ATT_TX


class TestReportStores:
    def test_paths_keyed_by_normalised_hash(self, tmp_path):
        verification = VerificationReportStore(tmp_path)
        reward = RewardOutcomeStore(tmp_path)

        assert verification.path_for(ATT_TX.upper().replace("0X", "0x")).name == f"verification_{ATT_TX}.json"
        assert reward.path_for(ATT_TX).name == f"reward_{ATT_TX}.json"

    def test_invalid_hash_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError):
            VerificationReportStore(tmp_path).path_for("0x1234")

    def test_load_missing(self, tmp_path):
        assert VerificationReportStore(tmp_path).load(ATT_TX) is None
        assert RewardOutcomeStore(tmp_path).load_raw(ATT_TX) is None

    def test_rerun_overwrites(self, tmp_path, make_verdict):
        store = VerificationReportStore(tmp_path)
        store.save(make_verdict(confirmation_depth=False))
        store.save(make_verdict())

        report = json.loads(store.path_for(ATT_TX).read_text("utf-8"))
        assert report["verified"] is True
        assert list(tmp_path.iterdir()) == [store.path_for(ATT_TX)]

    def test_run_id_survives_reload(self, tmp_path, make_verdict):
        store = VerificationReportStore(tmp_path)
        verdict = make_verdict().model_copy(update={"run_id": "01JB0000000000000000000000"})
        store.save(verdict)

        assert json.loads(store.path_for(ATT_TX).read_text("utf-8"))["run_id"] == verdict.run_id
        assert store.load(ATT_TX).run_id == verdict.run_id

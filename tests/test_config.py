"""Tests for stage_recall configuration loading."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from stage_recall.config import (
    BudgetConfig,
    RecallConfig,
    StagePolicy,
    load_config,
    read_yaml,
)
from stage_recall.models import SurfaceStyle


class TestDefaults:
    def test_stage_policies(self):
        policies = RecallConfig().intent.stage_policies

        assert set(policies) == {0, 1, 2, 3, 4}
        assert policies[2].threshold == pytest.approx(0.55)
        assert policies[3].surface_style == SurfaceStyle.EXPLICIT

    def test_stage_one_early_turn_dampening(self):
        policy = RecallConfig().intent.stage_policies[1]
        assert policy.max_cross_session_for(2) == 0
        assert policy.max_cross_session_for(3) == 0
        assert policy.max_cross_session_for(4) == 3

    def test_policy_without_dampening(self):
        assert StagePolicy(max_cross_session=4).max_cross_session_for(1) == 4

    def test_budget_shares(self):
        assert BudgetConfig().evidence_share == pytest.approx(0.4)

    def test_no_path_returns_defaults(self):
        assert load_config(None) == RecallConfig()


class TestLoadConfig:
    def test_reads_nested_section_with_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RECALL_DB", "/tmp/recall.db")
        path = tmp_path / "conf.yaml"
        path.write_text(
            "stage_recall:\n"
            "  storage:\n"
            "    db_path: ${RECALL_DB}\n"
            "  budget:\n"
            "    ceiling_tokens: 8000\n"
            "  intent:\n"
            "    stage_policies:\n"
            "      2:\n"
            "        threshold: 0.7\n"
            "        max_cross_session: 2\n",
            encoding="utf-8",
        )

        config = load_config(path)

        assert config.storage.db_path == "/tmp/recall.db"
        assert config.budget.ceiling_tokens == 8000
        assert config.intent.stage_policies[2].threshold == pytest.approx(0.7)
        assert config.intent.stage_policies[3].max_cross_session == 10

    def test_unknown_env_left_in_place(self, tmp_path, monkeypatch):
        monkeypatch.delenv("RECALL_MISSING", raising=False)
        path = tmp_path / "conf.yaml"
        path.write_text("storage:\n  db_path: ${RECALL_MISSING}\n", encoding="utf-8")

        assert read_yaml(path) == {"storage": {"db_path": "${RECALL_MISSING}"}}

    def test_invalid_ceiling_rejected(self, tmp_path):
        path = tmp_path / "conf.yaml"
        path.write_text("budget:\n  ceiling_tokens: 100\n", encoding="utf-8")

        with pytest.raises(ValidationError):
            load_config(path)

    def test_reservation_must_fit_ceiling(self):
        with pytest.raises(ValidationError):
            RecallConfig(budget=BudgetConfig(ceiling_tokens=1000, output_reservation=1000))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "conf.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == RecallConfig()

"""Unit tests for pydantic-settings configuration groups."""

import pytest
from pydantic import ValidationError

from associative_memory.config import (
    ConsolidationSettings,
    DecaySettings,
    GraphSettings,
    SearchSettings,
    ServerSettings,
    Settings,
    StoreSettings,
)


class TestDefaults:
    def test_decay_constants(self):
        cfg = DecaySettings()
        assert cfg.default_decay_rate == 0.02
        assert cfg.min_decay_rate == 0.01
        assert cfg.importance_resistance == 0.7
        assert cfg.reinforcement_rate == 0.1
        assert cfg.recall_decay_multiplier == 0.85
        assert cfg.recency_half_life_hours == 72.0

    def test_search_weights_sum_to_one(self):
        cfg = SearchSettings()
        total = (
            cfg.weight_similarity + cfg.weight_strength + cfg.weight_frequency + cfg.weight_recency + cfg.weight_importance
        )
        assert total == pytest.approx(1.0)

    def test_thresholds(self):
        assert StoreSettings().reconsolidation_threshold == 0.90
        assert StoreSettings().link_threshold == 0.70
        assert ConsolidationSettings().dedup_threshold == 0.95
        assert ConsolidationSettings().protected_importance == 0.8


class TestEnvironment:
    def test_group_prefixes(self, monkeypatch):
        monkeypatch.setenv("MEM_DECAY_DEFAULT_DECAY_RATE", "0.05")
        monkeypatch.setenv("MEM_SEARCH_DAMPING", "0.3")
        monkeypatch.setenv("MEM_GRAPH_ENABLED", "true")
        monkeypatch.setenv("MEM_SERVER_TRANSPORT", "http")

        assert DecaySettings().default_decay_rate == 0.05
        assert SearchSettings().damping == 0.3
        assert GraphSettings().enabled is True
        assert ServerSettings().transport == "http"

    def test_root_settings_reads_groups(self, monkeypatch):
        monkeypatch.setenv("MEM_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("MEM_CONSOLIDATION_PRUNE_THRESHOLD", "0.1")

        settings = Settings()

        assert settings.storage_backend == "memory"
        assert settings.consolidation.prune_threshold == 0.1

    def test_graph_password_is_secret(self, monkeypatch):
        monkeypatch.setenv("MEM_GRAPH_PASSWORD", "hunter2")
        cfg = GraphSettings()
        assert "hunter2" not in repr(cfg)
        assert cfg.password.get_secret_value() == "hunter2"


class TestValidation:
    def test_link_threshold_must_be_below_reconsolidation(self):
        with pytest.raises(ValidationError):
            StoreSettings(link_threshold=0.95, reconsolidation_threshold=0.9)

    def test_dedup_cannot_be_looser_than_reconsolidation(self):
        with pytest.raises(ValidationError):
            Settings(consolidation=ConsolidationSettings(dedup_threshold=0.85))

    def test_damping_must_be_fractional(self):
        with pytest.raises(ValidationError):
            SearchSettings(damping=1.5)

    def test_unknown_backend_rejected(self, monkeypatch):
        monkeypatch.setenv("MEM_STORAGE_BACKEND", "sqlite")
        with pytest.raises(ValidationError):
            Settings()

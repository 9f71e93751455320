"""
Unit tests for settings validation.
"""

import pytest
from pydantic import ValidationError

from harvestgraph.config import Settings


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.graph_backend == "sql"
        assert settings.movement_anomaly_threshold == 0.7
        assert settings.irrigation_anomaly_threshold == 0.6
        assert settings.anomaly_dedup_window_minutes == 60
        assert settings.task_history_days == 90

    def test_graph_database_url_falls_back(self):
        """Graph tables default to the source database."""
        settings = Settings(_env_file=None, database_url="sqlite+aiosqlite:///ops.db")
        assert settings.resolved_graph_database_url == "sqlite+aiosqlite:///ops.db"

        settings = Settings(
            _env_file=None,
            database_url="sqlite+aiosqlite:///ops.db",
            graph_database_url="sqlite+aiosqlite:///graph.db",
        )
        assert settings.resolved_graph_database_url == "sqlite+aiosqlite:///graph.db"

    def test_backend_is_normalized(self):
        assert Settings(_env_file=None, graph_backend="NetworkX").graph_backend == "networkx"

    def test_unknown_backend(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, graph_backend="neo4j")

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_threshold_bounds(self, threshold):
        """Thresholds are scores and must lie in [0, 1]."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, movement_anomaly_threshold=threshold)

    @pytest.mark.parametrize(
        "field", ["graph_incremental_interval_minutes", "anomaly_dedup_window_minutes", "db_pool_size"]
    )
    def test_positive_intervals(self, field):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_negative_startup_delay(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, graph_startup_delay_minutes=-1)

    def test_production_rejects_debug(self):
        """Production refuses debug mode and the in-memory graph."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, environment="production", debug=True)
        with pytest.raises(ValidationError):
            Settings(_env_file=None, environment="production", graph_backend="networkx")

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("MOVEMENT_ANOMALY_THRESHOLD", "0.55")
        monkeypatch.setenv("GRAPH_BACKEND", "networkx")

        settings = Settings(_env_file=None)

        assert settings.movement_anomaly_threshold == 0.55
        assert settings.graph_backend == "networkx"
        assert settings.is_production is False

"""Tests for harmonization configuration loading."""

import json

import pytest

from jmapc.config import DEFAULT_LEASE_TIMEOUT, HarmonizationConfig, load_config


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    monkeypatch.setenv("JMAPC_HOME", str(tmp_path))
    for name in (
        "JMAPC_LEASE_TIMEOUT",
        "JMAPC_HEARTBEAT_INTERVAL",
        "JMAPC_TRANSPORT_TIMEOUT",
        "JMAPC_RETENTION_DAYS",
        "JMAPC_MAX_WORKERS",
        "JMAPC_DB_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


class TestDefaults:
    def test_defaults(self, isolated_home):
        config = load_config()
        assert config.lease_timeout == DEFAULT_LEASE_TIMEOUT
        assert config.heartbeat_interval == DEFAULT_LEASE_TIMEOUT / 3
        assert config.resolved_db_path() == isolated_home / "jmapc.db"

    def test_heartbeat_must_stay_below_half_the_lease(self):
        with pytest.raises(ValueError):
            HarmonizationConfig(lease_timeout=60, heartbeat_interval=30)
        assert HarmonizationConfig(lease_timeout=60, heartbeat_interval=29).heartbeat_interval == 29

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"lease_timeout": 0},
            {"transport_timeout": -1},
            {"max_workers": 0},
            {"heartbeat_interval": 0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            HarmonizationConfig(**kwargs)


class TestSources:
    def test_config_file(self, isolated_home):
        (isolated_home / "config.json").write_text(
            json.dumps({"lease_timeout": 120, "max_workers": 2, "unknown": True})
        )
        config = load_config()
        assert config.lease_timeout == 120
        assert config.heartbeat_interval == 40
        assert config.max_workers == 2

    def test_environment_overrides_file(self, isolated_home, monkeypatch):
        (isolated_home / "config.json").write_text(json.dumps({"chronicle_retention_days": 10}))
        monkeypatch.setenv("JMAPC_RETENTION_DAYS", "45")
        assert load_config().chronicle_retention_days == 45

    def test_explicit_overrides_win(self, isolated_home, monkeypatch, tmp_path):
        monkeypatch.setenv("JMAPC_DB_PATH", str(tmp_path / "env.db"))
        config = load_config(db_path=tmp_path / "cli.db")
        assert config.resolved_db_path() == tmp_path / "cli.db"

    def test_invalid_environment_value_is_ignored(self, monkeypatch, caplog):
        monkeypatch.setenv("JMAPC_MAX_WORKERS", "many")
        config = load_config()
        assert config.max_workers == HarmonizationConfig().max_workers
        assert any("JMAPC_MAX_WORKERS" in r.getMessage() for r in caplog.records)

    def test_unreadable_file_is_ignored(self, isolated_home):
        (isolated_home / "config.json").write_text("{not json")
        assert load_config().lease_timeout == DEFAULT_LEASE_TIMEOUT

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "custom.json"
        path.write_text(json.dumps({"transport_timeout": 5}))
        assert load_config(path).transport_timeout == 5

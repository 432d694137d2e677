"""Unit tests for hearthcal.config_loader."""

import json
from pathlib import Path

import pytest

from hearthcal.config_loader import Config, config_from_env, load_config, load_env_file

pytestmark = pytest.mark.unit


class TestConfigFromDict:
    def test_from_dict_when_empty_then_defaults(self) -> None:
        assert Config.from_dict(None) == Config()

    def test_from_dict_when_out_of_range_then_clamped(self) -> None:
        cfg = Config.from_dict(
            {
                "backfill_chunk_size": 10,
                "backfill_progress_interval_ms": 120_000,
                "drift_tolerance_ms": 5,
                "query_max_limit": 50,
                "query_default_limit": 500,
            }
        )

        assert cfg.backfill_chunk_size == 100
        assert cfg.backfill_progress_interval_ms == 60_000
        assert cfg.drift_tolerance_ms == 1_000
        assert cfg.query_default_limit == 50

    @pytest.mark.parametrize("raw", ["lots", None, True])
    def test_from_dict_when_not_an_int_then_default(self, raw) -> None:
        assert Config.from_dict({"backfill_chunk_size": raw}).backfill_chunk_size == 500

    def test_from_dict_when_strings_then_coerced(self) -> None:
        cfg = Config.from_dict(
            {
                "backfill_chunk_size": "750",
                "enable_fast_forward": "off",
                "default_timezone": "  ",
                "log_level": "debug",
            }
        )

        assert cfg.backfill_chunk_size == 750
        assert cfg.enable_fast_forward is False
        assert cfg.default_timezone is None
        assert cfg.log_level == "DEBUG"


class TestLoadConfig:
    def test_load_config_when_yaml_file_then_values_read(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(
            "database_path: /var/lib/hearthcal/events.db\n"
            "default_timezone: Europe/Dublin\n"
            "backfill_chunk_size: 1000\n",
            encoding="utf-8",
        )

        cfg = load_config(str(path), use_env=False)

        assert cfg.database_path == "/var/lib/hearthcal/events.db"
        assert cfg.default_timezone == "Europe/Dublin"
        assert cfg.backfill_chunk_size == 1000

    def test_load_config_when_json_file_then_values_read(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"query_default_limit": 25}), encoding="utf-8")

        assert load_config(str(path), use_env=False).query_default_limit == 25

    def test_load_config_when_file_empty_or_missing_then_defaults(self, tmp_path: Path) -> None:
        empty = tmp_path / "empty.yaml"
        empty.write_text("", encoding="utf-8")

        assert load_config(str(empty), use_env=False) == Config()
        assert load_config(str(tmp_path / "missing.yaml"), use_env=False) == Config()

    def test_load_config_when_top_level_not_mapping_then_value_error(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")

        with pytest.raises(ValueError, match="mapping"):
            load_config(str(path), use_env=False)

    def test_load_config_when_env_set_then_env_wins_over_file(
        self, tmp_path: Path, monkeypatch
    ) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("drift_tolerance_ms: 5000\nlog_level: INFO\n", encoding="utf-8")
        monkeypatch.setenv("HEARTHCAL_DRIFT_TOLERANCE_MS", "120000")
        monkeypatch.setenv("HEARTHCAL_LOG_LEVEL", "warning")

        cfg = load_config(str(path), env_file=str(tmp_path / "none.env"))

        assert cfg.drift_tolerance_ms == 120_000
        assert cfg.log_level == "WARNING"


class TestEnvironment:
    def test_config_from_env_when_value_invalid_then_ignored(self, monkeypatch) -> None:
        monkeypatch.setenv("HEARTHCAL_BACKFILL_CHUNK_SIZE", "many")
        monkeypatch.setenv("HEARTHCAL_DATABASE", "/tmp/h.db")

        assert config_from_env() == {"database_path": "/tmp/h.db"}

    def test_load_env_file_when_present_then_unset_keys_loaded(
        self, tmp_path: Path, monkeypatch
    ) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# household defaults\n"
            "HEARTHCAL_DEFAULT_TIMEZONE='Australia/Sydney'\n"
            "HEARTHCAL_DATABASE=/from/file.db\n"
            "not a pair\n",
            encoding="utf-8",
        )
        monkeypatch.delenv("HEARTHCAL_DEFAULT_TIMEZONE", raising=False)
        monkeypatch.setenv("HEARTHCAL_DATABASE", "/from/env.db")

        loaded = load_env_file(env_file)

        assert loaded == ["HEARTHCAL_DEFAULT_TIMEZONE"]
        cfg = load_config(str(tmp_path / "absent.yaml"), env_file=str(env_file))
        assert cfg.default_timezone == "Australia/Sydney"
        assert cfg.database_path == "/from/env.db"

    def test_load_env_file_when_missing_then_nothing_loaded(self, tmp_path: Path) -> None:
        assert load_env_file(tmp_path / "missing.env") == []

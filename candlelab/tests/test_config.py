"""
Tests for config.py — defaults, CANDLELAB_* parsing and error messages.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from config import Settings


class TestSettings:
    def test_defaults(self):
        s = Settings.from_env({})
        assert s == Settings()
        assert s.db_path == ":memory:"
        assert s.random_seed == 42
        assert s.use_synthetic_data is False

    def test_reads_prefixed_values(self):
        s = Settings.from_env({
            "CANDLELAB_DB_PATH": "/tmp/candles.db",
            "CANDLELAB_LOG_LEVEL": "debug",
            "CANDLELAB_API_PORT": "9001",
            "CANDLELAB_METRICS_TTL": "2.5",
            "CANDLELAB_USE_SYNTHETIC_DATA": "yes",
        })
        assert s.db_path == "/tmp/candles.db"
        assert s.log_level == "DEBUG"
        assert s.api_port == 9001
        assert s.metrics_ttl == 2.5
        assert s.use_synthetic_data is True

    def test_unprefixed_ignored(self):
        assert Settings.from_env({"API_PORT": "1"}).api_port == 8000

    def test_blank_values_use_defaults(self):
        s = Settings.from_env({"CANDLELAB_API_HOST": "  ", "CANDLELAB_LOG_FILE": ""})
        assert s.api_host == "127.0.0.1"
        assert s.log_file is None

    def test_seed_none(self):
        assert Settings.from_env({"CANDLELAB_RANDOM_SEED": "none"}).random_seed is None
        assert Settings.from_env({"CANDLELAB_RANDOM_SEED": "7"}).random_seed == 7

    def test_seed_none_any_case(self):
        assert Settings.from_env({"CANDLELAB_RANDOM_SEED": "None"}).random_seed is None
        assert Settings.from_env({"CANDLELAB_RANDOM_SEED": "NONE"}).random_seed is None

    def test_validation_level(self):
        assert Settings().data_validation_level == "normal"
        s = Settings.from_env({"CANDLELAB_DATA_VALIDATION_LEVEL": "Strict"})
        assert s.data_validation_level == "strict"

    def test_bool_falsey(self):
        assert Settings.from_env({"CANDLELAB_USE_SYNTHETIC_DATA": "off"}).use_synthetic_data is False

    def test_bad_int(self):
        with pytest.raises(ValueError, match="CANDLELAB_API_PORT must be an integer"):
            Settings.from_env({"CANDLELAB_API_PORT": "eighty"})

    def test_bad_float(self):
        with pytest.raises(ValueError, match="must be a number"):
            Settings.from_env({"CANDLELAB_HTTP_TIMEOUT": "soon"})

    def test_negative_float(self):
        with pytest.raises(ValueError, match="non-negative"):
            Settings.from_env({"CANDLELAB_MARKET_CACHE_TTL": "-1"})

    def test_os_environ(self, monkeypatch):
        monkeypatch.setenv("CANDLELAB_API_PORT", "8123")
        assert Settings.from_env(load_dotenv_file=False).api_port == 8123

    def test_to_dict(self):
        d = Settings().to_dict()
        assert d["api_port"] == 8000
        assert "prediction_cache_ttl" in d

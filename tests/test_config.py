"""
Tests for utils/config.py - AppConfig environment loading

Also covers api.database.build_service, which turns an AppConfig into a
wired AggregationService.
"""
import json
import os
import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import main
from api.database import build_service
from utils.config import AppConfig

_ENV_VARS = (
    "APP_DB_PATH", "APP_PORT", "APP_HOST", "APP_LOG_FORMAT",
    "ANALYTICS_CACHE_MAX_ITEMS", "ANALYTICS_CACHE_MAX_BYTES",
    "ANALYTICS_CACHE_TTL_SECONDS", "ANALYTICS_QUERY_TIMEOUT_SECONDS",
    "ANALYTICS_MAX_WORKERS", "ANALYTICS_EUR_RATES_PATH",
)


@pytest.fixture()
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestAppConfig:
    def test_defaults(self, clean_env):
        cfg = AppConfig.from_env()
        assert cfg.db_path == Path("budget.sqlite")
        assert cfg.api_port == 8000
        assert cfg.log_format == "text"
        assert cfg.cache_max_items == 10_000
        assert cfg.cache_max_bytes == 100 * 1024 * 1024
        assert cfg.cache_ttl_seconds == 3600.0
        assert cfg.query_timeout_seconds == 30.0
        assert cfg.max_workers == 8
        assert cfg.eur_rates_path is None

    def test_env_overrides(self, clean_env):
        clean_env.setenv("APP_DB_PATH", "/data/ro.sqlite")
        clean_env.setenv("ANALYTICS_CACHE_MAX_ITEMS", "25")
        clean_env.setenv("ANALYTICS_CACHE_TTL_SECONDS", "1.5")
        clean_env.setenv("ANALYTICS_EUR_RATES_PATH", "rates.json")
        cfg = AppConfig.from_env()
        assert cfg.db_path == Path("/data/ro.sqlite")
        assert cfg.cache_max_items == 25
        assert cfg.cache_ttl_seconds == 1.5
        assert cfg.eur_rates_path == Path("rates.json")

    def test_blank_values_use_defaults(self, clean_env):
        clean_env.setenv("ANALYTICS_MAX_WORKERS", " ")
        assert AppConfig.from_env().max_workers == 8

    def test_bad_integer(self, clean_env):
        clean_env.setenv("ANALYTICS_CACHE_MAX_ITEMS", "lots")
        with pytest.raises(ValueError, match="ANALYTICS_CACHE_MAX_ITEMS"):
            AppConfig.from_env()

    def test_to_dict_lists_settings(self, clean_env):
        clean_env.setenv("APP_PORT", "9100")
        data = AppConfig.from_env().to_dict()
        assert data["api_port"] == 9100
        assert data["db_path"] == Path("budget.sqlite")
        assert {"cache_max_items", "max_workers", "eur_rates_path"} <= set(data)


class TestLauncher:
    @pytest.fixture()
    def uvicorn_calls(self, monkeypatch):
        calls = []
        monkeypatch.setattr(main.uvicorn, "run", lambda app, **kw: calls.append((app, kw)))
        return calls

    def test_host_and_port_come_from_config(self, clean_env, uvicorn_calls):
        clean_env.setenv("APP_HOST", "0.0.0.0")
        clean_env.setenv("APP_PORT", "9100")
        main.main([])
        app, kwargs = uvicorn_calls[0]
        assert app == "api.app:app"
        assert kwargs["host"] == "0.0.0.0"
        assert kwargs["port"] == 9100
        assert kwargs["reload"] is False

    def test_flags_override_config(self, clean_env, uvicorn_calls, tmp_path):
        clean_env.setenv("APP_PORT", "9100")
        clean_env.setenv("APP_DB_PATH", "budget.sqlite")
        db = tmp_path / "budget.sqlite"
        main.main(["--port", "9200", "--db", str(db)])
        assert uvicorn_calls[0][1]["port"] == 9200
        assert os.environ["APP_DB_PATH"] == str(db)

    def test_bad_port_setting(self, clean_env, uvicorn_calls):
        clean_env.setenv("APP_PORT", "http")
        with pytest.raises(ValueError, match="APP_PORT"):
            main.main([])
        assert uvicorn_calls == []


class TestBuildService:
    def test_uses_config_limits(self, clean_env, budget_db):
        clean_env.setenv("ANALYTICS_CACHE_TTL_SECONDS", "0.01")
        with build_service(AppConfig.from_env(), db_path=budget_db) as svc:
            result = svc.get_aggregates({"account_category": "ch", "years": [2023]}, "county")
            assert result.total_count == 3

    def test_loads_rate_overrides(self, clean_env, budget_db, tmp_path):
        rates = tmp_path / "rates.json"
        rates.write_text(json.dumps({"2023": "10"}))
        clean_env.setenv("ANALYTICS_EUR_RATES_PATH", str(rates))
        with build_service(AppConfig.from_env(), db_path=budget_db) as svc:
            result = svc.get_aggregates(
                {"account_category": "vn", "years": [2023], "normalization": "total_euro"},
                "uat",
            )
        assert result.rows[0]["amount"] == Decimal(7_000)

"""Tests for the asset catalog, configuration loading and the review contract."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from src.shell.catalog import AssetCatalog, CatalogError
from src.shell.config import CONFIG_DIR, load_config
from src.shell.contract import AssetType, Recommendation

CATALOG_TOML = """
[[portfolios]]
name = "Carteira de Teste"
description = "Portfolio used by the tests"
risk_level = "Moderado"

  [[portfolios.assets]]
  rank = 1
  ticker = "WEGE3"
  name = "WEG"
  asset_type = "Ação"
  ceiling_price = 45
  expected_yield = 1.8

  [[portfolios.assets]]
  ticker = "HGLG11"
  name = "CSHG Logística"
  asset_type = "FII"

  [[portfolios.assets]]
  ticker = "TESOURO SELIC 2029"
  name = "Tesouro Selic"
  asset_type = "Renda Fixa"
"""


def _write(tmp: str, name: str, content: str) -> Path:
    path = Path(tmp) / name
    path.write_text(content, encoding="utf-8")
    return path


# --- Catalog ---

def test_catalog_parses_portuguese_labels():
    with tempfile.TemporaryDirectory() as tmp:
        catalog = AssetCatalog(_write(tmp, "portfolios.toml", CATALOG_TOML))
        portfolios = catalog.list_portfolios()

        assert [p.name for p in portfolios] == ["Carteira de Teste"]
        assets = portfolios[0].assets
        assert [a.asset_type for a in assets] == [AssetType.STOCK, AssetType.REIT, AssetType.FIXED_INCOME]
        assert assets[0].ceiling_price == 45.0
        assert assets[1].ceiling_price is None
        assert not assets[2].asset_type.has_market_price


def test_catalog_find_asset_is_case_insensitive():
    with tempfile.TemporaryDirectory() as tmp:
        catalog = AssetCatalog(_write(tmp, "portfolios.toml", CATALOG_TOML))
        assert catalog.find_asset("wege3", "Carteira de Teste").name == "WEG"
        assert catalog.find_asset("WEGE3", "Outra Carteira") is None
        assert catalog.find_asset("PETR4", "Carteira de Teste") is None


def test_catalog_is_reread_on_every_call():
    with tempfile.TemporaryDirectory() as tmp:
        path = _write(tmp, "portfolios.toml", CATALOG_TOML)
        catalog = AssetCatalog(path)
        assert len(catalog.list_portfolios()[0].assets) == 3

        path.write_text(CATALOG_TOML.replace('ticker = "HGLG11"', 'ticker = "KNRI11"'), encoding="utf-8")
        assert catalog.find_asset("KNRI11", "Carteira de Teste") is not None


def test_catalog_missing_file_raises():
    with pytest.raises(CatalogError):
        AssetCatalog("/nonexistent/portfolios.toml").list_portfolios()


def test_catalog_bad_asset_type_raises():
    with tempfile.TemporaryDirectory() as tmp:
        bad = CATALOG_TOML.replace('asset_type = "FII"', 'asset_type = "Debênture"')
        with pytest.raises(CatalogError):
            AssetCatalog(_write(tmp, "portfolios.toml", bad)).list_portfolios()


def test_shipped_catalog_loads():
    portfolios = AssetCatalog(CONFIG_DIR / "portfolios.toml").list_portfolios()
    names = {p.name for p in portfolios}
    assert "Carteira de Valor" in names
    assert "Carteira de Renda Fixa" in names
    income = next(p for p in portfolios if p.name == "Carteira de Renda Fixa")
    assert all(a.asset_type is AssetType.FIXED_INCOME for a in income.assets)


# --- Contract ---

def test_recommendation_aliases():
    assert Recommendation.parse("manter") is Recommendation.KEEP
    assert Recommendation.parse("SUBSTITUIR") is Recommendation.REPLACE
    assert Recommendation.parse(" Observar ") is Recommendation.WATCH
    assert Recommendation.parse("sell", default=Recommendation.WATCH) is Recommendation.WATCH
    with pytest.raises(ValueError):
        Recommendation.parse("sell")


# --- Config ---

def test_config_defaults_from_shipped_settings():
    config = load_config()
    assert config.review.cron_day == "*/10"
    assert config.review.cron_hour == 9
    assert config.review.interval_days == 10
    assert config.review.pacing_seconds == 0.5
    assert config.ai.provider in ("anthropic", "vertex")
    assert Path(config.review.catalog_path).name == "portfolios.toml"


def test_config_relative_catalog_resolves_against_config_dir():
    with tempfile.TemporaryDirectory() as tmp:
        _write(tmp, "settings.toml", '[review]\ncatalog_path = "custom.toml"\ninterval_days = 7\n')
        config = load_config(Path(tmp))
        assert config.review.catalog_path == str(Path(tmp) / "custom.toml")
        assert config.review.interval_days == 7


def test_config_without_settings_file_uses_defaults():
    with tempfile.TemporaryDirectory() as tmp:
        config = load_config(Path(tmp))
        assert config.timezone == "America/Sao_Paulo"
        assert config.review.catalog_path == str(Path(tmp) / "portfolios.toml")


def test_config_validation_lists_every_problem():
    with tempfile.TemporaryDirectory() as tmp:
        _write(tmp, "settings.toml",
               '[general]\ntimezone = "Mars/Olympus"\n[review]\ncron_hour = 25\ninterval_days = 0\n'
               '[ai]\nprovider = "openai"\n')
        with pytest.raises(ValueError) as exc_info:
            load_config(Path(tmp))

        message = str(exc_info.value)
        assert "cron_hour" in message
        assert "interval_days" in message
        assert "ai.provider" in message
        assert "Invalid timezone" in message

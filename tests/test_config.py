import pytest

from territory.config import TerritoryConfig


def test_defaults():
    cfg = TerritoryConfig()
    assert (cfg.width, cfg.height, cfg.seed) == (800, 600, 42)
    assert cfg.strict is False


def test_invalid_bounds_rejected():
    with pytest.raises(ValueError):
        TerritoryConfig(width=0)
    with pytest.raises(ValueError):
        TerritoryConfig().with_bounds(height=-10)


def test_with_bounds_keeps_unset_values():
    cfg = TerritoryConfig(seed=7).with_bounds(width=1024)
    assert (cfg.width, cfg.height, cfg.seed) == (1024, 600, 7)


def test_from_env(monkeypatch):
    monkeypatch.setenv("TERRITORY_WIDTH", "1200")
    monkeypatch.setenv("TERRITORY_SEED", "3")
    monkeypatch.setenv("TERRITORY_STRICT", "true")
    monkeypatch.delenv("TERRITORY_HEIGHT", raising=False)
    cfg = TerritoryConfig.from_env(height=900)
    assert (cfg.width, cfg.height, cfg.seed, cfg.strict) == (1200, 900, 3, True)


def test_zero_bounds_are_not_replaced_by_defaults():
    with pytest.raises(ValueError):
        TerritoryConfig().with_bounds(width=0)
    assert TerritoryConfig().with_bounds(width=None).width == 800

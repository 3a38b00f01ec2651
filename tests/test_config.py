"""Config loading from the environment and YAML overlays."""

from __future__ import annotations

import pytest

from kinsync.config import DEFAULT_PROVIDER_DELAYS, ProviderDelay, SyncConfig, load_config
from kinsync.models import Provider


def test_defaults():
    config = SyncConfig()

    assert config.max_generations == 10
    assert config.max_consecutive_failures == 3
    assert config.auto_link_threshold == 0.9
    assert config.delay_for(Provider.ANCESTRY) == ProviderDelay(1000, 3000)
    assert config.delay_for("familysearch") == ProviderDelay(500, 1500)


def test_delay_for_unconfigured_provider_is_zero():
    config = SyncConfig(provider_delays={})
    assert config.delay_for(Provider.WIKITREE) == ProviderDelay(0, 0)


@pytest.mark.parametrize("low,high", [(-1, 10), (2000, 1000)])
def test_invalid_delay_window_rejected(low, high):
    with pytest.raises(ValueError):
        ProviderDelay(low, high)


def test_from_env(monkeypatch):
    monkeypatch.setenv("KINSYNC_MAX_GENERATIONS", "4")
    monkeypatch.setenv("KINSYNC_AUTO_LINK_THRESHOLD", "0.75")
    monkeypatch.setenv("KINSYNC_DB_PATH", "/tmp/other.db")

    config = SyncConfig.from_env()

    assert config.max_generations == 4
    assert config.auto_link_threshold == 0.75
    assert config.db_path == "/tmp/other.db"


def test_from_env_ignores_malformed_numbers(monkeypatch):
    monkeypatch.setenv("KINSYNC_MAX_GENERATIONS", "lots")
    assert SyncConfig.from_env().max_generations == 10


def test_load_config_yaml_overlay(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("KINSYNC_MAX_GENERATIONS", "4")
    path = tmp_path / "kinsync.yaml"
    path.write_text(
        "max_generations: 6\n"
        "providers:\n"
        "  ancestry:\n"
        "    min_delay_ms: 2000\n"
        "    max_delay_ms: 4000\n"
        "  wikitree:\n"
        "    max_delay_ms: 2500\n"
    )

    config = load_config(path)

    assert config.max_generations == 6
    assert config.delay_for(Provider.ANCESTRY) == ProviderDelay(2000, 4000)
    assert config.delay_for(Provider.WIKITREE) == ProviderDelay(500, 2500)
    assert config.delay_for(Provider.FAMILYSEARCH) == DEFAULT_PROVIDER_DELAYS[Provider.FAMILYSEARCH]


def test_load_config_rejects_unknown_keys(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "kinsync.yaml"
    path.write_text("max_generatoins: 6\n")

    with pytest.raises(TypeError):
        load_config(path)


def test_replace_returns_new_config():
    base = SyncConfig()
    changed = base.replace(max_generations=2)

    assert changed.max_generations == 2
    assert base.max_generations == 10

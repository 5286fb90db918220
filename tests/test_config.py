"""Pruebas de carga de configuración.

Configuration loading tests.
"""

import pytest

from escrutinio.config import DEFAULT_PARTIES, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("ESCRUTINIO_SYNC_MAX_RETRIES", "ESCRUTINIO_LOG_LEVEL", "ESCRUTINIO_API_BASE_URL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = load_config()

    assert settings.sync_interval_seconds == 3.0
    assert settings.sync_debounce_seconds == 0.5
    assert settings.sync_max_retries == 3
    assert settings.geolocation_timeout_seconds == 10.0
    assert settings.parties == DEFAULT_PARTIES


def test_yaml_then_env_then_overrides(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "escrutinio.yaml"
    config_path.write_text(
        "sync_max_retries: 5\nlog_level: debug\ndrain_delay_seconds: 1.5\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("ESCRUTINIO_SYNC_MAX_RETRIES", "7")

    settings = load_config(config_path)
    assert settings.sync_max_retries == 7
    assert settings.log_level == "DEBUG"
    assert settings.drain_delay_seconds == 1.5

    overridden = load_config(config_path, sync_max_retries=9)
    assert overridden.sync_max_retries == 9


def test_invalid_values_raise_value_error() -> None:
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(sync_interval_seconds=0)
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(api_base_url="not a url")
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(parties=["PDC", "PDC"])


def test_yaml_must_be_a_mapping(tmp_path) -> None:
    config_path = tmp_path / "bad.yaml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError, match="must be a YAML mapping"):
        load_config(config_path)

"""
Configuration Tests
===================

Purpose
-------
Validate that `settings.toml` loads, that invalid files fail fast and that
environment settings are read as documented.
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Third-party libraries
import pytest             # Pytest framework for isolated and reproducible testing

# Local modules
import config


# ----------------------------
# Unit Test: settings.toml
# ----------------------------
def test_shipped_settings_are_valid(cfg):
    """
    The bundled settings carry every section and a governed model.
    """
    assert cfg["general"]["model"] in cfg["general"]["chat_models"]
    assert cfg["limits"]["max_page_size"] == 100
    assert cfg["freshdesk"]["status_codes"]["2"] == "Open"
    assert "{{ticket_text}}" in cfg["prompts"]["classifier_user"]


def test_missing_section_fails_fast(tmp_path):
    """
    A file without the required sections raises RuntimeError.
    """
    path = tmp_path / "settings.toml"
    path.write_text('[general]\nmodel = "gpt-4o-mini"\n')
    with pytest.raises(RuntimeError, match="missing required sections"):
        config.load_config(str(path))


def test_ungoverned_model_fails_fast(tmp_path):
    """
    A model outside general.chat_models is rejected.
    """
    text = open(config.TOML_PATH, encoding="utf-8").read()
    path = tmp_path / "settings.toml"
    path.write_text(text.replace('model = "gpt-4o-mini"', 'model = "not-a-model"', 1), encoding="utf-8")
    with pytest.raises(RuntimeError, match="general.model"):
        config.load_config(str(path))


# ----------------------------
# Unit Test: Environment
# ----------------------------
def test_missing_environment_is_reported(monkeypatch):
    """
    validate_environment names every missing required variable.
    """
    for name in config.REQUIRED_ENV_VARS:
        monkeypatch.setenv(name, "")
    monkeypatch.setenv("FRESHDESK_API_KEY", "k")
    with pytest.raises(RuntimeError) as exc:
        config.validate_environment()
    assert "FRESHDESK_SUBDOMAIN" in str(exc.value)
    assert "OPENAI_API_KEY" in str(exc.value)
    assert "FRESHDESK_API_KEY" not in str(exc.value)


def test_settings_from_env(monkeypatch):
    """
    Optional values are None when unset and APP_ENV selects development mode.
    """
    monkeypatch.setenv("APP_ENV", "Development")
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.setenv("TEAMS_SEARCH_USER_ID", "ops@example.com")
    settings = config.Settings.from_env()
    assert settings.is_development
    assert settings.database_url is None
    assert settings.teams_search_user_id == "ops@example.com"

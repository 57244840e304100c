import json

import pytest

from core.config import DOM_CONTRACT_KEYS, RelaySettings


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "BAAS_WS_ENDPOINT", "GANDALF_URL", "RELAY_TOKEN_KEY",
        "ANSWER_SELECTOR", "LOG_LEVEL", "HEADLESS",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestRelaySettingsDefaults:

    def test_default_values(self, clean_env):
        settings = RelaySettings()
        assert settings.log_level == "INFO"
        assert settings.headless is True
        assert settings.baas_ws_endpoint is None
        assert settings.remote_keepalive_ms == 300000
        assert settings.gandalf_url == "https://gandalf.lakera.ai/"
        assert settings.default_level_slug == "baseline"
        assert settings.max_level == "8"

    def test_default_timeouts(self, clean_env):
        settings = RelaySettings()
        assert settings.navigation_timeout_ms == 30000
        assert settings.input_timeout_ms == 10000
        assert settings.response_timeout_ms == 30000

    def test_default_dom_contract(self, clean_env):
        settings = RelaySettings()
        assert settings.input_selector == "#comment"
        assert settings.answer_selector == ".answer"
        assert settings.error_selector == ".text-red-500"
        assert settings.error_pattern == "cannot be the same"
        assert settings.blocked_resource_types == ["image", "font", "media", "stylesheet"]


class TestRelaySettingsEnvironment:

    def test_env_overrides(self, clean_env):
        clean_env.setenv("BAAS_WS_ENDPOINT", "wss://chrome.browserless.io?token=t")
        clean_env.setenv("GANDALF_URL", "https://gandalf.lakera.ai/do-not-tell")
        clean_env.setenv("HEADLESS", "false")
        clean_env.setenv("RELAY_TOKEN_KEY", "k" * 43 + "=")

        settings = RelaySettings()

        assert settings.baas_ws_endpoint == "wss://chrome.browserless.io?token=t"
        assert settings.gandalf_url == "https://gandalf.lakera.ai/do-not-tell"
        assert settings.headless is False
        assert settings.token_key == "k" * 43 + "="

    def test_token_key_by_field_name(self, clean_env):
        assert RelaySettings(token_key="abc").token_key == "abc"


class TestRelayConfigFile:

    def test_json_overrides_dom_contract(self, clean_env, tmp_path):
        path = tmp_path / "relay_config.json"
        path.write_text(json.dumps({
            "dom_contract": {
                "answer_selector": "div.reply",
                "error_pattern": "(?i)duplicate",
                "headless": False,
            }
        }))
        settings = RelaySettings()

        settings._load_relay_config_overrides(path)

        assert settings.answer_selector == "div.reply"
        assert settings.error_pattern == "(?i)duplicate"
        # only DOM contract keys are honoured
        assert settings.headless is True
        assert "headless" not in DOM_CONTRACT_KEYS

    def test_explicit_values_win_over_file(self, clean_env, tmp_path):
        path = tmp_path / "relay_config.json"
        path.write_text(json.dumps({"answer_selector": "div.reply"}))
        clean_env.setenv("ANSWER_SELECTOR", ".from-env")
        settings = RelaySettings()

        settings._load_relay_config_overrides(path)

        assert settings.answer_selector == ".from-env"

    def test_unreadable_file_is_ignored(self, clean_env, tmp_path):
        path = tmp_path / "relay_config.json"
        path.write_text("{not json")
        settings = RelaySettings()

        settings._load_relay_config_overrides(path)

        assert settings.answer_selector == ".answer"

    def test_missing_file_is_ignored(self, clean_env, tmp_path):
        settings = RelaySettings()
        settings._load_relay_config_overrides(tmp_path / "absent.json")
        assert settings.input_selector == "#comment"

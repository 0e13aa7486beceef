import pytest
import yaml

from neuralos.config import AppConfig, LLMConfig
from neuralos.config.settings_store import InvalidApiKeyError, SettingsStore


@pytest.mark.unit
def test_defaults_come_from_config():
    store = SettingsStore(AppConfig(llm=LLMConfig(model="m", max_tokens=512, temperature=0.3)))

    assert store.get_model() == "m"
    assert store.get_max_tokens() == 512
    assert store.get_temperature() == 0.3
    assert store.has_api_key() is False
    assert store.is_enabled("voice_enabled") is True


@pytest.mark.unit
def test_api_key_must_have_anthropic_prefix():
    store = SettingsStore()

    with pytest.raises(InvalidApiKeyError):
        store.set_api_key("sk-openai-123")
    with pytest.raises(InvalidApiKeyError):
        store.set_api_key("")

    store.set_api_key("sk-ant-abc")
    assert store.get_api_key() == "sk-ant-abc"

    store.clear_api_key()
    assert store.has_api_key() is False


@pytest.mark.unit
@pytest.mark.parametrize("requested, stored", [(10, 256), (2048, 2048), (99999, 4096)])
def test_max_tokens_is_clamped(requested, stored):
    store = SettingsStore()
    store.set_max_tokens(requested)
    assert store.get_max_tokens() == stored


@pytest.mark.unit
def test_temperature_is_clamped():
    store = SettingsStore()
    store.set_temperature(1.7)
    assert store.get_temperature() == 1.0
    store.set_temperature(-1)
    assert store.get_temperature() == 0.0


@pytest.mark.unit
def test_unknown_flag_is_rejected():
    store = SettingsStore()
    with pytest.raises(KeyError):
        store.is_enabled("teleport_enabled")
    with pytest.raises(KeyError):
        store.set_enabled("teleport_enabled", True)


@pytest.mark.unit
def test_reset_keeps_credential_and_onboarding():
    store = SettingsStore()
    store.set_api_key("sk-ant-abc")
    store.set_onboarding_complete(True)
    store.set_model("other")
    store.set_enabled("tts_enabled", False)

    store.reset_settings()

    assert store.get_api_key() == "sk-ant-abc"
    assert store.is_onboarding_complete() is True
    assert store.get_model() == AppConfig().llm.model
    assert store.is_enabled("tts_enabled") is True

    store.clear_all()
    assert store.all_settings()["has_api_key"] is False


@pytest.mark.unit
def test_settings_persist_to_yaml(tmp_path):
    path = tmp_path / "state" / "settings.yaml"
    store = SettingsStore(path=str(path))
    store.set_api_key("sk-ant-persisted")
    store.set_enabled("haptics_enabled", False)

    assert yaml.safe_load(path.read_text())["anthropic_api_key"] == "sk-ant-persisted"

    reloaded = SettingsStore(path=str(path))
    assert reloaded.get_api_key() == "sk-ant-persisted"
    assert reloaded.is_enabled("haptics_enabled") is False


@pytest.mark.unit
def test_unreadable_settings_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("model: [unclosed\n")

    store = SettingsStore(path=str(path))

    assert store.get_model() == AppConfig().llm.model

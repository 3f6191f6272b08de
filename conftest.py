"""
Root conftest — isolate credentials and config-path environment variables
so Settings() tests are not affected by a real token in the developer's
or CI environment.
"""
import pytest

_ENV_VARS = [
    "DISCORD_BOT_TOKEN",
    "DISGORDIAN_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    """Remove credential env vars for every test so Settings() behaves
    as if no token is present unless the test explicitly provides one.
    Also disables .env file loading so local developer .env files don't
    leak real credentials into tests."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import disgordian.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    monkeypatch.setattr(settings_module, "_singleton", None)

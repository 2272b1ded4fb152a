"""
Test conftest — isolate pipeclock environment variables so that tests are
not affected by a developer's or CI machine's real storage directory or
config file.
"""
import pytest

_PIPECLOCK_ENV_VARS = [
    "PIPECLOCK_DIR",
    "PIPECLOCK_CONFIG",
]


@pytest.fixture(autouse=True)
def _isolate_pipeclock_env(monkeypatch):
    """Remove PIPECLOCK_* env vars for every test so Settings() falls back
    to defaults unless the test explicitly provides them. Also disables .env
    file loading and forgets the cached settings singleton so one test's
    configuration never leaks into the next."""
    for var in _PIPECLOCK_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import pipeclock.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    settings_module.reset_settings()
    yield
    settings_module.reset_settings()

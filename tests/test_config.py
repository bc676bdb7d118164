import pytest
from pydantic import ValidationError

from msp_sync.config import ConnectWiseConfig, Settings
from msp_sync.core.errors import ConfigurationError


CW_ENV = ("CW_CLIENT_ID", "CW_PUBLIC_KEY", "CW_PRIVATE_KEY", "CW_BASE_URL", "CW_COMPANY_ID",
          "VITE_CW_CLIENT_ID", "VITE_CW_PUBLIC_KEY", "VITE_CW_BASE_URL", "VITE_CW_COMPANY_ID")


@pytest.fixture()
def clean_env(monkeypatch):
    for name in CW_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_connectwise_config_requires_credentials(clean_env):
    settings = Settings(_env_file=None)
    with pytest.raises(ConfigurationError) as exc_info:
        settings.connectwise_config()
    assert "CW_CLIENT_ID" in str(exc_info.value)
    assert "CW_PRIVATE_KEY" in str(exc_info.value)


def test_legacy_vite_names_are_accepted(clean_env):
    clean_env.setenv("VITE_CW_CLIENT_ID", "client")
    clean_env.setenv("VITE_CW_PUBLIC_KEY", "pub")
    clean_env.setenv("CW_PRIVATE_KEY", "priv")
    clean_env.setenv("VITE_CW_BASE_URL", "api-na.myconnectwise.net/")
    clean_env.setenv("VITE_CW_COMPANY_ID", "acme")

    config = Settings(_env_file=None).connectwise_config()

    assert config.client_id == "client"
    assert config.base_url == "https://api-na.myconnectwise.net"
    assert config.codebase is None


def test_comma_separated_lists(clean_env):
    clean_env.setenv("ALLOWED_ENGINEER_IDENTIFIERS", "eng1, eng2,,")
    clean_env.setenv("SERVICE_BOARD_NAMES", "HelpDesk (MS),Triage")

    settings = Settings(_env_file=None)

    assert settings.allowed_engineer_identifiers == ["eng1", "eng2"]
    assert settings.service_board_names == ["HelpDesk (MS)", "Triage"]


def test_sync_policy_defaults(clean_env):
    settings = Settings(_env_file=None)
    assert settings.minimum_sync_interval_hours == 6
    assert settings.stale_threshold_hours == 168
    assert settings.sync_incremental_fallback is False
    assert settings.upsert_batch_size == 50


def test_batch_size_must_be_positive(clean_env):
    clean_env.setenv("UPSERT_BATCH_SIZE", "0")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_base_url_keeps_explicit_scheme():
    config = ConnectWiseConfig(
        client_id="c", public_key="p", private_key="k",
        base_url=" http://localhost:8080/ ", company_id="acme",
    )
    assert config.base_url == "http://localhost:8080"

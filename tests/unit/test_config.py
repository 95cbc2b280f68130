"""Unit tests for settings"""

from decimal import Decimal

import pytest
from pydantic import SecretStr

from capguard.config import DEFAULT_TOKEN_ADDRESSES, Settings
from capguard.domain.exceptions import ConfigurationError


def test_defaults_are_dry_run():
    settings = Settings(_env_file=None, database_url="sqlite://")

    assert settings.settlement_enabled is False
    assert settings.gas_limit_buffer == Decimal("1.2")
    assert settings.token_addresses == DEFAULT_TOKEN_ADDRESSES
    settings.validate_signer()


def test_settlement_requires_signer_key():
    settings = Settings(_env_file=None, settlement_enabled=True)

    with pytest.raises(ConfigurationError):
        settings.validate_signer()


def test_settlement_with_key_is_valid():
    Settings(_env_file=None, settlement_enabled=True, signer_private_key=SecretStr("0x" + "11" * 32)).validate_signer()


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("TOKEN_ADDRESSES", '{"USDC": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359"}')
    monkeypatch.setenv("CONFIRMATION_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("SETTLEMENT_HOUR_UTC", "2")

    settings = Settings(_env_file=None)

    assert settings.token_addresses == {"USDC": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359"}
    assert settings.confirmation_timeout_seconds == 30.0
    assert settings.settlement_hour_utc == 2


def test_private_key_is_not_echoed(monkeypatch):
    monkeypatch.setenv("SIGNER_PRIVATE_KEY", "0x" + "22" * 32)

    settings = Settings(_env_file=None)

    assert "22" * 32 not in repr(settings)
    assert settings.signer_private_key.get_secret_value() == "0x" + "22" * 32

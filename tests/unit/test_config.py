import pytest
from solders.pubkey import Pubkey

from mcp_sale_escrow import config
from mcp_sale_escrow.errors import ConfigurationError


def test_special_addresses():
    assert config.NULL_ADDRESS == Pubkey.default()
    assert bytes(config.BURN_ADDRESS) == bytes(31) + b"\x01"
    assert config.BURN_ADDRESS != config.NULL_ADDRESS


def test_get_env_int(monkeypatch):
    monkeypatch.setenv("TEST_FEE", "250")
    assert config._get_env_int("TEST_FEE", 0, min_val=0, max_val=10_000) == 250

    monkeypatch.delenv("TEST_FEE")
    assert config._get_env_int("TEST_FEE", 7) == 7


@pytest.mark.parametrize("raw", ["abc", "-1", "10001"])
def test_get_env_int_rejects(monkeypatch, raw):
    monkeypatch.setenv("TEST_FEE", raw)
    with pytest.raises(ConfigurationError):
        config._get_env_int("TEST_FEE", 0, min_val=0, max_val=10_000)


def test_get_env_pubkey_list(monkeypatch):
    first, second = Pubkey.new_unique(), Pubkey.new_unique()
    monkeypatch.setenv("TEST_ADMINS", f"{first}, ,{second},")

    assert config._get_env_pubkey_list("TEST_ADMINS") == [first, second]


def test_get_env_pubkey_list_rejects_bad_key(monkeypatch):
    monkeypatch.setenv("TEST_ADMINS", "not-a-key")
    with pytest.raises(ConfigurationError):
        config._get_env_pubkey_list("TEST_ADMINS")


def test_get_env_pubkey(monkeypatch):
    monkeypatch.delenv("TEST_RECIPIENT", raising=False)
    assert config._get_env_pubkey("TEST_RECIPIENT", str(config.BURN_ADDRESS)) == config.BURN_ADDRESS

    monkeypatch.setenv("TEST_RECIPIENT", "garbage")
    with pytest.raises(ConfigurationError):
        config._get_env_pubkey("TEST_RECIPIENT", str(config.BURN_ADDRESS))


def test_required_string(monkeypatch):
    monkeypatch.setenv("TEST_SYMBOL", "")
    with pytest.raises(ConfigurationError):
        config._get_env_str("TEST_SYMBOL", "SOL", required=True)
